"""Rate limiting utilities using throttled-py"""
import os
from datetime import timedelta
from throttled import Throttled, RateLimiterType, store, rate_limiter

from core.config import logger

# Initialize storage - Redis for production, MemoryStore for development
_storage_type = "memory"
try:
    redis_url = os.getenv("REDIS_URL", "").strip()
    if redis_url:
        storage = store.RedisStore(server=redis_url)
        _storage_type = "redis"
        logger.info("[rate_limit] Using Redis for rate limiting")
    else:
        storage = store.MemoryStore()
        logger.warning("[rate_limit] REDIS_URL not set - using in-memory storage (not suitable for production with multiple workers)")
except Exception as ex:
    storage = store.MemoryStore()
    logger.warning(f"[rate_limit] Redis connection failed, using in-memory storage: {ex}")

# Billing trigger limiter: 10 manual/cron runs per IP per minute
billing_trigger_throttle = Throttled(
    using=RateLimiterType.FIXED_WINDOW.value,
    quota=rate_limiter.per_duration(timedelta(minutes=1), limit=10),
    store=storage,
)

# Checkout limiter: 30 checkout sessions per member/IP per 10 minutes
checkout_throttle = Throttled(
    using=RateLimiterType.FIXED_WINDOW.value,
    quota=rate_limiter.per_duration(timedelta(minutes=10), limit=30),
    store=storage,
)

# Webhook limiter: 600 deliveries per processor per minute
webhook_throttle = Throttled(
    using=RateLimiterType.FIXED_WINDOW.value,
    quota=rate_limiter.per_duration(timedelta(minutes=1), limit=600),
    store=storage,
)


def _check(throttle: Throttled, key: str, message: str) -> tuple[bool, str]:
    try:
        result = throttle.limit(key, cost=1)
        if result.limited:
            return False, message
        return True, ""
    except Exception as ex:
        logger.warning(f"[rate_limit] check for {key} failed: {ex}")
        # Fail open
        return True, ""


def check_billing_trigger_rate_limit(ip: str) -> tuple[bool, str]:
    """
    Check if a billing run trigger is allowed for this caller.

    Returns:
        Tuple of (allowed: bool, error_message: str)
    """
    return _check(billing_trigger_throttle, f"billing_trigger:{ip}", "Too many billing run requests. Please try again in a minute.")


def check_checkout_rate_limit(key: str) -> tuple[bool, str]:
    return _check(checkout_throttle, f"checkout:{key}", "Too many checkout attempts. Please try again later.")


def check_webhook_rate_limit(processor: str) -> tuple[bool, str]:
    return _check(webhook_throttle, f"webhook:{processor}", "Webhook rate limit exceeded")
