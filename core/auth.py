import hmac
from typing import Optional, Tuple
from fastapi import Request
from core.config import logger, BILLING_CRON_SECRET


def get_client_ip(request: Request) -> str:
    fwd = request.headers.get("x-forwarded-for") or ""
    if fwd:
        return fwd.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def get_secret_from_request(request: Request) -> Optional[str]:
    """X-Billing-Secret header, or a bearer token for cron services that can only send Authorization."""
    secret = request.headers.get("x-billing-secret")
    if secret:
        return secret.strip()
    auth_header = request.headers.get("authorization") or ""
    if auth_header.lower().startswith("bearer "):
        token = auth_header.split(" ", 1)[1].strip()
        return token or None
    return None


def require_billing_admin(request: Request, expected: Optional[str] = None) -> Tuple[bool, str]:
    """Compare the caller's secret with BILLING_CRON_SECRET. Returns (ok, reason)."""
    expected = BILLING_CRON_SECRET if expected is None else expected
    try:
        if not expected:
            return False, "billing secret not configured"
        provided = get_secret_from_request(request)
        if not provided:
            return False, "unauthorized"
        if hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
            return True, ""
        return False, "forbidden"
    except Exception as ex:
        logger.warning(f"require_billing_admin failed: {ex}")
        return False, "error"
