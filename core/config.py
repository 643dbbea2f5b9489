import os
import logging
from dotenv import load_dotenv

# Load .env from project root
try:
    load_dotenv(dotenv_path=os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".env")))
except Exception:
    try:
        load_dotenv()
    except Exception:
        pass

# Environment
APP_NAME = os.getenv("APP_NAME", "Dojo Billing")
PUBLIC_BASE_URL = (os.getenv("PUBLIC_BASE_URL", "") or "").strip().strip('"').strip("'").rstrip("/")

# Business calendar (overridden by the "timezone" setting when present)
BUSINESS_TIMEZONE = os.getenv("BUSINESS_TIMEZONE", "America/Denver").strip() or "America/Denver"
DEFAULT_CURRENCY = (os.getenv("DEFAULT_CURRENCY", "usd") or "usd").strip().lower()

# Shared secret for the cron / dashboard trigger and admin billing endpoints
BILLING_CRON_SECRET = os.getenv("BILLING_CRON_SECRET", "").strip()

# Billing defaults (settings table wins when a row exists)
BILLING_GRACE_PERIOD_DAYS = int(os.getenv("BILLING_GRACE_PERIOD_DAYS", "7"))
DUNNING_MAX_RETRIES = int(os.getenv("DUNNING_MAX_RETRIES", "4"))

# Family discount curve: "flat" applies the plan percent once for any family,
# "per_member" applies it once per additional family member up to the cap.
FAMILY_DISCOUNT_MODE = (os.getenv("FAMILY_DISCOUNT_MODE", "per_member") or "per_member").strip().lower()
FAMILY_DISCOUNT_MAX_PERCENT = float(os.getenv("FAMILY_DISCOUNT_MAX_PERCENT", "50"))

# Payments (Stripe)
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "").strip()
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "").strip()

# Payments (PayPal)
PAYPAL_CLIENT_ID = os.getenv("PAYPAL_CLIENT_ID", "").strip()
PAYPAL_CLIENT_SECRET = os.getenv("PAYPAL_CLIENT_SECRET", "").strip()
PAYPAL_SANDBOX = os.getenv("PAYPAL_SANDBOX", "").strip().lower() in ("1", "true", "yes")
PAYPAL_WEBHOOK_ID = os.getenv("PAYPAL_WEBHOOK_ID", "").strip()

# Payments (Square)
SQUARE_ACCESS_TOKEN = os.getenv("SQUARE_ACCESS_TOKEN", "").strip()
SQUARE_LOCATION_ID = os.getenv("SQUARE_LOCATION_ID", "").strip()
SQUARE_APPLICATION_ID = os.getenv("SQUARE_APPLICATION_ID", "").strip()
SQUARE_SANDBOX = os.getenv("SQUARE_SANDBOX", "").strip().lower() in ("1", "true", "yes")
SQUARE_WEBHOOK_SIGNATURE_KEY = os.getenv("SQUARE_WEBHOOK_SIGNATURE_KEY", "").strip()
SQUARE_API_VERSION = os.getenv("SQUARE_API_VERSION", "2024-01-18").strip()
# Exact URL Square posts to; part of the signed payload
SQUARE_WEBHOOK_URL = (os.getenv("SQUARE_WEBHOOK_URL", "") or "").strip()

# Outbound gateway request timeout (seconds)
GATEWAY_TIMEOUT_SEC = float(os.getenv("GATEWAY_TIMEOUT_SEC", "30"))

MAIL_FROM = os.getenv("MAIL_FROM", "Dojo Billing <no-reply@your-domain.com>")
SMTP_HOST = os.getenv("SMTP_HOST", "")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER", "")
SMTP_PASS = os.getenv("SMTP_PASS", "")
GYM_NOTIFY_EMAIL = os.getenv("GYM_NOTIFY_EMAIL", "").strip()

# In-process daily scheduler
RUN_BILLING_SCHEDULER = (os.getenv("RUN_BILLING_SCHEDULER") or "0").strip() == "1"
BILLING_SCHEDULER_INTERVAL_SEC = int(os.getenv("BILLING_SCHEDULER_INTERVAL_SEC", "3600"))

# Logging
logging.basicConfig(level=logging.INFO, format="%(asctime)s | %(levelname)s | %(message)s")
logger = logging.getLogger("dojobill")

# Email templates dir
TEMPLATES_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "templates"))
