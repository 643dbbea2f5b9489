import smtplib
import uuid
from datetime import datetime, timezone
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Optional
from jinja2 import Environment, FileSystemLoader, select_autoescape
import os

from core.config import SMTP_HOST, SMTP_PORT, SMTP_USER, SMTP_PASS, MAIL_FROM, APP_NAME, TEMPLATES_DIR, logger

# Jinja env
_jinja_env = Environment(
    loader=FileSystemLoader(TEMPLATES_DIR),
    autoescape=select_autoescape(["html", "xml"]),
)

EMAIL_BRAND_BUTTON_BG = os.getenv("EMAIL_BRAND_BUTTON_BG", "#B91C1C")
EMAIL_BRAND_BUTTON_TEXT = os.getenv("EMAIL_BRAND_BUTTON_TEXT", "#FFFFFF")
EMAIL_BRAND_BG = os.getenv("EMAIL_BRAND_BG", "#F3F4F6")
GYM_NAME = os.getenv("GYM_NAME", APP_NAME)


def render_email(template_name: str, **context) -> str:
    base = {
        "app_name": APP_NAME,
        "gym_name": GYM_NAME,
        "brand_bg": EMAIL_BRAND_BG,
        "button_bg": EMAIL_BRAND_BUTTON_BG,
        "button_text": EMAIL_BRAND_BUTTON_TEXT,
    }
    base.update(context or {})
    return _jinja_env.get_template(template_name).render(**base)


def send_email_smtp(
    to_addrs: list[str],
    subject: str,
    html: str,
    text: Optional[str] = None,
    from_addr: Optional[str] = None,
    reply_to: Optional[str] = None,
) -> bool:
    try:
        if not SMTP_HOST or not SMTP_PASS or not MAIL_FROM:
            logger.error("SMTP not configured; cannot send email")
            return False
        recipients = [a.strip() for a in (to_addrs or []) if a and a.strip()]
        if not recipients:
            return False
        sender = (from_addr or MAIL_FROM).strip()
        display_from = f"{GYM_NAME} <{sender}>" if GYM_NAME and "<" not in sender else sender

        domain = sender.split("@")[-1].rstrip(">") if "@" in sender else "localhost"
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = display_from
        msg["To"] = ", ".join(recipients)
        msg["Message-ID"] = f"<{uuid.uuid4()}@{domain}>"
        msg["Date"] = datetime.now(timezone.utc).strftime("%a, %d %b %Y %H:%M:%S +0000")
        if reply_to:
            msg["Reply-To"] = reply_to
        if not text:
            text = "Open this message in an HTML-capable email client."
        msg.attach(MIMEText(text or "", "plain", _charset="utf-8"))
        msg.attach(MIMEText(html or "", "html", _charset="utf-8"))

        with smtplib.SMTP(SMTP_HOST, SMTP_PORT) as server:
            server.starttls()
            if SMTP_USER or SMTP_PASS:
                server.login(SMTP_USER, SMTP_PASS)
            # Envelope sender must match the actual sending identity for some providers
            server.sendmail(sender, recipients, msg.as_string())
        return True
    except Exception as ex:
        logger.exception(f"SMTP send failed: {ex}")
        return False
