"""Subscription lifecycle emails (activated, cancelled, expiring, expired) via Resend"""
import resend
from jinja2 import Environment, FileSystemLoader, select_autoescape
from pathlib import Path
from app.core.config import settings
from app.core.exceptions import DeliveryError
from app.core.logging import get_logger

logger = get_logger(__name__)

template_dir = Path(__file__).parent.parent / "templates" / "email"
jinja_env = Environment(
    loader=FileSystemLoader(str(template_dir)),
    autoescape=select_autoescape(["html"]),
)

# kind -> (template, subject)
NOTIFICATION_KINDS = {
    "activated": ("subscription_activated.html", "Your subscription is active"),
    "cancelled": ("subscription_cancelled.html", "Your subscription has been cancelled"),
    "expiring": ("subscription_expiring.html", "Your subscription expires soon"),
    "expired": ("subscription_expired.html", "Your subscription has expired"),
}


def render(kind: str, template_data: dict) -> tuple[str, str]:
    """Subject and HTML body for a notification kind"""
    if kind not in NOTIFICATION_KINDS:
        raise ValueError(f"Unknown notification kind: {kind}")
    template_name, subject = NOTIFICATION_KINDS[kind]
    html = jinja_env.get_template(template_name).render(
        site_name=settings.SITE_NAME,
        site_url=settings.SITE_URL,
        **template_data,
    )
    return f"[{settings.SITE_NAME}] {subject}", html


def notify(kind: str, recipient_email: str, template_data: dict) -> dict:
    """Send one lifecycle email. Raises DeliveryError; callers log and continue"""
    subject, html = render(kind, template_data)
    try:
        resend.api_key = settings.RESEND_API_KEY
        result = resend.Emails.send({
            "from": settings.RESEND_FROM_EMAIL,
            "to": [recipient_email],
            "subject": subject,
            "html": html,
        })
    except Exception as e:
        logger.error(f"Email send failed: kind={kind}, to={recipient_email} - {e}")
        raise DeliveryError(f"{kind} email to {recipient_email} failed: {e}") from e

    logger.info(f"Email sent: kind={kind}, to={recipient_email}")
    return result
