"""
tasks/email_tasks.py
Celery tasks for transactional email delivery via Resend.

Usage from a route (through services.notification.router.queue_email):
    send_templated_email.delay("welcome", user.email, {"first_name": user.first_name})
"""

import logging
from typing import Optional

import resend

from config.settings import settings
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


# ── Templates ─────────────────────────────────────────────────────────────────

_LAYOUT = """
<div style="font-family: sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
    <div style="background: #0F766E; padding: 20px; border-radius: 8px 8px 0 0; text-align: center;">
        <h1 style="color: white; margin: 0;">{app_name}</h1>
    </div>
    <div style="background: white; padding: 24px; border: 1px solid #eee; border-radius: 0 0 8px 8px;">
        {content}
        <p style="color: #999; font-size: 12px; margin-top: 24px;">
            You received this email because you have an account on {app_name}.
        </p>
    </div>
</div>
"""

TEMPLATES = {
    "welcome": {
        "subject": "Welcome to {app_name}",
        "body": (
            "<h2>Welcome, {first_name}!</h2>"
            "<p>Your account is ready. Browse stays at <a href=\"{frontend_url}\">{frontend_url}</a>.</p>"
        ),
    },
    "booking_confirmation": {
        "subject": "Booking request received: {property_title}",
        "body": (
            "<h2>Thanks for your booking, {first_name}</h2>"
            "<p>We received your request for <b>{property_title}</b> "
            "from {start_date} to {end_date} ({nights} nights).</p>"
            "<p>Total: {total_price} {currency}. Complete your payment to confirm the stay.</p>"
        ),
    },
    "new_booking": {
        "subject": "New booking for {property_title}",
        "body": (
            "<h2>Hello {first_name},</h2>"
            "<p>{guest_name} booked <b>{property_title}</b> from {start_date} to {end_date}.</p>"
        ),
    },
    "booking_cancelled_guest": {
        "subject": "Booking cancelled: {property_title}",
        "body": (
            "<h2>Hello {first_name},</h2>"
            "<p>Your booking for <b>{property_title}</b> ({start_date} to {end_date}) was cancelled.</p>"
            "<p>Reason: {reason}</p>"
        ),
    },
    "booking_cancelled_host": {
        "subject": "Booking cancelled for {property_title}",
        "body": (
            "<h2>Hello {first_name},</h2>"
            "<p>The booking by {guest_name} for <b>{property_title}</b> "
            "({start_date} to {end_date}) was cancelled.</p>"
            "<p>Reason: {reason}</p>"
        ),
    },
    "payment_confirmation": {
        "subject": "Payment received: {property_title}",
        "body": (
            "<h2>Payment confirmed</h2>"
            "<p>We received {amount} {currency} for your stay at <b>{property_title}</b> "
            "from {start_date} to {end_date}. Your booking is confirmed.</p>"
        ),
    },
    "notification": {
        "subject": "{title}",
        "body": "<h2>{title}</h2><p>{message}</p>",
    },
}


def _render(template: str, **kwargs) -> str:
    """Placeholder substitution that leaves unknown keys untouched."""
    for key, value in kwargs.items():
        template = template.replace(f"{{{key}}}", str(value))
    return template


def render_email(template_name: str, context: Optional[dict] = None) -> tuple[str, str]:
    """Returns (subject, html) for a template. Raises KeyError for unknown templates."""
    tmpl = TEMPLATES[template_name]
    vars_ = {
        "app_name": settings.APP_NAME,
        "frontend_url": settings.FRONTEND_URL,
        "currency": settings.STRIPE_CURRENCY.upper(),
        "reason": "Not specified",
        **(context or {}),
    }
    subject = _render(tmpl["subject"], **vars_)
    html = _render(_LAYOUT, app_name=settings.APP_NAME, content=_render(tmpl["body"], **vars_))
    return subject, html


def _send_email(to_email: str, subject: str, html_body: str) -> bool:
    """Send one email via Resend. Returns True on success."""
    try:
        resend.api_key = settings.RESEND_API_KEY
        resend.Emails.send({
            "from": f"{settings.EMAIL_FROM_NAME} <{settings.EMAIL_FROM}>",
            "to": [to_email],
            "subject": subject,
            "html": html_body,
        })
        return True
    except Exception as e:
        logger.warning(f"Email send to {to_email} failed: {e}")
        return False


# ── Tasks ─────────────────────────────────────────────────────────────────────

@celery_app.task(bind=True, max_retries=3, default_retry_delay=60)
def send_templated_email(self, template_name: str, to_email: str, context: Optional[dict] = None):
    """
    Render and send a transactional email.
    Retries with exponential backoff while Resend keeps failing.
    """
    if not settings.RESEND_API_KEY:
        logger.warning(f"RESEND_API_KEY not configured, skipping '{template_name}' email to {to_email}")
        return False

    try:
        subject, html = render_email(template_name, context)
    except KeyError:
        logger.error(f"Unknown email template '{template_name}'")
        return False

    if not _send_email(to_email, subject, html):
        raise self.retry(countdown=60 * (2 ** self.request.retries))

    logger.info(f"Email '{template_name}' sent to {to_email}")
    return True
