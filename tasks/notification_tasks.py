"""
tasks/notification_tasks.py
Celery tasks for outbound email.

Delivery is best-effort: a failed send is retried by Celery, and a failure to
enqueue never aborts the booking operation that triggered it.

Usage from the booking engine:
    from tasks import notification_tasks
    notification_tasks.queue_assignment_email(payload)
"""

import logging
from dataclasses import asdict, dataclass, fields
from html import escape

from pybreaker import CircuitBreaker, CircuitBreakerError

from config.settings import settings
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)

# Opens after 5 consecutive provider failures; half-opens after a minute
email_breaker = CircuitBreaker(fail_max=5, reset_timeout=60, name="resend")


# ── Payloads ───────────────────────────────────────────────────────────────────

@dataclass
class AssignmentEmail:
    """Everything the provider needs to turn up for a job."""
    to_name: str
    to_email: str
    customer_name: str
    customer_phone: str
    service_name: str
    scheduled_date: str
    scheduled_time: str
    location: str
    amount: str
    booking_number: str = ""


# ── Core Delivery ──────────────────────────────────────────────────────────────

@email_breaker
def _deliver(to_email: str, subject: str, html_body: str) -> None:
    import resend

    resend.api_key = settings.RESEND_API_KEY
    resend.Emails.send({
        "from": f"{settings.EMAIL_FROM_NAME} <{settings.EMAIL_FROM}>",
        "to": to_email,
        "subject": subject,
        "html": html_body,
    })


def _send_email(to_email: str, subject: str, html_body: str) -> bool:
    """Send transactional email via Resend. Returns True on success."""
    if not settings.RESEND_API_KEY:
        logger.info("RESEND_API_KEY not set; skipping email to %s", to_email)
        return True
    try:
        _deliver(to_email, subject, html_body)
        return True
    except CircuitBreakerError:
        logger.warning("Email circuit open; not sending to %s", to_email)
        return False
    except Exception as e:
        logger.warning("Email send failed: %s", e)
        return False


def render_assignment_email(payload: AssignmentEmail) -> tuple[str, str]:
    subject = f"New job assigned: {payload.service_name} on {payload.scheduled_date}"
    # Names and addresses are user input
    payload = AssignmentEmail(**{f.name: escape(str(getattr(payload, f.name))) for f in fields(payload)})
    reference = f" (#{payload.booking_number})" if payload.booking_number else ""
    html_body = f"""
    <div style="font-family: sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
        <h2 style="color: #333;">Hello {payload.to_name},</h2>
        <p>You have been assigned a new job{reference}.</p>
        <table style="border-collapse: collapse;">
            <tr><td><b>Service</b></td><td>{payload.service_name}</td></tr>
            <tr><td><b>Date</b></td><td>{payload.scheduled_date}</td></tr>
            <tr><td><b>Time</b></td><td>{payload.scheduled_time}</td></tr>
            <tr><td><b>Location</b></td><td>{payload.location}</td></tr>
            <tr><td><b>Amount</b></td><td>{payload.amount}</td></tr>
            <tr><td><b>Customer</b></td><td>{payload.customer_name} ({payload.customer_phone})</td></tr>
        </table>
        <p style="color: #999; font-size: 12px; margin-top: 24px;">
            Ask the customer for the completion PIN once the work is done.
        </p>
    </div>
    """
    return subject, html_body


# ── Tasks ──────────────────────────────────────────────────────────────────────

@celery_app.task(bind=True, max_retries=3, default_retry_delay=60)
def send_assignment_email(self, payload: dict):
    """Tell a provider about a job they were just assigned."""
    subject, html_body = render_assignment_email(AssignmentEmail(**payload))
    success = _send_email(payload["to_email"], subject, html_body)
    if not success:
        raise self.retry(countdown=60 * (2 ** self.request.retries))


def queue_assignment_email(payload: AssignmentEmail) -> bool:
    """Enqueue the assignment email. Broker failures are logged, never raised."""
    try:
        send_assignment_email.delay(asdict(payload))
        return True
    except Exception as e:
        logger.warning("Could not enqueue assignment email to %s: %s", payload.to_email, e)
        return False
