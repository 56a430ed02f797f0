"""
Email bodies for reminders, disclosures and admin alerts.
"""

from datetime import datetime
from html import escape

from app.config import settings
from app.models.domain.secret_domain import (
    EmailType,
    NotificationMessage,
    ReminderJob,
    Secret,
)


def _format_deadline(value: datetime) -> str:
    return value.strftime("%A, %B %d, %Y at %H:%M UTC")


def render_reminder_email(
    secret: Secret, job: ReminderJob, time_remaining: str
) -> NotificationMessage:
    """Check-in reminder sent to the secret's owner."""
    title = escape(secret.title)
    deadline = _format_deadline(secret.next_check_in)
    check_in_url = settings.dashboard_url()

    text = (
        f'Your secret "{secret.title}" will be disclosed to {secret.recipient_name} '
        f"in {time_remaining} unless you check in.\n\n"
        f"Deadline: {deadline}\n"
        f"Check in: {check_in_url}\n"
    )
    html = (
        f"<p>Your secret <strong>{title}</strong> will be disclosed to "
        f"{escape(secret.recipient_name)} in <strong>{escape(time_remaining)}</strong> "
        f"unless you check in.</p>"
        f"<p>Deadline: {escape(deadline)}</p>"
        f'<p><a href="{escape(check_in_url)}">Check in now</a></p>'
    )

    return NotificationMessage(
        to=secret.owner_email or "",
        subject=f'Reminder: "{secret.title}" needs attention',
        html=html,
        text=text,
        email_type=EmailType.REMINDER,
        secret_id=secret.id,
        reminder_job_id=job.id,
        metadata={"reminder_type": job.reminder_type.value, "secret_title": secret.title},
    )


def render_disclosure_email(secret: Secret, server_share: str) -> NotificationMessage:
    """Disclosure carrying the custodied share to the recipient."""
    sender = secret.owner_email or "the sender"
    text = (
        f"Hello {secret.recipient_name},\n\n"
        f'{sender} set up "{secret.title}" to be shared with you if they stopped '
        f"checking in. They have not checked in, so here is the service's share.\n\n"
        f"Server share:\n{server_share}\n\n"
        f"Combine it with the share you were given (any {secret.sss_threshold} of "
        f"{secret.sss_shares_total} shares reconstruct the secret).\n"
    )
    html = (
        f"<p>Hello {escape(secret.recipient_name)},</p>"
        f"<p>{escape(sender)} set up <strong>{escape(secret.title)}</strong> to be shared "
        f"with you if they stopped checking in. They have not checked in, so here is "
        f"the service's share.</p>"
        f"<pre>{escape(server_share)}</pre>"
        f"<p>Combine it with the share you were given (any {secret.sss_threshold} of "
        f"{secret.sss_shares_total} shares reconstruct the secret).</p>"
    )

    return NotificationMessage(
        to=secret.recipient_email or "",
        subject=f"Important Message from {sender}",
        html=html,
        text=text,
        email_type=EmailType.DISCLOSURE,
        secret_id=secret.id,
        metadata={"secret_title": secret.title},
    )


def render_admin_alert(
    severity: str,
    email_type: EmailType,
    recipient: str,
    error_message: str,
    secret_title: str | None = None,
    retry_count: int = 0,
) -> NotificationMessage:
    label = secret_title or email_type.value
    subject = f"[{severity.upper()}] Email Delivery Failure - {label}"
    text = (
        f"Severity: {severity}\n"
        f"Email type: {email_type.value}\n"
        f"Recipient: {recipient}\n"
        f"Retries: {retry_count}\n"
        f"Error: {error_message}\n"
    )
    html = "".join(f"<p>{escape(line)}</p>" for line in text.splitlines())

    return NotificationMessage(
        to=settings.ADMIN_ALERT_EMAIL or "",
        subject=subject,
        html=html,
        text=text,
        email_type=EmailType.ADMIN_NOTIFICATION,
        metadata={"severity": severity},
    )
