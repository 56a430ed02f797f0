"""
Domain models for secrets, reminder jobs, check-in tokens and delivery failures.
Rows from the repository are validated into these models.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class SecretStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    TRIGGERED = "triggered"


class ReminderType(str, Enum):
    ONE_HOUR = "1_hour"
    TWELVE_HOURS = "12_hours"
    TWENTY_FOUR_HOURS = "24_hours"
    THREE_DAYS = "3_days"
    SEVEN_DAYS = "7_days"
    TWENTY_FIVE_PERCENT = "25_percent"
    FIFTY_PERCENT = "50_percent"


# Fixed offsets before the deadline
FIXED_REMINDER_OFFSETS: dict[ReminderType, timedelta] = {
    ReminderType.ONE_HOUR: timedelta(hours=1),
    ReminderType.TWELVE_HOURS: timedelta(hours=12),
    ReminderType.TWENTY_FOUR_HOURS: timedelta(hours=24),
    ReminderType.THREE_DAYS: timedelta(days=3),
    ReminderType.SEVEN_DAYS: timedelta(days=7),
}

# Fraction of the check-in period elapsed
PERCENTAGE_REMINDER_FRACTIONS: dict[ReminderType, float] = {
    ReminderType.TWENTY_FIVE_PERCENT: 0.25,
    ReminderType.FIFTY_PERCENT: 0.50,
}


class EmailType(str, Enum):
    REMINDER = "reminder"
    DISCLOSURE = "disclosure"
    ADMIN_NOTIFICATION = "admin_notification"


class FailureClassification(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class Secret(BaseModel):
    """A disclosure unit: recipient, interval and one custodied encrypted share."""

    model_config = ConfigDict(extra="ignore")

    id: str
    user_id: str
    title: str
    recipient_name: str
    recipient_email: str | None = None
    owner_email: str | None = None

    check_in_days: int = Field(default=30, ge=2)
    status: SecretStatus = SecretStatus.ACTIVE
    last_check_in: datetime | None = None
    next_check_in: datetime | None = None
    triggered_at: datetime | None = None

    # Delivery of the disclosure email after the trigger
    disclosure_sent_at: datetime | None = None
    disclosure_attempts: int = 0
    disclosure_lease_until: datetime | None = None
    disclosure_retry_at: datetime | None = None
    disclosure_failed_at: datetime | None = None

    server_share: str | None = None
    iv: str | None = None
    auth_tag: str | None = None

    sss_threshold: int = 2
    sss_shares_total: int = 3

    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def has_share(self) -> bool:
        return bool(self.server_share and self.iv)

    @property
    def is_active(self) -> bool:
        return self.status == SecretStatus.ACTIVE


class ReminderJob(BaseModel):
    """One scheduled reminder for a secret's current check-in period."""

    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    secret_id: str
    reminder_type: ReminderType
    scheduling_period: datetime
    scheduled_for: datetime
    sent_at: datetime | None = None
    failed_at: datetime | None = None
    attempt_count: int = 0
    last_error: str | None = None
    created_at: datetime | None = None


class DueReminder(BaseModel):
    """A due reminder job joined with the secret it belongs to."""

    job: ReminderJob
    secret: Secret


class CheckInToken(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    token: str
    secret_id: str
    expires_at: datetime
    used_at: datetime | None = None
    created_at: datetime | None = None


class EmailFailureRecord(BaseModel):
    """Dead letter entry for an undelivered notification."""

    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    recipient: str
    email_type: EmailType
    provider: str
    subject: str = ""
    payload_summary: str = ""
    error_message: str
    classification: FailureClassification = FailureClassification.TRANSIENT
    retry_count: int = 0
    secret_id: str | None = None
    reminder_job_id: str | None = None
    created_at: datetime | None = None
    resolved_at: datetime | None = None


class NotificationMessage(BaseModel):
    """Provider-agnostic outbound email."""

    to: str
    subject: str
    html: str
    text: str
    email_type: EmailType
    secret_id: str | None = None
    reminder_job_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    def summary(self) -> str:
        """Payload description safe to persist (never includes the body)."""
        parts = [f"type={self.email_type.value}", f"subject={self.subject}"]
        if self.secret_id:
            parts.append(f"secret_id={self.secret_id}")
        if self.reminder_job_id:
            parts.append(f"reminder_job_id={self.reminder_job_id}")
        return " ".join(parts)


class DeliveryResult(BaseModel):
    ok: bool
    provider: str
    message_id: str | None = None
    error: str | None = None
    classification: FailureClassification | None = None
    failure_id: str | None = None

    @property
    def permanent(self) -> bool:
        return self.classification == FailureClassification.PERMANENT
