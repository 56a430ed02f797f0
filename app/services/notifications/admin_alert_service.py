"""
Operator alerts for delivery failures.
"""

import asyncio

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.errors import DeliveryError
from app.models.domain.secret_domain import EmailType
from app.services.notifications.email_provider import EmailProvider, get_email_provider
from app.services.notifications.templates import render_admin_alert

logger = get_logger(__name__)


def calculate_severity(email_type: EmailType, retry_count: int = 0) -> str:
    """Disclosures are critical; repeated reminder failures escalate to high."""
    if email_type == EmailType.DISCLOSURE:
        return "critical"
    if email_type == EmailType.REMINDER:
        return "high" if retry_count > 3 else "medium"
    return "low"


class AdminAlertService:
    """Sends failure alerts to ADMIN_ALERT_EMAIL through the email provider."""

    def __init__(
        self,
        provider: EmailProvider | None = None,
        admin_email: str | None = None,
        timeout_seconds: float | None = None,
    ):
        self._provider = provider
        self.admin_email = admin_email or settings.ADMIN_ALERT_EMAIL
        self.timeout_seconds = timeout_seconds or settings.EXTERNAL_CALL_TIMEOUT_SECONDS

    @property
    def provider(self) -> EmailProvider:
        if self._provider is None:
            self._provider = get_email_provider()
        return self._provider

    async def send_alert(
        self,
        email_type: EmailType,
        recipient: str,
        error_message: str,
        secret_title: str | None = None,
        retry_count: int = 0,
    ) -> bool:
        """
        Log and email an alert. Alert delivery problems are logged, never raised.

        Returns:
            bool: True if the alert email was sent
        """
        severity = calculate_severity(email_type, retry_count)
        log = logger.critical if severity == "critical" else logger.error
        log(
            "Email delivery failure alert",
            severity=severity,
            email_type=email_type.value,
            recipient=recipient,
            error=error_message,
            secret_title=secret_title,
            retry_count=retry_count,
        )

        if not self.admin_email:
            logger.warning("ADMIN_ALERT_EMAIL not configured; alert logged only")
            return False

        message = render_admin_alert(
            severity,
            email_type,
            recipient,
            error_message,
            secret_title=secret_title,
            retry_count=retry_count,
        ).model_copy(update={"to": self.admin_email})

        try:
            await asyncio.wait_for(self.provider.send(message), timeout=self.timeout_seconds)
            return True
        except (DeliveryError, asyncio.TimeoutError) as e:
            logger.error(
                "Admin alert delivery failed",
                severity=severity,
                error=str(e) or type(e).__name__,
            )
            return False


admin_alert_service = AdminAlertService()
