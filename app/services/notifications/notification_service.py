"""
Notification delivery with failure classification.

Every send goes through one timeout-bounded provider call. Failures come back
as a DeliveryResult instead of raising; permanent failures are written to
the dead letter queue and raise an operator alert right away.
"""

import asyncio

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.errors import DeliveryError
from app.models.domain.secret_domain import (
    DeliveryResult,
    EmailFailureRecord,
    FailureClassification,
    NotificationMessage,
)
from app.services.notifications.admin_alert_service import (
    AdminAlertService,
    admin_alert_service,
)
from app.services.notifications.dead_letter_queue import (
    DeadLetterQueue,
    classify_failure,
    dead_letter_queue,
)
from app.services.notifications.email_provider import EmailProvider, get_email_provider

logger = get_logger(__name__)


class NotificationService:
    def __init__(
        self,
        provider: EmailProvider | None = None,
        dlq: DeadLetterQueue = dead_letter_queue,
        alerts: AdminAlertService = admin_alert_service,
        timeout_seconds: float | None = None,
    ):
        self._provider = provider
        self.dlq = dlq
        self.alerts = alerts
        self.timeout_seconds = timeout_seconds or settings.EXTERNAL_CALL_TIMEOUT_SECONDS

    @property
    def provider(self) -> EmailProvider:
        if self._provider is None:
            self._provider = get_email_provider()
        return self._provider

    async def send(
        self, message: NotificationMessage, dead_letter: bool = True
    ) -> DeliveryResult:
        """
        Deliver one message.

        Args:
            message: The email to send
            dead_letter: Record and alert permanent failures. Redelivery of an
                existing dead letter entry passes False and updates that entry.

        Returns:
            DeliveryResult: ok with the provider message id, or the error and
            its classification. failure_id is set when a dead letter entry
            was written.
        """
        provider_name = self.provider.name

        try:
            message_id = await asyncio.wait_for(
                self.provider.send(message), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            error = f"Email send timeout after {self.timeout_seconds}s"
            result = DeliveryResult(
                ok=False,
                provider=provider_name,
                error=error,
                classification=FailureClassification.TRANSIENT,
            )
        except DeliveryError as e:
            classification = (
                FailureClassification.PERMANENT if e.permanent else classify_failure(str(e))
            )
            result = DeliveryResult(
                ok=False, provider=provider_name, error=str(e), classification=classification
            )
        else:
            logger.info(
                "Email sent",
                email_type=message.email_type.value,
                provider=provider_name,
                message_id=message_id,
                secret_id=message.secret_id,
            )
            return DeliveryResult(ok=True, provider=provider_name, message_id=message_id)

        logger.warning(
            "Email send failed",
            email_type=message.email_type.value,
            provider=provider_name,
            classification=result.classification.value,
            error=result.error,
            secret_id=message.secret_id,
        )

        if dead_letter and result.permanent:
            record = await self.record_failure(message, result)
            result.failure_id = record.id
            await self.alerts.send_alert(
                message.email_type,
                message.to,
                result.error or "",
                secret_title=message.metadata.get("secret_title"),
            )

        return result

    async def record_failure(
        self, message: NotificationMessage, result: DeliveryResult, retry_count: int = 0
    ) -> EmailFailureRecord:
        """Write a dead letter entry for a failed send."""
        return await self.dlq.record_failure(
            EmailFailureRecord(
                recipient=message.to,
                email_type=message.email_type,
                provider=result.provider,
                subject=message.subject,
                payload_summary=message.summary(),
                error_message=result.error or "unknown error",
                classification=result.classification or FailureClassification.TRANSIENT,
                retry_count=retry_count,
                secret_id=message.secret_id,
                reminder_job_id=message.reminder_job_id,
            )
        )


notification_service = NotificationService()
