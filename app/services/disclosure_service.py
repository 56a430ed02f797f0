"""
Disclosure of a secret's custodied share to its recipient.

The guarded active -> triggered update is the only gate: whichever caller's
UPDATE matches the row discloses, every other caller skips. Once triggered a
secret never goes back to active, even when decryption or delivery fails.

The same update records that the disclosure is owed and leases it to the
triggering caller. Until disclosure_sent_at is stamped the pending scan
keeps retrying it with backoff, so a send interrupted after the trigger
commits is resumed rather than lost.
"""

import asyncio
from collections.abc import Awaitable
from datetime import datetime, timedelta
from enum import Enum
from typing import TypeVar

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.errors import (
    AuthenticationFailed,
    DecryptionFailed,
    SecretNotFound,
    SecretStateError,
    ShareAlreadyDeleted,
)
from app.models.domain.secret_domain import (
    DeliveryResult,
    EmailFailureRecord,
    EmailType,
    FailureClassification,
    Secret,
    SecretStatus,
)
from app.repositories.secret_repository import SecretRepository, secret_repository
from app.services.infrastructure.encryption_service import (
    EnvelopeCipher,
    get_envelope_cipher,
)
from app.services.notifications.admin_alert_service import (
    AdminAlertService,
    admin_alert_service,
)
from app.services.notifications.dead_letter_queue import (
    calculate_backoff_delay,
    retry_limit_for,
)
from app.services.notifications.notification_service import (
    NotificationService,
    notification_service,
)
from app.services.notifications.templates import render_disclosure_email
from app.utils.clock import Clock, system_clock

logger = get_logger(__name__)

T = TypeVar("T")


class DisclosureOutcome(str, Enum):
    TRIGGERED = "triggered"
    SKIPPED = "skipped"


class DisclosureDispatcher:
    def __init__(
        self,
        repository: SecretRepository = secret_repository,
        notifications: NotificationService = notification_service,
        alerts: AdminAlertService = admin_alert_service,
        cipher: EnvelopeCipher | None = None,
        clock: Clock = system_clock,
        timeout_seconds: float | None = None,
        lease_seconds: int | None = None,
    ):
        self.repository = repository
        self.notifications = notifications
        self.alerts = alerts
        self._cipher = cipher
        self.clock = clock
        self.timeout_seconds = timeout_seconds or settings.EXTERNAL_CALL_TIMEOUT_SECONDS
        self.lease = timedelta(seconds=lease_seconds or settings.DISCLOSURE_LEASE_SECONDS)

    @property
    def cipher(self) -> EnvelopeCipher:
        if self._cipher is None:
            self._cipher = get_envelope_cipher()
        return self._cipher

    async def _call(self, coro: Awaitable[T]) -> T:
        return await asyncio.wait_for(coro, timeout=self.timeout_seconds)

    async def trigger(self, secret: Secret) -> DisclosureOutcome:
        """
        Trigger an overdue secret and send its share to the recipient.

        Returns:
            DisclosureOutcome.SKIPPED if another caller already triggered it
            (or it stopped being active), TRIGGERED otherwise. A failed send
            still returns TRIGGERED; the disclosure stays pending for retry.

        Raises:
            ShareAlreadyDeleted: Custody was revoked; no transition happens
            DecryptionFailed: The stored share did not authenticate
        """
        if not secret.server_share:
            raise ShareAlreadyDeleted(secret.id)

        now = self.clock.now()
        won = await self._call(self.repository.mark_triggered(secret.id, now, now + self.lease))
        if not won:
            logger.info("Secret already triggered or no longer active", secret_id=secret.id)
            return DisclosureOutcome.SKIPPED

        logger.info(
            "Secret triggered",
            secret_id=secret.id,
            next_check_in=secret.next_check_in.isoformat() if secret.next_check_in else None,
            triggered_at=now.isoformat(),
        )

        await self._deliver(secret)
        return DisclosureOutcome.TRIGGERED

    async def deliver_pending(self, secret: Secret) -> DeliveryResult | None:
        """
        Retry the disclosure of a triggered secret that was never delivered.

        Returns:
            None if another sender holds the lease, otherwise the attempt's result
        """
        now = self.clock.now()
        claimed = await self._call(
            self.repository.claim_disclosure(secret.id, now, now + self.lease)
        )
        if not claimed:
            logger.info("Disclosure already being delivered", secret_id=secret.id)
            return None
        return await self._deliver(secret)

    async def redeliver(self, failure: EmailFailureRecord) -> DeliveryResult:
        """
        Resend a disclosure recorded in the dead letter queue.

        Bypasses the retry backoff and a given-up state. Success resolves the
        entry; another failure counts a retry against it.
        """
        if failure.email_type != EmailType.DISCLOSURE or not failure.secret_id:
            raise SecretStateError("Only disclosure failures can be redelivered")

        secret = await self._call(self.repository.get_secret(failure.secret_id))
        if secret is None:
            raise SecretNotFound(failure.secret_id)
        if secret.status != SecretStatus.TRIGGERED:
            raise SecretStateError(
                "Only triggered secrets can be redelivered", secret_id=secret.id
            )
        if not secret.server_share:
            raise ShareAlreadyDeleted(secret.id)
        if secret.disclosure_sent_at is not None:
            raise SecretStateError("Disclosure already delivered", secret_id=secret.id)

        now = self.clock.now()
        claimed = await self._call(
            self.repository.claim_disclosure(secret.id, now, now + self.lease)
        )
        if not claimed:
            raise SecretStateError("Disclosure delivery in progress", secret_id=secret.id)

        return await self._deliver(secret, failure)

    async def _decrypt(self, secret: Secret) -> str:
        try:
            return self.cipher.decrypt(secret.server_share, secret.iv, secret.auth_tag)
        except AuthenticationFailed as e:
            logger.critical(
                "Server share failed authentication; disclosure impossible",
                secret_id=secret.id,
                error=str(e),
            )
            await self._call(
                self.repository.record_disclosure_failure(secret.id, None, self.clock.now())
            )
            await self.alerts.send_alert(
                EmailType.DISCLOSURE,
                secret.recipient_email or "",
                f"Share decryption failed: {e}",
                secret_title=secret.title,
            )
            raise DecryptionFailed(
                "Failed to decrypt server share", secret_id=secret.id
            ) from e

    async def _deliver(
        self, secret: Secret, failure: EmailFailureRecord | None = None
    ) -> DeliveryResult:
        """Send the disclosure under a held lease and record the outcome on the secret."""
        share = await self._decrypt(secret)
        message = render_disclosure_email(secret, share)

        if not secret.recipient_email:
            result = DeliveryResult(
                ok=False,
                provider=self.notifications.provider.name,
                error="invalid email: recipient address missing",
                classification=FailureClassification.PERMANENT,
            )
        else:
            result = await self.notifications.send(message, dead_letter=False)

        dlq = self.notifications.dlq
        now = self.clock.now()

        if result.ok:
            await self._call(self.repository.record_disclosure_sent(secret.id, now))
            failure = failure or await self._call(dlq.find_open(secret.id, EmailType.DISCLOSURE))
            if failure:
                await self._call(dlq.mark_resolved(failure.id))
            logger.info(
                "Disclosure delivered",
                secret_id=secret.id,
                provider=result.provider,
                attempt=secret.disclosure_attempts + 1,
            )
            return result

        attempt = secret.disclosure_attempts + 1
        retries = attempt - 1
        gave_up = result.permanent or retries >= retry_limit_for(EmailType.DISCLOSURE)

        # Written before the dead letter entry
        await self._call(
            self.repository.record_disclosure_failure(
                secret.id,
                None if gave_up else self._next_attempt_at(now, attempt),
                now if gave_up else None,
            )
        )

        failure = failure or await self._call(dlq.find_open(secret.id, EmailType.DISCLOSURE))
        if failure:
            await self._call(
                dlq.record_retry(failure.id, result.error or "", result.classification)
            )
            result.failure_id = failure.id
        else:
            record = await self._call(
                self.notifications.record_failure(message, result, retry_count=retries)
            )
            result.failure_id = record.id

        logger.error(
            "Disclosure delivery failed",
            secret_id=secret.id,
            classification=result.classification.value,
            failure_id=result.failure_id,
            attempt=attempt,
            gave_up=gave_up,
        )

        if gave_up:
            await self.alerts.send_alert(
                EmailType.DISCLOSURE,
                message.to,
                result.error or "",
                secret_title=secret.title,
                retry_count=retries,
            )
        return result

    def _next_attempt_at(self, now: datetime, attempt: int) -> datetime:
        return now + timedelta(milliseconds=calculate_backoff_delay(attempt))


disclosure_dispatcher = DisclosureDispatcher()
