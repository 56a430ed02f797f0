"""
Trigger scan job.

One cycle sends due reminders, triggers overdue secrets and retries
disclosures of triggered secrets that were never delivered. Invoked by the
cron endpoints or by the worker's scheduler loop.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

from app.config import settings
from app.db.helpers import DatabaseError
from app.infrastructure.observability.logging import get_logger
from app.models.domain.errors import DeliveryError
from app.models.domain.secret_domain import (
    DeliveryResult,
    DueReminder,
    EmailType,
    FailureClassification,
    Secret,
)
from app.repositories.secret_repository import SecretRepository, secret_repository
from app.services.disclosure_service import (
    DisclosureDispatcher,
    DisclosureOutcome,
    disclosure_dispatcher,
)
from app.services.notifications.dead_letter_queue import retry_limit_for
from app.services.notifications.notification_service import (
    NotificationService,
    notification_service,
)
from app.services.notifications.templates import render_reminder_email
from app.services.reminder_scheduler import format_time_remaining
from app.utils.clock import Clock, system_clock

logger = get_logger(__name__)

# Per-item budget covers a repository read, a send and a status write
ITEM_TIMEOUT_MULTIPLIER = 3


class TriggerDetectorError(Exception):
    """A scan phase could not fetch its batch."""

    def __init__(self, message: str, operation: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


class ScanResult:
    """Counters for one scan phase."""

    def __init__(self, phase: str):
        self.phase = phase
        self.processed = 0
        self.successful = 0
        self.failed = 0
        self.skipped = 0
        self.errors: list[dict] = []

    def record_success(self, item_id: str, skipped: bool = False):
        self.processed += 1
        self.successful += 1
        if skipped:
            self.skipped += 1

    def record_failure(self, item_id: str, error: str):
        self.processed += 1
        self.failed += 1
        self.errors.append({"id": item_id, "error": error})

        logger.warning("Scan item failed", phase=self.phase, item_id=item_id, error=error)

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "successful": self.successful,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": self.errors,
        }


class TriggerDetectorJob:
    """
    Periodic scan over reminders, overdue secrets and pending disclosures.

    Items in a batch run with bounded parallelism. Reminders get a per-item
    timeout; disclosure steps are each bounded by their own call timeout.
    A failing item is recorded and never aborts its batch; failing to fetch
    a batch raises TriggerDetectorError.
    """

    def __init__(
        self,
        repository: SecretRepository = secret_repository,
        notifications: NotificationService = notification_service,
        dispatcher: DisclosureDispatcher = disclosure_dispatcher,
        clock: Clock = system_clock,
        reminder_batch_size: int | None = None,
        secret_batch_size: int | None = None,
        retry_batch_size: int | None = None,
        max_concurrent: int | None = None,
        timeout_seconds: float | None = None,
    ):
        self.repository = repository
        self.notifications = notifications
        self.dispatcher = dispatcher
        self.clock = clock
        self.reminder_batch_size = reminder_batch_size or settings.REMINDER_BATCH_SIZE
        self.secret_batch_size = secret_batch_size or settings.SECRET_BATCH_SIZE
        self.retry_batch_size = retry_batch_size or settings.DISCLOSURE_RETRY_BATCH_SIZE
        self.max_concurrent = max_concurrent or settings.MAX_CONCURRENT_SENDS
        self.timeout_seconds = timeout_seconds or settings.EXTERNAL_CALL_TIMEOUT_SECONDS

        self.is_running = False
        self.last_run_time: datetime | None = None
        self.last_run_metrics: dict | None = None

    async def run_once(self) -> dict:
        """
        Run all scan phases.

        Returns:
            dict: Per-phase ScanResult counters and the run duration

        Raises:
            TriggerDetectorError: If a phase could not fetch its batch
        """
        if self.is_running:
            logger.warning("Trigger scan already running, skipping this iteration")
            return {"skipped": True, "reason": "already_running"}

        self.is_running = True
        started = self.clock.now()
        try:
            reminders = await self.process_reminders()
            secrets = await self.check_secrets()
            retries = await self.retry_failed_disclosures()

            finished = self.clock.now()
            metrics = {
                "reminders": reminders.to_dict(),
                "secrets": secrets.to_dict(),
                "disclosure_retries": retries.to_dict(),
                "start_time": started.isoformat(),
                "total_duration_seconds": round((finished - started).total_seconds(), 2),
            }
            self.last_run_time = finished
            self.last_run_metrics = metrics

            logger.info(
                "Trigger scan completed",
                reminders_processed=reminders.processed,
                secrets_processed=secrets.processed,
                disclosure_retries=retries.processed,
                failures=reminders.failed + secrets.failed + retries.failed,
            )
            return metrics
        finally:
            self.is_running = False

    async def process_reminders(self) -> ScanResult:
        """Send every due reminder of an active secret's current period."""
        result = ScanResult("reminders")
        now = self.clock.now()
        due = await self._fetch(
            "get_due_reminders",
            self.repository.get_due_reminders(now, self.reminder_batch_size),
        )

        if due:
            logger.info("Processing due reminders", count=len(due))
        await self._run_batch(due, lambda item: item.job.id, self._send_reminder, result)
        return result

    async def check_secrets(self) -> ScanResult:
        """Trigger every active secret whose deadline has passed."""
        result = ScanResult("secrets")
        now = self.clock.now()
        overdue = await self._fetch(
            "get_overdue_secrets",
            self.repository.get_overdue_secrets(now, self.secret_batch_size),
        )

        if overdue:
            logger.info("Processing overdue secrets", count=len(overdue))

        async def trigger(secret: Secret) -> bool:
            outcome = await self.dispatcher.trigger(secret)
            return outcome == DisclosureOutcome.SKIPPED

        await self._run_batch(
            overdue, lambda item: item.id, trigger, result, cancel_whole_item=False
        )
        return result

    async def retry_failed_disclosures(self) -> ScanResult:
        """Resend disclosures still owed whose lease and backoff have lapsed."""
        result = ScanResult("disclosure_retries")
        now = self.clock.now()
        pending = await self._fetch(
            "get_pending_disclosures",
            self.repository.get_pending_disclosures(now, self.retry_batch_size),
        )

        if pending:
            logger.info("Retrying pending disclosures", count=len(pending))

        async def redeliver(secret: Secret) -> bool:
            delivery = await self.dispatcher.deliver_pending(secret)
            if delivery is None:
                return True
            if not delivery.ok:
                raise DeliveryError(
                    delivery.error or "redelivery failed",
                    classification=delivery.classification.value,
                )
            return False

        await self._run_batch(
            pending, lambda item: item.id, redeliver, result, cancel_whole_item=False
        )
        return result

    async def _fetch(self, operation: str, coro: Awaitable[list]) -> list:
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout_seconds)
        except (DatabaseError, asyncio.TimeoutError) as e:
            logger.error("Failed to fetch scan batch", operation=operation, error=str(e))
            raise TriggerDetectorError(
                f"Failed to fetch batch for {operation}: {e}", operation=operation
            ) from e

    async def _run_batch(
        self,
        items: list,
        item_id: Callable[[Any], str],
        handler: Callable[[Any], Awaitable[bool | None]],
        result: ScanResult,
        cancel_whole_item: bool = True,
    ) -> None:
        """
        Run handler over items with bounded parallelism.

        With cancel_whole_item the handler is cut off after the per-item
        budget. Disclosure handlers pass False; each of their calls carries
        its own timeout and must not be interrupted once a trigger commits.
        """
        semaphore = asyncio.Semaphore(self.max_concurrent)
        item_timeout = self.timeout_seconds * ITEM_TIMEOUT_MULTIPLIER

        async def handle(item):
            if cancel_whole_item:
                return await asyncio.wait_for(handler(item), timeout=item_timeout)
            return await handler(item)

        async def run(item) -> None:
            async with semaphore:
                try:
                    skipped = await handle(item)
                except asyncio.TimeoutError:
                    limit = item_timeout if cancel_whole_item else self.timeout_seconds
                    result.record_failure(item_id(item), f"Timed out after {limit}s")
                except Exception as e:
                    result.record_failure(item_id(item), str(e) or type(e).__name__)
                else:
                    result.record_success(item_id(item), skipped=bool(skipped))

        await asyncio.gather(*(run(item) for item in items))

    async def _send_reminder(self, due: DueReminder) -> None:
        job, secret = due.job, due.secret
        now = self.clock.now()

        time_remaining = format_time_remaining(job.reminder_type, secret.next_check_in - now)
        message = render_reminder_email(secret, job, time_remaining)

        if secret.owner_email:
            delivery = await self.notifications.send(message)
        else:
            delivery = DeliveryResult(
                ok=False,
                provider=self.notifications.provider.name,
                error="invalid email: owner address missing",
                classification=FailureClassification.PERMANENT,
            )

        if delivery.ok:
            await asyncio.wait_for(
                self.repository.mark_reminder_sent(job.id, now), timeout=self.timeout_seconds
            )
            logger.info(
                "Reminder sent",
                secret_id=secret.id,
                reminder_job_id=job.id,
                reminder_type=job.reminder_type.value,
            )
            return

        attempts = job.attempt_count + 1
        exhausted = attempts >= retry_limit_for(EmailType.REMINDER)

        if delivery.permanent or exhausted:
            await asyncio.wait_for(
                self.repository.record_reminder_failure(job.id, delivery.error or "", now),
                timeout=self.timeout_seconds,
            )
            if delivery.failure_id is None:
                await self.notifications.record_failure(message, delivery, retry_count=attempts)
                await self.notifications.alerts.send_alert(
                    EmailType.REMINDER,
                    message.to,
                    delivery.error or "",
                    secret_title=secret.title,
                    retry_count=attempts,
                )
        else:
            # Left unsent; the next scan retries it
            await asyncio.wait_for(
                self.repository.record_reminder_failure(job.id, delivery.error or "", None),
                timeout=self.timeout_seconds,
            )

        raise DeliveryError(
            delivery.error or "reminder delivery failed",
            classification=delivery.classification.value,
        )

    def get_job_status(self) -> dict:
        return {
            "job_name": "trigger_scan",
            "is_running": self.is_running,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "interval_minutes": settings.SCAN_INTERVAL_MINUTES,
            "max_concurrent": self.max_concurrent,
            "last_run_metrics": self.last_run_metrics,
        }


# Singleton instance for application use
trigger_detector_job = TriggerDetectorJob()


async def run_trigger_scan_job() -> dict:
    """Run a single trigger scan."""
    return await trigger_detector_job.run_once()


def get_trigger_scan_job_status() -> dict:
    return trigger_detector_job.get_job_status()


async def start_trigger_scan_scheduler():
    """
    Run the trigger scan every SCAN_INTERVAL_MINUTES until cancelled.

    Meant for a dedicated worker process when no external cron calls the
    HTTP endpoints.
    """
    interval_minutes = settings.SCAN_INTERVAL_MINUTES
    logger.info("Starting trigger scan scheduler", interval_minutes=interval_minutes)

    while True:
        try:
            metrics = await run_trigger_scan_job()
            if not metrics.get("skipped", False):
                logger.info(
                    "Trigger scan cycle completed",
                    duration_seconds=metrics["total_duration_seconds"],
                )
            await asyncio.sleep(interval_minutes * 60)

        except TriggerDetectorError as e:
            logger.error(
                "Error in trigger scan scheduler", error=str(e), operation=e.operation
            )
            # Back off before retrying to avoid a tight error loop
            await asyncio.sleep(60)
