"""
Reminder scheduling for a secret's check-in deadline.

Fixed reminders are anchored to the deadline alone, so computing the schedule
twice for the same deadline yields identical timestamps. Percentage reminders
are anchored to the start of the current period
(next_check_in - check_in_days).
"""

import asyncio
from datetime import datetime, timedelta

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.secret_domain import (
    FIXED_REMINDER_OFFSETS,
    PERCENTAGE_REMINDER_FRACTIONS,
    ReminderJob,
    ReminderType,
    Secret,
)
from app.repositories.secret_repository import SecretRepository, secret_repository
from app.utils.clock import Clock, system_clock

logger = get_logger(__name__)


class ReminderSchedulerError(Exception):
    """Raised when a secret cannot be scheduled."""

    def __init__(self, message: str, secret_id: str | None = None):
        super().__init__(message)
        self.secret_id = secret_id


def compute_reminder_schedule(
    next_check_in: datetime,
    check_in_days: int | None,
    now: datetime | None = None,
) -> dict[ReminderType, datetime]:
    """
    Compute when each reminder type fires for one deadline.

    Args:
        next_check_in: The deadline
        check_in_days: Length of the check-in period in days
        now: Anchor for percentage reminders when check_in_days is unknown

    Returns:
        dict mapping reminder type to its scheduled_for timestamp
    """
    schedule = {
        reminder_type: next_check_in - offset
        for reminder_type, offset in FIXED_REMINDER_OFFSETS.items()
    }

    if check_in_days:
        period = timedelta(days=check_in_days)
        period_start = next_check_in - period
        for reminder_type, fraction in PERCENTAGE_REMINDER_FRACTIONS.items():
            schedule[reminder_type] = period_start + period * fraction
    elif now is not None:
        # Degraded: without the interval the period start is unknown
        logger.warning(
            "Percentage reminders anchored to now; check_in_days unavailable",
            next_check_in=next_check_in.isoformat(),
        )
        remaining = next_check_in - now
        for reminder_type, fraction in PERCENTAGE_REMINDER_FRACTIONS.items():
            schedule[reminder_type] = now + remaining * fraction

    return schedule


def format_time_remaining(reminder_type: ReminderType, remaining: timedelta) -> str:
    """Human-readable time left, in days for long reminders and hours for short ones."""
    seconds = max(remaining.total_seconds(), 0)
    if reminder_type in (
        ReminderType.TWENTY_FOUR_HOURS,
        ReminderType.TWELVE_HOURS,
        ReminderType.ONE_HOUR,
    ):
        hours = max(1, -(-int(seconds) // 3600))
        return f"{hours} hour" if hours == 1 else f"{hours} hours"

    days = max(1, -(-int(seconds) // 86400))
    return f"{days} day" if days == 1 else f"{days} days"


class ReminderScheduler:
    """Materializes reminder jobs for a secret's current deadline."""

    def __init__(
        self,
        repository: SecretRepository = secret_repository,
        clock: Clock = system_clock,
        timeout_seconds: float | None = None,
    ):
        self.repository = repository
        self.clock = clock
        self.timeout_seconds = timeout_seconds or settings.EXTERNAL_CALL_TIMEOUT_SECONDS

    def build_jobs(self, secret: Secret) -> list[ReminderJob]:
        """Reminder jobs for the secret's current period, ordered by scheduled_for."""
        if secret.next_check_in is None:
            raise ReminderSchedulerError("Secret has no deadline", secret_id=secret.id)

        schedule = compute_reminder_schedule(
            secret.next_check_in, secret.check_in_days, now=self.clock.now()
        )
        jobs = [
            ReminderJob(
                secret_id=secret.id,
                reminder_type=reminder_type,
                scheduling_period=secret.next_check_in,
                scheduled_for=scheduled_for,
            )
            for reminder_type, scheduled_for in schedule.items()
        ]
        return sorted(jobs, key=lambda job: job.scheduled_for)

    async def schedule_for(self, secret: Secret) -> int:
        """
        Upsert the reminder jobs for the secret's deadline.

        Safe to call repeatedly for the same deadline; existing
        (secret, type, period) rows are left untouched. Reminders whose time
        has already passed are still created and fire on the next scan.

        Returns:
            int: Number of newly created jobs
        """
        if not secret.is_active:
            logger.debug("Skipping reminder scheduling for inactive secret", secret_id=secret.id)
            return 0

        jobs = self.build_jobs(secret)
        created = await asyncio.wait_for(
            self.repository.upsert_reminder_jobs(jobs), timeout=self.timeout_seconds
        )

        now = self.clock.now()
        logger.info(
            "Reminder jobs scheduled",
            secret_id=secret.id,
            scheduling_period=secret.next_check_in.isoformat(),
            created=created,
            already_present=len(jobs) - created,
            past_due=sum(1 for job in jobs if job.scheduled_for <= now),
        )
        return created


reminder_scheduler = ReminderScheduler()
