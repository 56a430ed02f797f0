"""
Tests for reminder schedule computation and job materialization.
"""

from datetime import UTC, datetime, timedelta

import pytest

from app.models.domain.secret_domain import ReminderType, SecretStatus
from app.services.reminder_scheduler import (
    ReminderSchedulerError,
    compute_reminder_schedule,
    format_time_remaining,
)

DEADLINE = datetime(2025, 10, 15, 12, 0, tzinfo=UTC)


def test_fixed_reminders_anchor_on_deadline():
    schedule = compute_reminder_schedule(DEADLINE, 30)

    assert schedule[ReminderType.TWELVE_HOURS] == datetime(2025, 10, 15, 0, 0, tzinfo=UTC)
    assert schedule[ReminderType.SEVEN_DAYS] == datetime(2025, 10, 8, 12, 0, tzinfo=UTC)
    assert schedule[ReminderType.ONE_HOUR] == datetime(2025, 10, 15, 11, 0, tzinfo=UTC)
    assert schedule[ReminderType.TWENTY_FOUR_HOURS] == datetime(2025, 10, 14, 12, 0, tzinfo=UTC)
    assert schedule[ReminderType.THREE_DAYS] == datetime(2025, 10, 12, 12, 0, tzinfo=UTC)


def test_fixed_reminders_ignore_now():
    early = compute_reminder_schedule(DEADLINE, 30, now=DEADLINE - timedelta(days=29))
    late = compute_reminder_schedule(DEADLINE, 30, now=DEADLINE - timedelta(hours=2))

    for reminder_type in (ReminderType.ONE_HOUR, ReminderType.SEVEN_DAYS):
        assert early[reminder_type] == late[reminder_type]


def test_sub_second_precision_preserved():
    deadline = datetime(2025, 10, 15, 12, 0, 0, 789000, tzinfo=UTC)
    schedule = compute_reminder_schedule(deadline, 30)

    assert schedule[ReminderType.ONE_HOUR] == datetime(2025, 10, 15, 11, 0, 0, 789000, tzinfo=UTC)
    assert schedule[ReminderType.ONE_HOUR].microsecond == 789000


def test_percentage_reminders_anchor_on_period_start():
    schedule = compute_reminder_schedule(DEADLINE, 30)
    period_start = DEADLINE - timedelta(days=30)

    assert schedule[ReminderType.TWENTY_FIVE_PERCENT] == period_start + timedelta(days=7.5)
    assert schedule[ReminderType.FIFTY_PERCENT] == period_start + timedelta(days=15)


def test_percentage_fallback_anchors_on_now_without_interval():
    now = DEADLINE - timedelta(days=10)
    schedule = compute_reminder_schedule(DEADLINE, None, now=now)

    assert schedule[ReminderType.FIFTY_PERCENT] == now + timedelta(days=5)
    assert schedule[ReminderType.TWENTY_FIVE_PERCENT] == now + timedelta(days=2.5)


def test_percentage_reminders_omitted_without_interval_or_now():
    schedule = compute_reminder_schedule(DEADLINE, None)

    assert ReminderType.FIFTY_PERCENT not in schedule
    assert len(schedule) == 5


@pytest.mark.parametrize(
    "reminder_type,remaining,expected",
    [
        (ReminderType.ONE_HOUR, timedelta(minutes=59), "1 hour"),
        (ReminderType.TWELVE_HOURS, timedelta(hours=12), "12 hours"),
        (ReminderType.TWENTY_FOUR_HOURS, timedelta(hours=23, minutes=1), "24 hours"),
        (ReminderType.THREE_DAYS, timedelta(days=3), "3 days"),
        (ReminderType.SEVEN_DAYS, timedelta(days=6, hours=1), "7 days"),
        (ReminderType.FIFTY_PERCENT, timedelta(hours=3), "1 day"),
        (ReminderType.ONE_HOUR, timedelta(seconds=-30), "1 hour"),
    ],
)
def test_format_time_remaining(reminder_type, remaining, expected):
    assert format_time_remaining(reminder_type, remaining) == expected


@pytest.mark.asyncio
async def test_schedule_for_is_idempotent(scheduler, repo, make_secret):
    secret = make_secret(next_check_in=DEADLINE)

    first = await scheduler.schedule_for(secret)
    second = await scheduler.schedule_for(secret)

    assert first == 7
    assert second == 0
    assert len(repo.jobs) == 7
    assert {job.scheduling_period for job in repo.jobs.values()} == {DEADLINE}


@pytest.mark.asyncio
async def test_past_due_reminders_still_created(scheduler, repo, make_secret, clock):
    # Deadline 2 hours out: everything except the 1 hour reminder is already past
    secret = make_secret(next_check_in=clock.now() + timedelta(hours=2))

    created = await scheduler.schedule_for(secret)

    assert created == 7
    past_due = [job for job in repo.jobs.values() if job.scheduled_for <= clock.now()]
    assert len(past_due) == 6


@pytest.mark.asyncio
async def test_new_period_creates_new_jobs(scheduler, repo, make_secret):
    secret = make_secret(next_check_in=DEADLINE)
    await scheduler.schedule_for(secret)

    moved = secret.model_copy(update={"next_check_in": DEADLINE + timedelta(days=30)})
    created = await scheduler.schedule_for(moved)

    assert created == 7
    assert len(repo.jobs) == 14


@pytest.mark.asyncio
async def test_inactive_secret_not_scheduled(scheduler, repo, make_secret):
    secret = make_secret(status=SecretStatus.PAUSED)

    assert await scheduler.schedule_for(secret) == 0
    assert repo.jobs == {}


def test_build_jobs_requires_deadline(scheduler, make_secret):
    secret = make_secret(next_check_in=None)

    with pytest.raises(ReminderSchedulerError):
        scheduler.build_jobs(secret)


def test_build_jobs_sorted_by_scheduled_for(scheduler, make_secret):
    jobs = scheduler.build_jobs(make_secret(next_check_in=DEADLINE))

    assert [job.scheduled_for for job in jobs] == sorted(job.scheduled_for for job in jobs)
    assert jobs[-1].reminder_type == ReminderType.ONE_HOUR
