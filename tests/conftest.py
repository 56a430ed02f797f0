import asyncio
import uuid
from datetime import UTC, datetime, timedelta

import pytest

from app.auth.verify import auth_dependency
from app.db.helpers import DatabaseError
from app.jobs.trigger_detector_job import TriggerDetectorJob
from app.models.domain.errors import DeliveryError, SecretStateError
from app.models.domain.secret_domain import (
    CheckInToken,
    DueReminder,
    EmailFailureRecord,
    FailureClassification,
    NotificationMessage,
    ReminderJob,
    Secret,
    SecretStatus,
)
from app.services.checkin_service import CheckInTracker
from app.services.disclosure_service import DisclosureDispatcher
from app.services.infrastructure.encryption_service import EnvelopeCipher
from app.services.notifications.admin_alert_service import AdminAlertService
from app.services.notifications.dead_letter_queue import DeadLetterQueue
from app.services.notifications.notification_service import NotificationService
from app.services.reminder_scheduler import ReminderScheduler
from app.services.share_access_service import ServerShareAccess
from app.utils.clock import FixedClock

NOW = datetime(2025, 10, 1, 12, 0, tzinfo=UTC)
TEST_KEY = bytes(range(32))
SHARE_PLAINTEXT = "801a2b3c4d5e6f-server-share"


@pytest.fixture
def auth_override():
    def _override():
        return {"sub": "user-123"}

    return _override


@pytest.fixture
def apply_auth_override(auth_override):
    def _apply(app):
        app.dependency_overrides[auth_dependency] = auth_override

    return _apply


class InMemorySecretRepository:
    """SecretRepository backed by dicts, with the same guarded-update semantics."""

    def __init__(self):
        self.secrets: dict[str, Secret] = {}
        self.tokens: dict[str, CheckInToken] = {}
        self.jobs: dict[str, ReminderJob] = {}
        self.history: list[dict] = []
        self.fail_on: set[str] = set()

    def _check(self, operation: str) -> None:
        if operation in self.fail_on:
            raise DatabaseError(f"{operation} failed", operation=operation)

    def add_secret(self, secret: Secret) -> Secret:
        self.secrets[secret.id] = secret
        return secret

    def add_token(self, secret_id: str, expires_at: datetime, used_at: datetime | None = None) -> CheckInToken:
        token = CheckInToken(
            id=str(uuid.uuid4()),
            token=uuid.uuid4().hex,
            secret_id=secret_id,
            expires_at=expires_at,
            used_at=used_at,
        )
        self.tokens[token.token] = token
        return token

    async def get_secret(self, secret_id: str) -> Secret | None:
        self._check("get_secret")
        secret = self.secrets.get(secret_id)
        return secret.model_copy() if secret else None

    async def get_token(self, token: str) -> CheckInToken | None:
        self._check("get_token")
        found = self.tokens.get(token)
        return found.model_copy() if found else None

    def _token_by_id(self, token_id: str) -> CheckInToken | None:
        return next((t for t in self.tokens.values() if t.id == token_id), None)

    async def redeem_token(self, token_id, secret_id, user_id, now, next_check_in) -> bool:
        self._check("redeem_token")
        token = self._token_by_id(token_id)
        if token is None or token.used_at is not None:
            return False
        if not self._advance_deadline(secret_id, user_id, now, next_check_in):
            raise SecretStateError("Secret is no longer active", secret_id=secret_id)
        token.used_at = now
        return True

    async def record_owner_check_in(self, secret_id, user_id, now, next_check_in) -> bool:
        self._check("record_owner_check_in")
        return self._advance_deadline(secret_id, user_id, now, next_check_in)

    def _advance_deadline(self, secret_id, user_id, now, next_check_in) -> bool:
        secret = self.secrets.get(secret_id)
        if secret is None or secret.status != SecretStatus.ACTIVE:
            return False
        self.secrets[secret_id] = secret.model_copy(
            update={"last_check_in": now, "next_check_in": next_check_in, "updated_at": now}
        )
        self.history.append({"secret_id": secret_id, "user_id": user_id, "checked_in_at": now})
        return True

    async def mark_token_used(self, token_id, now) -> bool:
        token = self._token_by_id(token_id)
        if token is None or token.used_at is not None:
            return False
        token.used_at = now
        return True

    def _transition(self, secret_id, expected: SecretStatus, **update) -> bool:
        secret = self.secrets.get(secret_id)
        if secret is None or secret.status != expected:
            return False
        self.secrets[secret_id] = secret.model_copy(update=update)
        return True

    async def set_paused(self, secret_id, now) -> bool:
        return self._transition(
            secret_id, SecretStatus.ACTIVE, status=SecretStatus.PAUSED, updated_at=now
        )

    async def resume(self, secret_id, now, next_check_in) -> bool:
        return self._transition(
            secret_id,
            SecretStatus.PAUSED,
            status=SecretStatus.ACTIVE,
            last_check_in=now,
            next_check_in=next_check_in,
            updated_at=now,
        )

    async def mark_triggered(self, secret_id, now, lease_until) -> bool:
        self._check("mark_triggered")
        return self._transition(
            secret_id,
            SecretStatus.ACTIVE,
            status=SecretStatus.TRIGGERED,
            triggered_at=now,
            disclosure_sent_at=None,
            disclosure_lease_until=lease_until,
            updated_at=now,
        )

    @staticmethod
    def _lapsed(moment, now) -> bool:
        return moment is None or moment <= now

    async def get_pending_disclosures(self, now, limit) -> list[Secret]:
        self._check("get_pending_disclosures")
        await asyncio.sleep(0)
        pending = [
            s.model_copy()
            for s in self.secrets.values()
            if s.status == SecretStatus.TRIGGERED
            and s.disclosure_sent_at is None
            and s.disclosure_failed_at is None
            and s.server_share is not None
            and self._lapsed(s.disclosure_lease_until, now)
            and self._lapsed(s.disclosure_retry_at, now)
        ]
        return sorted(pending, key=lambda s: s.triggered_at)[:limit]

    async def claim_disclosure(self, secret_id, now, lease_until) -> bool:
        self._check("claim_disclosure")
        secret = self.secrets.get(secret_id)
        if (
            secret is None
            or secret.status != SecretStatus.TRIGGERED
            or secret.disclosure_sent_at is not None
            or not self._lapsed(secret.disclosure_lease_until, now)
        ):
            return False
        self.secrets[secret_id] = secret.model_copy(update={"disclosure_lease_until": lease_until})
        return True

    async def record_disclosure_sent(self, secret_id, now) -> bool:
        self._check("record_disclosure_sent")
        secret = self.secrets.get(secret_id)
        if secret is None or secret.disclosure_sent_at is not None:
            return False
        self.secrets[secret_id] = secret.model_copy(
            update={
                "disclosure_sent_at": now,
                "disclosure_attempts": secret.disclosure_attempts + 1,
                "disclosure_lease_until": None,
                "disclosure_retry_at": None,
            }
        )
        return True

    async def record_disclosure_failure(self, secret_id, retry_at, failed_at) -> int:
        self._check("record_disclosure_failure")
        secret = self.secrets.get(secret_id)
        if secret is None or secret.disclosure_sent_at is not None:
            return 0
        attempts = secret.disclosure_attempts + 1
        self.secrets[secret_id] = secret.model_copy(
            update={
                "disclosure_attempts": attempts,
                "disclosure_lease_until": None,
                "disclosure_retry_at": retry_at,
                "disclosure_failed_at": failed_at or secret.disclosure_failed_at,
            }
        )
        return attempts

    async def upsert_reminder_jobs(self, jobs: list[ReminderJob]) -> int:
        self._check("upsert_reminder_jobs")
        existing = {(j.secret_id, j.reminder_type, j.scheduling_period) for j in self.jobs.values()}
        created = 0
        for job in jobs:
            key = (job.secret_id, job.reminder_type, job.scheduling_period)
            if key in existing:
                continue
            stored = job.model_copy(update={"id": str(uuid.uuid4())})
            self.jobs[stored.id] = stored
            existing.add(key)
            created += 1
        return created

    async def get_due_reminders(self, now, limit) -> list[DueReminder]:
        self._check("get_due_reminders")
        await asyncio.sleep(0)
        due = []
        for job in sorted(self.jobs.values(), key=lambda j: j.scheduled_for):
            secret = self.secrets.get(job.secret_id)
            if (
                secret is not None
                and secret.status == SecretStatus.ACTIVE
                and job.scheduling_period == secret.next_check_in
                and job.scheduled_for <= now
                and job.sent_at is None
                and job.failed_at is None
            ):
                due.append(DueReminder(job=job.model_copy(), secret=secret.model_copy()))
        return due[:limit]

    async def mark_reminder_sent(self, job_id, now) -> bool:
        job = self.jobs.get(job_id)
        if job is None or job.sent_at is not None:
            return False
        self.jobs[job_id] = job.model_copy(
            update={"sent_at": now, "attempt_count": job.attempt_count + 1, "last_error": None}
        )
        return True

    async def record_reminder_failure(self, job_id, error, failed_at) -> int:
        job = self.jobs.get(job_id)
        if job is None or job.sent_at is not None:
            return 0
        self.jobs[job_id] = job.model_copy(
            update={
                "attempt_count": job.attempt_count + 1,
                "last_error": error,
                "failed_at": failed_at or job.failed_at,
            }
        )
        return job.attempt_count + 1

    async def get_overdue_secrets(self, now, limit) -> list[Secret]:
        self._check("get_overdue_secrets")
        await asyncio.sleep(0)
        overdue = [
            s.model_copy()
            for s in self.secrets.values()
            if s.status == SecretStatus.ACTIVE
            and s.next_check_in is not None
            and s.next_check_in <= now
            and s.server_share is not None
        ]
        return sorted(overdue, key=lambda s: s.next_check_in)[:limit]


class InMemoryEmailFailureRepository:
    def __init__(self):
        self.records: dict[str, EmailFailureRecord] = {}
        self._sequence = 0
        self.fail_on: set[str] = set()
        self.insert_delay = 0.0

    async def insert(self, record: EmailFailureRecord) -> EmailFailureRecord:
        await asyncio.sleep(self.insert_delay)
        if "insert" in self.fail_on:
            raise DatabaseError("connection reset", operation="insert")
        self._sequence += 1
        stored = record.model_copy(
            update={"id": str(uuid.uuid4()), "created_at": NOW + timedelta(seconds=self._sequence)}
        )
        self.records[stored.id] = stored
        return stored

    async def get(self, failure_id):
        return self.records.get(failure_id)

    async def query(
        self, *, email_type=None, provider=None, recipient=None, unresolved_only=False, limit=100, offset=0
    ):
        rows = [
            r
            for r in self.records.values()
            if (not email_type or r.email_type.value == email_type)
            and (not provider or r.provider == provider)
            and (not recipient or r.recipient == recipient)
            and (not unresolved_only or r.resolved_at is None)
        ]
        rows.sort(key=lambda r: r.created_at, reverse=True)
        return rows[offset : offset + limit]

    async def stats_rows(self):
        groups: dict[tuple, int] = {}
        for r in self.records.values():
            key = (r.email_type.value, r.provider, r.classification.value, r.resolved_at is None, r.retry_count)
            groups[key] = groups.get(key, 0) + 1
        return [
            {
                "email_type": k[0],
                "provider": k[1],
                "classification": k[2],
                "unresolved": k[3],
                "retry_count": k[4],
                "count": count,
            }
            for k, count in groups.items()
        ]

    async def mark_resolved(self, failure_id, now):
        record = self.records.get(failure_id)
        if record is None:
            return None
        if record.resolved_at is None:
            record = record.model_copy(update={"resolved_at": now})
            self.records[failure_id] = record
        return record

    async def increment_retry(self, failure_id, error, classification):
        record = self.records.get(failure_id)
        if record is None:
            return None
        record = record.model_copy(
            update={
                "retry_count": record.retry_count + 1,
                "error_message": error,
                "classification": FailureClassification(classification),
            }
        )
        self.records[failure_id] = record
        return record

    async def get_open_for_secret(self, secret_id, email_type):
        rows = [
            r
            for r in self.records.values()
            if r.secret_id == secret_id and r.email_type.value == email_type and r.resolved_at is None
        ]
        return max(rows, key=lambda r: r.created_at, default=None)


class RecordingProvider:
    """Email provider that records messages; queue errors or delays for the next sends."""

    name = "recording"

    def __init__(self):
        self.sent: list[NotificationMessage] = []
        self.errors: list[BaseException] = []
        self.delays: list[float] = []

    async def send(self, message: NotificationMessage) -> str:
        await asyncio.sleep(self.delays.pop(0) if self.delays else 0)
        if self.errors:
            raise self.errors.pop(0)
        self.sent.append(message)
        return f"msg-{len(self.sent)}"

    def fail_with(self, *messages: str) -> None:
        self.errors.extend(DeliveryError(m) for m in messages)

    def of_type(self, email_type) -> list[NotificationMessage]:
        return [m for m in self.sent if m.email_type == email_type]


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def cipher():
    return EnvelopeCipher(TEST_KEY)


@pytest.fixture
def repo():
    return InMemorySecretRepository()


@pytest.fixture
def failure_repo():
    return InMemoryEmailFailureRepository()


@pytest.fixture
def provider():
    return RecordingProvider()


@pytest.fixture
def alert_provider():
    return RecordingProvider()


@pytest.fixture
def alerts(alert_provider):
    return AdminAlertService(provider=alert_provider, admin_email="ops@example.com", timeout_seconds=1)


@pytest.fixture
def dlq(failure_repo, clock):
    return DeadLetterQueue(repository=failure_repo, clock=clock)


@pytest.fixture
def notifications(provider, dlq, alerts):
    return NotificationService(provider=provider, dlq=dlq, alerts=alerts, timeout_seconds=1)


@pytest.fixture
def scheduler(repo, clock):
    return ReminderScheduler(repository=repo, clock=clock, timeout_seconds=1)


@pytest.fixture
def tracker(repo, scheduler, clock):
    return CheckInTracker(repository=repo, scheduler=scheduler, clock=clock, timeout_seconds=1)


@pytest.fixture
def dispatcher(repo, notifications, alerts, cipher, clock):
    return DisclosureDispatcher(
        repository=repo,
        notifications=notifications,
        alerts=alerts,
        cipher=cipher,
        clock=clock,
        timeout_seconds=1,
    )


@pytest.fixture
def share_access(repo, cipher, clock):
    return ServerShareAccess(repository=repo, cipher=cipher, clock=clock, timeout_seconds=1)


@pytest.fixture
def detector(repo, notifications, dispatcher, clock):
    return TriggerDetectorJob(
        repository=repo,
        notifications=notifications,
        dispatcher=dispatcher,
        clock=clock,
        max_concurrent=5,
        timeout_seconds=1,
    )


@pytest.fixture
def make_secret(repo, cipher):
    """Store a secret whose share is encrypted with the test key."""

    def _make(**overrides) -> Secret:
        sealed = cipher.encrypt(SHARE_PLAINTEXT)
        fields = {
            "id": str(uuid.uuid4()),
            "user_id": "user-123",
            "title": "Bank vault",
            "recipient_name": "Alex",
            "recipient_email": "alex@example.com",
            "owner_email": "owner@example.com",
            "check_in_days": 30,
            "status": SecretStatus.ACTIVE,
            "last_check_in": NOW - timedelta(days=10),
            "next_check_in": NOW + timedelta(days=20),
            "server_share": sealed.ciphertext,
            "iv": sealed.iv,
            "auth_tag": sealed.auth_tag,
        }
        fields.update(overrides)
        return repo.add_secret(Secret(**fields))

    return _make


@pytest.fixture
def share_plaintext():
    return SHARE_PLAINTEXT
