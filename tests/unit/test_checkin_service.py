from datetime import timedelta

import pytest

from app.infrastructure.observability.logging import _redact_sensitive_fields
from app.models.domain.errors import (
    SecretNotFound,
    SecretStateError,
    TokenAlreadyUsed,
    TokenExpired,
    TokenNotFound,
)
from app.models.domain.secret_domain import SecretStatus
from app.services import checkin_service


@pytest.mark.asyncio
async def test_redeem_resets_deadline_and_schedules_reminders(tracker, repo, make_secret, clock):
    secret = make_secret(check_in_days=14)
    token = repo.add_token(secret.id, expires_at=clock.now() + timedelta(days=1))

    result = await tracker.redeem(token.token)

    expected = clock.now() + timedelta(days=14)
    assert result.secret_title == "Bank vault"
    assert result.next_check_in == expected

    stored = repo.secrets[secret.id]
    assert stored.next_check_in == expected
    assert stored.last_check_in == clock.now()
    assert repo.tokens[token.token].used_at == clock.now()

    assert len(repo.jobs) == 7
    assert {job.scheduling_period for job in repo.jobs.values()} == {expected}
    assert repo.history[-1]["secret_id"] == secret.id


@pytest.mark.asyncio
async def test_redeem_unknown_token(tracker):
    with pytest.raises(TokenNotFound) as exc:
        await tracker.redeem("does-not-exist")

    assert str(exc.value) == "Invalid or expired token"


@pytest.mark.asyncio
async def test_replayed_token_fails_the_same_way(tracker, repo, make_secret, clock):
    secret = make_secret()
    token = repo.add_token(secret.id, expires_at=clock.now() + timedelta(days=1))

    await tracker.redeem(token.token)
    deadline_after_first = repo.secrets[secret.id].next_check_in

    clock.advance(timedelta(hours=1))
    for _ in range(2):
        with pytest.raises(TokenAlreadyUsed) as exc:
            await tracker.redeem(token.token)
        assert str(exc.value) == "Token has already been used"

    assert repo.secrets[secret.id].next_check_in == deadline_after_first


@pytest.mark.asyncio
async def test_used_is_reported_before_expired(tracker, repo, make_secret, clock):
    secret = make_secret()
    token = repo.add_token(
        secret.id,
        expires_at=clock.now() - timedelta(days=1),
        used_at=clock.now() - timedelta(days=2),
    )

    with pytest.raises(TokenAlreadyUsed):
        await tracker.redeem(token.token)


@pytest.mark.asyncio
async def test_expired_token_is_not_consumed(tracker, repo, make_secret, clock):
    secret = make_secret()
    original_deadline = secret.next_check_in
    token = repo.add_token(secret.id, expires_at=clock.now() - timedelta(seconds=1))

    with pytest.raises(TokenExpired):
        await tracker.redeem(token.token)

    assert repo.tokens[token.token].used_at is None
    assert repo.secrets[secret.id].next_check_in == original_deadline
    assert repo.jobs == {}


@pytest.mark.asyncio
async def test_token_for_deleted_secret(tracker, repo, clock):
    token = repo.add_token("missing-secret", expires_at=clock.now() + timedelta(days=1))

    with pytest.raises(SecretNotFound):
        await tracker.redeem(token.token)


@pytest.mark.asyncio
async def test_token_for_paused_secret_is_not_consumed(tracker, repo, make_secret, clock):
    secret = make_secret(status=SecretStatus.PAUSED)
    token = repo.add_token(secret.id, expires_at=clock.now() + timedelta(days=1))

    with pytest.raises(SecretStateError):
        await tracker.redeem(token.token)

    assert repo.tokens[token.token].used_at is None


@pytest.mark.asyncio
async def test_owner_check_in(tracker, repo, make_secret, clock):
    secret = make_secret(check_in_days=7)

    result = await tracker.check_in_owner(secret.id, "user-123")

    assert result.next_check_in == clock.now() + timedelta(days=7)
    assert repo.secrets[secret.id].next_check_in == result.next_check_in
    assert len(repo.jobs) == 7


@pytest.mark.asyncio
async def test_owner_check_in_rejects_other_users(tracker, make_secret):
    secret = make_secret()

    with pytest.raises(SecretNotFound):
        await tracker.check_in_owner(secret.id, "someone-else")


@pytest.mark.asyncio
async def test_owner_check_in_rejects_triggered_secret(tracker, make_secret, clock):
    secret = make_secret(status=SecretStatus.TRIGGERED, triggered_at=clock.now())

    with pytest.raises(SecretStateError):
        await tracker.check_in_owner(secret.id, "user-123")


@pytest.mark.asyncio
async def test_pause_then_resume_starts_fresh_window(tracker, repo, make_secret, clock):
    secret = make_secret(check_in_days=10)

    paused = await tracker.set_paused(secret.id, "user-123", paused=True)
    assert paused.status == SecretStatus.PAUSED
    assert repo.secrets[secret.id].status == SecretStatus.PAUSED

    clock.advance(timedelta(days=40))
    resumed = await tracker.set_paused(secret.id, "user-123", paused=False)

    assert resumed.status == SecretStatus.ACTIVE
    assert resumed.next_check_in == clock.now() + timedelta(days=10)
    assert repo.secrets[secret.id].next_check_in == clock.now() + timedelta(days=10)
    assert len(repo.jobs) == 7


@pytest.mark.asyncio
async def test_toggle_pause_flips_state(tracker, repo, make_secret):
    secret = make_secret()

    assert (await tracker.toggle_pause(secret.id, "user-123")).status == SecretStatus.PAUSED
    assert (await tracker.toggle_pause(secret.id, "user-123")).status == SecretStatus.ACTIVE


@pytest.mark.asyncio
async def test_triggered_secret_cannot_be_paused(tracker, make_secret, clock):
    secret = make_secret(status=SecretStatus.TRIGGERED, triggered_at=clock.now())

    with pytest.raises(SecretStateError):
        await tracker.set_paused(secret.id, "user-123", paused=True)


@pytest.mark.asyncio
async def test_scheduling_failure_does_not_undo_check_in(tracker, repo, make_secret, clock):
    secret = make_secret()
    token = repo.add_token(secret.id, expires_at=clock.now() + timedelta(days=1))
    repo.fail_on.add("upsert_reminder_jobs")

    result = await tracker.redeem(token.token)

    assert repo.secrets[secret.id].next_check_in == result.next_check_in
    assert repo.jobs == {}


class _RecordingLogger:
    def __init__(self):
        self.entries: list[tuple[str, dict]] = []

    def info(self, event, **kwargs):
        self.entries.append((event, kwargs))

    warning = error = info


@pytest.mark.asyncio
async def test_unknown_token_logs_a_readable_prefix(tracker, monkeypatch):
    recorder = _RecordingLogger()
    monkeypatch.setattr(checkin_service, "logger", recorder)

    with pytest.raises(TokenNotFound):
        await tracker.redeem("abcdef0123456789")

    [(event, fields)] = recorder.entries
    assert event == "Check-in token not found"
    rendered = _redact_sensitive_fields(None, "info", dict(fields))
    assert rendered["token_prefix"] == "abcdef01..."
    assert "abcdef0123456789" not in str(rendered)


def test_redaction_keeps_prefix_but_hides_token():
    rendered = _redact_sensitive_fields(
        None, "info", {"token": "abcdef0123456789", "token_prefix": "abcdef01..."}
    )

    assert rendered == {"token": "[redacted]", "token_prefix": "abcdef01..."}
