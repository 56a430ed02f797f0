"""
Check-in handling: token redemption, owner check-ins and pause/resume.

A successful check-in moves the deadline to now + check_in_days and
materializes reminders for the new period. No notification is sent.
"""

import asyncio
from datetime import datetime, timedelta

from pydantic import BaseModel

from app.config import settings
from app.db.helpers import DatabaseError
from app.infrastructure.observability.logging import get_logger, token_prefix
from app.models.domain.errors import (
    SecretNotFound,
    SecretStateError,
    TokenAlreadyUsed,
    TokenExpired,
    TokenNotFound,
)
from app.models.domain.secret_domain import Secret, SecretStatus
from app.repositories.secret_repository import SecretRepository, secret_repository
from app.services.reminder_scheduler import ReminderScheduler, reminder_scheduler
from app.utils.clock import Clock, system_clock

logger = get_logger(__name__)


class CheckInResult(BaseModel):
    secret_id: str
    secret_title: str
    next_check_in: datetime


class CheckInTracker:
    def __init__(
        self,
        repository: SecretRepository = secret_repository,
        scheduler: ReminderScheduler = reminder_scheduler,
        clock: Clock = system_clock,
        timeout_seconds: float | None = None,
    ):
        self.repository = repository
        self.scheduler = scheduler
        self.clock = clock
        self.timeout_seconds = timeout_seconds or settings.EXTERNAL_CALL_TIMEOUT_SECONDS

    async def _call(self, coro):
        return await asyncio.wait_for(coro, timeout=self.timeout_seconds)

    async def redeem(self, token: str) -> CheckInResult:
        """
        Redeem a check-in token and reset the secret's timer.

        Raises:
            TokenNotFound: Unknown token
            TokenAlreadyUsed: Token consumed earlier (checked before expiry)
            TokenExpired: Token past expires_at; it is not consumed
            SecretNotFound: Token's secret no longer exists
            SecretStateError: Secret is paused or triggered
        """
        check_in_token = await self._call(self.repository.get_token(token))
        if check_in_token is None:
            logger.info("Check-in token not found", token_prefix=token_prefix(token))
            raise TokenNotFound()

        if check_in_token.used_at is not None:
            raise TokenAlreadyUsed(secret_id=check_in_token.secret_id)

        now = self.clock.now()
        if check_in_token.expires_at < now:
            raise TokenExpired(secret_id=check_in_token.secret_id)

        secret = await self._call(self.repository.get_secret(check_in_token.secret_id))
        if secret is None:
            raise SecretNotFound(check_in_token.secret_id)
        if not secret.is_active:
            raise SecretStateError(
                f"Cannot check in to a {secret.status.value} secret", secret_id=secret.id
            )

        next_check_in = now + timedelta(days=secret.check_in_days)
        redeemed = await self._call(
            self.repository.redeem_token(
                check_in_token.id, secret.id, secret.user_id, now, next_check_in
            )
        )
        if not redeemed:
            # Lost the race to a concurrent redemption
            raise TokenAlreadyUsed(secret_id=secret.id)

        logger.info(
            "Check-in token redeemed",
            secret_id=secret.id,
            token_prefix=token_prefix(token),
            next_check_in=next_check_in.isoformat(),
        )

        await self._schedule(secret, now, next_check_in)
        return CheckInResult(
            secret_id=secret.id, secret_title=secret.title, next_check_in=next_check_in
        )

    async def check_in_owner(self, secret_id: str, user_id: str) -> CheckInResult:
        """Authenticated check-in by the secret's owner."""
        secret = await self._get_owned_secret(secret_id, user_id)
        if not secret.is_active:
            raise SecretStateError(
                f"Cannot check in to a {secret.status.value} secret", secret_id=secret_id
            )

        now = self.clock.now()
        next_check_in = now + timedelta(days=secret.check_in_days)
        updated = await self._call(
            self.repository.record_owner_check_in(secret_id, user_id, now, next_check_in)
        )
        if not updated:
            raise SecretStateError("Secret is no longer active", secret_id=secret_id)

        logger.info(
            "Owner checked in",
            secret_id=secret_id,
            user_id=user_id,
            next_check_in=next_check_in.isoformat(),
        )

        await self._schedule(secret, now, next_check_in)
        return CheckInResult(
            secret_id=secret.id, secret_title=secret.title, next_check_in=next_check_in
        )

    async def set_paused(self, secret_id: str, user_id: str, paused: bool) -> Secret:
        """
        Pause or resume a secret.

        Paused secrets are never scanned. Resuming starts a fresh window
        measured from now. Setting the state a secret already has is a no-op.

        Raises:
            SecretNotFound: Missing or not owned by user_id
            SecretStateError: Secret already triggered, or changed concurrently
        """
        secret = await self._get_owned_secret(secret_id, user_id)
        if secret.status == SecretStatus.TRIGGERED:
            raise SecretStateError("Triggered secrets cannot be paused or resumed", secret_id=secret_id)

        target = SecretStatus.PAUSED if paused else SecretStatus.ACTIVE
        if secret.status == target:
            return secret

        now = self.clock.now()
        if paused:
            changed = await self._call(self.repository.set_paused(secret_id, now))
            update = {"status": SecretStatus.PAUSED, "updated_at": now}
        else:
            next_check_in = now + timedelta(days=secret.check_in_days)
            changed = await self._call(self.repository.resume(secret_id, now, next_check_in))
            update = {
                "status": SecretStatus.ACTIVE,
                "last_check_in": now,
                "next_check_in": next_check_in,
                "updated_at": now,
            }

        if not changed:
            raise SecretStateError("Secret status changed concurrently", secret_id=secret_id)

        secret = secret.model_copy(update=update)
        logger.info("Secret pause state changed", secret_id=secret_id, status=secret.status.value)

        if not paused:
            await self._schedule(secret, now, secret.next_check_in)
        return secret

    async def toggle_pause(self, secret_id: str, user_id: str) -> Secret:
        secret = await self._get_owned_secret(secret_id, user_id)
        return await self.set_paused(secret_id, user_id, paused=secret.is_active)

    async def _get_owned_secret(self, secret_id: str, user_id: str) -> Secret:
        secret = await self._call(self.repository.get_secret(secret_id))
        if secret is None or secret.user_id != user_id:
            raise SecretNotFound(secret_id)
        return secret

    async def _schedule(self, secret: Secret, now: datetime, next_check_in: datetime) -> None:
        """Materialize reminders for the new period; the check-in itself is already committed."""
        current = secret.model_copy(
            update={
                "status": SecretStatus.ACTIVE,
                "last_check_in": now,
                "next_check_in": next_check_in,
            }
        )
        try:
            await self.scheduler.schedule_for(current)
        except (DatabaseError, asyncio.TimeoutError) as e:
            logger.error(
                "Reminder scheduling failed after check-in",
                secret_id=secret.id,
                error=str(e) or type(e).__name__,
            )


checkin_tracker = CheckInTracker()
