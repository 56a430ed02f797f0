"""
Access to a secret's decrypted server share.

The owner can always read it. A recipient holding a check-in token of the
secret can read it while the token is unexpired and, once used, for a 24h
grace period after first use.
"""

import asyncio
from datetime import timedelta

from app.config import settings
from app.infrastructure.observability.logging import get_logger, token_prefix
from app.models.domain.errors import (
    SecretNotFound,
    ShareAccessDenied,
    ShareAlreadyDeleted,
)
from app.models.domain.secret_domain import Secret
from app.repositories.secret_repository import SecretRepository, secret_repository
from app.services.infrastructure.encryption_service import (
    EnvelopeCipher,
    get_envelope_cipher,
)
from app.utils.clock import Clock, system_clock

logger = get_logger(__name__)

USED_TOKEN_GRACE_PERIOD = timedelta(hours=24)


class ServerShareAccess:
    def __init__(
        self,
        repository: SecretRepository = secret_repository,
        cipher: EnvelopeCipher | None = None,
        clock: Clock = system_clock,
        timeout_seconds: float | None = None,
    ):
        self.repository = repository
        self._cipher = cipher
        self.clock = clock
        self.timeout_seconds = timeout_seconds or settings.EXTERNAL_CALL_TIMEOUT_SECONDS

    @property
    def cipher(self) -> EnvelopeCipher:
        if self._cipher is None:
            self._cipher = get_envelope_cipher()
        return self._cipher

    async def _call(self, coro):
        return await asyncio.wait_for(coro, timeout=self.timeout_seconds)

    async def reveal_for_owner(self, secret_id: str, user_id: str) -> str:
        secret = await self._call(self.repository.get_secret(secret_id))
        if secret is None or secret.user_id != user_id:
            raise SecretNotFound(secret_id)
        return self._decrypt(secret)

    async def reveal_with_token(self, secret_id: str, token: str) -> str:
        """
        Decrypt the share for a check-in token holder.

        Raises:
            ShareAccessDenied: Token unknown, for another secret, expired, or
                used more than 24h ago
            SecretNotFound: Secret no longer exists
            ShareAlreadyDeleted: Custody was revoked
        """
        check_in_token = await self._call(self.repository.get_token(token))
        if check_in_token is None or check_in_token.secret_id != secret_id:
            logger.info(
                "Server share token rejected",
                secret_id=secret_id,
                token_prefix=token_prefix(token),
            )
            raise ShareAccessDenied("Invalid or expired token.", secret_id=secret_id)

        now = self.clock.now()
        if check_in_token.used_at and now > check_in_token.used_at + USED_TOKEN_GRACE_PERIOD:
            raise ShareAccessDenied(
                "Token has already been used and the grace period has expired.",
                secret_id=secret_id,
            )
        if now > check_in_token.expires_at:
            raise ShareAccessDenied("Token has expired.", secret_id=secret_id)

        secret = await self._call(self.repository.get_secret(secret_id))
        if secret is None:
            raise SecretNotFound(secret_id)

        share = self._decrypt(secret)

        if check_in_token.used_at is None:
            await self._call(self.repository.mark_token_used(check_in_token.id, now))

        logger.info("Server share revealed via token", secret_id=secret_id)
        return share

    def _decrypt(self, secret: Secret) -> str:
        if not secret.has_share:
            raise ShareAlreadyDeleted(secret.id)
        return self.cipher.decrypt(secret.server_share, secret.iv, secret.auth_tag)


server_share_access = ServerShareAccess()
