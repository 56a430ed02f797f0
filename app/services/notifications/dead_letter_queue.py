"""
Dead letter queue for undelivered notifications.

Failed sends are persisted to email_failures with their transient/permanent
classification so operators can inspect them. Later attempts for the same
secret update the open entry instead of adding rows.
"""

import random
from typing import Any

from app.infrastructure.observability.logging import get_logger
from app.models.domain.secret_domain import (
    EmailFailureRecord,
    EmailType,
    FailureClassification,
)
from app.repositories.email_failure_repository import (
    EmailFailureRepository,
    email_failure_repository,
)
from app.utils.clock import Clock, system_clock

logger = get_logger(__name__)

RETRY_LIMITS: dict[EmailType, int] = {
    EmailType.DISCLOSURE: 5,
    EmailType.REMINDER: 3,
    EmailType.ADMIN_NOTIFICATION: 1,
}

BASE_BACKOFF_MS = 1000
MAX_BACKOFF_MS = 60000
JITTER_FACTOR = 0.5

PERMANENT_ERROR_PATTERNS = (
    "invalid email",
    "email does not exist",
    "domain not found",
    "recipient rejected",
    "401",
    "403",
    "unauthorized",
    "forbidden",
    "invalid api key",
    "blocked recipient",
    "mailbox not found",
    "user unknown",
)

TRANSIENT_ERROR_PATTERNS = (
    "timeout",
    "rate limit",
    "service unavailable",
    "temporarily unavailable",
    "network error",
    "502",
    "503",
    "504",
    "econnrefused",
    "etimedout",
    "connection reset",
    "socket hang up",
)


def classify_failure(error_message: str | None) -> FailureClassification:
    """
    Classify a provider error message.

    Permanent patterns win over transient ones; anything unrecognized is
    treated as transient so it gets retried.
    """
    message = (error_message or "").lower()

    if any(pattern in message for pattern in PERMANENT_ERROR_PATTERNS):
        return FailureClassification.PERMANENT
    if any(pattern in message for pattern in TRANSIENT_ERROR_PATTERNS):
        return FailureClassification.TRANSIENT
    return FailureClassification.TRANSIENT


def retry_limit_for(email_type: EmailType) -> int:
    return RETRY_LIMITS.get(email_type, 1)


def calculate_backoff_delay(attempt: int) -> float:
    """Exponential backoff with jitter, in milliseconds."""
    exponential = min(BASE_BACKOFF_MS * 2 ** max(attempt - 1, 0), MAX_BACKOFF_MS)
    jitter = random.random() * BASE_BACKOFF_MS * JITTER_FACTOR
    return exponential + jitter


class DeadLetterQueue:
    """Records, queries and resolves failed notification deliveries."""

    def __init__(
        self,
        repository: EmailFailureRepository = email_failure_repository,
        clock: Clock = system_clock,
    ):
        self.repository = repository
        self.clock = clock

    async def record_failure(self, record: EmailFailureRecord) -> EmailFailureRecord:
        stored = await self.repository.insert(record)
        logger.warning(
            "Email failure recorded",
            failure_id=stored.id,
            email_type=stored.email_type.value,
            provider=stored.provider,
            classification=stored.classification.value,
            retry_count=stored.retry_count,
            secret_id=stored.secret_id,
        )
        return stored

    async def get_failure(self, failure_id: str) -> EmailFailureRecord | None:
        return await self.repository.get(failure_id)

    async def query_failures(
        self,
        email_type: str | None = None,
        provider: str | None = None,
        recipient: str | None = None,
        unresolved_only: bool = False,
        limit: int = 100,
        offset: int = 0,
    ) -> list[EmailFailureRecord]:
        return await self.repository.query(
            email_type=email_type,
            provider=provider,
            recipient=recipient,
            unresolved_only=unresolved_only,
            limit=max(1, min(limit, 500)),
            offset=max(0, offset),
        )

    async def get_stats(self) -> dict[str, Any]:
        """
        Aggregate counts over all recorded failures.

        Returns:
            dict with total, unresolved, permanent, exhausted (retry ceiling
            reached), by_type and by_provider
        """
        stats: dict[str, Any] = {
            "total": 0,
            "unresolved": 0,
            "permanent": 0,
            "exhausted": 0,
            "by_type": {},
            "by_provider": {},
        }

        for row in await self.repository.stats_rows():
            count = int(row["count"])
            email_type = row["email_type"]

            stats["total"] += count
            if row["unresolved"]:
                stats["unresolved"] += count
            if row["classification"] == FailureClassification.PERMANENT.value:
                stats["permanent"] += count
            if row["retry_count"] >= retry_limit_for(EmailType(email_type)):
                stats["exhausted"] += count

            stats["by_type"][email_type] = stats["by_type"].get(email_type, 0) + count
            stats["by_provider"][row["provider"]] = (
                stats["by_provider"].get(row["provider"], 0) + count
            )

        return stats

    async def mark_resolved(self, failure_id: str) -> EmailFailureRecord | None:
        record = await self.repository.mark_resolved(failure_id, self.clock.now())
        if record:
            logger.info("Email failure resolved", failure_id=failure_id)
        return record

    async def record_retry(
        self,
        failure_id: str,
        error: str,
        classification: FailureClassification = FailureClassification.TRANSIENT,
    ) -> EmailFailureRecord | None:
        """Count one more failed attempt against an existing entry."""
        return await self.repository.increment_retry(failure_id, error, classification.value)

    async def find_open(self, secret_id: str, email_type: EmailType) -> EmailFailureRecord | None:
        """The unresolved entry a later attempt for this secret should update."""
        return await self.repository.get_open_for_secret(secret_id, email_type.value)


dead_letter_queue = DeadLetterQueue()
