"""
Persistence for the dead letter queue (email_failures table).
"""

from datetime import datetime
from typing import Any, Protocol

from app.db.helpers import fetch_all, fetch_one
from app.models.domain.secret_domain import EmailFailureRecord

FAILURE_COLUMNS = """
    id::text AS id,
    email_type::text AS email_type,
    provider,
    recipient,
    subject,
    payload_summary,
    error_message,
    classification,
    retry_count,
    secret_id::text AS secret_id,
    reminder_job_id::text AS reminder_job_id,
    created_at,
    resolved_at
"""


class EmailFailureRepository(Protocol):
    async def insert(self, record: EmailFailureRecord) -> EmailFailureRecord: ...

    async def get(self, failure_id: str) -> EmailFailureRecord | None: ...

    async def query(
        self,
        *,
        email_type: str | None = None,
        provider: str | None = None,
        recipient: str | None = None,
        unresolved_only: bool = False,
        limit: int = 100,
        offset: int = 0,
    ) -> list[EmailFailureRecord]: ...

    async def stats_rows(self) -> list[dict[str, Any]]: ...

    async def mark_resolved(self, failure_id: str, now: datetime) -> EmailFailureRecord | None: ...

    async def increment_retry(
        self, failure_id: str, error: str, classification: str
    ) -> EmailFailureRecord | None: ...

    async def get_open_for_secret(
        self, secret_id: str, email_type: str
    ) -> EmailFailureRecord | None: ...


class PostgresEmailFailureRepository:
    """psycopg implementation of EmailFailureRepository."""

    async def insert(self, record: EmailFailureRecord) -> EmailFailureRecord:
        row = await fetch_one(
            f"""
            INSERT INTO email_failures (
                email_type, provider, recipient, subject, payload_summary,
                error_message, classification, retry_count, secret_id, reminder_job_id
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING {FAILURE_COLUMNS}
            """,
            (
                record.email_type.value,
                record.provider,
                record.recipient,
                record.subject,
                record.payload_summary,
                record.error_message[:1000],
                record.classification.value,
                record.retry_count,
                record.secret_id,
                record.reminder_job_id,
            ),
        )
        return EmailFailureRecord.model_validate(row)

    async def get(self, failure_id: str) -> EmailFailureRecord | None:
        row = await fetch_one(
            f"SELECT {FAILURE_COLUMNS} FROM email_failures WHERE id = %s",
            (failure_id,),
        )
        return EmailFailureRecord.model_validate(row) if row else None

    async def query(
        self,
        *,
        email_type: str | None = None,
        provider: str | None = None,
        recipient: str | None = None,
        unresolved_only: bool = False,
        limit: int = 100,
        offset: int = 0,
    ) -> list[EmailFailureRecord]:
        conditions = []
        params: list[Any] = []

        if email_type:
            conditions.append("email_type = %s")
            params.append(email_type)
        if provider:
            conditions.append("provider = %s")
            params.append(provider)
        if recipient:
            conditions.append("recipient = %s")
            params.append(recipient)
        if unresolved_only:
            conditions.append("resolved_at IS NULL")

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        params.extend([limit, offset])

        rows = await fetch_all(
            f"""
            SELECT {FAILURE_COLUMNS} FROM email_failures
            {where}
            ORDER BY created_at DESC
            LIMIT %s OFFSET %s
            """,
            tuple(params),
        )
        return [EmailFailureRecord.model_validate(row) for row in rows]

    async def stats_rows(self) -> list[dict[str, Any]]:
        """Grouped counts; one row per (type, provider, classification, resolved, retries)."""
        return await fetch_all(
            """
            SELECT
                email_type::text AS email_type,
                provider,
                classification,
                (resolved_at IS NULL) AS unresolved,
                retry_count,
                COUNT(*) AS count
            FROM email_failures
            GROUP BY email_type, provider, classification, (resolved_at IS NULL), retry_count
            """
        )

    async def mark_resolved(self, failure_id: str, now: datetime) -> EmailFailureRecord | None:
        row = await fetch_one(
            f"""
            UPDATE email_failures SET resolved_at = COALESCE(resolved_at, %s)
            WHERE id = %s
            RETURNING {FAILURE_COLUMNS}
            """,
            (now, failure_id),
        )
        return EmailFailureRecord.model_validate(row) if row else None

    async def increment_retry(
        self, failure_id: str, error: str, classification: str
    ) -> EmailFailureRecord | None:
        row = await fetch_one(
            f"""
            UPDATE email_failures
            SET retry_count = retry_count + 1, error_message = %s, classification = %s
            WHERE id = %s
            RETURNING {FAILURE_COLUMNS}
            """,
            (error[:1000], classification, failure_id),
        )
        return EmailFailureRecord.model_validate(row) if row else None

    async def get_open_for_secret(
        self, secret_id: str, email_type: str
    ) -> EmailFailureRecord | None:
        """Latest unresolved entry of a type for a secret."""
        row = await fetch_one(
            f"""
            SELECT {FAILURE_COLUMNS} FROM email_failures
            WHERE secret_id = %s AND email_type = %s AND resolved_at IS NULL
            ORDER BY created_at DESC
            LIMIT 1
            """,
            (secret_id, email_type),
        )
        return EmailFailureRecord.model_validate(row) if row else None


email_failure_repository = PostgresEmailFailureRepository()
