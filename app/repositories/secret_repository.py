"""
Persistence for secrets, reminder jobs and check-in tokens.

SecretRepository is the storage contract the engine depends on;
PostgresSecretRepository implements it with psycopg. Every status or
deadline mutation is a guarded conditional UPDATE whose affected-row count
tells the caller whether it won.
"""

from datetime import datetime
from typing import Protocol

from app.db.helpers import execute_query, fetch_all, fetch_one
from app.db.pool import db_pool
from app.models.domain.errors import SecretStateError
from app.models.domain.secret_domain import (
    CheckInToken,
    DueReminder,
    ReminderJob,
    Secret,
)

_SECRET_FIELDS = (
    ("s.id::text", "id"),
    ("s.user_id", "user_id"),
    ("s.title", "title"),
    ("s.recipient_name", "recipient_name"),
    ("s.recipient_email", "recipient_email"),
    ("ucm.email", "owner_email"),
    ("s.check_in_days", "check_in_days"),
    ("s.status::text", "status"),
    ("s.last_check_in", "last_check_in"),
    ("s.next_check_in", "next_check_in"),
    ("s.triggered_at", "triggered_at"),
    ("s.disclosure_sent_at", "disclosure_sent_at"),
    ("s.disclosure_attempts", "disclosure_attempts"),
    ("s.disclosure_lease_until", "disclosure_lease_until"),
    ("s.disclosure_retry_at", "disclosure_retry_at"),
    ("s.disclosure_failed_at", "disclosure_failed_at"),
    ("s.server_share", "server_share"),
    ("s.iv", "iv"),
    ("s.auth_tag", "auth_tag"),
    ("s.sss_threshold", "sss_threshold"),
    ("s.sss_shares_total", "sss_shares_total"),
    ("s.created_at", "created_at"),
    ("s.updated_at", "updated_at"),
)


def _secret_columns(prefix: str = "") -> str:
    return ",\n    ".join(f"{expr} AS {prefix}{name}" for expr, name in _SECRET_FIELDS)


SECRET_COLUMNS = _secret_columns()
SECRET_PREFIX = "secret__"

SECRET_FROM = """
    FROM secrets s
    LEFT JOIN user_contact_methods ucm ON ucm.user_id = s.user_id
"""

REMINDER_COLUMNS = """
    rj.id::text AS id,
    rj.secret_id::text AS secret_id,
    rj.reminder_type::text AS reminder_type,
    rj.scheduling_period,
    rj.scheduled_for,
    rj.sent_at,
    rj.failed_at,
    rj.attempt_count,
    rj.last_error,
    rj.created_at
"""

TOKEN_COLUMNS = """
    id::text AS id,
    token,
    secret_id::text AS secret_id,
    expires_at,
    used_at,
    created_at
"""


class SecretRepository(Protocol):
    """Storage contract for the check-in, scheduling and disclosure engine."""

    async def get_secret(self, secret_id: str) -> Secret | None: ...

    async def get_token(self, token: str) -> CheckInToken | None: ...

    async def redeem_token(
        self, token_id: str, secret_id: str, user_id: str, now: datetime, next_check_in: datetime
    ) -> bool: ...

    async def record_owner_check_in(
        self, secret_id: str, user_id: str, now: datetime, next_check_in: datetime
    ) -> bool: ...

    async def mark_token_used(self, token_id: str, now: datetime) -> bool: ...

    async def set_paused(self, secret_id: str, now: datetime) -> bool: ...

    async def resume(
        self, secret_id: str, now: datetime, next_check_in: datetime
    ) -> bool: ...

    async def mark_triggered(
        self, secret_id: str, now: datetime, lease_until: datetime
    ) -> bool: ...

    async def get_pending_disclosures(self, now: datetime, limit: int) -> list[Secret]: ...

    async def claim_disclosure(
        self, secret_id: str, now: datetime, lease_until: datetime
    ) -> bool: ...

    async def record_disclosure_sent(self, secret_id: str, now: datetime) -> bool: ...

    async def record_disclosure_failure(
        self,
        secret_id: str,
        retry_at: datetime | None,
        failed_at: datetime | None,
    ) -> int: ...

    async def upsert_reminder_jobs(self, jobs: list[ReminderJob]) -> int: ...

    async def get_due_reminders(self, now: datetime, limit: int) -> list[DueReminder]: ...

    async def mark_reminder_sent(self, job_id: str, now: datetime) -> bool: ...

    async def record_reminder_failure(
        self, job_id: str, error: str, failed_at: datetime | None
    ) -> int: ...

    async def get_overdue_secrets(self, now: datetime, limit: int) -> list[Secret]: ...


class PostgresSecretRepository:
    """psycopg implementation of SecretRepository."""

    async def get_secret(self, secret_id: str) -> Secret | None:
        row = await fetch_one(
            f"SELECT {SECRET_COLUMNS} {SECRET_FROM} WHERE s.id = %s",
            (secret_id,),
        )
        return Secret.model_validate(row) if row else None

    async def get_token(self, token: str) -> CheckInToken | None:
        row = await fetch_one(
            f"SELECT {TOKEN_COLUMNS} FROM check_in_tokens WHERE token = %s",
            (token,),
        )
        return CheckInToken.model_validate(row) if row else None

    async def redeem_token(
        self, token_id: str, secret_id: str, user_id: str, now: datetime, next_check_in: datetime
    ) -> bool:
        """
        Consume a token and advance the secret's deadline in one transaction.

        Returns:
            bool: False if another redemption consumed the token first

        Raises:
            SecretStateError: If the secret stopped being active; the token
                stamp is rolled back with the transaction
        """
        async with db_pool.transaction() as conn:
            consumed = await execute_query(
                """
                UPDATE check_in_tokens
                SET used_at = %s
                WHERE id = %s AND used_at IS NULL
                """,
                (now, token_id),
                connection=conn,
            )
            if consumed == 0:
                return False

            if not await self._advance_deadline(conn, secret_id, user_id, now, next_check_in):
                raise SecretStateError("Secret is no longer active", secret_id=secret_id)

        return True

    async def record_owner_check_in(
        self, secret_id: str, user_id: str, now: datetime, next_check_in: datetime
    ) -> bool:
        async with db_pool.transaction() as conn:
            return await self._advance_deadline(conn, secret_id, user_id, now, next_check_in)

    async def _advance_deadline(
        self, conn, secret_id: str, user_id: str, now: datetime, next_check_in: datetime
    ) -> bool:
        updated = await execute_query(
            """
            UPDATE secrets
            SET last_check_in = %s, next_check_in = %s, updated_at = %s
            WHERE id = %s AND status = 'active'
            """,
            (now, next_check_in, now, secret_id),
            connection=conn,
        )
        if updated:
            await execute_query(
                """
                INSERT INTO checkin_history (secret_id, user_id, checked_in_at, next_check_in)
                VALUES (%s, %s, %s, %s)
                """,
                (secret_id, user_id, now, next_check_in),
                connection=conn,
            )
        return updated > 0

    async def mark_token_used(self, token_id: str, now: datetime) -> bool:
        affected = await execute_query(
            "UPDATE check_in_tokens SET used_at = %s WHERE id = %s AND used_at IS NULL",
            (now, token_id),
        )
        return affected > 0

    async def set_paused(self, secret_id: str, now: datetime) -> bool:
        affected = await execute_query(
            """
            UPDATE secrets SET status = 'paused', updated_at = %s
            WHERE id = %s AND status = 'active'
            """,
            (now, secret_id),
        )
        return affected > 0

    async def resume(self, secret_id: str, now: datetime, next_check_in: datetime) -> bool:
        affected = await execute_query(
            """
            UPDATE secrets
            SET status = 'active', last_check_in = %s, next_check_in = %s, updated_at = %s
            WHERE id = %s AND status = 'paused'
            """,
            (now, next_check_in, now, secret_id),
        )
        return affected > 0

    async def mark_triggered(
        self, secret_id: str, now: datetime, lease_until: datetime
    ) -> bool:
        """
        Flip an active secret to triggered and lease its disclosure to the caller.

        The same UPDATE leaves disclosure_sent_at NULL, so the owed email is
        on record from the moment of the flip. If the caller never finishes,
        the pending scan takes the disclosure over once the lease lapses.

        Returns:
            bool: True only for the single caller whose UPDATE matched the row
        """
        affected = await execute_query(
            """
            UPDATE secrets
            SET status = 'triggered',
                triggered_at = %s,
                disclosure_sent_at = NULL,
                disclosure_lease_until = %s,
                updated_at = %s
            WHERE id = %s AND status = 'active'
            """,
            (now, lease_until, now, secret_id),
        )
        return affected == 1

    async def get_pending_disclosures(self, now: datetime, limit: int) -> list[Secret]:
        """Triggered secrets still owed a disclosure whose lease and backoff have lapsed."""
        rows = await fetch_all(
            f"""
            SELECT {SECRET_COLUMNS} {SECRET_FROM}
            WHERE s.status = 'triggered'
              AND s.disclosure_sent_at IS NULL
              AND s.disclosure_failed_at IS NULL
              AND s.server_share IS NOT NULL
              AND (s.disclosure_lease_until IS NULL OR s.disclosure_lease_until <= %s)
              AND (s.disclosure_retry_at IS NULL OR s.disclosure_retry_at <= %s)
            ORDER BY s.triggered_at ASC
            LIMIT %s
            """,
            (now, now, limit),
        )
        return [Secret.model_validate(row) for row in rows]

    async def claim_disclosure(
        self, secret_id: str, now: datetime, lease_until: datetime
    ) -> bool:
        """
        Take the disclosure lease of a triggered, undelivered secret.

        Ignores the retry backoff and a given-up state so an operator can
        force a resend; only a live lease held by another sender blocks it.
        """
        affected = await execute_query(
            """
            UPDATE secrets
            SET disclosure_lease_until = %s, updated_at = %s
            WHERE id = %s
              AND status = 'triggered'
              AND disclosure_sent_at IS NULL
              AND (disclosure_lease_until IS NULL OR disclosure_lease_until <= %s)
            """,
            (lease_until, now, secret_id, now),
        )
        return affected == 1

    async def record_disclosure_sent(self, secret_id: str, now: datetime) -> bool:
        affected = await execute_query(
            """
            UPDATE secrets
            SET disclosure_sent_at = %s,
                disclosure_attempts = disclosure_attempts + 1,
                disclosure_lease_until = NULL,
                disclosure_retry_at = NULL,
                updated_at = %s
            WHERE id = %s AND disclosure_sent_at IS NULL
            """,
            (now, now, secret_id),
        )
        return affected > 0

    async def record_disclosure_failure(
        self,
        secret_id: str,
        retry_at: datetime | None,
        failed_at: datetime | None,
    ) -> int:
        """
        Count a failed disclosure attempt and release the lease.

        retry_at holds the next automatic attempt back; failed_at retires the
        disclosure from the pending scan.

        Returns:
            int: attempt count after this failure
        """
        row = await fetch_one(
            """
            UPDATE secrets
            SET disclosure_attempts = disclosure_attempts + 1,
                disclosure_lease_until = NULL,
                disclosure_retry_at = %s,
                disclosure_failed_at = COALESCE(%s, disclosure_failed_at),
                updated_at = NOW()
            WHERE id = %s AND disclosure_sent_at IS NULL
            RETURNING disclosure_attempts
            """,
            (retry_at, failed_at, secret_id),
        )
        return row["disclosure_attempts"] if row else 0

    async def upsert_reminder_jobs(self, jobs: list[ReminderJob]) -> int:
        """Insert jobs, skipping any (secret, type, period) that already exists."""
        if not jobs:
            return 0

        created = 0
        async with db_pool.transaction() as conn:
            for job in jobs:
                created += await execute_query(
                    """
                    INSERT INTO reminder_jobs (
                        secret_id, reminder_type, scheduling_period, scheduled_for
                    ) VALUES (%s, %s, %s, %s)
                    ON CONFLICT (secret_id, reminder_type, scheduling_period) DO NOTHING
                    """,
                    (job.secret_id, job.reminder_type.value, job.scheduling_period, job.scheduled_for),
                    connection=conn,
                )
        return created

    async def get_due_reminders(self, now: datetime, limit: int) -> list[DueReminder]:
        """
        Unsent jobs of the current period of active secrets, oldest first.

        Jobs from a superseded period never match because their
        scheduling_period no longer equals the secret's deadline.
        """
        rows = await fetch_all(
            f"""
            SELECT {REMINDER_COLUMNS}, {_secret_columns(SECRET_PREFIX)}
            FROM reminder_jobs rj
            JOIN secrets s ON s.id = rj.secret_id
            LEFT JOIN user_contact_methods ucm ON ucm.user_id = s.user_id
            WHERE rj.scheduled_for <= %s
              AND rj.sent_at IS NULL
              AND rj.failed_at IS NULL
              AND s.status = 'active'
              AND rj.scheduling_period = s.next_check_in
            ORDER BY rj.scheduled_for ASC
            LIMIT %s
            """,
            (now, limit),
        )
        return [_due_reminder_from_row(row) for row in rows]

    async def mark_reminder_sent(self, job_id: str, now: datetime) -> bool:
        affected = await execute_query(
            """
            UPDATE reminder_jobs
            SET sent_at = %s, attempt_count = attempt_count + 1, last_error = NULL, updated_at = %s
            WHERE id = %s AND sent_at IS NULL
            """,
            (now, now, job_id),
        )
        return affected > 0

    async def record_reminder_failure(
        self, job_id: str, error: str, failed_at: datetime | None
    ) -> int:
        """
        Count a failed attempt; failed_at retires the job from future scans.

        Returns:
            int: attempt count after this failure
        """
        row = await fetch_one(
            """
            UPDATE reminder_jobs
            SET attempt_count = attempt_count + 1,
                last_error = %s,
                failed_at = COALESCE(%s, failed_at),
                updated_at = NOW()
            WHERE id = %s AND sent_at IS NULL
            RETURNING attempt_count
            """,
            (error[:500], failed_at, job_id),
        )
        return row["attempt_count"] if row else 0

    async def get_overdue_secrets(self, now: datetime, limit: int) -> list[Secret]:
        rows = await fetch_all(
            f"""
            SELECT {SECRET_COLUMNS} {SECRET_FROM}
            WHERE s.status = 'active'
              AND s.next_check_in <= %s
              AND s.server_share IS NOT NULL
            ORDER BY s.next_check_in ASC
            LIMIT %s
            """,
            (now, limit),
        )
        return [Secret.model_validate(row) for row in rows]


def _due_reminder_from_row(row: dict) -> DueReminder:
    secret_fields = {
        key.removeprefix(SECRET_PREFIX): value
        for key, value in row.items()
        if key.startswith(SECRET_PREFIX)
    }
    job_fields = {key: value for key, value in row.items() if not key.startswith(SECRET_PREFIX)}
    return DueReminder(
        job=ReminderJob.model_validate(job_fields),
        secret=Secret.model_validate(secret_fields),
    )


secret_repository = PostgresSecretRepository()
