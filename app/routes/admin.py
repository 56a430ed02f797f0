"""
Operator endpoints for the email dead letter queue.

All endpoints require Authorization: Bearer <ADMIN_TOKEN>.
"""

import asyncio

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.auth.verify import admin_auth
from app.db.helpers import DatabaseError
from app.infrastructure.observability.logging import get_logger
from app.models.api.admin_response import (
    EmailFailureItem,
    EmailFailureListResponse,
    EmailFailureStatsResponse,
    RetryResponse,
)
from app.models.domain.errors import (
    DecryptionFailed,
    SecretNotFound,
    SecretStateError,
    ShareAlreadyDeleted,
)
from app.services.disclosure_service import DisclosureDispatcher, disclosure_dispatcher
from app.services.notifications.dead_letter_queue import DeadLetterQueue, dead_letter_queue

logger = get_logger(__name__)

router = APIRouter(
    prefix="/api/admin", tags=["Admin"], dependencies=[Depends(admin_auth)]
)


def get_dead_letter_queue() -> DeadLetterQueue:
    return dead_letter_queue


def get_disclosure_dispatcher() -> DisclosureDispatcher:
    return disclosure_dispatcher


@router.get(
    "/email-failures",
    response_model=EmailFailureListResponse | EmailFailureStatsResponse,
)
async def list_email_failures(
    email_type: str | None = Query(None, alias="emailType"),
    provider: str | None = Query(None),
    recipient: str | None = Query(None),
    unresolved_only: bool = Query(False, alias="unresolvedOnly"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    stats: bool = Query(False),
    dlq: DeadLetterQueue = Depends(get_dead_letter_queue),
):
    """Filtered failure list, or aggregate counts with stats=true."""
    try:
        if stats:
            return EmailFailureStatsResponse(**await dlq.get_stats())

        failures = await dlq.query_failures(
            email_type=email_type,
            provider=provider,
            recipient=recipient,
            unresolved_only=unresolved_only,
            limit=limit,
            offset=offset,
        )
    except DatabaseError as e:
        logger.error("Email failure query failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal server error"
        ) from e

    return EmailFailureListResponse(
        failures=[EmailFailureItem.from_record(failure) for failure in failures],
        total=len(failures),
    )


@router.post("/email-failures/{failure_id}/resolve", response_model=EmailFailureItem)
async def resolve_email_failure(
    failure_id: str,
    dlq: DeadLetterQueue = Depends(get_dead_letter_queue),
):
    record = await dlq.mark_resolved(failure_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Failure not found")
    return EmailFailureItem.from_record(record)


@router.post("/email-failures/{failure_id}/retry", response_model=RetryResponse)
async def retry_email_failure(
    failure_id: str,
    dlq: DeadLetterQueue = Depends(get_dead_letter_queue),
    dispatcher: DisclosureDispatcher = Depends(get_disclosure_dispatcher),
):
    """Redeliver a failed disclosure now, regardless of its retry count."""
    failure = await dlq.get_failure(failure_id)
    if failure is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Failure not found")
    if failure.resolved_at is not None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Failure already resolved")

    try:
        result = await dispatcher.redeliver(failure)
    except SecretNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except (SecretStateError, ShareAlreadyDeleted) as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    except (DecryptionFailed, DatabaseError, asyncio.TimeoutError) as e:
        logger.error("Manual redelivery failed", failure_id=failure_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Redelivery failed"
        ) from e

    logger.info("Manual redelivery attempted", failure_id=failure_id, success=result.ok)
    return RetryResponse(success=result.ok, error=result.error, classification=result.classification)
