"""
Token check-in endpoint linked from check-in emails.
"""

import asyncio

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.db.helpers import DatabaseError
from app.infrastructure.observability.logging import get_logger
from app.models.api.secret_response import CheckInResponse
from app.models.domain.errors import CheckInError, SecretNotFound, SecretStateError
from app.services.checkin_service import CheckInTracker, checkin_tracker

logger = get_logger(__name__)

router = APIRouter(prefix="/api", tags=["Check-in"])


def get_checkin_tracker() -> CheckInTracker:
    return checkin_tracker


@router.post("/check-in", response_model=CheckInResponse)
async def check_in(
    token: str | None = Query(None),
    tracker: CheckInTracker = Depends(get_checkin_tracker),
):
    """Redeem a single-use check-in token and reset the secret's timer."""
    if not token:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing token")

    try:
        result = await tracker.redeem(token)
    except CheckInError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    except SecretNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except SecretStateError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    except (DatabaseError, asyncio.TimeoutError) as e:
        logger.error("Check-in failed", error=str(e) or type(e).__name__)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal server error"
        ) from e

    return CheckInResponse(
        secret_title=result.secret_title,
        next_check_in=result.next_check_in,
        message=f'Your secret "{result.secret_title}" timer has been reset.',
    )
