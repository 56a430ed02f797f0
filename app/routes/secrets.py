"""
Owner-facing secret endpoints and server share retrieval.
"""

import asyncio

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.auth.verify import auth_dependency, optional_auth_dependency
from app.db.helpers import DatabaseError
from app.infrastructure.observability.logging import get_logger
from app.models.api.secret_response import (
    CheckInResponse,
    ServerShareResponse,
    TogglePauseResponse,
)
from app.models.domain.errors import (
    AuthenticationFailed,
    SecretNotFound,
    SecretStateError,
    ShareAccessDenied,
    ShareAlreadyDeleted,
)
from app.services.checkin_service import CheckInTracker, checkin_tracker
from app.services.share_access_service import ServerShareAccess, server_share_access

logger = get_logger(__name__)

router = APIRouter(prefix="/api/secrets", tags=["Secrets"])

SHARE_DELETED_DETAIL = (
    "This secret has been disabled. The server share has been deleted and is no longer available."
)


def get_checkin_tracker() -> CheckInTracker:
    return checkin_tracker


def get_share_access() -> ServerShareAccess:
    return server_share_access


def _user_id(claims: dict) -> str:
    user_id = claims.get("sub")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User ID not found in claims",
        )
    return user_id


def _internal_error(action: str, e: Exception) -> HTTPException:
    logger.error(f"{action} failed", error=str(e) or type(e).__name__)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal server error"
    )


@router.post("/{secret_id}/check-in", response_model=CheckInResponse)
async def owner_check_in(
    secret_id: str,
    claims: dict = Depends(auth_dependency),
    tracker: CheckInTracker = Depends(get_checkin_tracker),
):
    """Reset the timer of one of the caller's secrets."""
    try:
        result = await tracker.check_in_owner(secret_id, _user_id(claims))
    except SecretNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except SecretStateError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    except (DatabaseError, asyncio.TimeoutError) as e:
        raise _internal_error("Owner check-in", e) from e

    return CheckInResponse(
        secret_title=result.secret_title,
        next_check_in=result.next_check_in,
        message=f'Your secret "{result.secret_title}" timer has been reset.',
    )


@router.post("/{secret_id}/toggle-pause", response_model=TogglePauseResponse)
async def toggle_pause(
    secret_id: str,
    claims: dict = Depends(auth_dependency),
    tracker: CheckInTracker = Depends(get_checkin_tracker),
):
    """Pause an active secret or resume a paused one with a fresh window."""
    try:
        secret = await tracker.toggle_pause(secret_id, _user_id(claims))
    except SecretNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except SecretStateError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    except (DatabaseError, asyncio.TimeoutError) as e:
        raise _internal_error("Toggle pause", e) from e

    return TogglePauseResponse(status=secret.status, next_check_in=secret.next_check_in)


@router.get("/{secret_id}/server-share", response_model=ServerShareResponse)
async def get_server_share(
    secret_id: str,
    token: str | None = Query(None),
    claims: dict | None = Depends(optional_auth_dependency),
    access: ServerShareAccess = Depends(get_share_access),
):
    """
    Decrypted server share, for the owner or a check-in token holder.
    """
    if not token and claims is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Access token is required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        if token:
            share = await access.reveal_with_token(secret_id, token)
        else:
            share = await access.reveal_for_owner(secret_id, _user_id(claims))
    except ShareAccessDenied as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e)) from e
    except SecretNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except ShareAlreadyDeleted as e:
        raise HTTPException(status_code=status.HTTP_410_GONE, detail=SHARE_DELETED_DETAIL) from e
    except AuthenticationFailed as e:
        logger.critical("Stored server share failed authentication", secret_id=secret_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to decrypt server share",
        ) from e
    except (DatabaseError, asyncio.TimeoutError) as e:
        raise _internal_error("Server share retrieval", e) from e

    return ServerShareResponse(server_share=share)
