"""
verify.py
---------
Purpose:
    Request authentication for owner, cron and admin callers.

Notes:
    - Owner sessions are HS256 JWTs issued by the external auth service.
    - Cron and admin callers present static bearer secrets, compared in
      constant time.
    - Missing credentials are a 401, never a 403.
"""

import hmac

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

_security = HTTPBearer(auto_error=False)


def _unauthorized(detail: str = "Unauthorized") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def verify_jwt(token: str) -> dict:
    if not settings.JWT_SECRET:
        logger.error("JWT_SECRET not configured; rejecting owner request")
        raise _unauthorized("Authentication not configured")

    try:
        return jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=["HS256"],
            audience=settings.JWT_AUDIENCE,
            options={"verify_exp": True, "require": ["sub", "exp"]},
        )
    except jwt.PyJWTError as e:
        raise _unauthorized(f"Invalid authentication token: {e}") from e


def auth_dependency(
    credentials: HTTPAuthorizationCredentials | None = Depends(_security),
) -> dict:
    if credentials is None:
        raise _unauthorized()
    return verify_jwt(credentials.credentials)


def optional_auth_dependency(
    credentials: HTTPAuthorizationCredentials | None = Depends(_security),
) -> dict | None:
    """Claims when a bearer token is present, None otherwise."""
    if credentials is None:
        return None
    return verify_jwt(credentials.credentials)


def _matches_secret(
    credentials: HTTPAuthorizationCredentials | None, expected: str | None
) -> bool:
    if credentials is None or not expected:
        return False
    return hmac.compare_digest(
        credentials.credentials.encode("utf-8"), expected.encode("utf-8")
    )


def cron_auth(credentials: HTTPAuthorizationCredentials | None = Depends(_security)) -> None:
    if not _matches_secret(credentials, settings.CRON_SECRET):
        logger.warning("Rejected cron request", has_credentials=credentials is not None)
        raise _unauthorized()


def admin_auth(credentials: HTTPAuthorizationCredentials | None = Depends(_security)) -> None:
    if not _matches_secret(credentials, settings.ADMIN_TOKEN):
        logger.warning("Rejected admin request", has_credentials=credentials is not None)
        raise _unauthorized()
