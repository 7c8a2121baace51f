"""
Bearer token verification.

Sessions are owned by the external identity provider; this service only
validates the JWT it issued (shared HS256 secret) and extracts the user
reference from the `sub` claim. Expired tokens get a distinct error code so
the client can refresh silently and retry.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwt

from sparkpay.core.config import get_settings
from sparkpay.core.logging import get_logger

logger = get_logger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Mint a token the way the identity provider does (used by tooling and tests)."""
    settings = get_settings()
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def _unauthorized(code: str, error: str, message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"error": error, "code": code, "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def decode_access_token(token: str) -> str:
    """Return the user reference carried by a valid token."""
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except ExpiredSignatureError:
        raise _unauthorized("SESSION_EXPIRED", "Session Expired", "Token has expired")
    except JWTError as e:
        logger.warning("token_invalid", error=str(e))
        raise _unauthorized("INVALID_TOKEN", "Unauthorized", "Invalid token")

    subject = payload.get("sub")
    if not subject:
        raise _unauthorized("INVALID_TOKEN", "Unauthorized", "Token has no subject")
    return str(subject)


async def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> str:
    if credentials is None or not credentials.credentials:
        raise _unauthorized("INVALID_TOKEN", "Unauthorized", "Missing authorization header")
    return decode_access_token(credentials.credentials)
