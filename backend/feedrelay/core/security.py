from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwt

from feedrelay.core.config import settings
from feedrelay.realtime.errors import AuthError

security = HTTPBearer()


class TokenVerifier(Protocol):
    """Verifies a bearer credential and returns its claims (must contain ``sub``)."""

    async def verify(self, token: str) -> dict:
        ...


def create_access_token(user_id, extra_claims: Optional[dict] = None, expires_delta: Optional[timedelta] = None) -> str:
    """Dev/test helper. Production tokens come from the auth service."""
    to_encode = {"sub": str(user_id)}
    if extra_claims:
        to_encode.update(extra_claims)
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(hours=settings.JWT_EXPIRATION_HOURS))
    to_encode["exp"] = expire
    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_token_sync(token: str) -> Optional[dict]:
    """Decode a token, returning None on any failure."""
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        return None


class JWTTokenVerifier:
    """HMAC JWT verification with python-jose."""

    def __init__(self, secret: Optional[str] = None, algorithm: Optional[str] = None):
        self.secret = secret or settings.JWT_SECRET
        self.algorithm = algorithm or settings.JWT_ALGORITHM

    async def verify(self, token: str) -> dict:
        if not token:
            raise AuthError(AuthError.MISSING)
        try:
            payload = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except ExpiredSignatureError:
            raise AuthError(AuthError.EXPIRED)
        except JWTError:
            raise AuthError(AuthError.INVALID)

        if not payload.get("sub"):
            raise AuthError(AuthError.INVALID)
        return payload


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)):
    """FastAPI dependency for the small HTTP surface."""
    payload = decode_token_sync(credentials.credentials)
    if payload is None or payload.get("sub") is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return {"user_id": str(payload["sub"]), "payload": payload}
