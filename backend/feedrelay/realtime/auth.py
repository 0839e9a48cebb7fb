"""
Handshake authentication for socket connections.

The credential must arrive with the connection itself, either in the
Socket.IO ``auth`` payload (``{"token": ...}``) or as an
``Authorization: Bearer`` header. A token sent later as a regular event is
never looked at.
"""
import asyncio
import logging
from typing import Optional, Tuple

from feedrelay.core.security import TokenVerifier
from feedrelay.realtime.errors import AuthError, InvalidPayload
from feedrelay.realtime.rooms import normalize_user_id

logger = logging.getLogger(__name__)


def extract_token(auth: Optional[dict], environ: Optional[dict]) -> Optional[str]:
    """Auth payload token takes precedence over the Authorization header."""
    if isinstance(auth, dict):
        token = auth.get("token")
        if isinstance(token, str) and token.strip():
            return token.strip()

    header = (environ or {}).get("HTTP_AUTHORIZATION", "")
    if header.lower().startswith("bearer "):
        token = header[7:].strip()
        if token:
            return token
    return None


async def authenticate_socket(
    auth: Optional[dict],
    environ: Optional[dict],
    verifier: TokenVerifier,
    timeout: float,
) -> Tuple[str, dict]:
    """
    Verify the handshake credential.

    Returns (user_id, claims). Raises AuthError with the reason otherwise.
    """
    token = extract_token(auth, environ)
    if token is None:
        raise AuthError(AuthError.MISSING)

    try:
        claims = await asyncio.wait_for(verifier.verify(token), timeout=timeout)
    except asyncio.TimeoutError:
        raise AuthError(AuthError.TIMEOUT)
    except AuthError:
        raise
    except Exception:
        # an unreachable verification service must not let the transport through
        logger.exception("Token verification failed")
        raise AuthError(AuthError.INVALID)

    try:
        user_id = normalize_user_id(claims.get("sub"))
    except InvalidPayload:
        raise AuthError(AuthError.INVALID)
    return user_id, claims
