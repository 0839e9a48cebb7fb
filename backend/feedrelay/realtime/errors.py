"""
Error taxonomy for the realtime subsystem.

None of these are fatal to the process. Socket handlers catch them, log
them and answer the sender with ``error.to_ack()``.
"""
from typing import Optional


class RealtimeError(Exception):
    code = "realtime_error"

    def __init__(self, message: str = "", *, code: Optional[str] = None):
        super().__init__(message or self.code)
        if code:
            self.code = code
        self.message = message or self.code

    def to_ack(self) -> dict:
        return {"ok": False, "error": self.code, "message": self.message}


class AuthError(RealtimeError):
    """Handshake credential missing, invalid, expired or not verifiable in time."""
    code = "auth_failed"

    MISSING = "missing_credential"
    INVALID = "invalid_credential"
    EXPIRED = "credential_expired"
    TIMEOUT = "auth_timeout"

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class RouteUnreachable(RealtimeError):
    """Target user has no live connection."""
    code = "unreachable"

    def __init__(self, user_id: str):
        super().__init__(f"user {user_id} is not connected")
        self.user_id = user_id


class InvalidTransition(RealtimeError):
    """Signaling message that does not fit the current call state."""
    code = "invalid_transition"


class ConflictingCall(RealtimeError):
    code = "call_in_progress"

    def __init__(self, caller_id: str, callee_id: str):
        super().__init__(f"a call between {caller_id} and {callee_id} is already in progress")
        self.caller_id = caller_id
        self.callee_id = callee_id


class InvalidPayload(RealtimeError):
    code = "invalid_payload"
