"""
AuthSession Errors — failure taxonomy of the session lifecycle.

None of these conditions is fatal to the process: every component catches
what it can degrade from and turns it into a well-defined session state
(``UNAUTHENTICATED`` or ``INVALID``) or a logged no-op.
"""
from typing import Optional


class AuthSessionError(Exception):
    """Base class for all session lifecycle errors."""


class TransientNetworkError(AuthSessionError):
    """The identity service could not be reached.

    Ignored by the Verifier; retryable for direct callers.
    """


class RemoteRejection(AuthSessionError):
    """The identity service answered and rejected the request."""

    def __init__(self, code: int, message: Optional[str] = None):
        self.code = code
        self.message = message or f"remote rejected with code {code}"
        super().__init__(self.message)


class CryptoFailure(AuthSessionError):
    """Encryption or decryption of the stored session failed."""


class KeyUnavailable(CryptoFailure):
    """A key provider cannot supply the requested key."""


class MalformedExternalEvent(AuthSessionError):
    """A push payload is missing required fields or carries invalid values."""


class StaleTicket(AuthSessionError):
    """Resolution attempted against an unknown, expired or resolved ticket."""

    def __init__(self, ticket_id: Optional[str], reason: str = "unknown"):
        self.ticket_id = ticket_id
        self.reason = reason
        super().__init__(f"stale ticket {ticket_id!r}: {reason}")


class InvalidRecord(AuthSessionError):
    """Activation attempted with a missing or already-expired record."""


class InvalidTransition(AuthSessionError):
    """The requested event is not allowed from the current session state."""
