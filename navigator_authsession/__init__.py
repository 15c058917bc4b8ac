"""Navigator AuthSession.

Authenticated-session lifecycle: encrypted persistence of session
credentials, periodic re-validation against the identity service and
push-driven step-up approval, reconciled into one session state.
"""
from .version import __version__
from .conf import SessionConfig, generate_master_key
from .errors import (
    AuthSessionError,
    TransientNetworkError,
    RemoteRejection,
    CryptoFailure,
    KeyUnavailable,
    MalformedExternalEvent,
    StaleTicket,
    InvalidRecord,
    InvalidTransition,
)
from .records import SessionRecord, SessionState, TicketState, VerificationTicket
from .vault import CredentialVault
from .state import SessionStateMachine, SessionObserver
from .identity import IdentityService, HTTPIdentityService
from .verifier import Verifier
from .push import PushApprovalGateway, PushEvent, PushResult, ActionLabels
from .manager import SessionManager

__all__ = [
    "__version__",
    "SessionConfig",
    "generate_master_key",
    "AuthSessionError",
    "TransientNetworkError",
    "RemoteRejection",
    "CryptoFailure",
    "KeyUnavailable",
    "MalformedExternalEvent",
    "StaleTicket",
    "InvalidRecord",
    "InvalidTransition",
    "SessionRecord",
    "SessionState",
    "TicketState",
    "VerificationTicket",
    "CredentialVault",
    "SessionStateMachine",
    "SessionObserver",
    "IdentityService",
    "HTTPIdentityService",
    "Verifier",
    "PushApprovalGateway",
    "PushEvent",
    "PushResult",
    "ActionLabels",
    "SessionManager",
]
