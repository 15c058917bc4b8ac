"""
Session records — immutable values shared by every lifecycle component.

``SessionRecord`` and ``VerificationTicket`` are frozen pydantic models:
updates build a new value (``model_copy``) instead of mutating in place, so
a snapshot handed to a reader never changes underneath it.
"""
import time
import uuid
from enum import Enum
from typing import Any, Optional
from collections.abc import Mapping

from pydantic import BaseModel, ConfigDict, Field


def now_ms() -> int:
    """Current time as epoch milliseconds."""
    return int(time.time() * 1000)


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    ACTIVE = "active"
    PENDING_STEP_UP = "pending_step_up"
    INVALID = "invalid"


class TicketState(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    EXPIRED = "expired"


class SessionRecord(BaseModel):
    """Session credential used to authenticate subsequent requests.

    ``expiration_time`` is an absolute epoch in milliseconds; ``0`` means the
    session never expires.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    token: str = Field(min_length=1, repr=False)
    secret: str = Field(min_length=1, repr=False)
    expiration_time: int = Field(default=0, ge=0)
    ucid: Optional[str] = None
    gmid: Optional[str] = None

    def is_valid(self, now: Optional[int] = None) -> bool:
        """True iff the record never expires or expires in the future."""
        if self.expiration_time == 0:
            return True
        if now is None:
            now = now_ms()
        return self.expiration_time > now

    def to_canonical(self) -> dict[str, Any]:
        """Return the canonical field set persisted by the vault."""
        return {
            "token": self.token,
            "secret": self.secret,
            "expiration_time": self.expiration_time,
            "ucid": self.ucid,
            "gmid": self.gmid,
        }

    @classmethod
    def from_response(
        cls,
        payload: Mapping[str, Any],
        now: Optional[int] = None
    ) -> Optional["SessionRecord"]:
        """Build a record from an identity-service response.

        Accepts the session fields either nested under ``sessionInfo`` or at
        the top level of the payload. ``expires_in`` (seconds, relative) is
        converted into an absolute expiration; ``0`` keeps the session open.

        Returns:
            The record, or None when the payload carries no session.
        """
        info = payload.get("sessionInfo")
        if not isinstance(info, Mapping):
            info = payload
        token = info.get("sessionToken")
        secret = info.get("sessionSecret")
        if not token or not secret:
            return None
        if "expirationTime" in info:
            expiration = int(info["expirationTime"] or 0)
        else:
            expires_in = int(info.get("expires_in") or 0)
            if expires_in > 0:
                expiration = (now if now is not None else now_ms()) + expires_in * 1000
            else:
                expiration = 0
        return cls(
            token=token,
            secret=secret,
            expiration_time=max(expiration, 0),
            ucid=payload.get("UCID") or info.get("ucid"),
            gmid=payload.get("GMID") or info.get("gmid"),
        )


class VerificationTicket(BaseModel):
    """Ephemeral id correlating a step-up request with its resolution."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    issued_at: int
    ttl: int = Field(gt=0)
    state: TicketState = TicketState.PENDING

    @classmethod
    def issue(cls, ttl: int, now: Optional[int] = None) -> "VerificationTicket":
        return cls(
            id=uuid.uuid4().hex,
            issued_at=now if now is not None else now_ms(),
            ttl=ttl,
        )

    @property
    def expires_at(self) -> int:
        return self.issued_at + self.ttl * 1000

    @property
    def is_pending(self) -> bool:
        return self.state == TicketState.PENDING

    def is_expired(self, now: Optional[int] = None) -> bool:
        if now is None:
            now = now_ms()
        return now >= self.expires_at

    def with_state(self, state: TicketState) -> "VerificationTicket":
        return self.model_copy(update={"state": state})
