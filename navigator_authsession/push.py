"""
PushApprovalGateway — resolves push-delivered step-up approve/deny events.

Payload fields (plain strings or integers, no nested structures):

    mode            required, must be "verify"
    action          required, mapped to approve/deny through ``ActionLabels``
    ticketToken     required for approval, exchanged with the identity service
    notificationId  optional, identifies a displayed prompt to withdraw
    ticketId        optional, defaults to the currently pending ticket

Processing order: withdraw the prompt, validate ``mode``, resolve ``action``,
require ``ticketToken`` for approvals, then resolve the ticket through the
state machine. Two events for the same ticket resolve it at most once; the
loser gets ``PushResult.STALE``.

Security Note:
    Never log ``ticketToken`` values.
"""
import asyncio
import logging
import concurrent.futures
from enum import Enum
from typing import Any, Optional
from collections.abc import Iterable, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import (
    InvalidRecord,
    MalformedExternalEvent,
    RemoteRejection,
    StaleTicket,
    TransientNetworkError,
)
from .identity import IdentityService
from .records import TicketState
from .state import SessionStateMachine

logger = logging.getLogger("navigator.authsession.push")

VERIFY_MODE = "verify"

_PAYLOAD_FIELDS = ("mode", "action", "ticketToken", "notificationId", "ticketId")


class PushResult(str, Enum):
    APPROVED = "approved"
    DENIED = "denied"
    IGNORED = "ignored"
    MALFORMED = "malformed"
    STALE = "stale"
    FAILED = "failed"


class ActionLabels:
    """Caller-supplied mapping from action labels to outcomes.

    Labels are whatever the embedding application puts on its prompt
    buttons (localized or not); matching is exact.
    """

    def __init__(self, approve: Iterable[str], deny: Iterable[str]):
        self._approve = frozenset(approve)
        self._deny = frozenset(deny)
        if not self._approve or not self._deny:
            raise ValueError("approve and deny labels cannot be empty")
        if self._approve & self._deny:
            raise ValueError("a label cannot both approve and deny")

    def resolve(self, label: Optional[str]) -> Optional[TicketState]:
        if label in self._approve:
            return TicketState.APPROVED
        if label in self._deny:
            return TicketState.DENIED
        return None


class PushEvent(BaseModel):
    """A parsed push payload."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    mode: Optional[str] = None
    action: Optional[str] = None
    ticket_token: Optional[str] = Field(default=None, alias="ticketToken")
    notification_id: Optional[str] = Field(default=None, alias="notificationId")
    ticket_id: Optional[str] = Field(default=None, alias="ticketId")

    @classmethod
    def from_payload(cls, payload: Any) -> "PushEvent":
        """Build an event from a raw payload mapping.

        Raises:
            MalformedExternalEvent: If the payload is not a flat mapping of
                string/int values.
        """
        if not isinstance(payload, Mapping):
            raise MalformedExternalEvent("push payload is not a mapping")
        fields: dict[str, Optional[str]] = {}
        for name in _PAYLOAD_FIELDS:
            value = payload.get(name)
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, (str, int)):
                raise MalformedExternalEvent(f"push field {name!r} is not a plain value")
            value = str(value).strip()
            if value:
                fields[name] = value
        try:
            return cls.model_validate(fields)
        except ValidationError as err:
            raise MalformedExternalEvent(str(err)) from err


class PushApprovalGateway:
    """Turns push events into step-up resolutions.

    Args:
        state_machine: session holding the pending ticket.
        identity: exchanges approval tokens for session records.
        labels: action label mapping.
    """

    def __init__(
        self,
        state_machine: SessionStateMachine,
        identity: IdentityService,
        labels: ActionLabels,
    ):
        self._sm = state_machine
        self._identity = identity
        self._labels = labels
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Set the loop used by ``submit_threadsafe``."""
        self._loop = loop

    def submit_threadsafe(self, payload: Any) -> concurrent.futures.Future:
        """Hand a payload received on a foreign thread to the gateway loop."""
        if self._loop is None:
            raise RuntimeError("PushApprovalGateway has no bound event loop")
        return asyncio.run_coroutine_threadsafe(self.handle(payload), self._loop)

    async def handle(self, payload: Any) -> PushResult:
        """Process one push event; never raises for bad input."""
        try:
            event = PushEvent.from_payload(payload)
        except MalformedExternalEvent as err:
            logger.error("Push event ignored, malformed: %s", err)
            return PushResult.MALFORMED

        pending = self._sm.pending_ticket
        ticket_id = event.ticket_id or (pending.id if pending is not None else None)
        if ticket_id is not None or event.notification_id is not None:
            self._sm.notify_prompt_suppress(ticket_id, event.notification_id)

        if event.mode is None:
            logger.error("Push event ignored: mode not available")
            return PushResult.MALFORMED
        if event.mode != VERIFY_MODE:
            logger.error("Push mode %r not supported, event ignored", event.mode)
            return PushResult.IGNORED

        outcome = self._labels.resolve(event.action)
        if outcome is None:
            logger.error("Push event ignored: action %r not recognized", event.action)
            return PushResult.MALFORMED
        if outcome == TicketState.APPROVED and not event.ticket_token:
            logger.error("Push approve without verification token")
            return PushResult.MALFORMED

        if ticket_id is None:
            logger.warning("Push %s without a pending ticket", outcome.value)
            return PushResult.STALE

        if outcome == TicketState.DENIED:
            return await self._deny(ticket_id)
        return await self._approve(ticket_id, event.ticket_token)

    async def _deny(self, ticket_id: str) -> PushResult:
        try:
            await self._sm.resolve_step_up(ticket_id, TicketState.DENIED)
        except StaleTicket as err:
            logger.warning("Push deny: %s", err)
            return PushResult.STALE
        return PushResult.DENIED

    async def _approve(self, ticket_id: str, token: str) -> PushResult:
        pending = self._sm.pending_ticket
        if pending is None or pending.id != ticket_id:
            logger.warning("Push approve: ticket %s is not pending", ticket_id)
            return PushResult.STALE
        try:
            record = await self._identity.exchange_step_up_token(token)
        except TransientNetworkError as err:
            logger.warning("Push approve: token exchange unreachable: %s", err)
            return PushResult.FAILED
        except RemoteRejection as err:
            logger.error("Push approve: token exchange rejected (code=%s)", err.code)
            return PushResult.FAILED
        try:
            await self._sm.resolve_step_up(ticket_id, TicketState.APPROVED, record)
        except StaleTicket as err:
            logger.warning("Push approve: %s", err)
            return PushResult.STALE
        except InvalidRecord as err:
            logger.error("Push approve: %s", err)
            return PushResult.FAILED
        return PushResult.APPROVED
