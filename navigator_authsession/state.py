"""
SessionStateMachine — the single authoritative session state.

Transitions:

    UNAUTHENTICATED / INVALID / ACTIVE --activate(valid record)--> ACTIVE
    ACTIVE --request_step_up(ticket)--> PENDING_STEP_UP
    PENDING_STEP_UP --resolve_step_up(id, APPROVED, record)--> ACTIVE
    PENDING_STEP_UP --resolve_step_up(id, DENIED)--> INVALID
    PENDING_STEP_UP --ticket ttl elapsed--> ACTIVE
    ACTIVE / PENDING_STEP_UP --invalidate(reason)--> INVALID
    any --logout()--> UNAUTHENTICATED

Mutations are serialized through one ``asyncio.Lock``. Readers use the
lock-free ``snapshot``: a single immutable tuple swapped on every commit.

Vault I/O never happens while the lock is held. Each commit bumps the
``generation``; vault operations are stamped with the generation that decided
them and are applied in that order, so an operation superseded by a later
commit (for instance a step-up persist racing an invalidation) is dropped
instead of resurrecting a cleared session.

Once committed, the tail of a transition (vault I/O, final commit and
observer notifications) runs in its own task that the caller awaits through
``asyncio.shield``; cancelling the caller never strands a transition half
way.
"""
import asyncio
import logging
import threading
from typing import (
    Callable,
    Coroutine,
    NamedTuple,
    Optional,
    Protocol,
    runtime_checkable,
)

from .errors import InvalidRecord, InvalidTransition, StaleTicket
from .records import (
    SessionRecord,
    SessionState,
    TicketState,
    VerificationTicket,
    now_ms,
)
from .vault import CredentialVault

logger = logging.getLogger("navigator.authsession.state")

DEFAULT_STEPUP_TTL = 120


@runtime_checkable
class SessionObserver(Protocol):
    """Subscriber interface for session events.

    Notifications are delivered at least once; implementations must treat
    duplicates as no-ops.
    """

    def on_invalidated(self, reason: str) -> None:
        ...

    def on_prompt_suppress_requested(
        self,
        ticket_id: Optional[str],
        notification_id: Optional[str] = None
    ) -> None:
        ...


class SessionSnapshot(NamedTuple):
    state: SessionState
    record: Optional[SessionRecord]
    ticket: Optional[VerificationTicket]
    generation: int


class SessionStateMachine:
    """Owns the session state and its transition rules.

    Args:
        vault: vault cleared on invalidation and written on step-up approval.
        stepup_ttl: default lifetime (seconds) of issued step-up tickets.
        clock: returns the current time as epoch milliseconds.
    """

    def __init__(
        self,
        vault: CredentialVault,
        stepup_ttl: int = DEFAULT_STEPUP_TTL,
        clock: Callable[[], int] = now_ms,
    ):
        self._vault = vault
        self._stepup_ttl = stepup_ttl
        self._clock = clock
        self._lock = asyncio.Lock()
        self._snapshot = SessionSnapshot(SessionState.UNAUTHENTICATED, None, None, 0)
        self._observers: list[SessionObserver] = []
        self._expiry_handle: Optional[asyncio.TimerHandle] = None
        self._background: set[asyncio.Task] = set()
        self._finishing: set[asyncio.Task] = set()
        self._io_lock = threading.Lock()
        self._io_generation = 0

    # ------------------------------------------------------------------
    # Lock-free queries
    # ------------------------------------------------------------------

    @property
    def snapshot(self) -> SessionSnapshot:
        return self._snapshot

    @property
    def state(self) -> SessionState:
        return self._snapshot.state

    @property
    def record(self) -> Optional[SessionRecord]:
        return self._snapshot.record

    @property
    def generation(self) -> int:
        return self._snapshot.generation

    @property
    def pending_ticket(self) -> Optional[VerificationTicket]:
        """The ticket awaiting resolution, if any and not yet claimed."""
        snap = self._snapshot
        if snap.state == SessionState.PENDING_STEP_UP and snap.ticket is not None:
            if snap.ticket.is_pending:
                return snap.ticket
        return None

    def is_valid(self) -> bool:
        """True iff the session is ACTIVE and its record has not expired."""
        snap = self._snapshot
        if snap.state != SessionState.ACTIVE or snap.record is None:
            return False
        return snap.record.is_valid(self._clock())

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def subscribe(self, observer: SessionObserver) -> None:
        if observer not in self._observers:
            self._observers.append(observer)

    def unsubscribe(self, observer: SessionObserver) -> None:
        try:
            self._observers.remove(observer)
        except ValueError:
            pass

    def _notify_invalidated(self, reason: str) -> None:
        for observer in list(self._observers):
            try:
                observer.on_invalidated(reason)
            except Exception as err:  # pylint: disable=W0718
                logger.error(
                    "Observer %s failed on invalidation: %s",
                    type(observer).__name__, err,
                )

    def notify_prompt_suppress(
        self,
        ticket_id: Optional[str],
        notification_id: Optional[str] = None
    ) -> None:
        """Ask observers to withdraw a displayed prompt."""
        for observer in list(self._observers):
            try:
                observer.on_prompt_suppress_requested(ticket_id, notification_id)
            except Exception as err:  # pylint: disable=W0718
                logger.error(
                    "Observer %s failed on prompt suppression: %s",
                    type(observer).__name__, err,
                )

    # ------------------------------------------------------------------
    # Internals (call with self._lock held)
    # ------------------------------------------------------------------

    def _commit(
        self,
        state: SessionState,
        record: Optional[SessionRecord],
        ticket: Optional[VerificationTicket]
    ) -> int:
        previous = self._snapshot
        generation = previous.generation + 1
        self._snapshot = SessionSnapshot(state, record, ticket, generation)
        if previous.state != state:
            logger.info(
                "Session %s -> %s (generation %d)",
                previous.state.value, state.value, generation,
            )
        return generation

    def _cancel_expiry(self) -> None:
        if self._expiry_handle is not None:
            self._expiry_handle.cancel()
            self._expiry_handle = None

    def _arm_expiry(self, ticket: VerificationTicket) -> None:
        self._cancel_expiry()
        delay = max(0.0, (ticket.expires_at - self._clock()) / 1000)
        loop = asyncio.get_running_loop()
        self._expiry_handle = loop.call_later(delay, self._on_expiry_timer, ticket.id)

    def _on_expiry_timer(self, ticket_id: str) -> None:
        self._expiry_handle = None
        task = asyncio.ensure_future(self.expire_ticket(ticket_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _expire_locked(self) -> Optional[VerificationTicket]:
        snap = self._snapshot
        ticket = snap.ticket
        if snap.state != SessionState.PENDING_STEP_UP or ticket is None:
            return None
        self._cancel_expiry()
        self._commit(SessionState.ACTIVE, snap.record, None)
        logger.info("Step-up ticket %s expired", ticket.id)
        return ticket.with_state(TicketState.EXPIRED)

    def _apply_io(self, generation: int, operation: Callable, *args):
        with self._io_lock:
            if generation < self._io_generation:
                logger.debug(
                    "Vault %s from generation %d superseded by %d",
                    getattr(operation, "__name__", "operation"),
                    generation, self._io_generation,
                )
                return None
            self._io_generation = generation
            return operation(*args)

    async def _vault_io(self, generation: int, operation: Callable, *args):
        return await asyncio.to_thread(self._apply_io, generation, operation, *args)

    def _finish(self, coro: Coroutine) -> asyncio.Future:
        """Run the tail of a committed transition to completion.

        The caller awaits a shielded future: cancelling the caller never
        leaves a committed transition without its vault I/O, final commit
        or notifications.
        """
        task = asyncio.ensure_future(coro)
        self._finishing.add(task)
        task.add_done_callback(self._finishing.discard)
        return asyncio.shield(task)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def activate(self, record: Optional[SessionRecord]) -> None:
        """Adopt an already-persisted record as the active session.

        Raises:
            InvalidRecord: If the record is missing or expired.
            InvalidTransition: If a step-up verification is pending.
        """
        if record is None or not record.is_valid(self._clock()):
            logger.warning("Activation rejected: record missing or expired")
            raise InvalidRecord("cannot activate a missing or expired record")
        async with self._lock:
            if self._snapshot.state == SessionState.PENDING_STEP_UP:
                raise InvalidTransition("cannot activate while a step-up is pending")
            self._cancel_expiry()
            self._commit(SessionState.ACTIVE, record, None)

    async def login(self, record: Optional[SessionRecord]) -> bool:
        """Activate a fresh record and persist it through the vault.

        Returns:
            True if the record was persisted; False if the vault refused it
            (the session stays active in memory).

        Raises:
            InvalidRecord: If the record is missing or expired.
            InvalidTransition: If a step-up verification is pending.
        """
        if record is None or not record.is_valid(self._clock()):
            logger.warning("Login rejected: record missing or expired")
            raise InvalidRecord("cannot log in with a missing or expired record")
        async with self._lock:
            if self._snapshot.state == SessionState.PENDING_STEP_UP:
                raise InvalidTransition("cannot log in while a step-up is pending")
            self._cancel_expiry()
            generation = self._commit(SessionState.ACTIVE, record, None)
        persisted = await self._finish(
            self._vault_io(generation, self._vault.persist, record)
        )
        if persisted is False:
            logger.warning("Session active but could not be persisted")
        return bool(persisted)

    async def request_step_up(
        self,
        ticket: Optional[VerificationTicket] = None
    ) -> VerificationTicket:
        """Start a step-up verification; returns the pending ticket.

        Raises:
            InvalidTransition: If the session is not ACTIVE, or another
                ticket is still pending.
            StaleTicket: If the given ticket is not pending or already expired.
        """
        expired = None
        now = self._clock()
        async with self._lock:
            snap = self._snapshot
            if (
                snap.state == SessionState.PENDING_STEP_UP
                and snap.ticket is not None
                and snap.ticket.is_pending
                and snap.ticket.is_expired(now)
            ):
                expired = self._expire_locked()
                snap = self._snapshot
            if snap.state != SessionState.ACTIVE:
                raise InvalidTransition(
                    f"step-up requires an active session, state is {snap.state.value}"
                )
            if ticket is None:
                ticket = VerificationTicket.issue(self._stepup_ttl, now)
            elif not ticket.is_pending or ticket.is_expired(now):
                raise StaleTicket(ticket.id, "not pending")
            self._commit(SessionState.PENDING_STEP_UP, snap.record, ticket)
            self._arm_expiry(ticket)
        if expired is not None:
            self.notify_prompt_suppress(expired.id)
        logger.info("Step-up ticket %s issued (ttl=%ss)", ticket.id, ticket.ttl)
        return ticket

    async def resolve_step_up(
        self,
        ticket_id: Optional[str],
        outcome: TicketState,
        record: Optional[SessionRecord] = None,
    ) -> SessionState:
        """Resolve the pending ticket as APPROVED or DENIED.

        The ticket is claimed under the lock, so a concurrent resolution of
        the same ticket observes ``StaleTicket``. Vault I/O happens after the
        claim, then the transition is committed if nothing superseded it.

        Returns:
            The state after resolution.

        Raises:
            StaleTicket: If the ticket is unknown, claimed, expired or the
                session changed during resolution.
            InvalidRecord: If approving without a valid exchanged record.
        """
        if outcome not in (TicketState.APPROVED, TicketState.DENIED):
            raise ValueError(f"cannot resolve a ticket as {outcome.value}")
        now = self._clock()
        expired = None
        async with self._lock:
            snap = self._snapshot
            ticket = snap.ticket
            if (
                snap.state != SessionState.PENDING_STEP_UP
                or ticket is None
                or ticket.id != ticket_id
            ):
                raise StaleTicket(ticket_id, "unknown")
            if not ticket.is_pending:
                raise StaleTicket(ticket_id, "already resolved")
            if ticket.is_expired(now):
                expired = self._expire_locked()
            else:
                if outcome == TicketState.APPROVED and (
                    record is None or not record.is_valid(now)
                ):
                    raise InvalidRecord("approval carries no valid session record")
                self._cancel_expiry()
                claim = self._commit(
                    SessionState.PENDING_STEP_UP,
                    snap.record,
                    ticket.with_state(outcome),
                )
        if expired is not None:
            self.notify_prompt_suppress(expired.id)
            raise StaleTicket(ticket_id, "expired")
        return await self._finish(
            self._complete_step_up(claim, ticket_id, outcome, record)
        )

    async def _complete_step_up(
        self,
        claim: int,
        ticket_id: str,
        outcome: TicketState,
        record: Optional[SessionRecord],
    ) -> SessionState:
        if outcome == TicketState.APPROVED:
            io_result = await self._vault_io(claim, self._vault.persist, record)
            if io_result is False:
                logger.warning("Step-up session could not be persisted")
        else:
            await self._vault_io(claim, self._vault.clear)

        async with self._lock:
            if self._snapshot.generation != claim:
                superseded = True
            else:
                superseded = False
                if outcome == TicketState.APPROVED:
                    self._commit(SessionState.ACTIVE, record, None)
                else:
                    self._commit(SessionState.INVALID, None, None)
            state = self._snapshot.state
        if superseded:
            logger.warning(
                "Step-up ticket %s resolution superseded by a concurrent transition",
                ticket_id,
            )
            raise StaleTicket(ticket_id, "superseded")
        logger.info("Step-up ticket %s resolved: %s", ticket_id, outcome.value)
        if outcome == TicketState.DENIED:
            self._notify_invalidated("step-up-denied")
        return state

    async def expire_ticket(self, ticket_id: Optional[str] = None) -> bool:
        """Drop the pending ticket if its ttl has elapsed.

        Returns:
            True if a ticket was expired.
        """
        now = self._clock()
        async with self._lock:
            ticket = self.pending_ticket
            if ticket is None or (ticket_id is not None and ticket.id != ticket_id):
                return False
            if not ticket.is_expired(now):
                # timer fired early; re-arm for the remainder
                self._arm_expiry(ticket)
                return False
            expired = self._expire_locked()
        if expired is not None:
            self.notify_prompt_suppress(expired.id)
        return expired is not None

    async def invalidate(
        self,
        reason: str,
        *,
        guard: Optional[Callable[[], bool]] = None,
        record: Optional[SessionRecord] = None,
    ) -> bool:
        """Irreversibly drop trust in the current session.

        Idempotent: once INVALID (or UNAUTHENTICATED) further calls do
        nothing and notify nobody.

        Args:
            reason: reason passed to ``SessionObserver.on_invalidated``.
            guard: evaluated under the lock; the call is discarded if it
                returns False.
            record: discard the call unless this is still the current record.

        Returns:
            True if this call performed the transition.
        """
        async with self._lock:
            snap = self._snapshot
            if snap.state not in (SessionState.ACTIVE, SessionState.PENDING_STEP_UP):
                return False
            if record is not None and snap.record is not record:
                logger.debug("Invalidation for a replaced session discarded")
                return False
            if guard is not None and not guard():
                logger.debug("Invalidation discarded by guard")
                return False
            self._cancel_expiry()
            generation = self._commit(SessionState.INVALID, None, None)
        await self._finish(self._complete_invalidation(generation, snap.ticket, reason))
        return True

    async def _complete_invalidation(
        self,
        generation: int,
        ticket: Optional[VerificationTicket],
        reason: str,
    ) -> None:
        try:
            await self._vault_io(generation, self._vault.clear)
        finally:
            if ticket is not None:
                self.notify_prompt_suppress(ticket.id)
            logger.warning("Session invalidated: %s", reason)
            self._notify_invalidated(reason)

    async def logout(self) -> None:
        """User-initiated sign out; clears the vault without notifying."""
        async with self._lock:
            snap = self._snapshot
            self._cancel_expiry()
            generation = self._commit(SessionState.UNAUTHENTICATED, None, None)
        await self._finish(self._vault_io(generation, self._vault.clear))
        if snap.ticket is not None:
            self.notify_prompt_suppress(snap.ticket.id)
        logger.info("Session logged out")

    async def restore(self) -> Optional[SessionRecord]:
        """Adopt the persisted session at startup.

        The load and, for an expired record, the clear are stamped with the
        generation observed before loading, so a login committed meanwhile
        keeps its freshly persisted record.

        Returns:
            The restored record, or None if nothing valid was adopted.
        """
        async with self._lock:
            snap = self._snapshot
            if snap.state in (SessionState.ACTIVE, SessionState.PENDING_STEP_UP):
                return snap.record
            generation = snap.generation
        record = await self._vault_io(generation, self._vault.load)
        if record is None:
            logger.debug("No persisted session")
            return None
        now = self._clock()
        async with self._lock:
            if self._snapshot.generation != generation:
                logger.info("Persisted session superseded during restore")
                return None
            if record.is_valid(now):
                self._commit(SessionState.ACTIVE, record, None)
                return record
        logger.info("Persisted session expired, clearing")
        await self._finish(self._vault_io(generation, self._vault.clear))
        return None

    async def close(self) -> None:
        """Let committed transitions finish, then cancel timers and tasks."""
        if self._finishing:
            await asyncio.gather(*list(self._finishing), return_exceptions=True)
        self._cancel_expiry()
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
