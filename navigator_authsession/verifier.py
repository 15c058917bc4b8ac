"""
Verifier — periodic re-validation of the session against the identity service.

Scheduling is restart-aware: the timestamp of the last successful check is
persisted, and the first tick after a (re)start waits only for what is left
of the interval, so two effective checks are never closer than the interval
even across process restarts.

Tick outcomes:
- success: record the check timestamp, no transition;
- ``TransientNetworkError``: ignored, connectivity loss never logs out;
- ``RemoteRejection``: invalidate the session and stop.

``stop()`` may be called from any thread. Every scheduling epoch carries a
number; a tick only commits while its epoch is current, and that comparison
runs under the state machine lock, so nothing started before ``stop()``
can transition the session afterwards.
"""
import asyncio
import logging
import threading
from typing import Callable, Optional

from .errors import RemoteRejection, TransientNetworkError
from .identity import IdentityService
from .records import now_ms
from .state import SessionStateMachine
from .vault.storage import PersistentKeyValueStore

logger = logging.getLogger("navigator.authsession.verifier")

LAST_CHECK_KEY = "verifier.lastCheck"
INVALIDATION_REASON = "remote-rejected"


class Verifier:
    """Background session verification.

    Args:
        identity: service whose ``verify_session`` is called each tick.
        state_machine: the session to invalidate on rejection.
        store: persists the last successful check across restarts.
        interval: minutes between checks; ``0`` disables the verifier.
        clock: returns the current time as epoch milliseconds.
    """

    def __init__(
        self,
        identity: IdentityService,
        state_machine: SessionStateMachine,
        store: PersistentKeyValueStore,
        interval: float = 0,
        clock: Callable[[], int] = now_ms,
    ):
        if interval < 0:
            raise ValueError("verification interval cannot be negative")
        self._identity = identity
        self._sm = state_machine
        self._store = store
        self._interval_ms = int(interval * 60_000)
        self._clock = clock
        self._lock = threading.Lock()
        self._epoch = 0
        self._task: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def enabled(self) -> bool:
        return self._interval_ms > 0

    @property
    def interval_seconds(self) -> float:
        return self._interval_ms / 1000

    @property
    def running(self) -> bool:
        task = self._task
        return task is not None and not task.done()

    @property
    def epoch(self) -> int:
        return self._epoch

    # ------------------------------------------------------------------
    # Last check persistence
    # ------------------------------------------------------------------

    def last_check(self) -> Optional[int]:
        """Epoch ms of the last successful check, or None."""
        raw = self._store.get(LAST_CHECK_KEY)
        if not raw:
            return None
        try:
            return int(raw.decode("ascii"))
        except (UnicodeDecodeError, ValueError):
            logger.warning("Ignoring malformed last verification timestamp")
            return None

    def _record_check(self, timestamp: int) -> None:
        self._store.put(LAST_CHECK_KEY, str(timestamp).encode("ascii"))

    def initial_delay(self, now: Optional[int] = None) -> float:
        """Seconds until the first tick: ``max(0, I - (now - last_check))``."""
        last = self.last_check()
        if last is None:
            return self.interval_seconds
        if now is None:
            now = self._clock()
        elapsed = now - last
        if elapsed < 0:
            # clock moved backwards; wait a full interval
            return self.interval_seconds
        return max(0, self._interval_ms - elapsed) / 1000

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _is_current(self, epoch: int) -> bool:
        with self._lock:
            return epoch == self._epoch

    def start(self) -> bool:
        """Start (or restart) periodic verification on the running loop.

        Returns:
            False when the verifier is disabled (interval 0).
        """
        if not self.enabled:
            logger.debug("Verification interval is 0, verifier disabled")
            return False
        loop = asyncio.get_running_loop()
        with self._lock:
            self._epoch += 1
            epoch = self._epoch
            previous, previous_loop = self._task, self._loop
            self._loop = loop
            self._task = loop.create_task(self._run(epoch))
        if previous is not None:
            self._cancel(previous, previous_loop)
        logger.debug(
            "Verifier started (epoch %d, interval %.0fs)", epoch, self.interval_seconds
        )
        return True

    def stop(self) -> None:
        """Cancel verification; idempotent and callable from any thread."""
        with self._lock:
            self._epoch += 1
            task, loop = self._task, self._loop
            self._task = None
        if task is not None:
            self._cancel(task, loop)
            logger.debug("Verifier stopped")

    @staticmethod
    def _cancel(task: asyncio.Task, loop: Optional[asyncio.AbstractEventLoop]) -> None:
        if task.done():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            if task is not asyncio.current_task():
                task.cancel()
        elif loop is not None and not loop.is_closed():
            loop.call_soon_threadsafe(task.cancel)

    async def _run(self, epoch: int) -> None:
        delay = await asyncio.to_thread(self.initial_delay)
        logger.debug("First verification in %.1fs", delay)
        await asyncio.sleep(delay)
        while self._is_current(epoch):
            try:
                await self.tick(epoch)
            except Exception as err:  # pylint: disable=W0718
                logger.error("Verification tick failed: %s", err)
            if not self._is_current(epoch):
                break
            await asyncio.sleep(self.interval_seconds)

    async def tick(self, epoch: Optional[int] = None) -> None:
        """Run one verification against the identity service."""
        if epoch is None:
            epoch = self._epoch
        await self._sm.expire_ticket()
        record = self._sm.record
        if record is None:
            logger.debug("No session to verify")
            return
        try:
            await self._identity.verify_session()
        except TransientNetworkError as err:
            logger.debug("Verification skipped, network error: %s", err)
            return
        except RemoteRejection as err:
            if not self._is_current(epoch):
                logger.debug("Rejection from a cancelled epoch discarded")
                return
            logger.error(
                "Session verification rejected (code=%s), invalidating", err.code
            )
            invalidated = await self._sm.invalidate(
                INVALIDATION_REASON,
                guard=lambda: self._is_current(epoch),
                record=record,
            )
            if invalidated or self._sm.record is None:
                if self._is_current(epoch):
                    self.stop()
            return
        if self._is_current(epoch):
            await asyncio.to_thread(self._record_check, self._clock())
            logger.debug("Session verified")
