"""Shared fakes and fixtures for the session lifecycle tests."""
import asyncio
import threading
from typing import Optional

import pytest

from navigator_authsession.records import SessionRecord
from navigator_authsession.state import SessionStateMachine
from navigator_authsession.vault import (
    CredentialVault,
    MemoryKeyValueStore,
    SoftwareKeyProvider,
)

NOW = 1_700_000_000_000


class FakeClock:
    """Epoch-millisecond clock under test control."""

    def __init__(self, now: int = NOW):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeIdentity:
    """Identity service double with scripted outcomes."""

    def __init__(self):
        self.verify_error: Optional[Exception] = None
        self.verify_calls = 0
        self.verify_delay = 0.0
        self.exchange_record: Optional[SessionRecord] = None
        self.exchange_error: Optional[Exception] = None
        self.exchange_delay = 0.0
        self.exchanged: list[str] = []

    async def verify_session(self) -> None:
        self.verify_calls += 1
        if self.verify_delay:
            await asyncio.sleep(self.verify_delay)
        if self.verify_error is not None:
            raise self.verify_error

    async def exchange_step_up_token(self, token: str) -> SessionRecord:
        self.exchanged.append(token)
        if self.exchange_delay:
            await asyncio.sleep(self.exchange_delay)
        if self.exchange_error is not None:
            raise self.exchange_error
        return self.exchange_record


class RecordingObserver:
    """Collects every notification it receives."""

    def __init__(self):
        self.invalidations: list[str] = []
        self.suppressed: list[tuple] = []

    def on_invalidated(self, reason: str) -> None:
        self.invalidations.append(reason)

    def on_prompt_suppress_requested(self, ticket_id, notification_id=None) -> None:
        self.suppressed.append((ticket_id, notification_id))


class GatedVault(CredentialVault):
    """Vault whose chosen operations block until the test opens the gate."""

    def __init__(self, store, key_provider, *operations):
        super().__init__(store, key_provider)
        self.gated = frozenset(operations)
        self.gate = threading.Event()

    def _wait(self, operation: str) -> None:
        if operation in self.gated:
            self.gate.wait(5)

    def load(self):
        self._wait("load")
        return super().load()

    def clear(self):
        self._wait("clear")
        super().clear()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryKeyValueStore()


@pytest.fixture
def key_provider():
    return SoftwareKeyProvider("device-secret-for-tests")


@pytest.fixture
def vault(store, key_provider):
    return CredentialVault(store, key_provider)


@pytest.fixture
def observer():
    return RecordingObserver()


@pytest.fixture
def identity():
    return FakeIdentity()


@pytest.fixture
def state_machine(vault, clock, observer):
    sm = SessionStateMachine(vault, stepup_ttl=60, clock=clock)
    sm.subscribe(observer)
    return sm


@pytest.fixture
def record():
    return SessionRecord(token="T1", secret="S1", expiration_time=0, ucid="u-1", gmid="g-1")


@pytest.fixture
def exchanged_record():
    return SessionRecord(token="T2", secret="S2", expiration_time=0)


@pytest.fixture
def gated_vault(store, key_provider):
    def factory(*operations):
        return GatedVault(store, key_provider, *operations)
    return factory
