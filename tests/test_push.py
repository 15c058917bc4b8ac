"""
Tests for PushApprovalGateway.

Tests cover:
- Payload parsing and malformed input
- Prompt suppression ordering
- Approve / deny resolution, including stale and concurrent events
- Token exchange failures
- Delivery from a foreign thread
"""
import asyncio
import threading

import pytest
import pytest_asyncio

from navigator_authsession.errors import (
    MalformedExternalEvent,
    RemoteRejection,
    TransientNetworkError,
)
from navigator_authsession.push import (
    ActionLabels,
    PushApprovalGateway,
    PushEvent,
    PushResult,
)
from navigator_authsession.records import SessionState, TicketState, VerificationTicket


@pytest.fixture
def labels():
    return ActionLabels(approve=["approve", "Approve"], deny=["deny"])


@pytest.fixture
def gateway(state_machine, identity, labels, exchanged_record):
    identity.exchange_record = exchanged_record
    return PushApprovalGateway(state_machine, identity, labels)


@pytest_asyncio.fixture
async def pending(state_machine, clock, record):
    await state_machine.login(record)
    ticket = VerificationTicket(id="X", issued_at=clock.now, ttl=60)
    return await state_machine.request_step_up(ticket)


def approve(**extra):
    payload = {"mode": "verify", "action": "approve", "ticketToken": "vt-1"}
    payload.update(extra)
    return payload


class TestActionLabels:

    def test_resolve(self, labels):
        assert labels.resolve("approve") == TicketState.APPROVED
        assert labels.resolve("Approve") == TicketState.APPROVED
        assert labels.resolve("deny") == TicketState.DENIED
        assert labels.resolve("maybe") is None
        assert labels.resolve(None) is None

    def test_overlapping_labels_rejected(self):
        with pytest.raises(ValueError):
            ActionLabels(approve=["ok"], deny=["ok"])

    def test_empty_labels_rejected(self):
        with pytest.raises(ValueError):
            ActionLabels(approve=[], deny=["deny"])


class TestPushEvent:

    def test_aliases(self):
        event = PushEvent.from_payload(approve(notificationId=7, ticketId="X"))
        assert event.ticket_token == "vt-1"
        assert event.notification_id == "7"
        assert event.ticket_id == "X"

    def test_blank_values_are_missing(self):
        assert PushEvent.from_payload({"mode": "  "}).mode is None

    @pytest.mark.parametrize("payload", [
        None,
        "mode=verify",
        {"mode": {"nested": "verify"}},
        {"mode": "verify", "action": ["approve"]},
        {"mode": "verify", "ticketToken": True},
    ])
    def test_malformed(self, payload):
        with pytest.raises(MalformedExternalEvent):
            PushEvent.from_payload(payload)


@pytest.mark.asyncio
class TestHandle:

    async def test_approve(self, gateway, pending, state_machine, identity, exchanged_record):
        assert await gateway.handle(approve()) == PushResult.APPROVED
        assert identity.exchanged == ["vt-1"]
        assert state_machine.state == SessionState.ACTIVE
        assert state_machine.record == exchanged_record

    async def test_deny(self, gateway, pending, state_machine, observer):
        result = await gateway.handle({"mode": "verify", "action": "deny"})
        assert result == PushResult.DENIED
        assert state_machine.state == SessionState.INVALID
        assert observer.invalidations == ["step-up-denied"]

    async def test_approve_without_token_is_malformed(self, gateway, pending, state_machine, identity):
        result = await gateway.handle({"mode": "verify", "action": "approve", "ticketId": "X"})
        assert result == PushResult.MALFORMED
        assert identity.exchanged == []
        assert state_machine.pending_ticket == pending

    async def test_approve_after_deny_is_stale(self, gateway, pending, state_machine, identity):
        assert await gateway.handle(
            {"mode": "verify", "action": "deny", "ticketId": "X"}
        ) == PushResult.DENIED
        assert await gateway.handle(approve(ticketId="X")) == PushResult.STALE
        assert identity.exchanged == []
        assert state_machine.state == SessionState.INVALID

    async def test_concurrent_approvals(self, gateway, pending, identity):
        identity.exchange_delay = 0.05
        results = await asyncio.gather(
            gateway.handle(approve(ticketId="X")),
            gateway.handle(approve(ticketId="X")),
        )
        assert sorted(results) == sorted([PushResult.APPROVED, PushResult.STALE])

    async def test_unknown_ticket_is_stale(self, gateway, pending, state_machine):
        assert await gateway.handle(approve(ticketId="other")) == PushResult.STALE
        assert state_machine.pending_ticket == pending

    async def test_no_pending_ticket_is_stale(self, gateway, state_machine, record):
        await state_machine.activate(record)
        assert await gateway.handle(approve()) == PushResult.STALE

    async def test_approve_without_token_and_ticket_is_malformed(
        self, gateway, state_machine, identity, record
    ):
        await state_machine.activate(record)
        result = await gateway.handle({"mode": "verify", "action": "approve"})
        assert result == PushResult.MALFORMED
        assert identity.exchanged == []
        assert state_machine.state == SessionState.ACTIVE

    async def test_unknown_mode_ignored(self, gateway, pending, state_machine, identity):
        result = await gateway.handle(approve(mode="optin"))
        assert result == PushResult.IGNORED
        assert identity.exchanged == []
        assert state_machine.pending_ticket == pending

    async def test_missing_mode_is_malformed(self, gateway, pending):
        assert await gateway.handle({"action": "approve", "ticketToken": "t"}) == PushResult.MALFORMED

    async def test_unknown_action_is_malformed(self, gateway, pending):
        assert await gateway.handle(approve(action="later")) == PushResult.MALFORMED

    async def test_nested_payload_is_malformed(self, gateway, pending, state_machine):
        assert await gateway.handle({"mode": "verify", "action": {"a": 1}}) == PushResult.MALFORMED
        assert state_machine.pending_ticket == pending

    async def test_prompt_suppressed_before_processing(self, gateway, pending, observer):
        await gateway.handle(approve(mode="optin", notificationId="n-1"))
        assert observer.suppressed == [("X", "n-1")]

    async def test_prompt_suppressed_on_approval(self, gateway, pending, observer):
        await gateway.handle(approve(notificationId="n-1"))
        assert observer.suppressed[0] == ("X", "n-1")

    @pytest.mark.parametrize("error", [
        TransientNetworkError("offline"),
        RemoteRejection(400006, "invalid vToken"),
    ])
    async def test_exchange_failure(self, gateway, pending, state_machine, identity, error):
        identity.exchange_error = error
        assert await gateway.handle(approve()) == PushResult.FAILED
        assert state_machine.pending_ticket == pending
        assert state_machine.state == SessionState.PENDING_STEP_UP

    async def test_expired_ticket_is_stale(self, gateway, pending, state_machine, clock):
        clock.advance(60_000)
        assert await gateway.handle(approve(ticketId="X")) == PushResult.STALE
        assert state_machine.state == SessionState.ACTIVE


@pytest.mark.asyncio
class TestThreadsafeSubmit:

    async def test_unbound_gateway(self, gateway):
        with pytest.raises(RuntimeError):
            gateway.submit_threadsafe(approve())

    async def test_submit_from_foreign_thread(self, gateway, pending, state_machine):
        gateway.bind_loop(asyncio.get_running_loop())
        futures = []
        thread = threading.Thread(
            target=lambda: futures.append(gateway.submit_threadsafe(approve()))
        )
        thread.start()
        await asyncio.to_thread(thread.join)
        result = await asyncio.wrap_future(futures[0])
        assert result == PushResult.APPROVED
        assert state_machine.state == SessionState.ACTIVE
