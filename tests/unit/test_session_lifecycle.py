# pylint: disable=missing-module-docstring,missing-function-docstring

import asyncio
from typing import Any

import pytest

from adapters.realtime.base import (
    AuthCallback,
    ChannelState,
    InboundMessage,
    MessageListener,
    PresenceAction,
    PresenceEvent,
    PresenceListener,
    RealtimeChannel,
    RealtimeClient,
    RealtimePresence,
)
from adapters.realtime.loopback import LoopbackHub
from orchestrator.enums.state import LifecycleState
from orchestrator.lifecycle import SessionOrchestrator, validate_client_id
from session.connection_status import ConnectionState


CHANNEL = "amana-chat:public"


async def fake_fetch(client_id: str) -> dict[str, Any]:
    return {"keyName": "app.key", "clientId": client_id}


async def failing_fetch(client_id: str) -> dict[str, Any]:
    raise RuntimeError("Ably API key not configured")


async def settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


def orchestrator(hub: LoopbackHub, updates: list[dict[str, Any]] | None = None, fetch=fake_fetch) -> SessionOrchestrator:  # type: ignore[no-untyped-def]
    return SessionOrchestrator(
        channel_name=CHANNEL,
        client_factory=hub.client_factory,
        fetch_token=fetch,
        notify=updates.append if updates is not None else None,
    )


# ---------------------------------------------------------------------
# Recording backbone (call order)
# ---------------------------------------------------------------------

class RecordingPresence(RealtimePresence):
    def __init__(self, calls: list[str]) -> None:
        self.calls = calls

    async def enter(self, data: Any = None) -> None:
        self.calls.append("presence.enter")

    async def leave(self, data: Any = None) -> None:
        self.calls.append("presence.leave")

    async def get(self) -> list[PresenceEvent]:
        return []

    def subscribe(self, action: PresenceAction, listener: PresenceListener) -> None:
        self.calls.append(f"presence.subscribe.{action.value}")

    def unsubscribe(self) -> None:
        self.calls.append("presence.unsubscribe")


class RecordingChannel(RealtimeChannel):
    def __init__(self, name: str, calls: list[str], attach_gate: asyncio.Event | None) -> None:
        self.name = name
        self.calls = calls
        self.attach_gate = attach_gate
        self.listener: MessageListener | None = None
        self._state = ChannelState.INITIALIZED
        self._presence = RecordingPresence(calls)

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def presence(self) -> RecordingPresence:
        return self._presence

    async def attach(self) -> None:
        self.calls.append("attach")
        self._state = ChannelState.ATTACHING
        if self.attach_gate is not None:
            await self.attach_gate.wait()
        self._state = ChannelState.ATTACHED

    async def detach(self) -> None:
        self.calls.append("detach")

    async def publish(self, name: str, data: Any) -> None:
        self.calls.append("publish")

    def subscribe(self, name: str, listener: MessageListener) -> None:
        self.calls.append("subscribe")
        self.listener = listener

    def unsubscribe(self) -> None:
        self.calls.append("unsubscribe")


class RecordingClient(RealtimeClient):
    def __init__(self, client_id: str, calls: list[str], attach_gate: asyncio.Event | None) -> None:
        self.client_id = client_id
        self.calls = calls
        self.attach_gate = attach_gate
        self.channels: dict[str, RecordingChannel] = {}
        self._state = ConnectionState.INITIALIZED
        self._listeners: list[Any] = []

    @property
    def connection_state(self) -> ConnectionState:
        return self._state

    def on_connection_state(self, listener: Any) -> None:
        self._listeners.append(listener)

    def get_channel(self, name: str) -> RecordingChannel:
        if name not in self.channels:
            self.channels[name] = RecordingChannel(name, self.calls, self.attach_gate)
        return self.channels[name]

    def connect(self) -> None:
        self.calls.append("connect")
        self._set(ConnectionState.CONNECTED)

    async def close(self) -> None:
        self.calls.append("close")
        self._set(ConnectionState.CLOSED)

    def _set(self, state: ConnectionState) -> None:
        previous, self._state = self._state, state
        for listener in self._listeners:
            listener(previous, state, None)


class RecordingBackbone:
    def __init__(self, attach_gate: asyncio.Event | None = None) -> None:
        self.calls: list[str] = []
        self.attach_gate = attach_gate
        self.clients: list[RecordingClient] = []

    def client_factory(self, client_id: str, auth_callback: AuthCallback) -> RecordingClient:
        client = RecordingClient(client_id, self.calls, self.attach_gate)
        self.clients.append(client)
        return client

    def channel(self) -> RecordingChannel:
        return self.clients[-1].channels[CHANNEL]


# ---------------------------------------------------------------------
# Join
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_join_enters_presence_and_seeds_members() -> None:
    hub = LoopbackHub()
    alice = orchestrator(hub)

    assert await alice.join("  Alice ") is True
    await settle()

    assert alice.state is LifecycleState.JOINED
    assert alice.client_id == "Alice"
    assert alice.connection_state is ConnectionState.CONNECTED
    assert alice.members == frozenset({"Alice"})
    assert hub.members(CHANNEL) == {"Alice"}

    await alice.leave()


@pytest.mark.parametrize("name", [None, "", "   ", "x" * 21])
def test_invalid_names_are_rejected(name: str | None) -> None:
    assert validate_client_id(name) is None


@pytest.mark.asyncio
async def test_invalid_join_is_a_silent_noop() -> None:
    backbone = RecordingBackbone()
    orch = SessionOrchestrator(channel_name=CHANNEL, client_factory=backbone.client_factory, fetch_token=fake_fetch)

    assert await orch.join("   ") is False
    assert orch.state is LifecycleState.IDLE
    assert backbone.calls == []


@pytest.mark.asyncio
async def test_join_failure_releases_and_reports() -> None:
    hub = LoopbackHub()
    updates: list[dict[str, Any]] = []
    orch = orchestrator(hub, updates, fetch=failing_fetch)

    assert await orch.join("Alice") is False

    assert orch.state is LifecycleState.IDLE
    assert orch.session is None
    assert hub.members(CHANNEL) == frozenset()
    failures = [u for u in updates if u["type"] == "JOIN_FAILED"]
    assert failures == [{
        "type": "JOIN_FAILED",
        "client_id": "Alice",
        "error": "Failed to connect to chat. Please check your configuration.",
    }]


@pytest.mark.asyncio
async def test_join_while_joined_is_rejected() -> None:
    hub = LoopbackHub()
    alice = orchestrator(hub)
    await alice.join("Alice")

    assert await alice.join("Other") is False
    assert alice.client_id == "Alice"

    await alice.leave()


# ---------------------------------------------------------------------
# Presence across members
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_remote_enter_and_leave_update_members() -> None:
    hub = LoopbackHub()
    alice, bob = orchestrator(hub), orchestrator(hub)
    await alice.join("Alice")

    await bob.join("Bob")
    await settle()
    assert alice.members == frozenset({"Alice", "Bob"})
    assert bob.members == frozenset({"Alice", "Bob"})

    await bob.leave()
    await settle()
    assert alice.members == frozenset({"Alice"})

    await alice.leave()


# ---------------------------------------------------------------------
# Send
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_send_appends_once_via_echo() -> None:
    hub = LoopbackHub()
    alice = orchestrator(hub)
    await alice.join("Alice")

    assert await alice.send("  hi ") is True
    # Nothing is appended locally before the echo
    assert alice.messages == ()

    await settle()
    assert len(alice.messages) == 1
    message = alice.messages[0]
    assert (message.text, message.sender_id) == ("hi", "Alice")

    await alice.leave()


@pytest.mark.asyncio
async def test_messages_reach_other_members_in_order() -> None:
    hub = LoopbackHub()
    alice, bob = orchestrator(hub), orchestrator(hub)
    await alice.join("Alice")
    await bob.join("Bob")

    for text in ("one", "two", "three"):
        await alice.send(text)
    await settle()

    assert [m.text for m in bob.messages] == ["one", "two", "three"]
    assert {m.sender_id for m in bob.messages} == {"Alice"}

    await alice.leave()
    await bob.leave()


@pytest.mark.asyncio
async def test_send_is_gated() -> None:
    hub = LoopbackHub()
    alice = orchestrator(hub)

    assert await alice.send("before join") is False

    await alice.join("Alice")
    assert await alice.send("   ") is False
    assert await alice.send("x" * 501) is False
    assert await alice.send("x" * 500) is True

    session = alice.session
    assert session is not None and session.connection is not None
    session.connection.client.drop_connection()  # type: ignore[union-attr]
    assert alice.can_send is False
    assert await alice.send("while offline") is False

    await settle()
    assert [len(m.text) for m in alice.messages] == [500]

    await alice.leave()


# ---------------------------------------------------------------------
# Leave / teardown
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_leave_runs_presence_leave_then_unsubscribe_then_close() -> None:
    backbone = RecordingBackbone()
    orch = SessionOrchestrator(channel_name=CHANNEL, client_factory=backbone.client_factory, fetch_token=fake_fetch)
    await orch.join("Alice")

    listener = backbone.channel().listener
    assert listener is not None
    listener(InboundMessage(name="message", data={"text": "hi"}, id="m1", client_id="Bob"))
    assert len(orch.messages) == 1

    backbone.calls.clear()
    await orch.leave()

    calls = backbone.calls
    assert calls.index("presence.leave") < calls.index("unsubscribe") < calls.index("close")
    assert calls.index("presence.unsubscribe") < calls.index("close")
    assert orch.messages == ()
    assert orch.members == frozenset()
    assert orch.state is LifecycleState.IDLE


@pytest.mark.asyncio
async def test_leave_skips_presence_leave_when_detached() -> None:
    backbone = RecordingBackbone()
    orch = SessionOrchestrator(channel_name=CHANNEL, client_factory=backbone.client_factory, fetch_token=fake_fetch)
    await orch.join("Alice")
    backbone.channel()._state = ChannelState.DETACHED  # pylint: disable=protected-access

    backbone.calls.clear()
    await orch.leave()

    assert "presence.leave" not in backbone.calls
    assert "close" in backbone.calls


@pytest.mark.asyncio
async def test_leave_is_idempotent() -> None:
    hub = LoopbackHub()
    updates: list[dict[str, Any]] = []
    alice = orchestrator(hub, updates)

    await alice.leave()
    await alice.join("Alice")
    await alice.leave()
    await alice.leave()

    assert alice.state is LifecycleState.IDLE
    assert [u["type"] for u in updates].count("LEFT") == 1
    assert hub.members(CHANNEL) == frozenset()


@pytest.mark.asyncio
async def test_concurrent_leave_waits_for_the_release_in_progress() -> None:
    backbone = RecordingBackbone()
    updates: list[dict[str, Any]] = []
    orch = SessionOrchestrator(
        channel_name=CHANNEL,
        client_factory=backbone.client_factory,
        fetch_token=fake_fetch,
        notify=updates.append,
    )
    assert await orch.join("Alice") is True
    returned: list[tuple[LifecycleState, bool]] = []

    async def leave_via(op: Any) -> None:
        await op()
        returned.append((orch.state, "close" in backbone.calls))

    # UI LEAVE racing the socket-loss teardown
    await asyncio.gather(leave_via(orch.leave), leave_via(orch.teardown))

    assert returned == [(LifecycleState.IDLE, True), (LifecycleState.IDLE, True)]
    assert backbone.calls.count("close") == 1
    assert [u["type"] for u in updates].count("LEFT") == 1


@pytest.mark.asyncio
async def test_leave_during_join_aborts_before_presence_enter() -> None:
    gate = asyncio.Event()
    backbone = RecordingBackbone(attach_gate=gate)
    orch = SessionOrchestrator(channel_name=CHANNEL, client_factory=backbone.client_factory, fetch_token=fake_fetch)

    join = asyncio.create_task(orch.join("Alice"))
    await settle()
    assert orch.state is LifecycleState.JOINING

    await orch.leave()
    gate.set()

    assert await join is False
    assert orch.state is LifecycleState.IDLE
    assert "presence.enter" not in backbone.calls
    assert "subscribe" not in backbone.calls


@pytest.mark.asyncio
async def test_rejoin_after_leave_creates_fresh_session() -> None:
    hub = LoopbackHub()
    alice = orchestrator(hub)
    await alice.join("Alice")
    await alice.send("old")
    await settle()
    first = alice.session

    await alice.leave()
    await alice.join("Alice")

    assert alice.session is not first
    assert alice.messages == ()
    assert alice.members == frozenset({"Alice"})

    await alice.leave()


@pytest.mark.asyncio
async def test_teardown_never_raises_and_releases_membership() -> None:
    hub = LoopbackHub()
    alice = orchestrator(hub)
    await alice.join("Alice")

    await alice.teardown()
    await alice.teardown()

    assert alice.state is LifecycleState.IDLE
    assert hub.members(CHANNEL) == frozenset()


@pytest.mark.asyncio
async def test_notifications_cover_view_updates() -> None:
    hub = LoopbackHub()
    updates: list[dict[str, Any]] = []
    alice = orchestrator(hub, updates)

    await alice.join("Alice")
    await alice.send("hi")
    await settle()
    await alice.leave()

    types = [u["type"] for u in updates]
    assert types.index("CONNECTION_STATE") < types.index("JOINED") < types.index("MESSAGE") < types.index("LEFT")
    joined = next(u for u in updates if u["type"] == "JOINED")
    assert joined["members"] == ["Alice"]
    message = next(u for u in updates if u["type"] == "MESSAGE")
    assert message["message"]["text"] == "hi"
