# pylint: disable=missing-module-docstring,missing-function-docstring

import asyncio
import random
from typing import Any, Callable

import pytest

from adapters.realtime.base import ChannelState, PresenceAction, PresenceEvent
from realtime.presence import PresenceError, PresenceSet, PresenceTracker


# ---------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------

class FakePresence:
    def __init__(self) -> None:
        self.listeners: list[tuple[PresenceAction, Callable[[PresenceEvent], None]]] = []
        self.snapshot: list[str] = []
        self.get_gate: asyncio.Event | None = None
        self.leave_error: Exception | None = None
        self.calls: list[str] = []

    async def enter(self, data: Any = None) -> None:
        self.calls.append("enter")

    async def leave(self, data: Any = None) -> None:
        self.calls.append("leave")
        if self.leave_error is not None:
            raise self.leave_error

    async def get(self) -> list[PresenceEvent]:
        if self.get_gate is not None:
            await self.get_gate.wait()
        return [PresenceEvent(action=PresenceAction.PRESENT, client_id=c) for c in self.snapshot]

    def subscribe(self, action: PresenceAction, listener: Callable[[PresenceEvent], None]) -> None:
        self.listeners.append((action, listener))

    def unsubscribe(self) -> None:
        self.listeners.clear()

    def emit(self, action: PresenceAction, client_id: str) -> None:
        for subscribed, listener in list(self.listeners):
            if subscribed is action:
                listener(PresenceEvent(action=action, client_id=client_id))


class FakeChannel:
    def __init__(self, state: ChannelState = ChannelState.ATTACHED) -> None:
        self.state = state
        self.presence = FakePresence()


class FakeChannelSession:
    def __init__(self, channel: FakeChannel | None) -> None:
        self.channel = channel


def _tracker(state: ChannelState = ChannelState.ATTACHED) -> tuple[PresenceTracker, FakeChannel]:
    channel = FakeChannel(state)
    tracker = PresenceTracker(FakeChannelSession(channel), PresenceSet(), session_id="chat_test")  # type: ignore[arg-type]
    return tracker, channel


# ---------------------------------------------------------------------
# PresenceSet
# ---------------------------------------------------------------------

def test_presence_set_matches_last_event_per_client() -> None:
    rng = random.Random(7)
    clients = ["alice", "bob", "carol", "dave"]
    presence = PresenceSet()
    last_action: dict[str, str] = {}

    for _ in range(500):
        client_id = rng.choice(clients)
        if rng.random() < 0.5:
            presence.apply_enter(client_id)
            last_action[client_id] = "enter"
        else:
            presence.apply_leave(client_id)
            last_action[client_id] = "leave"

        expected = {c for c, a in last_action.items() if a == "enter"}
        assert presence.members == expected


def test_presence_set_notifies_only_on_change() -> None:
    presence = PresenceSet()
    seen: list[frozenset[str]] = []
    presence.add_listener(seen.append)

    presence.apply_enter("alice")
    presence.apply_enter("alice")
    presence.apply_leave("bob")
    presence.apply_leave("alice")

    assert seen == [frozenset({"alice"}), frozenset()]


# ---------------------------------------------------------------------
# PresenceTracker
# ---------------------------------------------------------------------

def test_deltas_update_set_after_subscribe() -> None:
    tracker, channel = _tracker()
    tracker.subscribe()

    channel.presence.emit(PresenceAction.ENTER, "bob")
    assert tracker.presence_set.members == {"bob"}

    channel.presence.emit(PresenceAction.LEAVE, "bob")
    assert tracker.presence_set.members == frozenset()


@pytest.mark.asyncio
async def test_snapshot_replays_deltas_received_while_in_flight() -> None:
    tracker, channel = _tracker()
    tracker.subscribe()
    channel.presence.snapshot = ["alice", "bob"]
    channel.presence.get_gate = asyncio.Event()

    task = asyncio.create_task(tracker.get_snapshot())
    await asyncio.sleep(0)

    # bob leaves after the backbone built the snapshot, before it arrived
    channel.presence.emit(PresenceAction.LEAVE, "bob")
    channel.presence.get_gate.set()

    assert await task == frozenset({"alice"})
    assert tracker.presence_set.members == {"alice"}


@pytest.mark.asyncio
async def test_enter_requires_attached_channel() -> None:
    tracker, _ = _tracker(ChannelState.ATTACHING)

    with pytest.raises(PresenceError):
        await tracker.enter_presence("alice")


@pytest.mark.asyncio
async def test_leave_is_skipped_when_channel_not_attached() -> None:
    tracker, channel = _tracker(ChannelState.DETACHED)

    await tracker.leave_presence()

    assert channel.presence.calls == []


@pytest.mark.asyncio
async def test_leave_failure_is_swallowed() -> None:
    tracker, channel = _tracker()
    channel.presence.leave_error = RuntimeError("network")

    await tracker.leave_presence()

    assert channel.presence.calls == ["leave"]
