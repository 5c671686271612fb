"""
Presence tracking for the session's channel.

The PresenceSet invariant: it contains exactly the clientIds whose most
recent applied event is "enter".

Sequencing the tracker relies on:
1. channel attached            -> enter_presence() allowed
2. enter_presence() completed  -> get_snapshot() reflects our own entry
3. deltas after the snapshot   -> applied incrementally
4. leave_presence()            -> before unsubscribe and before close

Deltas that arrive while a snapshot fetch is in flight are buffered and
replayed on top of the snapshot, so a stale snapshot never resurrects a
member that has already left.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable

from adapters.realtime.base import ChannelState, PresenceAction, PresenceEvent, RealtimeChannel
from observability.logger import log_event
from realtime.channel import ChannelSession


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


class PresenceError(Exception):
    """Presence operation issued out of sequence."""


@dataclass(frozen=True)
class PresenceMember:
    client_id: str


PresenceListener = Callable[[frozenset[str]], None]


class PresenceSet:
    """Members keyed by clientId, with change notifications."""

    def __init__(self) -> None:
        self._members: dict[str, PresenceMember] = {}
        self._listeners: list[PresenceListener] = []

    @property
    def members(self) -> frozenset[str]:
        return frozenset(self._members)

    def __contains__(self, client_id: object) -> bool:
        return client_id in self._members

    def __len__(self) -> int:
        return len(self._members)

    def add_listener(self, listener: PresenceListener) -> None:
        self._listeners.append(listener)

    def apply_enter(self, client_id: str) -> None:
        """Idempotent: re-entering replaces the entry."""
        was_present = client_id in self._members
        self._members[client_id] = PresenceMember(client_id=client_id)
        if not was_present:
            self._notify()

    def apply_leave(self, client_id: str) -> None:
        """Idempotent: leaving an absent member does nothing."""
        if self._members.pop(client_id, None) is not None:
            self._notify()

    def replace(self, client_ids: set[str] | frozenset[str]) -> None:
        if set(self._members) == set(client_ids):
            return
        self._members = {cid: PresenceMember(client_id=cid) for cid in client_ids}
        self._notify()

    def clear(self) -> None:
        self.replace(frozenset())

    def _notify(self) -> None:
        snapshot = self.members
        for listener in list(self._listeners):
            listener(snapshot)


class PresenceTracker:
    """Reconciles a PresenceSet against the channel's presence."""

    def __init__(
        self,
        channel_session: ChannelSession,
        presence_set: PresenceSet,
        *,
        session_id: str | None = None,
    ) -> None:
        self._channel_session = channel_session
        self._set = presence_set
        self._session_id = session_id
        self._subscribed = False
        self._pending_deltas: list[PresenceEvent] | None = None

    @property
    def presence_set(self) -> PresenceSet:
        return self._set

    # ------------------------------------------------------------------
    # Incremental deltas
    # ------------------------------------------------------------------

    def subscribe(self) -> None:
        channel = self._require_attached("subscribe to presence")
        channel.presence.subscribe(PresenceAction.ENTER, self._on_event)
        channel.presence.subscribe(PresenceAction.LEAVE, self._on_event)
        self._subscribed = True

    def unsubscribe(self) -> None:
        channel = self._channel_session.channel
        if channel is not None and self._subscribed:
            channel.presence.unsubscribe()
        self._subscribed = False

    def _on_event(self, event: PresenceEvent) -> None:
        if self._pending_deltas is not None:
            self._pending_deltas.append(event)
        self._apply(event)

    def _apply(self, event: PresenceEvent) -> None:
        if event.action is PresenceAction.LEAVE:
            self._set.apply_leave(event.client_id)
        else:
            self._set.apply_enter(event.client_id)

    # ------------------------------------------------------------------
    # Enter / snapshot / leave
    # ------------------------------------------------------------------

    async def enter_presence(self, client_id: str) -> None:
        channel = self._require_attached("enter presence")
        await channel.presence.enter()
        log_event({
            "ts_ms": _now_ms(),
            "event_type": "PRESENCE_ENTERED",
            "session_id": self._session_id,
            "client_id": client_id,
        })

    async def get_snapshot(self) -> frozenset[str]:
        """Seed the set from the backbone's authoritative member list."""
        channel = self._require_attached("read presence")
        self._pending_deltas = []
        try:
            members = await channel.presence.get()
            buffered = self._pending_deltas
        finally:
            self._pending_deltas = None

        self._set.replace({m.client_id for m in members if m.action is not PresenceAction.LEAVE})
        for event in buffered:
            self._apply(event)

        log_event({
            "ts_ms": _now_ms(),
            "event_type": "PRESENCE_SNAPSHOT",
            "session_id": self._session_id,
            "members": sorted(self._set.members),
            "replayed_deltas": len(buffered),
        })
        return self._set.members

    async def leave_presence(self) -> None:
        """
        Best-effort presence leave. Never raises.

        When the channel is no longer attached/attaching this is a no-op:
        the backbone expires the member entry on disconnect anyway.
        """
        channel = self._channel_session.channel
        state = channel.state if channel is not None else None
        if channel is None or state not in (ChannelState.ATTACHED, ChannelState.ATTACHING):
            log_event({
                "ts_ms": _now_ms(),
                "event_type": "PRESENCE_LEAVE_SKIPPED",
                "session_id": self._session_id,
                "channel_state": state.value if state is not None else None,
            })
            return

        try:
            await channel.presence.leave()
        except Exception as e:  # pylint: disable=broad-exception-caught
            log_event({
                "ts_ms": _now_ms(),
                "event_type": "PRESENCE_LEAVE_FAILED",
                "session_id": self._session_id,
                "exception": type(e).__name__,
                "message": str(e),
            })

    def _require_attached(self, operation: str) -> RealtimeChannel:
        channel = self._channel_session.channel
        if channel is None or channel.state is not ChannelState.ATTACHED:
            state = channel.state.value if channel is not None else "none"
            raise PresenceError(f"cannot {operation}: channel is {state}")
        return channel
