"""
In-process loopback backbone.

Implements the realtime contract against a shared in-memory hub so that
several clients in one process can chat with each other. Used for local
development (REALTIME_PROVIDER=loopback) and as the backbone in tests.

Observable semantics mirror the hosted backbone:
- connect() runs the auth callback; a failing callback moves the
  connection to FAILED
- attach waits for the connection and fails if the connection fails
- publishes are echoed to the publisher with a backbone-assigned id and
  timestamp
- presence enter/leave fan out to every attached handle, including the
  one that entered
- closing a connection removes its presence entries (server-side expiry)

Delivery is asynchronous (scheduled on the event loop), never inline
inside publish().
"""

from __future__ import annotations

import asyncio
import itertools
import time
from typing import Any
from uuid import uuid4

from adapters.realtime.base import (
    AuthCallback,
    ChannelError,
    ChannelState,
    ConnectionListener,
    InboundMessage,
    MessageListener,
    PresenceAction,
    PresenceEvent,
    PresenceListener,
    RealtimeChannel,
    RealtimeClient,
    RealtimePresence,
)
from session.connection_status import ConnectionState


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


# ---------------------------------------------------------------------
# Hub (the "server")
# ---------------------------------------------------------------------

class _HubChannel:
    def __init__(self, name: str) -> None:
        self.name = name
        self.handles: list[LoopbackChannel] = []
        # client_id -> connection_id of the member entry
        self.members: dict[str, str] = {}

    def broadcast_message(self, message: InboundMessage) -> None:
        loop = asyncio.get_running_loop()
        for handle in list(self.handles):
            loop.call_soon(handle.deliver_message, message)

    def broadcast_presence(self, event: PresenceEvent) -> None:
        loop = asyncio.get_running_loop()
        for handle in list(self.handles):
            loop.call_soon(handle.presence.deliver, event)


class LoopbackHub:
    """Shared in-memory backbone. One hub == one isolated 'app'."""

    def __init__(self) -> None:
        self._channels: dict[str, _HubChannel] = {}
        self._serial = itertools.count(1)

    def channel(self, name: str) -> _HubChannel:
        if name not in self._channels:
            self._channels[name] = _HubChannel(name)
        return self._channels[name]

    def members(self, channel_name: str) -> frozenset[str]:
        return frozenset(self.channel(channel_name).members)

    def client_factory(self, client_id: str, auth_callback: AuthCallback) -> LoopbackClient:
        """ClientFactory bound to this hub."""
        return LoopbackClient(hub=self, client_id=client_id, auth_callback=auth_callback)

    # ------------------------------------------------------------------
    # Server-side operations
    # ------------------------------------------------------------------

    def publish(self, handle: LoopbackChannel, name: str, data: Any) -> None:
        conn_id = handle.client.connection_id
        message = InboundMessage(
            id=f"{conn_id}:{next(self._serial)}:0",
            name=name,
            data=data,
            client_id=handle.client.client_id,
            timestamp=_now_ms(),
        )
        self.channel(handle.name).broadcast_message(message)

    def enter(self, handle: LoopbackChannel) -> None:
        hub_channel = self.channel(handle.name)
        client = handle.client
        hub_channel.members[client.client_id] = client.connection_id
        hub_channel.broadcast_presence(
            PresenceEvent(action=PresenceAction.ENTER, client_id=client.client_id, timestamp=_now_ms())
        )

    def leave(self, handle: LoopbackChannel) -> None:
        hub_channel = self.channel(handle.name)
        client = handle.client
        if hub_channel.members.get(client.client_id) != client.connection_id:
            return
        del hub_channel.members[client.client_id]
        hub_channel.broadcast_presence(
            PresenceEvent(action=PresenceAction.LEAVE, client_id=client.client_id, timestamp=_now_ms())
        )

    def register(self, handle: LoopbackChannel) -> None:
        hub_channel = self.channel(handle.name)
        if handle not in hub_channel.handles:
            hub_channel.handles.append(handle)

    def unregister(self, handle: LoopbackChannel) -> None:
        hub_channel = self.channel(handle.name)
        if handle in hub_channel.handles:
            hub_channel.handles.remove(handle)
        self.leave(handle)


# ---------------------------------------------------------------------
# Client side
# ---------------------------------------------------------------------

class LoopbackPresence(RealtimePresence):
    def __init__(self, channel: LoopbackChannel) -> None:
        self._channel = channel
        self._listeners: list[tuple[PresenceAction, PresenceListener]] = []

    async def enter(self, data: Any = None) -> None:
        self._channel.require_usable("presence enter")
        if self._channel.state is not ChannelState.ATTACHED:
            raise ChannelError(f"presence enter on {self._channel.state.value} channel")
        self._channel.hub.enter(self._channel)

    async def leave(self, data: Any = None) -> None:
        self._channel.require_usable("presence leave")
        self._channel.hub.leave(self._channel)

    async def get(self) -> list[PresenceEvent]:
        self._channel.require_usable("presence get")
        members = self._channel.hub.members(self._channel.name)
        return [PresenceEvent(action=PresenceAction.PRESENT, client_id=cid) for cid in sorted(members)]

    def subscribe(self, action: PresenceAction, listener: PresenceListener) -> None:
        self._listeners.append((action, listener))

    def unsubscribe(self) -> None:
        self._listeners.clear()

    def deliver(self, event: PresenceEvent) -> None:
        if self._channel.state is not ChannelState.ATTACHED:
            return
        for action, listener in list(self._listeners):
            if action is event.action:
                listener(event)


class LoopbackChannel(RealtimeChannel):
    def __init__(self, *, client: LoopbackClient, name: str) -> None:
        self.client = client
        self.hub = client.hub
        self.name = name
        self._state = ChannelState.INITIALIZED
        self._presence = LoopbackPresence(self)
        self._listeners: list[tuple[str, MessageListener]] = []

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def presence(self) -> LoopbackPresence:
        return self._presence

    def require_usable(self, operation: str) -> None:
        if self.client.connection_state is not ConnectionState.CONNECTED:
            raise ChannelError(
                f"{operation} not possible while connection is "
                f"{self.client.connection_state.value}"
            )

    async def attach(self) -> None:
        if self._state is ChannelState.ATTACHED:
            return
        self._state = ChannelState.ATTACHING
        try:
            await self.client.wait_connected()
        except ChannelError:
            self._state = ChannelState.FAILED
            raise
        if self._state is not ChannelState.ATTACHING:
            raise ChannelError(f"attach interrupted, channel is {self._state.value}")
        self.hub.register(self)
        self._state = ChannelState.ATTACHED

    async def detach(self) -> None:
        self.implicit_detach()

    def implicit_detach(self) -> None:
        if self._state in (ChannelState.ATTACHED, ChannelState.ATTACHING):
            self.hub.unregister(self)
            self._state = ChannelState.DETACHED

    async def publish(self, name: str, data: Any) -> None:
        self.require_usable("publish")
        self.hub.publish(self, name, data)

    def subscribe(self, name: str, listener: MessageListener) -> None:
        self._listeners.append((name, listener))

    def unsubscribe(self) -> None:
        self._listeners.clear()

    def deliver_message(self, message: InboundMessage) -> None:
        if self._state is not ChannelState.ATTACHED:
            return
        for name, listener in list(self._listeners):
            if name == message.name:
                listener(message)


class LoopbackClient(RealtimeClient):
    """One simulated backbone connection."""

    def __init__(self, *, hub: LoopbackHub, client_id: str, auth_callback: AuthCallback) -> None:
        self.hub = hub
        self.client_id = client_id
        self.connection_id = f"conn_{uuid4().hex[:8]}"
        self._auth_callback = auth_callback
        self._state = ConnectionState.INITIALIZED
        self._listeners: list[ConnectionListener] = []
        self._channels: dict[str, LoopbackChannel] = {}
        self._connect_task: asyncio.Task[None] | None = None
        self._state_changed = asyncio.Event()

    @property
    def connection_state(self) -> ConnectionState:
        return self._state

    def on_connection_state(self, listener: ConnectionListener) -> None:
        self._listeners.append(listener)

    def get_channel(self, name: str) -> LoopbackChannel:
        if name not in self._channels:
            self._channels[name] = LoopbackChannel(client=self, name=name)
        return self._channels[name]

    def connect(self) -> None:
        if self._connect_task is not None:
            return
        self._set_state(ConnectionState.CONNECTING)
        self._connect_task = asyncio.create_task(self._authorize())

    async def close(self) -> None:
        if self._state in (ConnectionState.CLOSED, ConnectionState.FAILED):
            return
        task = self._connect_task
        if task is not None and not task.done():
            task.cancel()
        if self._state is ConnectionState.INITIALIZED:
            self._set_state(ConnectionState.CLOSED)
            return
        self._set_state(ConnectionState.CLOSING)
        for channel in self._channels.values():
            channel.implicit_detach()
        self._set_state(ConnectionState.CLOSED)

    async def wait_connected(self) -> None:
        if self._state is ConnectionState.INITIALIZED:
            self.connect()
        while self._state is not ConnectionState.CONNECTED:
            if self._state.is_terminal or self._state is ConnectionState.CLOSING:
                raise ChannelError(f"connection {self._state.value}")
            self._state_changed.clear()
            await self._state_changed.wait()

    # ------------------------------------------------------------------
    # Network simulation (dev tooling / tests)
    # ------------------------------------------------------------------

    def drop_connection(self, reason: str = "network lost") -> None:
        """Simulate a network loss; the transport would retry on its own."""
        if self._state is ConnectionState.CONNECTED:
            self._set_state(ConnectionState.DISCONNECTED, reason)

    def restore_connection(self) -> None:
        if self._state in (ConnectionState.DISCONNECTED, ConnectionState.SUSPENDED):
            self._set_state(ConnectionState.CONNECTED)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _authorize(self) -> None:
        try:
            token_request = await self._auth_callback()
        except asyncio.CancelledError:
            return
        except Exception as e:  # pylint: disable=broad-exception-caught
            self._set_state(ConnectionState.FAILED, f"auth: {e}")
            return

        token_client = token_request.get("clientId") if isinstance(token_request, dict) else None
        if token_client not in (None, "*", self.client_id):
            self._set_state(
                ConnectionState.FAILED,
                f"token clientId {token_client!r} does not match {self.client_id!r}",
            )
            return
        if self._state is ConnectionState.CONNECTING:
            self._set_state(ConnectionState.CONNECTED)

    def _set_state(self, state: ConnectionState, reason: str | None = None) -> None:
        previous = self._state
        if previous is state:
            return
        self._state = state
        self._state_changed.set()
        for listener in list(self._listeners):
            listener(previous, state, reason)
