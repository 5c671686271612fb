"""
Ably realtime adapter over the ``ably`` SDK.

Core model:
- One AblyRealtime per client. The SDK owns the wire protocol, heartbeats
  and idle detection, reconnects, channel re-attach, presence re-entry
  after a non-resumed attach, and token renewal through the auth callback.
- This module only translates: SDK connection states -> ConnectionState,
  SDK messages -> InboundMessage, SDK presence messages -> PresenceEvent,
  AblyException -> ChannelError.
- Each channel subscribes to the SDK once on attach and fans events out to
  its own listeners, so subscribe()/unsubscribe() stay synchronous.

Design constraints:
- Adapter must not know about sessions, presence sets or message logs.
- Listeners are invoked on the event loop in the order the SDK emits.
"""

from __future__ import annotations

import time
from datetime import datetime
from typing import Any, Callable

from ably import AblyException, AblyRealtime # pyright: ignore[reportMissingTypeStubs]

from adapters.realtime.base import (
    AuthCallback,
    AuthError,
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
from constants import ABLY_REALTIME_HOST_DEFAULT, ABLY_REST_HOST_DEFAULT
from observability.logger import log_event
from session.connection_status import ConnectionState


def _now_ms() -> int:
    return int(time.time() * 1000)


# SDK presence action codes (PresenceMessage.action)
_PRESENCE_ACTIONS: dict[int, PresenceAction] = {
    1: PresenceAction.PRESENT,
    2: PresenceAction.ENTER,
    3: PresenceAction.LEAVE,
    4: PresenceAction.UPDATE,
}


def _to_ms(ts: Any) -> int | None:
    """SDK timestamps arrive as epoch ms or as datetime."""
    if ts is None:
        return None
    if isinstance(ts, datetime):
        return int(ts.timestamp() * 1000)
    try:
        return int(ts)
    except (TypeError, ValueError):
        return None


def _state_value(state: Any) -> str:
    return getattr(state, "value", state)


def _reason_text(reason: Any) -> str | None:
    if reason is None:
        return None
    return getattr(reason, "message", None) or str(reason)


def _channel_error(e: AblyException, action: str, channel: str) -> ChannelError:
    return ChannelError(f"{action} failed on {channel}: {e.message}", code=e.code)


def to_inbound_message(message: Any) -> InboundMessage:
    return InboundMessage(
        name=message.name,
        data=message.data,
        id=message.id,
        client_id=message.client_id,
        timestamp=_to_ms(message.timestamp),
    )


def to_presence_event(message: Any) -> PresenceEvent | None:
    action = _PRESENCE_ACTIONS.get(message.action)
    if action is None or not message.client_id:
        return None
    return PresenceEvent(
        action=action,
        client_id=message.client_id,
        timestamp=_to_ms(message.timestamp),
    )


# ---------------------------------------------------------------------
# Presence
# ---------------------------------------------------------------------

class AblyPresence(RealtimePresence):
    def __init__(self, channel: AblyChannel) -> None:
        self._channel = channel
        self._listeners: dict[PresenceAction, list[PresenceListener]] = {}

    @property
    def _sdk(self) -> Any:
        return self._channel.sdk_channel.presence

    async def enter(self, data: Any = None) -> None:
        try:
            await self._sdk.enter(data)
        except AblyException as e:
            raise _channel_error(e, "presence enter", self._channel.name) from e

    async def leave(self, data: Any = None) -> None:
        try:
            await self._sdk.leave(data)
        except AblyException as e:
            raise _channel_error(e, "presence leave", self._channel.name) from e

    async def get(self) -> list[PresenceEvent]:
        try:
            members = await self._sdk.get()
        except AblyException as e:
            raise _channel_error(e, "presence get", self._channel.name) from e
        return [
            PresenceEvent(
                action=PresenceAction.PRESENT,
                client_id=m.client_id,
                timestamp=_to_ms(m.timestamp),
            )
            for m in members
            if m.client_id
        ]

    def subscribe(self, action: PresenceAction, listener: PresenceListener) -> None:
        self._listeners.setdefault(action, []).append(listener)

    def unsubscribe(self) -> None:
        self._listeners.clear()

    def dispatch(self, message: Any) -> None:
        event = to_presence_event(message)
        if event is None:
            return
        for listener in list(self._listeners.get(event.action, ())):
            listener(event)


# ---------------------------------------------------------------------
# Channel
# ---------------------------------------------------------------------

class AblyChannel(RealtimeChannel):
    def __init__(self, sdk_channel: Any) -> None:
        self.sdk_channel = sdk_channel
        self.name: str = sdk_channel.name
        self._presence = AblyPresence(self)
        self._listeners: dict[str, list[MessageListener]] = {}
        self._forwarding = False

    @property
    def state(self) -> ChannelState:
        return ChannelState(_state_value(self.sdk_channel.state))

    @property
    def presence(self) -> AblyPresence:
        return self._presence

    async def attach(self) -> None:
        try:
            await self.sdk_channel.attach()
            if not self._forwarding:
                # The SDK listeners outlive detach/re-attach; register once
                await self.sdk_channel.subscribe(self._on_message)
                await self.sdk_channel.presence.subscribe(self._presence.dispatch)
                self._forwarding = True
        except AblyException as e:
            raise _channel_error(e, "attach", self.name) from e

    async def detach(self) -> None:
        try:
            await self.sdk_channel.detach()
        except AblyException as e:
            raise _channel_error(e, "detach", self.name) from e

    async def publish(self, name: str, data: Any) -> None:
        try:
            await self.sdk_channel.publish(name, data)
        except AblyException as e:
            raise _channel_error(e, "publish", self.name) from e

    def subscribe(self, name: str, listener: MessageListener) -> None:
        self._listeners.setdefault(name, []).append(listener)

    def unsubscribe(self) -> None:
        self._listeners.clear()

    def _on_message(self, message: Any) -> None:
        listeners = self._listeners.get(message.name)
        if not listeners:
            return
        inbound = to_inbound_message(message)
        for listener in list(listeners):
            listener(inbound)


# ---------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------

class AblyRealtimeClient(RealtimeClient):
    """
    RealtimeClient backed by ``ably.AblyRealtime``.

    The SDK calls the auth callback with token params whenever it needs a
    token; we ignore the params and ask our own AuthCallback, which returns
    a token request signed by the server's /auth endpoint.
    """

    def __init__(
        self,
        client_id: str,
        auth_callback: AuthCallback,
        *,
        realtime_host: str = ABLY_REALTIME_HOST_DEFAULT,
        rest_host: str = ABLY_REST_HOST_DEFAULT,
        sdk_factory: Callable[..., Any] = AblyRealtime,
    ) -> None:
        self.client_id = client_id
        self._auth_callback = auth_callback
        self._listeners: list[ConnectionListener] = []
        self._channels: dict[str, AblyChannel] = {}
        self._closed = False

        self._sdk = sdk_factory(
            auth_callback=self._authorize,
            client_id=client_id,
            auto_connect=False,
            realtime_host=realtime_host,
            rest_host=rest_host,
        )
        self._sdk.connection.on(self._on_state_change)

    # ------------------------------------------------------------------
    # RealtimeClient
    # ------------------------------------------------------------------

    @property
    def connection_state(self) -> ConnectionState:
        return ConnectionState(_state_value(self._sdk.connection.state))

    def on_connection_state(self, listener: ConnectionListener) -> None:
        self._listeners.append(listener)

    def get_channel(self, name: str) -> AblyChannel:
        channel = self._channels.get(name)
        if channel is None:
            channel = AblyChannel(self._sdk.channels.get(name))
            self._channels[name] = channel
        return channel

    def connect(self) -> None:
        self._sdk.connect()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._sdk.close()

    # ------------------------------------------------------------------
    # SDK hooks
    # ------------------------------------------------------------------

    async def _authorize(self, token_params: Any = None) -> dict[str, Any]:
        try:
            return await self._auth_callback()
        except AuthError as e:
            log_event({
                "ts_ms": _now_ms(),
                "event_type": "ABLY_AUTH_CALLBACK_FAILED",
                "client_id": self.client_id,
                "reason": str(e),
            })
            raise

    def _on_state_change(self, change: Any) -> None:
        prev = ConnectionState(_state_value(change.previous))
        cur = ConnectionState(_state_value(change.current))
        if prev is cur:
            # "update" events (e.g. token renewed) do not change state
            return
        reason = _reason_text(change.reason)
        if cur is ConnectionState.FAILED:
            log_event({
                "ts_ms": _now_ms(),
                "event_type": "ABLY_CONNECTION_FAILED",
                "client_id": self.client_id,
                "reason": reason,
            })
        for listener in list(self._listeners):
            listener(prev, cur, reason)
