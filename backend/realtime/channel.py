"""
Channel session: one attached channel on the session's connection.

Rules:
- attach() skips the network call when the handle is already attached
- publish() is gated locally and never appends to the message log; the
  echo comes back through the subscription like any remote message
- detach() never goes to the network on its own; closing the connection
  detaches implicitly
"""

from __future__ import annotations

import time

from adapters.realtime.base import ChannelState, MessageListener, RealtimeChannel
from constants import MESSAGE_EVENT_NAME, MESSAGE_TEXT_MAX_CHARS
from observability.logger import log_event
from realtime.connection import ConnectionManager
from session.connection_status import ConnectionState


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


def publishable_text(text: str | None) -> str | None:
    """
    Return the text to publish, or None if it must not be sent.

    Empty / whitespace-only / oversized text is rejected silently.
    """
    if text is None:
        return None
    stripped = text.strip()
    if not stripped or len(stripped) > MESSAGE_TEXT_MAX_CHARS:
        return None
    return stripped


class ChannelSession:
    """Holds the channel handle for a single-channel chat session."""

    def __init__(self, connection: ConnectionManager, *, session_id: str | None = None) -> None:
        self._connection = connection
        self._session_id = session_id
        self._channel: RealtimeChannel | None = None

    @property
    def channel(self) -> RealtimeChannel | None:
        return self._channel

    @property
    def channel_state(self) -> ChannelState | None:
        return self._channel.state if self._channel is not None else None

    async def attach(self, channel_name: str) -> RealtimeChannel:
        client = self._connection.client
        if client is None:
            raise RuntimeError("attach() requires an open connection")

        channel = client.get_channel(channel_name)
        self._channel = channel

        if channel.state is ChannelState.ATTACHED:
            return channel

        await channel.attach()

        log_event({
            "ts_ms": _now_ms(),
            "event_type": "CHANNEL_ATTACHED",
            "session_id": self._session_id,
            "channel": channel_name,
        })
        return channel

    async def publish(self, text: str | None) -> bool:
        """
        Publish ``{"text": ...}`` as a "message" event.

        Returns False (no-op) for invalid text, no channel, or a connection
        that is not CONNECTED.
        """
        payload_text = publishable_text(text)
        if payload_text is None:
            return False
        if self._channel is None or self._connection.state is not ConnectionState.CONNECTED:
            return False

        await self._channel.publish(MESSAGE_EVENT_NAME, {"text": payload_text})
        return True

    def subscribe_messages(self, listener: MessageListener) -> None:
        if self._channel is None:
            raise RuntimeError("subscribe_messages() requires an attached channel")
        self._channel.subscribe(MESSAGE_EVENT_NAME, listener)

    def unsubscribe(self) -> None:
        if self._channel is not None:
            self._channel.unsubscribe()

    def detach(self) -> None:
        """Drop the handle; the network detach happens when the connection closes."""
        self._channel = None
