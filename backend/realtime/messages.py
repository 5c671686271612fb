"""
Message stream: inbound "message" events -> normalized, ordered log.

Rules:
- Arrival order of subscription events is the display order; embedded
  timestamps never reorder the log
- The log is append-only; entries are immutable
- Partial payloads are normalized, never rejected
- A backbone-assigned id seen recently is a redelivery and is dropped;
  locally generated ids are unique by construction
"""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable
from uuid import uuid4

from adapters.realtime.base import InboundMessage
from constants import ANONYMOUS_SENDER, MESSAGE_DEDUP_WINDOW
from observability.logger import log_event
from realtime.channel import ChannelSession


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


# ---------------------------------------------------------------------
# Message
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Message:
    id: str
    text: str
    sender_id: str
    timestamp: int


def generate_message_id(now_ms: int) -> str:
    return f"{now_ms}-{uuid4().hex[:12]}"


def _payload_text(data: Any) -> str:
    if isinstance(data, dict):
        text = data.get("text")
        return text if isinstance(text, str) else ""
    if isinstance(data, str):
        return data
    return ""


def normalize_message(inbound: InboundMessage, *, now_ms: int | None = None) -> Message:
    """Fill in id / sender / timestamp for partial payloads."""
    received_ms = now_ms if now_ms is not None else _now_ms()
    return Message(
        id=inbound.id or generate_message_id(received_ms),
        text=_payload_text(inbound.data),
        sender_id=inbound.client_id or ANONYMOUS_SENDER,
        timestamp=inbound.timestamp if inbound.timestamp is not None else received_ms,
    )


# ---------------------------------------------------------------------
# MessageLog
# ---------------------------------------------------------------------

MessageLogListener = Callable[[Message], None]


class MessageLog:
    """Append-only, insertion-ordered message sequence."""

    def __init__(self) -> None:
        self._entries: list[Message] = []
        self._listeners: list[MessageLogListener] = []

    @property
    def entries(self) -> tuple[Message, ...]:
        return tuple(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def add_listener(self, listener: MessageLogListener) -> None:
        self._listeners.append(listener)

    def append(self, message: Message) -> None:
        self._entries.append(message)
        for listener in list(self._listeners):
            listener(message)


# ---------------------------------------------------------------------
# MessageStream
# ---------------------------------------------------------------------

_END = object()


class MessageStream:
    """
    Subscribes to the channel's "message" events and feeds the log.

    Appends happen on arrival, whether or not anyone iterates. Iteration
    is lazy, single-consumer and non-restartable: it replays the log so far,
    then follows live arrivals. Nothing is buffered until iteration starts.
    """

    def __init__(
        self,
        channel_session: ChannelSession,
        log: MessageLog,
        *,
        session_id: str | None = None,
        dedup_window: int = MESSAGE_DEDUP_WINDOW,
    ) -> None:
        self._channel_session = channel_session
        self._log = log
        self._session_id = session_id
        self._dedup_window = dedup_window
        self._seen_ids: OrderedDict[str, None] = OrderedDict()
        self._queue: asyncio.Queue[object] | None = None
        self._subscribed = False
        self._closed = False
        self._iterated = False

    @property
    def log(self) -> MessageLog:
        return self._log

    def subscribe(self) -> MessageStream:
        if self._closed:
            raise RuntimeError("MessageStream is closed")
        if not self._subscribed:
            self._channel_session.subscribe_messages(self._on_inbound)
            self._subscribed = True
        return self

    def close(self) -> None:
        """Unsubscribe and end any iteration in progress. Idempotent."""
        if self._closed:
            return
        self._closed = True
        if self._subscribed:
            self._channel_session.unsubscribe()
        if self._queue is not None:
            self._queue.put_nowait(_END)

    def __aiter__(self) -> AsyncIterator[Message]:
        if self._iterated:
            raise RuntimeError("MessageStream can only be iterated once")
        self._iterated = True
        self._queue = asyncio.Queue()
        for message in self._log.entries:
            self._queue.put_nowait(message)
        if self._closed:
            self._queue.put_nowait(_END)
        return self._iterate(self._queue)

    async def _iterate(self, queue: asyncio.Queue[object]) -> AsyncIterator[Message]:
        while True:
            item = await queue.get()
            if item is _END:
                return
            assert isinstance(item, Message)
            yield item

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def _on_inbound(self, inbound: InboundMessage) -> None:
        if self._closed:
            return

        if inbound.id is not None:
            if inbound.id in self._seen_ids:
                log_event({
                    "ts_ms": _now_ms(),
                    "event_type": "MESSAGE_DUPLICATE_DROPPED",
                    "session_id": self._session_id,
                    "message_id": inbound.id,
                })
                return
            self._remember(inbound.id)

        message = normalize_message(inbound)
        self._log.append(message)
        if self._queue is not None:
            self._queue.put_nowait(message)

    def _remember(self, message_id: str) -> None:
        self._seen_ids[message_id] = None
        while len(self._seen_ids) > self._dedup_window:
            self._seen_ids.popitem(last=False)
