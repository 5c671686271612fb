"""
Connection manager.

Responsibilities:
- Construct the transport client for a clientId, with the auth bridge
  callback wired in
- Record the current ConnectionState from transport events
- Notify observers of transitions of interest
- Close idempotently, never raising

Non-responsibilities:
- No retries or reconnection (the transport's own policy)
- No channel or presence handling
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import AsyncIterator, Callable

from adapters.realtime.base import ClientFactory, RealtimeClient
from auth.bridge import AuthBridge
from observability.logger import log_event
from session.connection_status import ConnectionState


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


# States worth telling observers about. CONNECTING and CLOSING are
# transient and only recorded.
_NOTIFY_STATES = frozenset({
    ConnectionState.CONNECTED,
    ConnectionState.DISCONNECTED,
    ConnectionState.SUSPENDED,
    ConnectionState.CLOSED,
    ConnectionState.FAILED,
})


@dataclass(frozen=True)
class ConnectionChange:
    previous: ConnectionState
    current: ConnectionState
    reason: str | None = None


ConnectionObserver = Callable[[ConnectionChange], None]


class ConnectionStateStream:
    """
    Async iterator over ConnectionChange values for one connect() call.

    Ends after a terminal state (closed / failed) has been yielded.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[ConnectionChange] = asyncio.Queue()
        self._done = False

    def push(self, change: ConnectionChange) -> None:
        if not self._done:
            self._queue.put_nowait(change)
            if change.current.is_terminal:
                self._done = True

    def __aiter__(self) -> AsyncIterator[ConnectionChange]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[ConnectionChange]:
        while True:
            change = await self._queue.get()
            yield change
            if change.current.is_terminal:
                return


class ConnectionManager:
    """
    Owns exactly one transport client for the lifetime of one session.

    A manager is single-use: after close() the session creates a new one.
    """

    def __init__(
        self,
        *,
        client_factory: ClientFactory,
        auth_bridge: AuthBridge,
        session_id: str | None = None,
    ) -> None:
        self._client_factory = client_factory
        self._auth_bridge = auth_bridge
        self._session_id = session_id
        self._client: RealtimeClient | None = None
        self._state = ConnectionState.INITIALIZED
        self._observers: list[ConnectionObserver] = []
        self._stream: ConnectionStateStream | None = None
        self._closed = False

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def client(self) -> RealtimeClient | None:
        return self._client

    def add_listener(self, observer: ConnectionObserver) -> None:
        self._observers.append(observer)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def connect(self, client_id: str) -> ConnectionStateStream:
        """
        Build the transport client and start connecting.

        Returns immediately; progress is observable through the returned
        stream and registered listeners. Auth failures surface as a FAILED
        transition, never as an exception here.
        """
        if self._client is not None:
            raise RuntimeError("ConnectionManager.connect() called twice")
        if self._closed:
            raise RuntimeError("ConnectionManager is closed")

        self._stream = ConnectionStateStream()
        client = self._client_factory(client_id, self._auth_bridge.callback_for(client_id))
        client.on_connection_state(self._on_transport_state)
        self._client = client

        log_event({
            "ts_ms": _now_ms(),
            "event_type": "CONNECTION_OPENING",
            "session_id": self._session_id,
            "client_id": client_id,
        })

        client.connect()
        return self._stream

    async def close(self) -> None:
        """
        Close the transport connection.

        Idempotent: safe when never connected, already closed, or
        mid-connect. Never raises.
        """
        if self._closed:
            return
        self._closed = True

        client = self._client
        if client is None:
            self._record(ConnectionState.CLOSED, "closed before connect")
            return

        try:
            await client.close()
        except Exception as e:  # pylint: disable=broad-exception-caught
            log_event({
                "ts_ms": _now_ms(),
                "event_type": "CONNECTION_CLOSE_ERROR",
                "session_id": self._session_id,
                "exception": type(e).__name__,
                "message": str(e),
            })

        # Transports that drop the socket without a final CLOSED event
        if not self._state.is_terminal:
            self._record(ConnectionState.CLOSED, "closed by session")

    # ------------------------------------------------------------------
    # Transport events
    # ------------------------------------------------------------------

    def _on_transport_state(
        self,
        previous: ConnectionState,  # pylint: disable=unused-argument
        current: ConnectionState,
        reason: str | None,
    ) -> None:
        # After a terminal state, late transport chatter is ignored
        if self._state.is_terminal:
            return
        self._record(current, reason)

    def _record(self, current: ConnectionState, reason: str | None) -> None:
        previous = self._state
        if previous is current:
            return
        self._state = current

        log_event({
            "ts_ms": _now_ms(),
            "event_type": "CONNECTION_STATE_CHANGED",
            "session_id": self._session_id,
            "previous": previous.value,
            "current": current.value,
            "reason": reason,
        })

        if current not in _NOTIFY_STATES:
            return

        change = ConnectionChange(previous=previous, current=current, reason=reason)
        if self._stream is not None:
            self._stream.push(change)
        for observer in list(self._observers):
            observer(change)
