"""
Realtime backbone contract.

This module defines the *interface only*: no reconnection policy, no
presence reconciliation, no ordering decisions live here.

Key invariants:
- A client owns one connection; channels are obtained from the client and
  share that connection.
- Connection state changes are reported to listeners in the order the
  transport observes them.
- Message and presence listeners are plain callables invoked on the event
  loop, one event at a time, in arrival order.
- Publishing is echoed back to the publisher through its own subscription.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from session.connection_status import ConnectionState


# ---------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------

class RealtimeError(Exception):
    """Base class for backbone errors. ``code`` is the backbone error code."""

    def __init__(self, message: str, *, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


class AuthError(RealtimeError):
    """Token fetch or token exchange failed."""


class ChannelError(RealtimeError):
    """Attach / publish / presence operation failed on a channel."""


# ---------------------------------------------------------------------
# Channel state
# ---------------------------------------------------------------------

class ChannelState(str, Enum):
    INITIALIZED = "initialized"
    ATTACHING = "attaching"
    ATTACHED = "attached"
    DETACHING = "detaching"
    DETACHED = "detached"
    SUSPENDED = "suspended"
    FAILED = "failed"


# ---------------------------------------------------------------------
# Envelopes handed to listeners
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class InboundMessage:
    """
    A message as delivered by the transport.

    Any field may be missing on partial payloads; normalization happens in
    the message stream, not here.
    """
    name: str | None
    data: Any
    id: str | None = None
    client_id: str | None = None
    timestamp: int | None = None


class PresenceAction(str, Enum):
    PRESENT = "present"
    ENTER = "enter"
    LEAVE = "leave"
    UPDATE = "update"


@dataclass(frozen=True)
class PresenceEvent:
    action: PresenceAction
    client_id: str
    timestamp: int | None = None


# ---------------------------------------------------------------------
# Callback types
# ---------------------------------------------------------------------

ConnectionListener = Callable[[ConnectionState, ConnectionState, str | None], None]
MessageListener = Callable[[InboundMessage], None]
PresenceListener = Callable[[PresenceEvent], None]

# Returns a token request (dict) for the transport to exchange.
# Raising AuthError moves the connection to FAILED.
AuthCallback = Callable[[], Awaitable[dict[str, Any]]]


# ---------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------

class RealtimePresence(ABC):
    """Presence primitives of one channel."""

    @abstractmethod
    async def enter(self, data: Any = None) -> None:
        """Enter presence as the connection's clientId."""
        raise NotImplementedError

    @abstractmethod
    async def leave(self, data: Any = None) -> None:
        """Leave presence. Must be a no-op if not entered."""
        raise NotImplementedError

    @abstractmethod
    async def get(self) -> list[PresenceEvent]:
        """
        Return the authoritative member list.

        Waits for any in-progress presence sync to complete.
        """
        raise NotImplementedError

    @abstractmethod
    def subscribe(self, action: PresenceAction, listener: PresenceListener) -> None:
        raise NotImplementedError

    @abstractmethod
    def unsubscribe(self) -> None:
        """Remove all presence listeners registered on this channel."""
        raise NotImplementedError


class RealtimeChannel(ABC):
    """A named channel handle bound to one client connection."""

    name: str

    @property
    @abstractmethod
    def state(self) -> ChannelState:
        raise NotImplementedError

    @property
    @abstractmethod
    def presence(self) -> RealtimePresence:
        raise NotImplementedError

    @abstractmethod
    async def attach(self) -> None:
        """
        Attach the channel.

        Waits for the connection to come up. Raises ChannelError if the
        connection fails or the backbone rejects the attach.
        """
        raise NotImplementedError

    @abstractmethod
    async def detach(self) -> None:
        raise NotImplementedError

    @abstractmethod
    async def publish(self, name: str, data: Any) -> None:
        """Publish one message; resolves when the backbone acknowledges it."""
        raise NotImplementedError

    @abstractmethod
    def subscribe(self, name: str, listener: MessageListener) -> None:
        raise NotImplementedError

    @abstractmethod
    def unsubscribe(self) -> None:
        """Remove all message listeners registered on this channel."""
        raise NotImplementedError


class RealtimeClient(ABC):
    """
    One backbone connection.

    Construction does not connect; connect() starts the transport's own
    connect / reconnect policy and returns immediately.
    """

    client_id: str

    @property
    @abstractmethod
    def connection_state(self) -> ConnectionState:
        raise NotImplementedError

    @abstractmethod
    def on_connection_state(self, listener: ConnectionListener) -> None:
        raise NotImplementedError

    @abstractmethod
    def get_channel(self, name: str) -> RealtimeChannel:
        """Return the (cached) channel handle for ``name``."""
        raise NotImplementedError

    @abstractmethod
    def connect(self) -> None:
        raise NotImplementedError

    @abstractmethod
    async def close(self) -> None:
        """
        Close the connection; channels are detached implicitly.

        Must be idempotent.
        """
        raise NotImplementedError


# Builds a client for (client_id, auth_callback). Injected into the
# connection manager so tests can substitute a fake backbone.
ClientFactory = Callable[[str, AuthCallback], RealtimeClient]
