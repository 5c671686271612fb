"""
Connection state of a chat session's backbone connection.

Transitions are driven solely by the transport's connection events. This is
pure data: the connection manager records it, nothing here decides anything.
"""
from enum import Enum


class ConnectionState(str, Enum):
    """
    Backbone connection lifecycle.

    Separate from and independent of the session lifecycle (LifecycleState).
    A joined session can be DISCONNECTED while the transport reconnects.
    """
    INITIALIZED = "initialized"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"  # Transient; transport retries on its own
    SUSPENDED = "suspended"        # Disconnected for longer than the state TTL
    CLOSING = "closing"            # Close requested, waiting for the backbone
    CLOSED = "closed"
    FAILED = "failed"              # Terminal, e.g. authentication rejected

    @property
    def is_terminal(self) -> bool:
        return self in (ConnectionState.CLOSED, ConnectionState.FAILED)
