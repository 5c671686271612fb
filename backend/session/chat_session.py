"""
Chat session container.

- Owns the per-session components (connection, channel, presence, messages)
- Owned exclusively by the SessionOrchestrator: created on join, dropped on
  leave or teardown
- NOT a state machine
- Contains no lifecycle logic
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from realtime.channel import ChannelSession
from realtime.connection import ConnectionManager
from realtime.messages import Message, MessageLog, MessageStream
from realtime.presence import PresenceSet, PresenceTracker
from session.connection_status import ConnectionState


def new_session_id() -> str:
    return f"chat_{uuid4().hex[:12]}"


@dataclass
class ChatSession:
    """Mutable runtime container for a single chat session."""

    # ------------------------------------------------------------------
    # Identity / lifecycle
    # ------------------------------------------------------------------

    session_id: str
    client_id: str
    created_at: float = field(default_factory=time.time)

    # ------------------------------------------------------------------
    # View state
    # ------------------------------------------------------------------

    presence_set: PresenceSet = field(default_factory=PresenceSet)
    message_log: MessageLog = field(default_factory=MessageLog)

    # ------------------------------------------------------------------
    # Components (wired by the orchestrator)
    # ------------------------------------------------------------------

    connection: ConnectionManager | None = None
    channel: ChannelSession | None = None
    presence: PresenceTracker | None = None
    message_stream: MessageStream | None = None

    # Set once the leave sequence has run for this session
    released: bool = False

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def connection_state(self) -> ConnectionState:
        if self.connection is None:
            return ConnectionState.INITIALIZED
        return self.connection.state

    @property
    def messages(self) -> tuple[Message, ...]:
        return self.message_log.entries

    @property
    def members(self) -> frozenset[str]:
        return self.presence_set.members

    def log_context(self) -> dict[str, Any]:
        """Standard logging context for this session."""
        return {
            "session_id": self.session_id,
            "client_id": self.client_id,
            "connection_state": self.connection_state.value,
        }
