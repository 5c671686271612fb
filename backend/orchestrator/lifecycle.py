"""
Session lifecycle orchestrator.

Responsibilities:
- Sequence join: connect -> attach -> subscribe -> enter presence -> snapshot
- Gate send on the joined state
- Sequence leave: presence leave -> unsubscribe -> close -> reset
- Run the same leave sequence as never-failing teardown
- Push view updates (messages, presence, connection state) to a notifier

Guarantees:
- A failed join leaves nothing behind: partial state is released and the
  orchestrator returns to IDLE
- A leave during join wins: the in-flight join stops at its next resume
  point and never enters presence or subscribes afterwards
- Cleanup errors are logged, never propagated

Non-responsibilities:
- No reconnection (transport policy)
- No rendering; the notifier receives plain dicts
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable

from adapters.realtime.base import ChannelState, ClientFactory, RealtimeError
from auth.bridge import AuthBridge, TokenFetcher
from constants import CLIENT_ID_MAX_CHARS
from observability.logger import log_event
from observability.metrics import timed
from orchestrator.enums.state import LifecycleState
from realtime.channel import ChannelSession
from realtime.connection import ConnectionChange, ConnectionManager
from realtime.messages import Message, MessageStream
from realtime.presence import PresenceTracker
from session.chat_session import ChatSession, new_session_id
from session.connection_status import ConnectionState


Notifier = Callable[[dict[str, Any]], None]


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


def validate_client_id(name: str | None) -> str | None:
    """Trimmed display name, or None if empty or longer than the limit."""
    if name is None:
        return None
    client_id = name.strip()
    if not client_id or len(client_id) > CLIENT_ID_MAX_CHARS:
        return None
    return client_id


def message_to_wire(message: Message) -> dict[str, Any]:
    return {
        "id": message.id,
        "text": message.text,
        "sender_id": message.sender_id,
        "timestamp": message.timestamp,
    }


class _JoinAborted(Exception):
    """The join was superseded by leave() while suspended."""


class SessionOrchestrator:
    """
    One orchestrator == one user's chat presence in one process.

    The ChatSession is created on join and dropped on leave; the clientId
    is retained on the orchestrator across sessions.
    """

    def __init__(
        self,
        *,
        channel_name: str,
        client_factory: ClientFactory,
        fetch_token: TokenFetcher,
        notify: Notifier | None = None,
    ) -> None:
        self._channel_name = channel_name
        self._client_factory = client_factory
        self._auth_bridge = AuthBridge(fetch_token)
        self._notify_cb = notify

        self._state = LifecycleState.IDLE
        self._session: ChatSession | None = None
        self._client_id: str | None = None

        # Monotonic; bumped by every join and leave. A join only commits
        # while the generation it started with is still current.
        self._join_generation = 0
        self._leave_task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def session(self) -> ChatSession | None:
        return self._session

    @property
    def client_id(self) -> str | None:
        return self._client_id

    @property
    def connection_state(self) -> ConnectionState:
        if self._session is None:
            return ConnectionState.INITIALIZED
        return self._session.connection_state

    @property
    def messages(self) -> tuple[Message, ...]:
        return self._session.messages if self._session is not None else ()

    @property
    def members(self) -> frozenset[str]:
        return self._session.members if self._session is not None else frozenset()

    @property
    def can_send(self) -> bool:
        return (
            self._state is LifecycleState.JOINED
            and self.connection_state is ConnectionState.CONNECTED
        )

    # ------------------------------------------------------------------
    # Join
    # ------------------------------------------------------------------

    async def join(self, name: str | None) -> bool:
        """
        Join the channel as ``name``.

        Returns True once joined. Invalid names and joins while not IDLE are
        rejected silently (False). Step failures abort the join, release
        partial state, and notify JOIN_FAILED.
        """
        client_id = validate_client_id(name)
        if client_id is None:
            log_event({
                "ts_ms": _now_ms(),
                "event_type": "JOIN_REJECTED",
                "reason": "invalid_client_id",
            })
            return False

        if self._state is not LifecycleState.IDLE:
            log_event({
                "ts_ms": _now_ms(),
                "event_type": "JOIN_REJECTED",
                "reason": f"state_{self._state.value}",
                "client_id": client_id,
            })
            return False

        self._join_generation += 1
        generation = self._join_generation
        self._client_id = client_id
        session = self._build_session(client_id)
        self._session = session
        self._set_state(LifecycleState.JOINING)

        with timed("join_latency", session_id=session.session_id) as outcome:
            try:
                await self._run_join_steps(session, generation)
            except _JoinAborted:
                outcome["result"] = "aborted"
                return False
            except Exception as e:  # pylint: disable=broad-exception-caught
                if not self._is_current(session, generation):
                    # leave() already released this session
                    outcome["result"] = "aborted"
                    return False
                outcome["result"] = "failed"
                await self._fail_join(session, e)
                return False

            outcome["result"] = "joined"

        self._set_state(LifecycleState.JOINED)
        self._notify({
            "type": "JOINED",
            "session_id": session.session_id,
            "client_id": client_id,
            "members": sorted(session.members),
        })
        return True

    async def _run_join_steps(self, session: ChatSession, generation: int) -> None:
        assert session.connection is not None
        assert session.channel is not None
        assert session.presence is not None
        assert session.message_stream is not None

        session.connection.connect(session.client_id)

        await session.channel.attach(self._channel_name)
        self._check_current(session, generation)

        session.message_stream.subscribe()
        session.presence.subscribe()

        await session.presence.enter_presence(session.client_id)
        self._check_current(session, generation)

        await session.presence.get_snapshot()
        self._check_current(session, generation)

    async def _fail_join(self, session: ChatSession, error: Exception) -> None:
        log_event({
            "ts_ms": _now_ms(),
            "event_type": "JOIN_FAILED",
            **session.log_context(),
            "exception": type(error).__name__,
            "message": str(error),
        })
        await self._release(session)
        self._session = None
        self._set_state(LifecycleState.IDLE)
        self._notify({
            "type": "JOIN_FAILED",
            "client_id": session.client_id,
            "error": "Failed to connect to chat. Please check your configuration.",
        })

    # ------------------------------------------------------------------
    # Send
    # ------------------------------------------------------------------

    async def send(self, text: str | None) -> bool:
        """Publish ``text``; a silent no-op unless joined and connected."""
        session = self._session
        if self._state is not LifecycleState.JOINED or session is None or session.channel is None:
            return False

        try:
            return await session.channel.publish(text)
        except RealtimeError as e:
            log_event({
                "ts_ms": _now_ms(),
                "event_type": "SEND_FAILED",
                **session.log_context(),
                "exception": type(e).__name__,
                "message": str(e),
                "code": e.code,
            })
            return False

    # ------------------------------------------------------------------
    # Leave / teardown
    # ------------------------------------------------------------------

    async def leave(self) -> None:
        """
        Leave the channel and drop the session.

        Idempotent: leaving when idle is a no-op ending in IDLE. A leave that
        arrives while another is releasing waits for that release to finish.
        Leaving during join aborts the join.
        """
        if self._leave_task is not None and not self._leave_task.done():
            await asyncio.shield(self._leave_task)
            return

        session = self._session
        if session is None or self._state is LifecycleState.IDLE:
            if session is None:
                self._state = LifecycleState.IDLE
            return

        self._join_generation += 1
        self._set_state(LifecycleState.LEAVING)

        # Release runs to completion even if this caller is cancelled
        self._leave_task = asyncio.create_task(self._finish_leave(session))
        await asyncio.shield(self._leave_task)

    async def _finish_leave(self, session: ChatSession) -> None:
        await self._release(session)

        if self._session is session:
            self._session = None
        self._set_state(LifecycleState.IDLE)
        self._notify({
            "type": "LEFT",
            "session_id": session.session_id,
            "client_id": session.client_id,
        })

    async def teardown(self) -> None:
        """
        Best-effort cleanup for abnormal termination (process exit, UI
        socket loss). Runs the leave sequence; never raises.
        """
        try:
            await self.leave()
        except Exception as e:  # pylint: disable=broad-exception-caught
            log_event({
                "ts_ms": _now_ms(),
                "event_type": "TEARDOWN_ERROR",
                "client_id": self._client_id,
                "exception": type(e).__name__,
                "message": str(e),
            })
            self._session = None
            self._state = LifecycleState.IDLE

    async def _release(self, session: ChatSession) -> None:
        """
        presence leave -> unsubscribe -> close, each step isolated.

        Runs at most once per session.
        """
        if session.released:
            return
        session.released = True

        channel_state = session.channel.channel_state if session.channel is not None else None

        if session.presence is not None and channel_state in (ChannelState.ATTACHED, ChannelState.ATTACHING):
            await session.presence.leave_presence()

        if session.message_stream is not None:
            self._guarded(session, "message_unsubscribe", session.message_stream.close)
        if session.presence is not None:
            self._guarded(session, "presence_unsubscribe", session.presence.unsubscribe)
        if session.channel is not None:
            session.channel.detach()

        if session.connection is not None:
            await session.connection.close()

        log_event({
            "ts_ms": _now_ms(),
            "event_type": "SESSION_RELEASED",
            **session.log_context(),
            "channel_state": channel_state.value if channel_state is not None else None,
        })

    @staticmethod
    def _guarded(session: ChatSession, step: str, fn: Callable[[], None]) -> None:
        try:
            fn()
        except Exception as e:  # pylint: disable=broad-exception-caught
            log_event({
                "ts_ms": _now_ms(),
                "event_type": "CLEANUP_STEP_FAILED",
                "session_id": session.session_id,
                "step": step,
                "exception": type(e).__name__,
                "message": str(e),
            })

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def _build_session(self, client_id: str) -> ChatSession:
        session = ChatSession(session_id=new_session_id(), client_id=client_id)

        session.connection = ConnectionManager(
            client_factory=self._client_factory,
            auth_bridge=self._auth_bridge,
            session_id=session.session_id,
        )
        session.channel = ChannelSession(session.connection, session_id=session.session_id)
        session.presence = PresenceTracker(
            session.channel,
            session.presence_set,
            session_id=session.session_id,
        )
        session.message_stream = MessageStream(
            session.channel,
            session.message_log,
            session_id=session.session_id,
        )

        session.connection.add_listener(lambda change: self._on_connection_change(session, change))
        session.presence_set.add_listener(lambda members: self._on_presence_change(session, members))
        session.message_log.add_listener(lambda message: self._on_message(session, message))
        return session

    def _is_current(self, session: ChatSession, generation: int) -> bool:
        return self._session is session and self._join_generation == generation

    def _check_current(self, session: ChatSession, generation: int) -> None:
        if not self._is_current(session, generation):
            log_event({
                "ts_ms": _now_ms(),
                "event_type": "JOIN_ABORTED",
                **session.log_context(),
            })
            raise _JoinAborted()

    # ------------------------------------------------------------------
    # View notifications
    # ------------------------------------------------------------------

    def _on_connection_change(self, session: ChatSession, change: ConnectionChange) -> None:
        if self._session is not session:
            return
        self._notify({
            "type": "CONNECTION_STATE",
            "session_id": session.session_id,
            "state": change.current.value,
            "previous": change.previous.value,
            "reason": change.reason,
        })

    def _on_presence_change(self, session: ChatSession, members: frozenset[str]) -> None:
        if self._session is not session:
            return
        self._notify({
            "type": "PRESENCE",
            "session_id": session.session_id,
            "members": sorted(members),
        })

    def _on_message(self, session: ChatSession, message: Message) -> None:
        if self._session is not session:
            return
        self._notify({
            "type": "MESSAGE",
            "session_id": session.session_id,
            "message": message_to_wire(message),
        })

    def _set_state(self, state: LifecycleState) -> None:
        previous = self._state
        self._state = state
        if previous is not state:
            log_event({
                "ts_ms": _now_ms(),
                "event_type": "LIFECYCLE_STATE_CHANGED",
                "client_id": self._client_id,
                "previous": previous.value,
                "current": state.value,
            })

    def _notify(self, update: dict[str, Any]) -> None:
        if self._notify_cb is None:
            return
        try:
            self._notify_cb(update)
        except Exception as e:  # pylint: disable=broad-exception-caught
            log_event({
                "ts_ms": _now_ms(),
                "event_type": "NOTIFY_FAILED",
                "update_type": update.get("type"),
                "exception": type(e).__name__,
                "message": str(e),
            })
