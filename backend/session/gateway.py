"""
Session gateway.

Responsibilities:
- Owns one SessionOrchestrator per UI WebSocket
- Routes inbound JSON control messages -> orchestrator operations
- Queues orchestrator notifications for the outbound pump
- Runs join in the background so LEAVE can interrupt it
- Tears the session down when the UI socket goes away

NOT responsible for:
- Any lifecycle logic (orchestrator)
- Transport, reconnection or auth (adapters)
- Socket I/O (server.routes)
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass
from typing import Any, TYPE_CHECKING
from uuid import uuid4

from adapters.realtime.base import ClientFactory
from auth.bridge import TokenFetcher
from constants import CLIENT_ID_MAX_CHARS, MESSAGE_TEXT_MAX_CHARS
from observability.logger import log_event
from orchestrator.lifecycle import SessionOrchestrator, message_to_wire

if TYPE_CHECKING:
    from config import AppConfig


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------

def _now_ms() -> int:
    return time.time_ns() // 1_000_000


def _new_connection_id() -> str:
    return f"ui_{uuid4().hex[:12]}"


# ------------------------------------------------------------------
# Gateway result
# ------------------------------------------------------------------

@dataclass(frozen=True)
class GatewayResult:
    """
    Return value for gateway boundary methods.

    outbound_json:
        JSON messages to send to the client right away
    """
    outbound_json: tuple[dict[str, Any], ...] = ()


# ------------------------------------------------------------------
# SessionGateway
# ------------------------------------------------------------------

class SessionGateway:
    """
    One gateway == one UI connection == one orchestrator.

    Notifications pushed by the orchestrator (MESSAGE, PRESENCE, ...) are
    queued and read by the server's outbound pump via next_outbound().
    """

    def __init__(
        self,
        *,
        config: AppConfig,
        client_factory: ClientFactory,
        fetch_token: TokenFetcher,
    ) -> None:
        self._config = config
        self.connection_id = _new_connection_id()
        self._outbound: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self._join_task: asyncio.Task[bool] | None = None

        self.orchestrator = SessionOrchestrator(
            channel_name=config.channel_name,
            client_factory=client_factory,
            fetch_token=fetch_token,
            notify=self._outbound.put_nowait,
        )

    # ------------------------------------------------------------------
    # WebSocket lifecycle
    # ------------------------------------------------------------------

    async def on_ws_connect(self) -> GatewayResult:
        """Called when the UI WebSocket is accepted."""
        log_event({
            "ts_ms": _now_ms(),
            "event_type": "UI_CONNECTED",
            "connection_id": self.connection_id,
        })

        init_msg = {
            "type": "SESSION_INIT",
            "connection_id": self.connection_id,
            "channel": self._config.channel_name,
            "state": self.orchestrator.state.value,
            "limits": {
                "client_id_max_chars": CLIENT_ID_MAX_CHARS,
                "message_text_max_chars": MESSAGE_TEXT_MAX_CHARS,
            },
        }
        return GatewayResult(outbound_json=(init_msg,))

    async def on_ws_disconnect(self, reason: str | None = None) -> None:
        """Tear down whatever the UI left behind. Never raises."""
        log_event({
            "ts_ms": _now_ms(),
            "event_type": "UI_DISCONNECTED",
            "connection_id": self.connection_id,
            "client_id": self.orchestrator.client_id,
            "reason": reason,
        })
        await self.orchestrator.teardown()
        await self._await_join_task()

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def on_json_message(self, payload: str) -> GatewayResult:
        """Route inbound JSON to orchestrator operations."""
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            log_event({
                "ts_ms": _now_ms(),
                "event_type": "JSON_DECODE_ERROR",
                "connection_id": self.connection_id,
                "error": str(e),
            })
            return GatewayResult()

        msg_type = data.get("type") if isinstance(data, dict) else None

        if msg_type == "JOIN":
            await self._start_join(data.get("name"))
        elif msg_type == "SEND":
            await self.orchestrator.send(data.get("text"))
        elif msg_type == "LEAVE":
            await self.orchestrator.leave()
            await self._await_join_task()
        elif msg_type == "SNAPSHOT":
            return GatewayResult(outbound_json=(self.snapshot(),))
        else:
            log_event({
                "ts_ms": _now_ms(),
                "event_type": "UNKNOWN_MESSAGE_TYPE",
                "connection_id": self.connection_id,
                "msg_type": msg_type,
            })

        return GatewayResult()

    def snapshot(self) -> dict[str, Any]:
        """Full view state: lifecycle, connection, members and log."""
        return {
            "type": "SNAPSHOT",
            "state": self.orchestrator.state.value,
            "connection_state": self.orchestrator.connection_state.value,
            "client_id": self.orchestrator.client_id,
            "members": sorted(self.orchestrator.members),
            "messages": [message_to_wire(m) for m in self.orchestrator.messages],
        }

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def next_outbound(self) -> dict[str, Any]:
        return await self._outbound.get()

    def drain_outbound(self) -> tuple[dict[str, Any], ...]:
        out: list[dict[str, Any]] = []
        while not self._outbound.empty():
            out.append(self._outbound.get_nowait())
        return tuple(out)

    # ------------------------------------------------------------------
    # Join task
    # ------------------------------------------------------------------

    async def _start_join(self, name: Any) -> None:
        if self._join_task is not None and not self._join_task.done():
            log_event({
                "ts_ms": _now_ms(),
                "event_type": "JOIN_ALREADY_IN_PROGRESS",
                "connection_id": self.connection_id,
            })
            return
        self._join_task = asyncio.create_task(
            self.orchestrator.join(name if isinstance(name, str) else None)
        )
        # Let join reach its first suspension so a LEAVE can see it
        await asyncio.sleep(0)

    async def _await_join_task(self) -> None:
        task = self._join_task
        self._join_task = None
        if task is None:
            return
        try:
            await task
        except Exception as e:  # pylint: disable=broad-exception-caught
            log_event({
                "ts_ms": _now_ms(),
                "event_type": "JOIN_TASK_ERROR",
                "connection_id": self.connection_id,
                "exception": type(e).__name__,
                "message": str(e),
            })

    async def wait_for_join(self) -> bool | None:
        """Await the in-flight join, if any, and return its result."""
        task = self._join_task
        if task is None:
            return None
        return await task
