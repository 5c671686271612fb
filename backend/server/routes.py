"""
Route registration for the chat session API.

Responsibilities:
- Define HTTP and WebSocket endpoints
- Sign token requests for the realtime backbone (/auth)
- Wire gateway to WebSocket lifecycle
- Pull dependencies from app.state
"""

from __future__ import annotations

import asyncio
import json
import secrets
import time

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from auth.token_request import create_token_request
from config import AppConfig
from observability.logger import log_event
from session.gateway import SessionGateway, GatewayResult


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


def register_routes(app: FastAPI) -> None:
    """Register all routes on the FastAPI app."""
    @app.get("/health")
    async def health() -> dict[str, str]: # pyright: ignore[reportUnusedFunction]
        return {"status": "ok"}

    @app.get("/auth")
    async def auth(request: Request) -> JSONResponse: # pyright: ignore[reportUnusedFunction]
        config: AppConfig = app.state.config
        return await issue_token_request(config, request.query_params.get("clientId"))

    @app.websocket("/ws")
    async def websocket_endpoint(ws: WebSocket) -> None: # pyright: ignore[reportUnusedFunction]
        await ws.accept()

        gateway = SessionGateway(
            config=app.state.config,
            client_factory=app.state.client_factory,
            fetch_token=app.state.fetch_token,
        )
        pump = asyncio.create_task(_pump_outbound(ws, gateway))

        try:
            result = await gateway.on_ws_connect()
            await _flush_gateway_result(ws, result)

            while True:
                text = await ws.receive_text()
                result = await gateway.on_json_message(text)
                await _flush_gateway_result(ws, result)

        except WebSocketDisconnect:
            await gateway.on_ws_disconnect(reason="client_disconnect")

        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "ts_ms": _now_ms(),
                "event_type": "WS_FATAL_ERROR",
                "connection_id": gateway.connection_id,
                "exception": type(exc).__name__,
                "message": str(exc),
            })
            await gateway.on_ws_disconnect(reason="server_error")

        finally:
            pump.cancel()
            try:
                await pump
            except asyncio.CancelledError:
                pass


async def issue_token_request(config: AppConfig, client_id: str | None) -> JSONResponse:
    """
    Sign a token request scoped to the chat namespace (via the ably SDK).

    Error contract: 500 with {"error": ...}; the secret never appears in
    the body or the logs.
    """
    if not config.ably_api_key:
        log_event({
            "ts_ms": _now_ms(),
            "event_type": "AUTH_NOT_CONFIGURED",
        })
        return JSONResponse(status_code=500, content={"error": "Ably API key not configured"})

    client_id = client_id or f"user-{secrets.token_hex(5)}"

    try:
        token_request = await create_token_request(
            api_key=config.ably_api_key,
            client_id=client_id,
            namespace=config.channel_namespace,
            ttl_ms=config.token_ttl_ms,
        )
    except Exception as exc:  # pylint: disable=broad-exception-caught
        log_event({
            "ts_ms": _now_ms(),
            "event_type": "AUTH_TOKEN_REQUEST_FAILED",
            "client_id": client_id,
            "exception": type(exc).__name__,
            "message": str(exc),
        })
        return JSONResponse(status_code=500, content={"error": "Failed to create authentication token"})

    log_event({
        "ts_ms": _now_ms(),
        "event_type": "AUTH_TOKEN_REQUEST_ISSUED",
        "client_id": client_id,
        "key_name": token_request["keyName"],
        "ttl": token_request["ttl"],
    })
    return JSONResponse(content=token_request)


async def _pump_outbound(ws: WebSocket, gateway: SessionGateway) -> None:
    """Forward orchestrator notifications to the UI as they arrive."""
    while True:
        msg = await gateway.next_outbound()
        try:
            await ws.send_text(json.dumps(msg))
        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "ts_ms": _now_ms(),
                "event_type": "WS_SEND_FAILED",
                "connection_id": gateway.connection_id,
                "msg_type": msg.get("type"),
                "exception": type(exc).__name__,
            })
            return


async def _flush_gateway_result(
    ws: WebSocket,
    result: GatewayResult,
) -> None:
    for msg in result.outbound_json:
        await ws.send_text(json.dumps(msg))
