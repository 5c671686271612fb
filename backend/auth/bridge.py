"""
Auth bridge.

Responsibilities:
- Hand the transport a token-request callback bound to one clientId
- Turn any fetch / parse failure into AuthError for the transport
- Log auth failures (the caller of connect never sees them)

Non-responsibilities:
- No token signing (see auth.token_request, server side)
- No retries: the transport decides when to ask again
"""

from __future__ import annotations

import time
from typing import Any, Awaitable, Callable

import httpx

from adapters.realtime.base import AuthCallback, AuthError
from constants import AUTH_FETCH_TIMEOUT_S
from observability.logger import log_event


# Fetches a token request for a clientId from the auth service.
TokenFetcher = Callable[[str], Awaitable[dict[str, Any]]]


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


class AuthBridge:
    """
    Wraps an injected token fetcher into the transport's auth callback.

    The fetcher is a plain async function so tests can substitute a fake
    credential source.
    """

    def __init__(self, fetch_token: TokenFetcher) -> None:
        self._fetch_token = fetch_token

    def callback_for(self, client_id: str) -> AuthCallback:
        async def _auth_callback() -> dict[str, Any]:
            try:
                token_request = await self._fetch_token(client_id)
            except AuthError as e:
                self._log_failure(client_id, e)
                raise
            except Exception as e:  # pylint: disable=broad-exception-caught
                self._log_failure(client_id, e)
                raise AuthError(f"Authentication failed: {e}") from e

            if not isinstance(token_request, dict):
                error = AuthError(f"token request must be an object, got {type(token_request).__name__}")
                self._log_failure(client_id, error)
                raise error

            log_event({
                "ts_ms": _now_ms(),
                "event_type": "AUTH_TOKEN_REQUEST_FETCHED",
                "client_id": client_id,
                "key_name": token_request.get("keyName"),
            })
            return token_request

        return _auth_callback

    @staticmethod
    def _log_failure(client_id: str, error: Exception) -> None:
        log_event({
            "ts_ms": _now_ms(),
            "event_type": "AUTH_FETCH_FAILED",
            "client_id": client_id,
            "exception": type(error).__name__,
            "message": str(error),
        })


def http_token_fetcher(
    auth_url: str,
    *,
    http_client: httpx.AsyncClient | None = None,
    timeout_s: float = AUTH_FETCH_TIMEOUT_S,
) -> TokenFetcher:
    """
    Build a TokenFetcher for ``GET {auth_url}?clientId=<id>``.

    Non-2xx responses carry ``{"error": "..."}``; that message becomes the
    AuthError text.
    """

    async def _fetch(client_id: str) -> dict[str, Any]:
        if http_client is not None:
            response = await http_client.get(auth_url, params={"clientId": client_id}, timeout=timeout_s)
        else:
            async with httpx.AsyncClient(timeout=timeout_s) as client:
                response = await client.get(auth_url, params={"clientId": client_id})

        try:
            body = response.json()
        except ValueError as e:
            raise AuthError(f"auth endpoint returned non-JSON (HTTP {response.status_code})") from e

        if response.status_code != 200:
            message = body.get("error") if isinstance(body, dict) else None
            raise AuthError(message or f"auth endpoint returned HTTP {response.status_code}")

        return body

    return _fetch
