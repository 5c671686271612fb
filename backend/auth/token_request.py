"""
Server-side token request signing.

A token request is a short-lived, scope-limited credential artifact. The
``ably`` SDK signs it with the secret half of the API key; the client's
realtime SDK exchanges it for a backbone token. The secret never leaves
the server.

Wire format (TokenRequest.to_dict()):
    {keyName, clientId, capability, timestamp, nonce, ttl, mac}
"""

from __future__ import annotations

from typing import Any, Sequence

from ably import AblyRest # pyright: ignore[reportMissingTypeStubs]

from constants import TOKEN_CAPABILITY_OPERATIONS


class ConfigurationError(Exception):
    """Server-side credentials are missing or malformed."""


def split_api_key(api_key: str) -> tuple[str, str]:
    """Split ``appId.keyId:secret`` into (key_name, secret)."""
    key_name, sep, secret = api_key.partition(":")
    if not sep or not key_name or not secret:
        raise ConfigurationError("API key must look like '<keyName>:<secret>'")
    return key_name, secret


def channel_capability(
    namespace: str,
    operations: Sequence[str] = TOKEN_CAPABILITY_OPERATIONS,
) -> dict[str, list[str]]:
    """Capability granting ``operations`` on every channel in ``namespace``."""
    return {f"{namespace}:*": list(operations)}


async def create_token_request(
    *,
    api_key: str,
    client_id: str,
    namespace: str,
    ttl_ms: int,
) -> dict[str, Any]:
    """
    Build a signed token request for ``client_id``.

    Raises:
        ConfigurationError if the API key is malformed.
        ably.AblyException if the SDK refuses to sign.
    """
    split_api_key(api_key)

    async with AblyRest(api_key) as rest:
        token_request = await rest.auth.create_token_request(
            token_params={
                "client_id": client_id,
                "capability": channel_capability(namespace),
                "ttl": ttl_ms,
            }
        )
    return token_request.to_dict()
