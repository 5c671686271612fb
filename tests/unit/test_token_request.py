# pylint: disable=missing-module-docstring,missing-function-docstring

import json

import pytest
from ably.types.tokenrequest import TokenRequest

from auth.token_request import (
    ConfigurationError,
    channel_capability,
    create_token_request,
    split_api_key,
)


def test_split_api_key() -> None:
    assert split_api_key("app.key:s3cr3t") == ("app.key", "s3cr3t")


@pytest.mark.parametrize("api_key", ["", "app.key", "app.key:", ":secret"])
def test_split_api_key_rejects_malformed(api_key: str) -> None:
    with pytest.raises(ConfigurationError):
        split_api_key(api_key)


def test_capability_is_scoped_to_namespace() -> None:
    assert channel_capability("amana-chat") == {"amana-chat:*": ["publish", "subscribe", "presence"]}


@pytest.mark.asyncio
async def test_token_request_is_signed_with_key_secret() -> None:
    request = await create_token_request(
        api_key="app.key:s3cr3t",
        client_id="Alice",
        namespace="amana-chat",
        ttl_ms=3_600_000,
    )

    assert request["keyName"] == "app.key"
    assert request["clientId"] == "Alice"
    assert request["ttl"] == 3_600_000
    assert json.loads(request["capability"]) == {"amana-chat:*": ["presence", "publish", "subscribe"]}
    assert request["nonce"]
    assert request["timestamp"] > 0
    assert "s3cr3t" not in json.dumps(request)

    resigned = TokenRequest.from_json({k: v for k, v in request.items() if k != "mac"})
    resigned.sign_request(b"s3cr3t")
    assert request["mac"] == resigned.mac


@pytest.mark.asyncio
async def test_nonces_differ_between_requests() -> None:
    first = await create_token_request(api_key="a.b:c", client_id="x", namespace="n", ttl_ms=1)
    second = await create_token_request(api_key="a.b:c", client_id="x", namespace="n", ttl_ms=1)

    assert first["nonce"] != second["nonce"]


@pytest.mark.asyncio
async def test_malformed_key_is_a_configuration_error() -> None:
    with pytest.raises(ConfigurationError):
        await create_token_request(api_key="no-secret-here", client_id="x", namespace="n", ttl_ms=1)
