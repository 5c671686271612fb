"""
Application configuration.

Responsibilities:
- Load deployment-specific configuration
- Read environment variables
- Provide a typed, immutable config object

Non-responsibilities:
- No session logic
- No protocol constants
- No runtime mutation
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from constants import (
    ABLY_REALTIME_HOST_DEFAULT,
    ABLY_REST_HOST_DEFAULT,
    DEFAULT_CHANNEL_NAME,
    DEFAULT_CHANNEL_NAMESPACE,
    TOKEN_TTL_MS_DEFAULT,
)


@dataclass(frozen=True)
class AppConfig:
    """
    Immutable application configuration.

    Constructed once at process startup.
    Passed downward to the server routes and session gateway.
    """

    # ------------------------------------------------------------------
    # Environment
    # ------------------------------------------------------------------

    env: str

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    enable_json_logs: bool

    # ------------------------------------------------------------------
    # Backbone
    # ------------------------------------------------------------------

    realtime_provider: str
    ably_api_key: str | None
    ably_realtime_host: str
    ably_rest_host: str

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    auth_url: str
    token_ttl_ms: int

    # ------------------------------------------------------------------
    # Channel
    # ------------------------------------------------------------------

    channel_namespace: str
    channel_base_name: str

    @property
    def channel_name(self) -> str:
        """Fully qualified channel name, e.g. ``amana-chat:public``."""
        return f"{self.channel_namespace}:{self.channel_base_name}"

    # ------------------------------------------------------------------
    # Factory
    # ------------------------------------------------------------------

    @staticmethod
    def load_from_env() -> AppConfig:
        """
        Load configuration from environment variables.

        Missing credentials are NOT an error here: the auth endpoint reports
        them per request, so the server can still start and serve /health.
        """
        return AppConfig(
            env=os.environ.get("ENV", "dev"),

            enable_json_logs=os.environ.get("ENABLE_JSON_LOGS", "1") == "1",

            realtime_provider=os.environ.get("REALTIME_PROVIDER", "ably"),
            ably_api_key=os.environ.get("ABLY_API_KEY"),
            ably_realtime_host=os.environ.get("ABLY_REALTIME_HOST", ABLY_REALTIME_HOST_DEFAULT),
            ably_rest_host=os.environ.get("ABLY_REST_HOST", ABLY_REST_HOST_DEFAULT),

            auth_url=os.environ.get("AUTH_URL", "http://127.0.0.1:8000/auth"),
            token_ttl_ms=int(os.environ.get("TOKEN_TTL_MS", str(TOKEN_TTL_MS_DEFAULT))),

            channel_namespace=os.environ.get("CHANNEL_NAMESPACE", DEFAULT_CHANNEL_NAMESPACE),
            channel_base_name=os.environ.get("CHANNEL_NAME", DEFAULT_CHANNEL_NAME),
        )
