"""
FastAPI app factory.

Responsibilities:
- Create and configure FastAPI app
- Set up middleware
- Initialize shared resources (realtime client factory, token fetcher)
- Register routes
"""

from functools import partial

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from adapters.realtime.ably_client import AblyRealtimeClient
from adapters.realtime.base import ClientFactory
from adapters.realtime.loopback import LoopbackHub
from auth.bridge import http_token_fetcher
from config import AppConfig
from observability import logger

from server.routes import register_routes


def create_app(config: AppConfig | None = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    This is the app factory pattern that allows:
    - Testing with different configurations
    - Environment-specific setup
    - ASGI server compatibility
    """
    config = config or AppConfig.load_from_env()
    logger.configure(enabled=config.enable_json_logs)

    app = FastAPI(title="Chat Session API")

    app.state.config = config

    # Middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # tighten later
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # One factory per process; loopback members share a hub
    app.state.client_factory = build_client_factory(config)
    app.state.fetch_token = http_token_fetcher(config.auth_url)

    # Routes
    register_routes(app)

    return app


def build_client_factory(config: AppConfig) -> ClientFactory:
    """Build the realtime client factory selected by REALTIME_PROVIDER."""
    provider = config.realtime_provider.lower()
    if provider == "loopback":
        return LoopbackHub().client_factory
    if provider == "ably":
        return partial(
            AblyRealtimeClient,
            realtime_host=config.ably_realtime_host,
            rest_host=config.ably_rest_host,
        )
    raise ValueError(f"Unknown REALTIME_PROVIDER: {config.realtime_provider!r}")
