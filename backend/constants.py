"""
BEHAVIOUR-AS-CONSTANTS
----------------------
Single source of truth for the chat session manager's limits and timings.

Rules:
- If changing a value changes runtime behavior, it belongs here.
- No magic numbers elsewhere in the codebase.
"""

from __future__ import annotations

from typing import Final, Tuple

# =============================================================================
# Local validation
# =============================================================================

CLIENT_ID_MAX_CHARS: Final[int] = 20
MESSAGE_TEXT_MAX_CHARS: Final[int] = 500

# =============================================================================
# Channel wire contract
# =============================================================================

MESSAGE_EVENT_NAME: Final[str] = "message"
ANONYMOUS_SENDER: Final[str] = "Anonymous"
DEFAULT_CHANNEL_NAMESPACE: Final[str] = "amana-chat"
DEFAULT_CHANNEL_NAME: Final[str] = "public"
TOKEN_CAPABILITY_OPERATIONS: Final[Tuple[str, ...]] = ("publish", "subscribe", "presence")

# =============================================================================
# Message stream
# =============================================================================

# Number of backbone-assigned ids remembered for redelivery filtering
MESSAGE_DEDUP_WINDOW: Final[int] = 1_000

# =============================================================================
# Token issuance
# =============================================================================

TOKEN_TTL_MS_DEFAULT: Final[int] = 60 * 60 * 1000

# =============================================================================
# Auth fetch
# =============================================================================

AUTH_FETCH_TIMEOUT_S: Final[float] = 10.0

# =============================================================================
# Ably hosts (SDK defaults; overridable for dedicated clusters)
# =============================================================================

ABLY_REALTIME_HOST_DEFAULT: Final[str] = "realtime.ably.io"
ABLY_REST_HOST_DEFAULT: Final[str] = "rest.ably.io"
