"""
Session lifecycle state enumeration.

Rules:
- This enum defines ONLY the lifecycle states of a chat session.
- No behavior, no helper methods, no side effects.
- Transitions are made exclusively by the SessionOrchestrator.
"""

from __future__ import annotations

from enum import Enum


class LifecycleState(str, Enum):
    """
    idle -> joining -> joined -> leaving -> idle
    joining -> idle on any join step failure

    These states represent session intent, NOT connection status.
    """

    IDLE = "idle"
    JOINING = "joining"
    JOINED = "joined"
    LEAVING = "leaving"
