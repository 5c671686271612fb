"""
Timing helpers for observability.

- Durations use monotonic time (immune to clock changes)
- Event timestamps (ts_ms) use wall-clock time for log correlation
- One metric = one log event, never aggregated
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Any, Iterator

from observability.logger import log_event


@contextmanager
def timed(
    name: str,
    *,
    session_id: str | None = None,
    details: dict[str, Any] | None = None,
) -> Iterator[dict[str, Any]]:
    """
    Measure the duration of the wrapped block and emit METRIC_TIMER.

    The yielded dict is merged into ``details`` at exit, so callers can
    record the outcome of the block:

        with timed("join_latency", session_id=sid) as extra:
            ok = await do_join()
            extra["ok"] = ok

    The metric is emitted exactly once, including when the block raises.
    """
    extra: dict[str, Any] = {}
    start_ns = time.monotonic_ns()
    try:
        yield extra
    finally:
        log_event({
            "ts_ms": time.time_ns() // 1_000_000,
            "event_type": "METRIC_TIMER",
            "metric": name,
            "value_ms": (time.monotonic_ns() - start_ns) // 1_000_000,
            "session_id": session_id,
            "details": {**(details or {}), **extra},
        })
