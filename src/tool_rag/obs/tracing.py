"""Latency timing for tool calls and conversations."""

from __future__ import annotations

import time


class Timer:
    """Simple context timer used by the router and conversation loop."""

    def __init__(self) -> None:
        self._start = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000.0


def preview(value: str, limit: int = 320) -> str:
    """Clip a tool output for trace records."""
    if len(value) <= limit:
        return value
    return value[: limit - 3] + "..."
