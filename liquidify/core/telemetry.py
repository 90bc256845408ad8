"""Latency and counter telemetry for the cycle engine.

Adapters decorate their network calls with ``track_latency`` so every RPC
round-trip, venue request and confirmation wait lands in one shared
tracker. ``OutcomeTally`` listens on the event bus and counts cycle
outcomes. ``TelemetryExporter`` appends JSON lines to a file; the token
registry reuses it for the operation history.

Example::

    from liquidify.core.telemetry import default_tracker, track_latency

    @track_latency("pumpportal", "trade_local")
    async def trade_local(...):
        ...

    print(default_tracker().summary())
"""

from __future__ import annotations

import functools
import json
import logging
import math
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, TypeVar, cast

if TYPE_CHECKING:
    from liquidify.core.events import Event, EventBus

logger = logging.getLogger("liquidify.telemetry")

F = TypeVar("F", bound=Callable[..., Any])


# ---------------------------------------------------------------------------
# Latency tracker
# ---------------------------------------------------------------------------

class LatencyTracker:
    """Latency samples keyed by (adapter, operation).

    Each key keeps at most ``max_samples`` observations; the oldest
    sample is dropped first.
    """

    def __init__(self, max_samples: int = 500) -> None:
        self._max_samples = max_samples
        self._buckets: Dict[str, List[float]] = {}

    @staticmethod
    def _key(adapter: str, operation: str) -> str:
        return f"{adapter}:{operation}"

    def record(self, adapter: str, operation: str, latency_s: float) -> None:
        buf = self._buckets.setdefault(self._key(adapter, operation), [])
        buf.append(latency_s)
        if len(buf) > self._max_samples:
            buf.pop(0)

    def percentile(self, adapter: str, operation: str, pct: float) -> float:
        """Latency at ``pct`` (0.0-1.0) for one key, or 0.0 with no samples."""
        buf = self._buckets.get(self._key(adapter, operation))
        if not buf:
            return 0.0
        ordered = sorted(buf)
        idx = int(math.ceil(pct * len(ordered))) - 1
        return ordered[max(0, min(idx, len(ordered) - 1))]

    def count(self, adapter: str, operation: str) -> int:
        return len(self._buckets.get(self._key(adapter, operation), []))

    def summary(self) -> Dict[str, Dict[str, float]]:
        """``{"adapter:operation": {p50, p95, max, mean, count}}`` for every key seen."""
        result: Dict[str, Dict[str, float]] = {}
        for key, buf in self._buckets.items():
            if not buf:
                continue
            ordered = sorted(buf)
            n = len(ordered)
            result[key] = {
                "p50": ordered[max(0, int(math.ceil(n * 0.50)) - 1)],
                "p95": ordered[max(0, int(math.ceil(n * 0.95)) - 1)],
                "max": ordered[-1],
                "mean": sum(ordered) / n,
                "count": float(n),
            }
        return result

    def reset(self) -> None:
        self._buckets.clear()


# ---------------------------------------------------------------------------
# Counters
# ---------------------------------------------------------------------------

class PerformanceCounters:
    """Monotonic named counters (calls, errors, cycles, operations)."""

    def __init__(self) -> None:
        self._counters: Dict[str, int] = {}

    def inc(self, name: str, amount: int = 1) -> None:
        self._counters[name] = self._counters.get(name, 0) + amount

    def get(self, name: str) -> int:
        return self._counters.get(name, 0)

    def snapshot(self) -> Dict[str, int]:
        return dict(self._counters)

    def reset(self) -> None:
        self._counters.clear()


class OutcomeTally:
    """Counts cycle outcomes and recorded operations from the event bus.

    Attach once per process::

        tally = OutcomeTally()
        tally.attach(bus)
        ...
        print(tally.counters.snapshot())
    """

    def __init__(self, counters: Optional[PerformanceCounters] = None) -> None:
        self.counters = counters or PerformanceCounters()

    def attach(self, bus: EventBus) -> None:
        bus.subscribe_all(self._on_event)

    def _on_event(self, event: Event) -> None:
        self.counters.inc(f"events.{event.event_type.name.lower()}")
        kind = getattr(event, "kind", "")
        if kind:
            self.counters.inc(f"operations.{kind}")


# ---------------------------------------------------------------------------
# JSON-lines exporter
# ---------------------------------------------------------------------------

class TelemetryExporter:
    """Appends JSON records to a file, or to the debug log when no file is set.

    Records are buffered and written every ``flush_interval`` seconds;
    ``flush_interval=0`` writes each record immediately.
    """

    def __init__(
        self,
        file_path: Optional[str] = None,
        flush_interval: float = 5.0,
    ) -> None:
        self._file_path = file_path
        self._flush_interval = flush_interval
        self._buffer: List[Dict[str, Any]] = []
        self._file = None
        self._last_flush: float = 0.0

        if file_path:
            path = Path(file_path)
            path.parent.mkdir(parents=True, exist_ok=True)
            self._file = open(path, "a", encoding="utf-8")

    def emit(self, event_type: str, data: Dict[str, Any]) -> None:
        self._buffer.append({"ts": time.time(), "type": event_type, **data})
        if time.monotonic() - self._last_flush >= self._flush_interval:
            self.flush()

    def flush(self) -> None:
        if not self._buffer:
            return
        for record in self._buffer:
            line = json.dumps(record, default=str)
            if self._file:
                self._file.write(line + "\n")
            else:
                logger.debug("telemetry: %s", line)
        if self._file:
            self._file.flush()
        self._buffer.clear()
        self._last_flush = time.monotonic()

    def export_snapshot(
        self,
        latency: LatencyTracker,
        counters: PerformanceCounters,
    ) -> None:
        self.emit("latency_summary", {"latencies": latency.summary()})
        self.emit("counters", counters.snapshot())
        self.flush()

    def close(self) -> None:
        self.flush()
        if self._file:
            self._file.close()
            self._file = None


# ---------------------------------------------------------------------------
# Decorator
# ---------------------------------------------------------------------------

_default_tracker = LatencyTracker()
_default_counters = PerformanceCounters()


def default_tracker() -> LatencyTracker:
    return _default_tracker


def default_counters() -> PerformanceCounters:
    return _default_counters


def track_latency(
    adapter: str = "default",
    operation: str = "",
    tracker: Optional[LatencyTracker] = None,
    counters: Optional[PerformanceCounters] = None,
) -> Callable[[F], F]:
    """Record latency plus ok/error/call counts for an async callable.

    ``operation`` defaults to the wrapped function's name. Exceptions are
    counted and re-raised unchanged.
    """
    t = tracker or _default_tracker
    c = counters or _default_counters

    def decorator(fn: F) -> F:
        op = operation or fn.__name__

        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            start = time.monotonic()
            try:
                result = await fn(*args, **kwargs)
                c.inc(f"{adapter}.{op}.ok")
                return result
            except Exception:
                c.inc(f"{adapter}.{op}.error")
                raise
            finally:
                t.record(adapter, op, time.monotonic() - start)
                c.inc(f"{adapter}.{op}.calls")

        return cast(F, wrapper)

    return decorator
