"""
Cycle events.

The engine publishes one event per step outcome so observers (the CLI
tally, the registry, tests) can follow a cycle without parsing logs.
Dispatch is synchronous and in publish order.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable

logger = logging.getLogger("liquidify.events")


class EventType(Enum):
    # Cycle lifecycle
    CYCLE_STARTED = auto()
    CYCLE_COMPLETED = auto()
    CYCLE_ABORTED = auto()

    # Steps
    OPERATION_CONFIRMED = auto()
    STEP_SKIPPED = auto()
    STEP_FAILED = auto()

    # Batch
    BATCH_STARTED = auto()
    BATCH_COMPLETED = auto()
    TOKEN_SKIPPED = auto()

    # System
    ADAPTER_CONNECTED = auto()
    ADAPTER_DISCONNECTED = auto()
    ERROR = auto()


@dataclass(frozen=True)
class Event:
    """Immutable event stamped with wall-clock nanoseconds at creation."""
    event_type: EventType
    timestamp_ns: int = field(default_factory=lambda: time.time_ns())
    source: str = ""
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def timestamp_ms(self) -> float:
        return self.timestamp_ns / 1_000_000

    @property
    def timestamp_s(self) -> float:
        return self.timestamp_ns / 1_000_000_000


@dataclass(frozen=True)
class CycleEvent(Event):
    """Something happened inside one token's cycle."""
    token_mint: str = ""
    kind: str = ""
    signature: str = ""
    amount: int = 0
    reason: str = ""


class EventBus:
    """
    Synchronous publish/subscribe.

    Usage:
        bus = EventBus()
        bus.subscribe(EventType.OPERATION_CONFIRMED, on_operation)
        bus.publish(CycleEvent(event_type=EventType.OPERATION_CONFIRMED, kind="buyback"))

    A handler that raises is counted and reported as an ERROR event;
    the remaining handlers still run.
    """

    def __init__(self) -> None:
        self._handlers: dict[EventType, list[Callable[[Event], None]]] = defaultdict(list)
        self._wildcard: list[Callable[[Event], None]] = []
        self._event_count: int = 0
        self._error_count: int = 0

    def subscribe(self, event_type: EventType, handler: Callable[[Event], None]) -> None:
        self._handlers[event_type].append(handler)

    def subscribe_all(self, handler: Callable[[Event], None]) -> None:
        """Receive every event regardless of type."""
        self._wildcard.append(handler)

    def unsubscribe(self, event_type: EventType, handler: Callable[[Event], None]) -> None:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, event: Event) -> None:
        self._event_count += 1
        handlers = list(self._handlers.get(event.event_type, [])) + self._wildcard

        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                self._error_count += 1
                logger.debug(f"Handler {getattr(handler, '__name__', handler)} failed: {e}")
                # ERROR events never re-trigger themselves
                if event.event_type != EventType.ERROR:
                    self.publish(Event(
                        event_type=EventType.ERROR,
                        source=f"handler:{getattr(handler, '__name__', 'anonymous')}",
                        data={"error": str(e), "original_event": event.event_type.name},
                    ))

    @property
    def stats(self) -> dict[str, int]:
        return {
            "events_processed": self._event_count,
            "errors": self._error_count,
            "handlers_registered": (
                sum(len(h) for h in self._handlers.values()) + len(self._wildcard)
            ),
        }
