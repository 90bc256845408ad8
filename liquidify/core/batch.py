"""
Batch runner: one cycle per eligible token, strictly in sequence.

A token's failure never reaches the next token. Results go to the registry
as soon as each cycle ends.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from liquidify.core.cycle import (
    CycleEngine,
    CycleResult,
    CycleState,
    FeeSplitPolicy,
    TokenCycleConfig,
)
from liquidify.core.events import CycleEvent, Event, EventBus, EventType

logger = logging.getLogger("liquidify.batch")

ELIGIBLE_STATUSES = ("bonding", "graduated", "pending")


@dataclass
class TokenRecord:
    """One managed token as the registry stores it."""
    id: str
    mint: str
    wallet_secret: str = field(default="", repr=False)
    status: str = "bonding"
    symbol: str = ""
    fee_split: FeeSplitPolicy | None = None
    totals: dict[str, int] = field(default_factory=dict)

    @property
    def eligible(self) -> bool:
        return self.status in ELIGIBLE_STATUSES

    def cycle_config(self) -> TokenCycleConfig:
        return TokenCycleConfig(
            token_mint=self.mint,
            wallet_secret=self.wallet_secret,
            fee_split=self.fee_split,
        )

    @property
    def label(self) -> str:
        return self.symbol or self.mint[:8]


class TokenRegistry(ABC):
    """Where tokens come from and where cycle results go."""

    @abstractmethod
    def eligible(self) -> list[TokenRecord]:
        ...

    @abstractmethod
    def record(self, token: TokenRecord, result: CycleResult) -> None:
        ...


@dataclass
class BatchReport:
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    duration_s: float = 0.0
    results: dict[str, CycleResult] = field(default_factory=dict)

    def summary(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "skipped": self.skipped,
            "failed": self.failed,
            "duration_s": round(self.duration_s, 2),
        }


class BatchRunner:
    """
    Drives the cycle engine over every eligible token.

    Args:
        engine: The cycle engine.
        registry: Token source and result sink. Needed for run_once/run_forever.
        event_bus: Receives batch and skip events. Optional.
    """

    def __init__(
        self,
        engine: CycleEngine,
        registry: TokenRegistry | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self.engine = engine
        self.registry = registry
        self.event_bus = event_bus
        self._lock = asyncio.Lock()
        self._batches: int = 0

    async def run_batch(self, tokens: list[TokenRecord]) -> BatchReport:
        report = BatchReport()
        started = time.monotonic()
        self._publish(Event(event_type=EventType.BATCH_STARTED, source="batch", data={"tokens": len(tokens)}))
        logger.info(f"Batch start | tokens={len(tokens)}")

        for token in tokens:
            if not token.wallet_secret:
                report.skipped += 1
                logger.info(f"Skip {token.label} | no operating wallet")
                self._publish(CycleEvent(
                    event_type=EventType.TOKEN_SKIPPED, source="batch",
                    token_mint=token.mint, reason="no operating wallet",
                ))
                continue

            try:
                result = await self.engine.run_cycle(token.cycle_config())
            except Exception as e:
                logger.error(f"Cycle crashed | {token.label} | {e}")
                result = CycleResult(
                    token_mint=token.mint,
                    state=CycleState.ABORTED,
                    failure_reason=str(e) or type(e).__name__,
                )

            report.processed += 1
            report.results[token.id] = result
            if not result.succeeded:
                report.failed += 1

            if self.registry is not None:
                try:
                    self.registry.record(token, result)
                except Exception as e:
                    logger.error(f"Registry write failed | {token.label} | {e}")

        report.duration_s = time.monotonic() - started
        self._batches += 1
        self._publish(Event(event_type=EventType.BATCH_COMPLETED, source="batch", data=report.summary()))
        logger.info(
            f"Batch done | processed={report.processed} skipped={report.skipped} "
            f"failed={report.failed} | {report.duration_s:.1f}s"
        )
        return report

    async def run_once(self) -> BatchReport:
        """One batch over the registry's eligible tokens. Waits for any batch already running."""
        if self.registry is None:
            raise RuntimeError("run_once needs a token registry")
        async with self._lock:
            return await self.run_batch(self.registry.eligible())

    async def run_forever(self, interval_s: float, stop: asyncio.Event | None = None) -> None:
        """
        Start a batch every `interval_s` seconds until `stop` is set.

        A batch that overruns the interval delays the next one; batches
        never overlap.
        """
        stop = stop or asyncio.Event()
        logger.info(f"Runner started | interval={interval_s:.0f}s")
        while not stop.is_set():
            started = time.monotonic()
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Batch failed | {e}")
            wait = max(0.0, interval_s - (time.monotonic() - started))
            try:
                await asyncio.wait_for(stop.wait(), timeout=wait)
            except asyncio.TimeoutError:
                pass
        logger.info(f"Runner stopped | batches={self._batches}")

    def _publish(self, event: Event) -> None:
        if self.event_bus:
            self.event_bus.publish(event)
