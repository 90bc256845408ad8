"""
Liquidify: creator-fee buyback and liquidity engine for pump.fun tokens.

Usage:
    python -m liquidify once
    python -m liquidify run --mode paper
    python -m liquidify check <mint>
    python -m liquidify status
"""

__version__ = "0.1.0"

from liquidify.core.cycle import (
    CycleEngine,
    CycleResult,
    CycleSettings,
    CycleState,
    FeeSplitPolicy,
    OperationRecord,
    TokenCycleConfig,
)
from liquidify.core.batch import BatchReport, BatchRunner, TokenRecord, TokenRegistry
from liquidify.core.events import EventBus, EventType
from liquidify.adapters.base import LiquidifyError, TokenPhase
from liquidify.adapters.pumpfun.graduation import GraduationResolver, GraduationStatus
from liquidify.config import LiquidifyConfig, load_config
from liquidify.registry import JsonTokenRegistry

__all__ = [
    "CycleEngine",
    "CycleResult",
    "CycleSettings",
    "CycleState",
    "FeeSplitPolicy",
    "OperationRecord",
    "TokenCycleConfig",
    "BatchReport",
    "BatchRunner",
    "TokenRecord",
    "TokenRegistry",
    "EventBus",
    "EventType",
    "LiquidifyError",
    "TokenPhase",
    "GraduationResolver",
    "GraduationStatus",
    "LiquidifyConfig",
    "load_config",
    "JsonTokenRegistry",
]
