"""
Capability interfaces for everything the cycle engine talks to.

The engine only sees these contracts. Live adapters wrap PumpPortal, Jupiter,
PumpSwap and the Solana RPC; the paper adapters implement the same contracts
in memory. Trading, fee claiming and liquidity are separate capabilities:
one venue may claim fees while another executes the buyback.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

import aiohttp

if TYPE_CHECKING:
    from solders.keypair import Keypair

    from liquidify.core.events import EventBus


class TokenPhase(str, Enum):
    """Where a token trades: on its bonding curve or in an open-market pool."""
    BONDING = "bonding"
    GRADUATED = "graduated"


class FailureKind(Enum):
    """Why a trade failed. Used for logging only, never for control flow."""
    ASSET_NOT_FOUND = "asset_not_found"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    SLIPPAGE_EXCEEDED = "slippage_exceeded"
    VENUE_ERROR = "venue_error"


# Substrings venues put in their error bodies / program logs.
_FAILURE_MARKERS: list[tuple[FailureKind, tuple[str, ...]]] = [
    (FailureKind.ASSET_NOT_FOUND, (
        "not found", "does not exist", "token_not_tradable",
        "could_not_find_any_route", "not tradable",
    )),
    (FailureKind.INSUFFICIENT_BALANCE, ("insufficient", "balance")),
    (FailureKind.SLIPPAGE_EXCEEDED, (
        "slippage", "toomuchsolrequired", "0x1771", "0x1772",
    )),
]


def classify_failure(text: str) -> FailureKind:
    """Map a venue error message to a FailureKind."""
    lowered = text.lower()
    for kind, markers in _FAILURE_MARKERS:
        if any(marker in lowered for marker in markers):
            return kind
    return FailureKind.VENUE_ERROR


# -- Outcomes --

@dataclass(frozen=True)
class TradeReceipt:
    """A confirmed buy."""
    signature: str
    tokens_received: int = 0


@dataclass(frozen=True)
class ClaimReceipt:
    """A confirmed creator-fee claim."""
    signature: str


@dataclass(frozen=True)
class NoFeesAvailable:
    """The venue had nothing to claim. Not an error."""
    reason: str = "no creator fees to claim"


@dataclass(frozen=True)
class DepositReceipt:
    """A confirmed liquidity deposit."""
    signature: str
    pool_share_amount: int
    lamports_spent: int
    tokens_spent: int


@dataclass(frozen=True)
class PoolShareBalance:
    """Pool-share (LP) tokens held by a wallet, and which program issued them."""
    mint: str
    token_program: str
    account: str
    amount: int


@dataclass(frozen=True)
class BurnReceipt:
    signature: str
    amount: int


# -- Adapter lifecycle --

class BaseAdapter(ABC):
    """
    Shared lifecycle for HTTP-backed adapters.

    connect() opens one aiohttp session that every call reuses;
    disconnect() closes it. Adapters that never touch the network
    (paper adapters) inherit the no-network defaults untouched.
    """

    name: str = "base_adapter"
    timeout_s: float = 30.0

    def __init__(self) -> None:
        self._event_bus: EventBus | None = None
        self._session: aiohttp.ClientSession | None = None
        self._connected: bool = False

    def bind(self, event_bus: EventBus) -> None:
        self._event_bus = event_bus

    async def connect(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_s),
            )
        self._connected = True

    async def disconnect(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None
        self._connected = False

    def _require_session(self) -> aiohttp.ClientSession:
        if not self._session:
            raise RuntimeError(f"{self.name} adapter not connected")
        return self._session

    @property
    def connected(self) -> bool:
        return self._connected


# -- Capabilities --

class BalanceReader(ABC):
    """Read-only view of the operating wallet."""

    @abstractmethod
    async def get_balance(self, owner: str) -> int:
        """Native balance in lamports."""
        ...

    @abstractmethod
    async def get_token_balance(self, owner: str, mint: str) -> int:
        """Raw token balance across every token account the owner holds for mint."""
        ...


class VenueAdapter(ABC):
    """Price discovery + trade execution for one venue."""

    name: str = "venue"

    @abstractmethod
    async def buy(
        self,
        wallet: Keypair,
        mint: str,
        lamports: int,
        phase_hint: TokenPhase,
    ) -> TradeReceipt:
        """
        Spend `lamports` of SOL on `mint` and wait for confirmation.
        Raises VenueError on failure.
        """
        ...


class FeeClaimAdapter(ABC):
    """Claims accrued creator fees into the operating wallet."""

    @abstractmethod
    async def claim(self, wallet: Keypair) -> ClaimReceipt | NoFeesAvailable:
        """Raises FeeClaimError on transport or venue failure."""
        ...


class LiquidityAdapter(ABC):
    """Deposits into a pool and destroys the pool-share tokens it mints."""

    @abstractmethod
    async def deposit(
        self,
        wallet: Keypair,
        pool_address: str,
        lamports: int,
        max_tokens: int,
        slippage_pct: int | None = None,
    ) -> DepositReceipt:
        """
        Deposit up to `lamports` of SOL plus the pool-ratio amount of token,
        never more than `max_tokens`.

        Raises InsufficientTokenError when the wallet cannot cover any
        deposit, LiquidityError on other failures.
        """
        ...

    @abstractmethod
    async def pool_share_balance(
        self, owner: str, pool_address: str
    ) -> PoolShareBalance | None:
        """None when the owner has no pool-share account under any token program."""
        ...

    @abstractmethod
    async def burn(self, wallet: Keypair, share: PoolShareBalance) -> BurnReceipt:
        ...


class TransferAdapter(ABC):
    """Plain native transfers (fee-split payments)."""

    @abstractmethod
    async def transfer(self, wallet: Keypair, recipient: str, lamports: int) -> str:
        """Returns the confirmed signature. Raises TransferError."""
        ...


# -- Errors --

class LiquidifyError(Exception):
    """Base for every error this package raises."""
    pass


class VenueError(LiquidifyError):
    """A buy failed. `kind` says why."""

    def __init__(self, message: str, kind: FailureKind = FailureKind.VENUE_ERROR) -> None:
        super().__init__(message)
        self.kind = kind


class FeeClaimError(LiquidifyError):
    pass


class LiquidityError(LiquidifyError):
    pass


class InsufficientTokenError(LiquidityError):
    """The wallet does not hold enough token to pair with the deposit."""
    pass


class TransferError(LiquidifyError):
    pass
