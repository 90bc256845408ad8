"""
Cycle engine: one claim -> buyback -> (liquidity) pass for one token.

    START -> FEES_CLAIMED -> AMOUNT_DETERMINED -> BUYBACK_DONE
          -> (LIQUIDITY_DONE) -> COMPLETE
    any fatal error -> ABORTED

Every amount the engine acts on is measured from wallet balances before and
after each step. Adapter receipts say what happened; balance deltas say how
much. Expected empties (no fees, no pool yet, not enough token to pair) are
zero-valued results, never failures. Only a malformed wallet or an error that
escapes every step guard aborts the cycle.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol

from solders.keypair import Keypair

from liquidify.adapters.base import (
    BalanceReader,
    ClaimReceipt,
    FeeClaimAdapter,
    FeeClaimError,
    InsufficientTokenError,
    LiquidityAdapter,
    LiquidityError,
    PoolShareBalance,
    TokenPhase,
    TransferAdapter,
    TransferError,
    VenueAdapter,
    VenueError,
)
from liquidify.adapters.pumpfun.graduation import GraduationStatus
from liquidify.adapters.solana_rpc import explorer_url, lamports_to_sol, load_keypair
from liquidify.core.events import CycleEvent, EventBus, EventType

logger = logging.getLogger("liquidify.cycle")

BPS_DENOMINATOR = 10_000


class CycleState(str, Enum):
    START = "start"
    FEES_CLAIMED = "fees_claimed"
    AMOUNT_DETERMINED = "amount_determined"
    BUYBACK_DONE = "buyback_done"
    LIQUIDITY_DONE = "liquidity_done"
    COMPLETE = "complete"
    ABORTED = "aborted"


class GraduationSource(Protocol):
    async def resolve(self, mint: str) -> GraduationStatus: ...


@dataclass(frozen=True)
class FeeSplitPolicy:
    """Send `bps` basis points of every claim to `recipient`."""
    recipient: str
    bps: int

    def __post_init__(self) -> None:
        if not 0 < self.bps <= BPS_DENOMINATOR:
            raise ValueError(f"fee split bps must be in 1..{BPS_DENOMINATOR}, got {self.bps}")
        if not self.recipient:
            raise ValueError("fee split recipient is empty")

    def share_of(self, lamports: int) -> int:
        return lamports * self.bps // BPS_DENOMINATOR


@dataclass(frozen=True)
class TokenCycleConfig:
    token_mint: str
    wallet_secret: str = field(repr=False)
    fee_split: FeeSplitPolicy | None = None


@dataclass(frozen=True)
class OperationRecord:
    kind: str
    signature: str
    amount: int = 0

    @property
    def explorer_url(self) -> str:
        return explorer_url(self.signature)


@dataclass
class CycleSettings:
    """Engine thresholds, all in lamports, plus settlement polling."""
    dust_threshold_lamports: int = 100_000          # 0.0001 SOL
    max_claim_lamports: int = 500_000_000           # 0.5 SOL
    tx_fee_reserve_lamports: int = 500_000          # 0.0005 SOL
    min_spend_lamports: int = 1_000_000             # 0.001 SOL
    settle_timeout_s: float = 20.0
    settle_poll_s: float = 2.0


@dataclass
class CycleResult:
    token_mint: str
    succeeded: bool = False
    phase: TokenPhase = TokenPhase.BONDING
    state: CycleState = CycleState.START
    pool_address: str | None = None
    fees_claimed: int = 0
    fee_split_paid: int = 0
    spendable: int = 0
    buyback_spent: int = 0
    buyback_received: int = 0
    liquidity_spent: int = 0
    liquidity_shares: int = 0
    shares_burned: int = 0
    operations: list[OperationRecord] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)
    failure_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["phase"] = self.phase.value
        data["state"] = self.state.value
        for op, record in zip(data["operations"], self.operations):
            op["explorer_url"] = record.explorer_url
        return data


class CycleEngine:
    """
    Runs the cycle for one token at a time.

    Collaborators are capability adapters; the engine never talks to a
    venue directly.

    Args:
        resolver: Graduation status source.
        fee_claimer: Claims creator fees.
        bonding_venue: Buys on the bonding curve.
        market_venue: Buys in the graduated token's pool.
        aggregator_venue: Buys via a router when no pool is known.
        liquidity: Deposits into the pool and burns pool-share tokens.
        balances: Wallet balance reads.
        transfers: Native transfers for fee splits. Optional.
        settings: Thresholds and settlement timing.
        event_bus: Receives one event per step outcome. Optional.
    """

    def __init__(
        self,
        resolver: GraduationSource,
        fee_claimer: FeeClaimAdapter,
        bonding_venue: VenueAdapter,
        market_venue: VenueAdapter,
        aggregator_venue: VenueAdapter,
        liquidity: LiquidityAdapter,
        balances: BalanceReader,
        transfers: TransferAdapter | None = None,
        settings: CycleSettings | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self.resolver = resolver
        self.fee_claimer = fee_claimer
        self.bonding_venue = bonding_venue
        self.market_venue = market_venue
        self.aggregator_venue = aggregator_venue
        self.liquidity = liquidity
        self.balances = balances
        self.transfers = transfers
        self.settings = settings or CycleSettings()
        self.event_bus = event_bus

    # -- Public --

    async def run_cycle(self, config: TokenCycleConfig) -> CycleResult:
        mint = config.token_mint
        result = CycleResult(token_mint=mint)
        self._publish(EventType.CYCLE_STARTED, mint)

        try:
            wallet = load_keypair(config.wallet_secret)
            owner = str(wallet.pubkey())

            status = await self.resolver.resolve(mint)
            result.phase = TokenPhase.GRADUATED if status.is_graduated else TokenPhase.BONDING
            result.pool_address = status.pool_address
            logger.info(
                f"Cycle start | {mint[:8]}... | phase={result.phase.value} "
                f"pool={(status.pool_address or '-')[:8]} source={status.source}"
            )

            await self._claim_step(wallet, owner, result)
            await self._determine_amount(wallet, config.fee_split, result)

            if result.spendable < self.settings.min_spend_lamports:
                if result.fees_claimed:
                    self._note(result, f"spendable {result.spendable} below minimum {self.settings.min_spend_lamports}")
            elif not status.is_graduated:
                await self._buyback(wallet, owner, mint, result.spendable, self.bonding_venue, TokenPhase.BONDING, result)
            elif not status.pool_address:
                await self._buyback(wallet, owner, mint, result.spendable, self.aggregator_venue, TokenPhase.GRADUATED, result)
            else:
                await self._buyback_and_provide(wallet, owner, mint, status.pool_address, result)

            result.state = CycleState.COMPLETE
            result.succeeded = True
            self._publish(EventType.CYCLE_COMPLETED, mint, amount=result.spendable)
            logger.info(
                f"Cycle done | {mint[:8]}... | fees={lamports_to_sol(result.fees_claimed):.6f} "
                f"buyback={lamports_to_sol(result.buyback_spent):.6f} "
                f"lp={lamports_to_sol(result.liquidity_spent):.6f} burned={result.shares_burned} "
                f"ops={len(result.operations)}"
            )
        except Exception as e:
            result.succeeded = False
            result.failure_reason = str(e) or type(e).__name__
            logger.error(f"Cycle aborted | {mint[:8]}... | state={result.state.value} | {result.failure_reason}")
            result.state = CycleState.ABORTED
            self._publish(EventType.CYCLE_ABORTED, mint, reason=result.failure_reason)

        return result

    @staticmethod
    def measure_fees(before: int, after: int, settings: CycleSettings) -> int:
        """Balance delta attributable to the claim, after dust floor and clamp."""
        delta = max(0, after - before)
        if delta <= settings.dust_threshold_lamports:
            return 0
        if delta > settings.max_claim_lamports:
            logger.warning(
                f"Claim delta {lamports_to_sol(delta):.6f} SOL exceeds cap | "
                f"clamping to {lamports_to_sol(settings.max_claim_lamports):.6f}"
            )
            return settings.max_claim_lamports
        return delta

    # -- Steps --

    async def _claim_step(self, wallet: Keypair, owner: str, result: CycleResult) -> None:
        before = await self.balances.get_balance(owner)
        signature: str | None = None
        try:
            outcome = await self.fee_claimer.claim(wallet)
            if isinstance(outcome, ClaimReceipt):
                signature = outcome.signature
            else:
                logger.info(f"No fees | {result.token_mint[:8]}... | {outcome.reason}")
        except FeeClaimError as e:
            logger.warning(f"Fee claim failed | {result.token_mint[:8]}... | {e}")
            self._note(result, f"fee claim failed: {e}", failed=True)

        if signature:
            after = await self._settle(lambda: self.balances.get_balance(owner), before)
        else:
            after = await self.balances.get_balance(owner)
        result.fees_claimed = self.measure_fees(before, after, self.settings)
        if signature:
            self._record(result, OperationRecord("claim_fees", signature, result.fees_claimed))
        result.state = CycleState.FEES_CLAIMED

    async def _determine_amount(
        self,
        wallet: Keypair,
        policy: FeeSplitPolicy | None,
        result: CycleResult,
    ) -> None:
        withheld = 0
        if policy is not None and result.fees_claimed > 0:
            withheld = policy.share_of(result.fees_claimed)
            if withheld > 0:
                await self._pay_fee_split(wallet, policy, withheld, result)

        result.spendable = max(
            0, result.fees_claimed - withheld - self.settings.tx_fee_reserve_lamports,
        )
        result.state = CycleState.AMOUNT_DETERMINED

    async def _pay_fee_split(
        self,
        wallet: Keypair,
        policy: FeeSplitPolicy,
        share: int,
        result: CycleResult,
    ) -> None:
        if self.transfers is None:
            self._note(result, "fee split withheld but no transfer adapter configured", failed=True)
            return
        try:
            signature = await self.transfers.transfer(wallet, policy.recipient, share)
        except TransferError as e:
            logger.warning(f"Fee split failed | {result.token_mint[:8]}... | {e}")
            self._note(result, f"fee split transfer failed (share withheld): {e}", failed=True)
            return
        result.fee_split_paid = share
        self._record(result, OperationRecord("fee_split", signature, share))

    async def _buyback(
        self,
        wallet: Keypair,
        owner: str,
        mint: str,
        lamports: int,
        venue: VenueAdapter,
        phase_hint: TokenPhase,
        result: CycleResult,
    ) -> int:
        """Buy with `lamports`; returns tokens received per balance delta (0 on failure)."""
        tokens_before = await self.balances.get_token_balance(owner, mint)
        try:
            receipt = await venue.buy(wallet, mint, lamports, phase_hint)
        except VenueError as e:
            logger.warning(f"Buyback failed | {mint[:8]}... | {venue.name} | {e.kind.value} | {e}")
            self._note(result, f"buyback via {venue.name} failed ({e.kind.value}): {e}", failed=True)
            return 0

        result.buyback_spent += lamports
        self._record(result, OperationRecord("buyback", receipt.signature, lamports))

        tokens_after = await self._settle(
            lambda: self.balances.get_token_balance(owner, mint), tokens_before,
        )
        received = max(0, tokens_after - tokens_before)
        if received == 0 and receipt.tokens_received:
            logger.warning(
                f"Buyback {receipt.signature[:16]}... confirmed but balance unchanged | "
                f"venue reported {receipt.tokens_received}"
            )
        result.buyback_received += received
        result.state = CycleState.BUYBACK_DONE
        return received

    async def _buyback_and_provide(
        self,
        wallet: Keypair,
        owner: str,
        mint: str,
        pool_address: str,
        result: CycleResult,
    ) -> None:
        half = result.spendable // 2
        received = await self._buyback(
            wallet, owner, mint, half, self.market_venue, TokenPhase.GRADUATED, result,
        )
        try:
            deposit = await self.liquidity.deposit(wallet, pool_address, half, received)
        except InsufficientTokenError as e:
            logger.info(f"Liquidity skipped | {mint[:8]}... | {e}")
            self._note(result, f"liquidity skipped: {e}")
            return
        except LiquidityError as e:
            logger.warning(f"Liquidity failed | {mint[:8]}... | {e}")
            self._note(result, f"liquidity failed: {e}", failed=True)
            return

        result.liquidity_spent = deposit.lamports_spent
        result.liquidity_shares = deposit.pool_share_amount
        self._record(result, OperationRecord("add_liquidity", deposit.signature, deposit.lamports_spent))
        result.state = CycleState.LIQUIDITY_DONE

        await self._burn_pool_shares(wallet, owner, pool_address, result)

    async def _burn_pool_shares(
        self,
        wallet: Keypair,
        owner: str,
        pool_address: str,
        result: CycleResult,
    ) -> None:
        """Burn every pool-share token the wallet holds. Failure leaves liquidity added."""
        try:
            share = await self._settle_share(owner, pool_address)
            if share is None or share.amount <= 0:
                self._note(result, "no pool-share balance to burn")
                return
            receipt = await self.liquidity.burn(wallet, share)
        except Exception as e:
            logger.warning(f"LP burn failed | {result.token_mint[:8]}... | liquidity still added | {e}")
            self._note(result, f"pool-share burn failed (liquidity still added): {e}", failed=True)
            return
        result.shares_burned = receipt.amount
        self._record(result, OperationRecord("burn_lp", receipt.signature, receipt.amount))

    # -- Settlement --

    async def _settle(self, read: Callable[[], Awaitable[int]], previous: int) -> int:
        """Poll `read` until it differs from `previous` or the settle timeout passes."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.settle_timeout_s
        while True:
            value = await read()
            if value != previous or loop.time() >= deadline:
                return value
            await asyncio.sleep(self.settings.settle_poll_s)

    async def _settle_share(self, owner: str, pool_address: str) -> PoolShareBalance | None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.settle_timeout_s
        while True:
            share = await self.liquidity.pool_share_balance(owner, pool_address)
            if (share is not None and share.amount > 0) or loop.time() >= deadline:
                return share
            await asyncio.sleep(self.settings.settle_poll_s)

    # -- Bookkeeping --

    def _record(self, result: CycleResult, op: OperationRecord) -> None:
        result.operations.append(op)
        logger.info(f"{op.kind} | {result.token_mint[:8]}... | {op.amount} | {op.explorer_url}")
        self._publish(
            EventType.OPERATION_CONFIRMED, result.token_mint,
            kind=op.kind, signature=op.signature, amount=op.amount,
        )

    def _note(self, result: CycleResult, note: str, failed: bool = False) -> None:
        result.notes.append(note)
        self._publish(
            EventType.STEP_FAILED if failed else EventType.STEP_SKIPPED,
            result.token_mint, reason=note,
        )

    def _publish(self, event_type: EventType, mint: str, **fields: Any) -> None:
        if self.event_bus:
            self.event_bus.publish(CycleEvent(
                event_type=event_type, source="cycle", token_mint=mint, **fields,
            ))
