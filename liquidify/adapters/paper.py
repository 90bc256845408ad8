"""
Paper execution: every capability the cycle engine needs, simulated in memory.

One PaperLedger holds native and token balances. The paper adapters move
value through it the way the live venues would, so the engine measures
balance deltas exactly as it does on chain. Used by ``--mode paper`` and
as the test-suite's fakes.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass

from solders.keypair import Keypair

from liquidify.adapters.base import (
    BalanceReader,
    BaseAdapter,
    BurnReceipt,
    ClaimReceipt,
    DepositReceipt,
    FailureKind,
    FeeClaimAdapter,
    FeeClaimError,
    LiquidifyError,
    LiquidityAdapter,
    LiquidityError,
    NoFeesAvailable,
    PoolShareBalance,
    TokenPhase,
    TradeReceipt,
    TransferAdapter,
    TransferError,
    VenueAdapter,
    VenueError,
)
from liquidify.adapters.pumpfun.graduation import GraduationStatus
from liquidify.adapters.pumpswap.adapter import quote_deposit
from liquidify.adapters.solana_rpc import LAMPORTS_PER_SOL, TOKEN_2022_PROGRAM_ID, lamports_to_sol
from liquidify.core.batch import TokenRecord, TokenRegistry
from liquidify.core.cycle import CycleResult

logger = logging.getLogger("liquidify.paper")

PAPER_TX_FEE_LAMPORTS = 5_000


class PaperLedger(BalanceReader, TransferAdapter):
    """
    In-memory balances keyed by owner address.

    Args:
        default_lamports: Native balance an unseen owner starts with.
    """

    def __init__(self, default_lamports: int = 0) -> None:
        self.default_lamports = default_lamports
        self._native: dict[str, int] = {}
        self._tokens: dict[tuple[str, str], int] = {}
        self._seq = itertools.count(1)
        self.signatures: list[str] = []

    def next_signature(self, kind: str) -> str:
        sig = f"paper_{kind}_{next(self._seq)}"
        self.signatures.append(sig)
        return sig

    # -- Native --

    def set_balance(self, owner: str, lamports: int) -> None:
        self._native[owner] = lamports

    def balance(self, owner: str) -> int:
        return self._native.setdefault(owner, self.default_lamports)

    def credit(self, owner: str, lamports: int) -> None:
        self._native[owner] = self.balance(owner) + lamports

    def debit(self, owner: str, lamports: int) -> None:
        held = self.balance(owner)
        if lamports > held:
            raise PaperError(f"insufficient balance: {held} < {lamports}")
        self._native[owner] = held - lamports

    # -- Tokens --

    def token_balance(self, owner: str, mint: str) -> int:
        return self._tokens.get((owner, mint), 0)

    def set_token_balance(self, owner: str, mint: str, amount: int) -> None:
        self._tokens[(owner, mint)] = amount

    def credit_tokens(self, owner: str, mint: str, amount: int) -> None:
        self._tokens[(owner, mint)] = self.token_balance(owner, mint) + amount

    def debit_tokens(self, owner: str, mint: str, amount: int) -> None:
        held = self.token_balance(owner, mint)
        if amount > held:
            raise PaperError(f"insufficient {mint[:8]} balance: {held} < {amount}")
        self._tokens[(owner, mint)] = held - amount

    # -- Capabilities --

    async def get_balance(self, owner: str) -> int:
        return self.balance(owner)

    async def get_token_balance(self, owner: str, mint: str) -> int:
        return self.token_balance(owner, mint)

    async def transfer(self, wallet: Keypair, recipient: str, lamports: int) -> str:
        owner = str(wallet.pubkey())
        try:
            self.debit(owner, lamports + PAPER_TX_FEE_LAMPORTS)
        except PaperError as e:
            raise TransferError(str(e)) from e
        self.credit(recipient, lamports)
        return self.next_signature("transfer")


class PaperFeeClaim(BaseAdapter, FeeClaimAdapter):
    """
    Creator fees accrue per owner via accrue(); claim() sweeps them into the
    ledger minus the transaction fee.
    """

    name = "paper_fees"

    def __init__(self, ledger: PaperLedger, accrue_per_claim: int = 0) -> None:
        super().__init__()
        self.ledger = ledger
        self.accrue_per_claim = accrue_per_claim
        self.fail_with: str | None = None
        self._pending: dict[str, int] = {}
        self.claims: int = 0

    async def connect(self) -> None:
        self._connected = True

    async def disconnect(self) -> None:
        self._connected = False

    def accrue(self, owner: str, lamports: int) -> None:
        self._pending[owner] = self._pending.get(owner, 0) + lamports

    async def claim(self, wallet: Keypair) -> ClaimReceipt | NoFeesAvailable:
        owner = str(wallet.pubkey())
        if self.fail_with:
            raise FeeClaimError(self.fail_with)
        if self.accrue_per_claim:
            self.accrue(owner, self.accrue_per_claim)
        pending = self._pending.pop(owner, 0)
        if pending <= 0:
            return NoFeesAvailable()
        self.ledger.credit(owner, pending - PAPER_TX_FEE_LAMPORTS)
        self.claims += 1
        logger.info(f"📝 PAPER CLAIM | {owner[:8]}... | {lamports_to_sol(pending):.6f} SOL")
        return ClaimReceipt(signature=self.ledger.next_signature("claim"))


class PaperVenue(BaseAdapter, VenueAdapter):
    """
    Fills every buy at a fixed rate of `tokens_per_sol` raw token units per SOL.

    Set `fail_kind` to make the next buys raise VenueError of that kind.
    """

    def __init__(
        self,
        ledger: PaperLedger,
        name: str = "paper_venue",
        tokens_per_sol: int = 30_000_000_000_000,
    ) -> None:
        super().__init__()
        self.ledger = ledger
        self.name = name
        self.tokens_per_sol = tokens_per_sol
        self.fail_kind: FailureKind | None = None
        self.buys: list[tuple[str, int, TokenPhase]] = []

    async def connect(self) -> None:
        self._connected = True

    async def disconnect(self) -> None:
        self._connected = False

    async def buy(
        self,
        wallet: Keypair,
        mint: str,
        lamports: int,
        phase_hint: TokenPhase,
    ) -> TradeReceipt:
        owner = str(wallet.pubkey())
        if self.fail_kind is not None:
            raise VenueError(f"{self.name} simulated {self.fail_kind.value}", self.fail_kind)
        try:
            self.ledger.debit(owner, lamports + PAPER_TX_FEE_LAMPORTS)
        except PaperError as e:
            raise VenueError(str(e), FailureKind.INSUFFICIENT_BALANCE) from e

        tokens = lamports * self.tokens_per_sol // LAMPORTS_PER_SOL
        self.ledger.credit_tokens(owner, mint, tokens)
        self.buys.append((mint, lamports, phase_hint))
        logger.info(f"📝 PAPER BUY  | {mint[:8]}... | {lamports_to_sol(lamports):.6f} SOL -> {tokens} | {self.name}")
        return TradeReceipt(signature=self.ledger.next_signature("buy"), tokens_received=tokens)


@dataclass
class PaperPool:
    address: str
    token_mint: str
    lp_mint: str
    native_reserve: int
    token_reserve: int
    lp_supply: int


class PaperLiquidity(BaseAdapter, LiquidityAdapter):
    """
    Constant-ratio pools held in memory.

    Args:
        ledger: Shared ledger.
        slippage_pct: Default slippage handed to the deposit quote.
    """

    name = "paper_liquidity"

    def __init__(self, ledger: PaperLedger, slippage_pct: int = 10) -> None:
        super().__init__()
        self.ledger = ledger
        self.slippage_pct = slippage_pct
        self.burn_fails: bool = False
        self.deposit_error: LiquidityError | None = None
        self._pools: dict[str, PaperPool] = {}
        self.deposits: list[DepositReceipt] = []
        self.burns: list[BurnReceipt] = []

    async def connect(self) -> None:
        self._connected = True

    async def disconnect(self) -> None:
        self._connected = False

    def add_pool(self, pool: PaperPool) -> PaperPool:
        self._pools[pool.address] = pool
        return pool

    def ensure_pool(self, address: str, token_mint: str) -> PaperPool:
        """Create a freshly-graduated-sized pool for `token_mint` unless one exists."""
        if address not in self._pools:
            self.add_pool(PaperPool(
                address=address,
                token_mint=token_mint,
                lp_mint=f"{address}_lp",
                native_reserve=85 * LAMPORTS_PER_SOL,
                token_reserve=206_900_000_000_000,
                lp_supply=4_193_388_000_000,
            ))
        return self._pools[address]

    def pool(self, address: str) -> PaperPool:
        found = self._pools.get(address)
        if found is None:
            raise LiquidityError(f"unknown pool {address[:8]}...")
        return found

    async def deposit(
        self,
        wallet: Keypair,
        pool_address: str,
        lamports: int,
        max_tokens: int,
        slippage_pct: int | None = None,
    ) -> DepositReceipt:
        if self.deposit_error is not None:
            raise self.deposit_error
        pool = self.pool(pool_address)
        owner = str(wallet.pubkey())
        mint = pool.token_mint
        available = min(max_tokens, self.ledger.token_balance(owner, mint))

        quote = quote_deposit(
            pool.token_reserve, pool.native_reserve, pool.lp_supply,
            lamports, available,
            self.slippage_pct if slippage_pct is None else slippage_pct,
        )
        try:
            self.ledger.debit(owner, quote.quote_in + PAPER_TX_FEE_LAMPORTS)
            self.ledger.debit_tokens(owner, mint, quote.base_in)
        except PaperError as e:
            raise LiquidityError(str(e)) from e

        pool.native_reserve += quote.quote_in
        pool.token_reserve += quote.base_in
        pool.lp_supply += quote.lp_out
        self.ledger.credit_tokens(owner, pool.lp_mint, quote.lp_out)

        receipt = DepositReceipt(
            signature=self.ledger.next_signature("deposit"),
            pool_share_amount=quote.lp_out,
            lamports_spent=quote.quote_in,
            tokens_spent=quote.base_in,
        )
        self.deposits.append(receipt)
        logger.info(f"📝 PAPER LP   | {pool_address[:8]}... | {lamports_to_sol(quote.quote_in):.6f} SOL + {quote.base_in} -> {quote.lp_out} LP")
        return receipt

    async def pool_share_balance(self, owner: str, pool_address: str) -> PoolShareBalance | None:
        pool = self.pool(pool_address)
        amount = self.ledger.token_balance(owner, pool.lp_mint)
        return PoolShareBalance(
            mint=pool.lp_mint,
            token_program=TOKEN_2022_PROGRAM_ID,
            account=f"{owner}:{pool.lp_mint}",
            amount=amount,
        )

    async def burn(self, wallet: Keypair, share: PoolShareBalance) -> BurnReceipt:
        if self.burn_fails:
            raise LiquidityError("simulated burn failure")
        owner = str(wallet.pubkey())
        try:
            self.ledger.debit_tokens(owner, share.mint, share.amount)
        except PaperError as e:
            raise LiquidityError(str(e)) from e
        for pool in self._pools.values():
            if pool.lp_mint == share.mint:
                pool.lp_supply -= share.amount
        receipt = BurnReceipt(signature=self.ledger.next_signature("burn"), amount=share.amount)
        self.burns.append(receipt)
        return receipt


class PaperResolver:
    """
    Graduation answers for paper runs.

    Mints set via graduate() answer from memory. Others go to `upstream`
    (a live GraduationResolver) when one is given, else are bonding. Every
    pool reported is registered with `liquidity` so paper deposits have a
    pool to land in.
    """

    def __init__(
        self,
        upstream=None,
        liquidity: PaperLiquidity | None = None,
    ) -> None:
        self.upstream = upstream
        self.liquidity = liquidity
        self.statuses: dict[str, GraduationStatus] = {}
        self.calls: list[str] = []

    def graduate(self, mint: str, pool_address: str | None) -> None:
        self.statuses[mint] = GraduationStatus(is_graduated=True, pool_address=pool_address, source="paper")

    async def resolve(self, mint: str) -> GraduationStatus:
        self.calls.append(mint)
        if mint in self.statuses:
            status = self.statuses[mint]
        elif self.upstream is not None:
            status = await self.upstream.resolve(mint)
        else:
            status = GraduationStatus(is_graduated=False, source="paper")
        if self.liquidity is not None and status.pool_address:
            self.liquidity.ensure_pool(status.pool_address, mint)
        return status


class PaperRegistry(TokenRegistry):
    """
    Reads tokens from a real registry, keeps results in memory.

    Paper batches never touch the tokens file or its history.
    """

    def __init__(self, tokens: list[TokenRecord]) -> None:
        self.tokens = tokens
        self.results: dict[str, list[CycleResult]] = {}

    def eligible(self) -> list[TokenRecord]:
        return [t for t in self.tokens if t.eligible]

    def record(self, token: TokenRecord, result: CycleResult) -> None:
        self.results.setdefault(token.id, []).append(result)


class PaperError(LiquidifyError):
    pass
