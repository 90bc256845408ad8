"""Tests for the cycle engine, driven through the paper adapters."""

import pytest
from solders.keypair import Keypair

from liquidify.adapters.base import FailureKind, LiquidifyError, TokenPhase
from liquidify.adapters.paper import (
    PaperFeeClaim,
    PaperLedger,
    PaperLiquidity,
    PaperResolver,
    PaperVenue,
)
from liquidify.core.cycle import (
    CycleEngine,
    CycleSettings,
    CycleState,
    FeeSplitPolicy,
    TokenCycleConfig,
)
from liquidify.core.events import EventBus, EventType

MINT = "TestMint1111111111111111111111111111111pump"
POOL = "TestPool11111111111111111111111111111111111"
ONE_SOL = 1_000_000_000


class Harness:
    """Paper engine with one funded wallet."""

    def __init__(self, settings=None, with_transfers=True, tokens_per_sol=30_000_000_000_000):
        self.ledger = PaperLedger()
        self.liquidity = PaperLiquidity(self.ledger)
        self.fees = PaperFeeClaim(self.ledger)
        self.resolver = PaperResolver(liquidity=self.liquidity)
        self.bonding = PaperVenue(self.ledger, "bonding", tokens_per_sol)
        self.market = PaperVenue(self.ledger, "market", tokens_per_sol)
        self.aggregator = PaperVenue(self.ledger, "aggregator", tokens_per_sol)
        self.bus = EventBus()
        self.events = []
        self.bus.subscribe_all(self.events.append)
        self.engine = CycleEngine(
            resolver=self.resolver,
            fee_claimer=self.fees,
            bonding_venue=self.bonding,
            market_venue=self.market,
            aggregator_venue=self.aggregator,
            liquidity=self.liquidity,
            balances=self.ledger,
            transfers=self.ledger if with_transfers else None,
            settings=settings or CycleSettings(settle_timeout_s=0, settle_poll_s=0),
            event_bus=self.bus,
        )
        self.wallet = Keypair()
        self.owner = str(self.wallet.pubkey())
        self.ledger.set_balance(self.owner, ONE_SOL)

    def config(self, fee_split=None, secret=None):
        return TokenCycleConfig(
            token_mint=MINT,
            wallet_secret=str(self.wallet) if secret is None else secret,
            fee_split=fee_split,
        )

    def accrue_for_spendable(self, spendable: int) -> None:
        """Accrue fees so that spendable comes out exactly as given (no fee split)."""
        self.fees.accrue(self.owner, spendable + 500_000 + 5_000)

    async def run(self, **kwargs):
        return await self.engine.run_cycle(self.config(**kwargs))

    def kinds(self, result):
        return [op.kind for op in result.operations]


class TestFeeMeasurement:
    def setup_method(self):
        self.h = Harness()

    @pytest.mark.asyncio
    async def test_claim_delta_is_fees_claimed(self):
        # 1.000000000 -> 1.000500000
        self.h.fees.accrue(self.h.owner, 505_000)
        result = await self.h.run()
        assert result.fees_claimed == 500_000
        assert result.succeeded
        assert self.h.kinds(result) == ["claim_fees"]
        assert result.operations[0].amount == 500_000

    @pytest.mark.asyncio
    async def test_dust_is_zero_and_nothing_is_bought(self):
        self.h.fees.accrue(self.h.owner, 50_000)
        result = await self.h.run()
        assert result.fees_claimed == 0
        assert result.spendable == 0
        assert result.buyback_spent == 0
        assert result.liquidity_spent == 0
        assert self.h.bonding.buys == []
        assert result.succeeded

    @pytest.mark.asyncio
    async def test_delta_exactly_at_dust_threshold_is_dust(self):
        self.h.fees.accrue(self.h.owner, 100_000 + 5_000)
        result = await self.h.run()
        assert result.fees_claimed == 0

    @pytest.mark.asyncio
    async def test_large_delta_is_clamped(self):
        self.h.fees.accrue(self.h.owner, 2 * ONE_SOL)
        result = await self.h.run()
        assert result.fees_claimed == 500_000_000
        assert result.spendable == 500_000_000 - 500_000

    @pytest.mark.asyncio
    async def test_no_fees_is_not_a_failure(self):
        result = await self.h.run()
        assert result.succeeded
        assert result.fees_claimed == 0
        assert result.operations == []
        assert result.notes == []
        assert result.state == CycleState.COMPLETE

    @pytest.mark.asyncio
    async def test_claim_failure_is_noted_and_cycle_completes(self):
        self.h.fees.fail_with = "PumpPortal HTTP 500"
        result = await self.h.run()
        assert result.succeeded
        assert result.fees_claimed == 0
        assert any("fee claim failed" in n for n in result.notes)

    def test_measure_fees_never_negative(self):
        settings = CycleSettings()
        assert CycleEngine.measure_fees(ONE_SOL, ONE_SOL - 5_000, settings) == 0

    def test_measure_fees_clamp_law(self):
        settings = CycleSettings()
        for delta in (0, 100_000, 100_001, 499_999_999, 500_000_000, 500_000_001, 10 * ONE_SOL):
            fees = CycleEngine.measure_fees(0, delta, settings)
            assert fees <= settings.max_claim_lamports
            if delta > settings.dust_threshold_lamports:
                assert fees == min(delta, settings.max_claim_lamports)
            else:
                assert fees == 0


class TestSpendable:
    def setup_method(self):
        self.h = Harness()

    @pytest.mark.asyncio
    async def test_fees_below_reserve_leave_nothing_to_spend(self):
        self.h.fees.accrue(self.h.owner, 305_000)
        result = await self.h.run()
        assert result.fees_claimed == 300_000
        assert result.spendable == 0
        assert result.buyback_spent == 0
        assert result.liquidity_spent == 0
        assert result.succeeded
        assert result.failure_reason is None

    @pytest.mark.asyncio
    async def test_spendable_below_minimum_is_noted_not_spent(self):
        self.h.accrue_for_spendable(900_000)
        result = await self.h.run()
        assert result.spendable == 900_000
        assert result.buyback_spent == 0
        assert self.h.bonding.buys == []
        assert any("below minimum" in n for n in result.notes)
        assert result.succeeded


class TestBondingPhase:
    def setup_method(self):
        self.h = Harness()

    @pytest.mark.asyncio
    async def test_single_buy_on_bonding_venue(self):
        self.h.accrue_for_spendable(10_000_000)
        result = await self.h.run()

        assert result.phase == TokenPhase.BONDING
        assert result.spendable == 10_000_000
        assert self.h.bonding.buys == [(MINT, 10_000_000, TokenPhase.BONDING)]
        assert self.h.market.buys == []
        assert result.buyback_spent == 10_000_000
        assert result.buyback_received == 300_000_000_000
        assert self.h.kinds(result) == ["claim_fees", "buyback"]

    @pytest.mark.asyncio
    async def test_never_touches_liquidity(self):
        self.h.accrue_for_spendable(10_000_000)
        result = await self.h.run()
        assert result.liquidity_spent == 0
        assert result.liquidity_shares == 0
        assert result.shares_burned == 0
        assert self.h.liquidity.deposits == []

    @pytest.mark.asyncio
    async def test_buy_failure_is_noted(self):
        self.h.bonding.fail_kind = FailureKind.SLIPPAGE_EXCEEDED
        self.h.accrue_for_spendable(10_000_000)
        result = await self.h.run()
        assert result.succeeded
        assert result.buyback_spent == 0
        assert self.h.kinds(result) == ["claim_fees"]
        assert any("slippage_exceeded" in n for n in result.notes)
        failed = [e for e in self.h.events if e.event_type == EventType.STEP_FAILED]
        assert len(failed) == 1


class TestGraduatedPhase:
    def setup_method(self):
        self.h = Harness()
        self.h.resolver.graduate(MINT, POOL)

    @pytest.mark.asyncio
    async def test_half_buyback_half_liquidity_then_burn(self):
        self.h.accrue_for_spendable(20_000_000)
        result = await self.h.run()

        assert result.phase == TokenPhase.GRADUATED
        assert result.pool_address == POOL
        assert self.h.market.buys == [(MINT, 10_000_000, TokenPhase.GRADUATED)]
        assert result.buyback_spent == 10_000_000
        assert result.liquidity_spent == 10_000_000
        assert result.liquidity_shares > 0
        assert result.shares_burned == result.liquidity_shares
        assert self.h.kinds(result) == ["claim_fees", "buyback", "add_liquidity", "burn_lp"]
        assert result.state == CycleState.COMPLETE

    @pytest.mark.asyncio
    async def test_spend_never_exceeds_spendable_with_odd_amount(self):
        self.h.accrue_for_spendable(20_000_001)
        result = await self.h.run()
        assert result.spendable == 20_000_001
        assert result.buyback_spent == 10_000_000
        assert result.buyback_spent + result.liquidity_spent <= result.spendable

    @pytest.mark.asyncio
    async def test_deposit_limited_by_tokens_held(self):
        # Market venue fills at a tiny rate: the deposit scales down to the token side
        self.h.market.tokens_per_sol = 1_000_000_000_000
        self.h.accrue_for_spendable(20_000_000)
        result = await self.h.run()
        assert 0 < result.liquidity_spent < 10_000_000
        deposit = self.h.liquidity.deposits[0]
        assert deposit.tokens_spent <= result.buyback_received

    @pytest.mark.asyncio
    async def test_insufficient_token_skips_liquidity(self):
        self.h.market.tokens_per_sol = 0
        self.h.accrue_for_spendable(20_000_000)
        result = await self.h.run()

        assert result.liquidity_spent == 0
        assert result.succeeded
        assert result.failure_reason is None
        assert any("liquidity skipped" in n for n in result.notes)
        skipped = [e for e in self.h.events if e.event_type == EventType.STEP_SKIPPED]
        assert len(skipped) == 1

    @pytest.mark.asyncio
    async def test_burn_failure_leaves_liquidity_added(self):
        self.h.liquidity.burn_fails = True
        self.h.accrue_for_spendable(20_000_000)
        result = await self.h.run()

        assert result.succeeded
        assert result.liquidity_spent == 10_000_000
        assert result.shares_burned == 0
        assert self.h.kinds(result) == ["claim_fees", "buyback", "add_liquidity"]
        assert any("burn failed" in n for n in result.notes)

    @pytest.mark.asyncio
    async def test_graduated_without_pool_uses_aggregator(self):
        self.h.resolver.graduate(MINT, None)
        self.h.accrue_for_spendable(10_000_000)
        result = await self.h.run()

        assert self.h.aggregator.buys == [(MINT, 10_000_000, TokenPhase.GRADUATED)]
        assert self.h.market.buys == []
        assert result.liquidity_spent == 0
        assert result.buyback_spent == 10_000_000


class TestFeeSplit:
    RECIPIENT = str(Keypair().pubkey())

    @pytest.mark.asyncio
    async def test_share_paid_before_buyback(self):
        h = Harness()
        h.fees.accrue(h.owner, 20_505_000)
        result = await h.run(fee_split=FeeSplitPolicy(self.RECIPIENT, 1_000))

        assert result.fees_claimed == 20_500_000
        assert result.fee_split_paid == 2_050_000
        assert h.ledger.balance(self.RECIPIENT) == 2_050_000
        assert result.spendable == 20_500_000 - 2_050_000 - 500_000
        assert h.kinds(result) == ["claim_fees", "fee_split", "buyback"]

    @pytest.mark.asyncio
    async def test_share_withheld_when_transfer_unavailable(self):
        h = Harness(with_transfers=False)
        h.fees.accrue(h.owner, 20_505_000)
        result = await h.run(fee_split=FeeSplitPolicy(self.RECIPIENT, 1_000))

        assert result.fee_split_paid == 0
        assert result.spendable == 20_500_000 - 2_050_000 - 500_000
        assert any("fee split" in n for n in result.notes)
        assert result.succeeded

    def test_policy_rejects_bad_bps(self):
        with pytest.raises(ValueError):
            FeeSplitPolicy(self.RECIPIENT, 0)
        with pytest.raises(ValueError):
            FeeSplitPolicy(self.RECIPIENT, 10_001)

    def test_share_rounds_down(self):
        assert FeeSplitPolicy(self.RECIPIENT, 1_000).share_of(999) == 99


class ExplodingVenue(PaperVenue):
    async def buy(self, wallet, mint, lamports, phase_hint):
        raise RuntimeError("connection reset by peer")


class TestAbort:
    @pytest.mark.asyncio
    async def test_malformed_wallet_aborts_before_any_call(self):
        h = Harness()
        result = await h.run(secret="not-a-key")
        assert not result.succeeded
        assert result.state == CycleState.ABORTED
        assert "wallet" in result.failure_reason
        assert h.resolver.calls == []
        assert result.operations == []

    @pytest.mark.asyncio
    async def test_unexpected_error_keeps_completed_operations(self):
        h = Harness()
        h.engine.bonding_venue = ExplodingVenue(h.ledger)
        h.accrue_for_spendable(10_000_000)
        result = await h.run()

        assert not result.succeeded
        assert result.state == CycleState.ABORTED
        assert result.failure_reason == "connection reset by peer"
        assert h.kinds(result) == ["claim_fees"]
        aborted = [e for e in h.events if e.event_type == EventType.CYCLE_ABORTED]
        assert len(aborted) == 1

    @pytest.mark.asyncio
    async def test_json_array_secret_is_accepted(self):
        h = Harness()
        secret = "[" + ",".join(str(b) for b in bytes(h.wallet)) + "]"
        result = await h.run(secret=secret)
        assert result.succeeded


class TestEvents:
    @pytest.mark.asyncio
    async def test_event_sequence_for_graduated_cycle(self):
        h = Harness()
        h.resolver.graduate(MINT, POOL)
        h.accrue_for_spendable(20_000_000)
        await h.run()

        types = [e.event_type for e in h.events]
        assert types[0] == EventType.CYCLE_STARTED
        assert types[-1] == EventType.CYCLE_COMPLETED
        confirmed = [e.kind for e in h.events if e.event_type == EventType.OPERATION_CONFIRMED]
        assert confirmed == ["claim_fees", "buyback", "add_liquidity", "burn_lp"]

    @pytest.mark.asyncio
    async def test_result_dict_carries_explorer_links(self):
        h = Harness()
        h.accrue_for_spendable(10_000_000)
        result = await h.run()
        data = result.to_dict()
        assert data["phase"] == "bonding"
        assert data["state"] == "complete"
        assert all(op["explorer_url"].endswith(op["signature"]) for op in data["operations"])


class TestPaperLedger:
    def test_overdraft_raises_a_liquidify_error(self):
        ledger = PaperLedger(default_lamports=100)
        with pytest.raises(LiquidifyError):
            ledger.debit("owner", 101)
        with pytest.raises(LiquidifyError):
            ledger.debit_tokens("owner", MINT, 1)
        assert ledger.balance("owner") == 100
