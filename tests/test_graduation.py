"""Tests for graduation resolution."""

import pytest

from liquidify.adapters.paper import PaperLiquidity, PaperLedger, PaperResolver
from liquidify.adapters.pumpfun.graduation import GraduationResolver, GraduationStatus

MINT = "GradMint111111111111111111111111111111111pump"


def make_resolver(coin=None, pairs=None, dex_reachable=True):
    """Resolver whose HTTP layer answers from the given payloads."""
    resolver = GraduationResolver(
        pump_coin_url="https://pump.test/coins/{mint}",
        dexscreener_url="https://dex.test/tokens/{mint}",
    )
    requested = []

    async def fake_fetch(url):
        requested.append(url)
        if url.startswith("https://pump.test"):
            return coin
        if not dex_reachable:
            return None
        return {"pairs": pairs}

    resolver._fetch_json = fake_fetch
    resolver.requested = requested
    return resolver


def pair(dex_id, address, liquidity_usd=0.0):
    return {"dexId": dex_id, "pairAddress": address, "liquidity": {"usd": liquidity_usd}}


class TestGraduationResolver:
    @pytest.mark.asyncio
    async def test_incomplete_curve_is_bonding(self):
        resolver = make_resolver(coin={"complete": False}, pairs=[pair("pumpswap", "P1")])
        status = await resolver.resolve(MINT)
        assert status == GraduationStatus(is_graduated=False, source="pump.fun")
        # No pool lookup once pump.fun says bonding
        assert len(resolver.requested) == 1

    @pytest.mark.asyncio
    async def test_complete_curve_picks_pumpswap_pool(self):
        resolver = make_resolver(
            coin={"complete": True},
            pairs=[pair("raydium", "R1", 90_000), pair("pumpswap", "P1", 10_000)],
        )
        status = await resolver.resolve(MINT)
        assert status.is_graduated
        assert status.pool_address == "P1"
        assert status.source == "pump.fun"

    @pytest.mark.asyncio
    async def test_complete_curve_falls_back_to_deepest_unknown_pool(self):
        resolver = make_resolver(
            coin={"complete": True},
            pairs=[pair("meteora", "M1", 5_000), pair("orca", "O1", 50_000)],
        )
        status = await resolver.resolve(MINT)
        assert status.pool_address == "O1"

    @pytest.mark.asyncio
    async def test_complete_curve_without_indexed_pool(self):
        resolver = make_resolver(coin={"complete": True}, pairs=[])
        status = await resolver.resolve(MINT)
        assert status.is_graduated
        assert status.pool_address is None

    @pytest.mark.asyncio
    async def test_pump_fun_down_known_dex_means_graduated(self):
        resolver = make_resolver(coin=None, pairs=[pair("pumpswap", "P1")])
        status = await resolver.resolve(MINT)
        assert status.is_graduated
        assert status.pool_address == "P1"
        assert status.source == "dexscreener"

    @pytest.mark.asyncio
    async def test_pump_fun_down_unknown_dex_is_not_graduation(self):
        resolver = make_resolver(coin=None, pairs=[pair("meteora", "M1", 1_000_000)])
        status = await resolver.resolve(MINT)
        assert not status.is_graduated
        assert status.source == "dexscreener"

    @pytest.mark.asyncio
    async def test_everything_unreachable_assumes_bonding(self):
        resolver = make_resolver(coin=None, dex_reachable=False)
        status = await resolver.resolve(MINT)
        assert status == GraduationStatus(is_graduated=False, source="fallback")

    @pytest.mark.asyncio
    async def test_resolution_is_idempotent(self):
        resolver = make_resolver(coin={"complete": True}, pairs=[pair("pumpswap", "P1")])
        first = await resolver.resolve(MINT)
        second = await resolver.resolve(MINT)
        assert first == second

    def test_pick_pool_skips_pairs_without_address(self):
        pairs = [pair("pumpswap", ""), pair("raydium", "R1")]
        assert GraduationResolver._pick_pool(pairs, require_known_dex=True) == "R1"

    @pytest.mark.asyncio
    async def test_fetch_without_session_returns_none(self):
        resolver = GraduationResolver()
        assert await resolver._fetch_json("https://pump.test/coins/x") is None


class TestPaperResolver:
    @pytest.mark.asyncio
    async def test_graduated_mint_registers_paper_pool(self):
        liquidity = PaperLiquidity(PaperLedger())
        resolver = PaperResolver(liquidity=liquidity)
        resolver.graduate(MINT, "PaperPool1")

        status = await resolver.resolve(MINT)

        assert status.is_graduated
        assert liquidity.pool("PaperPool1").token_mint == MINT

    @pytest.mark.asyncio
    async def test_defers_to_upstream(self):
        upstream = make_resolver(coin={"complete": True}, pairs=[pair("pumpswap", "P9")])
        liquidity = PaperLiquidity(PaperLedger())
        resolver = PaperResolver(upstream=upstream, liquidity=liquidity)

        status = await resolver.resolve(MINT)

        assert status.pool_address == "P9"
        assert liquidity.pool("P9").lp_mint == "P9_lp"

    @pytest.mark.asyncio
    async def test_unknown_mint_without_upstream_is_bonding(self):
        status = await PaperResolver().resolve(MINT)
        assert not status.is_graduated
