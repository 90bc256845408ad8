"""
Pump.fun graduation resolver.

Answers one question per cycle: has this token left its bonding curve, and
if so, which open-market pool does it trade in?

Sources, in order:
1. pump.fun's coin endpoint: the ``complete`` flag is authoritative.
2. DexScreener's token pairs: locates the pool once graduated, and stands in
   for pump.fun when pump.fun is unreachable.

Resolution never raises. When nothing answers, the token is treated as still
bonding.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import aiohttp

from liquidify.adapters.base import BaseAdapter
from liquidify.core.telemetry import track_latency

logger = logging.getLogger("liquidify.pumpfun")

PUMP_FUN_COIN_URL = "https://frontend-api.pump.fun/coins/{mint}"
DEXSCREENER_TOKEN_URL = "https://api.dexscreener.com/latest/dex/tokens/{mint}"

# Preferred DEX ids, best first
POOL_DEX_PREFERENCE = ("pumpswap", "raydium")


@dataclass(frozen=True)
class GraduationStatus:
    is_graduated: bool
    pool_address: str | None = None
    source: str = ""


class GraduationResolver(BaseAdapter):
    """
    Resolves graduation status and pool address for pump.fun tokens.

    Args:
        pump_coin_url: pump.fun coin endpoint template with ``{mint}``.
        dexscreener_url: DexScreener token endpoint template with ``{mint}``.
        timeout_s: Per-request timeout.
    """

    name = "graduation_resolver"

    def __init__(
        self,
        pump_coin_url: str = PUMP_FUN_COIN_URL,
        dexscreener_url: str = DEXSCREENER_TOKEN_URL,
        timeout_s: float = 10.0,
    ) -> None:
        super().__init__()
        self.pump_coin_url = pump_coin_url
        self.dexscreener_url = dexscreener_url
        self.timeout_s = timeout_s
        self._resolved: int = 0

    async def resolve(self, mint: str) -> GraduationStatus:
        self._resolved += 1
        coin = await self._fetch_json(self.pump_coin_url.format(mint=mint))
        complete = coin.get("complete") if isinstance(coin, dict) else None

        if complete is False:
            return GraduationStatus(is_graduated=False, source="pump.fun")

        pairs = await self._fetch_pairs(mint)

        if complete is True:
            pool = self._pick_pool(pairs, require_known_dex=False)
            if not pool:
                logger.info(f"{mint[:8]}... graduated but no pool indexed yet")
            return GraduationStatus(is_graduated=True, pool_address=pool, source="pump.fun")

        # pump.fun gave no answer; only a known AMM pair counts as graduation
        pool = self._pick_pool(pairs, require_known_dex=True)
        if pool:
            return GraduationStatus(is_graduated=True, pool_address=pool, source="dexscreener")

        if pairs is None:
            logger.warning(f"{mint[:8]}... graduation sources unreachable | assuming bonding")
            return GraduationStatus(is_graduated=False, source="fallback")
        return GraduationStatus(is_graduated=False, source="dexscreener")

    async def _fetch_pairs(self, mint: str) -> list[dict[str, Any]] | None:
        """DexScreener pairs for mint; [] when none are listed, None when unreachable."""
        data = await self._fetch_json(self.dexscreener_url.format(mint=mint))
        if not isinstance(data, dict):
            return None
        return [p for p in (data.get("pairs") or []) if isinstance(p, dict)]

    @staticmethod
    def _pick_pool(pairs: list[dict[str, Any]] | None, require_known_dex: bool) -> str | None:
        if not pairs:
            return None
        for dex_id in POOL_DEX_PREFERENCE:
            for pair in pairs:
                if pair.get("dexId") == dex_id and pair.get("pairAddress"):
                    return pair["pairAddress"]
        if require_known_dex:
            return None
        ranked = sorted(
            (p for p in pairs if p.get("pairAddress")),
            key=lambda p: float((p.get("liquidity") or {}).get("usd") or 0),
            reverse=True,
        )
        return ranked[0]["pairAddress"] if ranked else None

    @track_latency("graduation", "fetch")
    async def _fetch_json(self, url: str) -> Any | None:
        """GET url as JSON; None on any transport or decode failure."""
        try:
            session = self._require_session()
            async with session.get(url, timeout=aiohttp.ClientTimeout(total=self.timeout_s)) as resp:
                if resp.status != 200:
                    logger.debug(f"GET {url[:60]} -> {resp.status}")
                    return None
                return await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError, RuntimeError) as e:
            logger.debug(f"GET {url[:60]} failed: {e}")
            return None

    @property
    def stats(self) -> dict:
        return {
            "name": self.name,
            "connected": self._connected,
            "resolved": self._resolved,
        }
