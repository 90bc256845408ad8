"""
Jupiter aggregator adapter.

Used for graduated tokens whose open-market pool is not known yet: Jupiter
finds a route across every Solana DEX. Supports:
- Quote fetching with configurable slippage
- Swap transaction building with a capped priority fee
- Local signing and submission through our RPC
- Retry with exponential backoff for quote and build only
"""

from __future__ import annotations

import asyncio
import base64
import logging
from typing import Any

import aiohttp
from solders.keypair import Keypair

from liquidify.adapters.base import (
    BaseAdapter,
    FailureKind,
    LiquidifyError,
    TokenPhase,
    TradeReceipt,
    VenueAdapter,
    VenueError,
    classify_failure,
)
from liquidify.adapters.solana_rpc import (
    RpcError,
    SolanaRpc,
    TransactionExpiredError,
    TransactionFailedError,
    lamports_to_sol,
)
from liquidify.core.telemetry import track_latency

logger = logging.getLogger("liquidify.jupiter")

JUPITER_QUOTE_URL = "https://lite-api.jup.ag/swap/v1/quote"
JUPITER_SWAP_URL = "https://lite-api.jup.ag/swap/v1/swap"

WSOL_MINT = "So11111111111111111111111111111111111111112"


class JupiterAdapter(BaseAdapter, VenueAdapter):
    """
    Buys through Jupiter's swap API.

    Quote and swap-build requests are retried with exponential backoff;
    nothing has touched the chain at that point. The signed transaction is
    broadcast exactly once.

    Args:
        rpc: Connected SolanaRpc used to submit and confirm.
        slippage_bps: Slippage tolerance in basis points.
        max_priority_lamports: Cap on the priority fee Jupiter may attach.
        priority_level: Jupiter priority level ("medium", "high", "veryHigh").
        max_retries: Attempts for quote + build.
    """

    name = "jupiter"

    def __init__(
        self,
        rpc: SolanaRpc,
        quote_url: str = JUPITER_QUOTE_URL,
        swap_url: str = JUPITER_SWAP_URL,
        slippage_bps: int = 300,
        max_priority_lamports: int = 1_000_000,
        priority_level: str = "high",
        max_retries: int = 3,
        timeout_s: float = 30.0,
    ) -> None:
        super().__init__()
        self.rpc = rpc
        self.quote_url = quote_url
        self.swap_url = swap_url
        self.slippage_bps = slippage_bps
        self.max_priority_lamports = max_priority_lamports
        self.priority_level = priority_level
        self.max_retries = max_retries
        self.timeout_s = timeout_s
        self._tx_count: int = 0
        self._total_volume_lamports: int = 0

    async def connect(self) -> None:
        await super().connect()
        logger.info(f"Jupiter adapter connected | slippage={self.slippage_bps}bps")

    async def disconnect(self) -> None:
        await super().disconnect()
        logger.info(
            f"Jupiter adapter disconnected | "
            f"txs={self._tx_count} volume={lamports_to_sol(self._total_volume_lamports):.4f} SOL"
        )

    @track_latency("jupiter", "quote")
    async def get_quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int | None = None,
    ) -> dict[str, Any]:
        """
        Fetch a swap quote.

        Args:
            input_mint: Input token mint address
            output_mint: Output token mint address
            amount: Amount in smallest unit (lamports for SOL)
            slippage_bps: Slippage tolerance (overrides default)
        """
        session = self._require_session()
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(amount),
            "slippageBps": str(slippage_bps or self.slippage_bps),
        }
        async with session.get(self.quote_url, params=params) as resp:
            if resp.status != 200:
                error = await resp.text()
                raise JupiterError(f"Quote failed ({resp.status}): {error}")
            return await self._read_json(resp, "Quote")

    @track_latency("jupiter", "swap_build")
    async def build_swap(self, quote: dict[str, Any], user_pubkey: str) -> bytes:
        """Ask Jupiter for the unsigned swap transaction matching `quote`."""
        session = self._require_session()
        payload = {
            "quoteResponse": quote,
            "userPublicKey": user_pubkey,
            "dynamicComputeUnitLimit": True,
            "prioritizationFeeLamports": {
                "priorityLevelWithMaxLamports": {
                    "maxLamports": self.max_priority_lamports,
                    "priorityLevel": self.priority_level,
                },
            },
        }
        async with session.post(self.swap_url, json=payload) as resp:
            if resp.status != 200:
                error = await resp.text()
                raise JupiterError(f"Swap failed ({resp.status}): {error}")
            data = await self._read_json(resp, "Swap")
        encoded = data.get("swapTransaction")
        if not encoded:
            raise JupiterError("Swap response missing swapTransaction")
        return base64.b64decode(encoded)

    @staticmethod
    async def _read_json(resp: aiohttp.ClientResponse, what: str) -> dict[str, Any]:
        try:
            data = await resp.json(content_type=None)
        except ValueError as e:
            raise JupiterError(f"{what} response is not JSON: {e}") from e
        if not isinstance(data, dict):
            raise JupiterError(f"{what} response has unexpected shape: {type(data).__name__}")
        return data

    async def buy(
        self,
        wallet: Keypair,
        mint: str,
        lamports: int,
        phase_hint: TokenPhase,
    ) -> TradeReceipt:
        """Full flow: quote -> build -> sign -> submit once -> confirm."""
        pubkey = str(wallet.pubkey())
        raw_tx: bytes | None = None
        quote: dict[str, Any] = {}
        last_error: Exception | None = None

        for attempt in range(self.max_retries):
            try:
                quote = await self.get_quote(WSOL_MINT, mint, lamports)
                raw_tx = await self.build_swap(quote, pubkey)
                break
            except (JupiterError, aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                last_error = e
                if classify_failure(str(e)) == FailureKind.ASSET_NOT_FOUND:
                    break
                if attempt < self.max_retries - 1:
                    wait = 2 ** attempt  # exponential backoff
                    logger.warning(f"Jupiter attempt {attempt + 1} failed: {e}. Retrying in {wait}s...")
                    await asyncio.sleep(wait)

        if raw_tx is None:
            text = str(last_error)
            raise VenueError(f"Jupiter route unavailable: {text[:200]}", classify_failure(text))

        try:
            signature = await self.rpc.sign_and_send(raw_tx, wallet)
        except TransactionFailedError as e:
            raise VenueError(str(e), classify_failure(str(e.err))) from e
        except (RpcError, TransactionExpiredError, ValueError) as e:
            raise VenueError(f"swap transaction failed: {e}") from e

        self._tx_count += 1
        self._total_volume_lamports += lamports
        logger.info(
            f"Swap confirmed | {mint[:8]}... | {lamports_to_sol(lamports):.6f} SOL "
            f"-> ~{quote.get('outAmount', '?')} | {signature[:16]}..."
        )
        return TradeReceipt(signature=signature, tokens_received=_out_amount(quote))

    @property
    def stats(self) -> dict:
        return {
            "name": self.name,
            "connected": self._connected,
            "transactions": self._tx_count,
            "volume_lamports": self._total_volume_lamports,
        }


def _out_amount(quote: dict[str, Any]) -> int:
    try:
        return int(quote.get("outAmount") or 0)
    except (TypeError, ValueError):
        return 0


class JupiterError(LiquidifyError):
    """Raised on Jupiter API errors."""
    pass
