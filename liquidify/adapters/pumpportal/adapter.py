"""
PumpPortal adapter: creator-fee claims and buys.

PumpPortal's trade-local endpoint builds an unsigned transaction for the
requested action and returns its raw bytes. We sign locally and submit
through our own RPC, so the secret key never leaves the process.

Two capabilities share one adapter:
- FeeClaimAdapter: ``collectCreatorFee`` sweeps accrued creator fees.
- VenueAdapter: ``buy`` on the bonding curve (pool "pump") or, after
  graduation, on whatever market PumpPortal routes to (pool "auto").
"""

from __future__ import annotations

import logging
from typing import Any

from solders.keypair import Keypair

from liquidify.adapters.base import (
    BaseAdapter,
    ClaimReceipt,
    FailureKind,
    FeeClaimAdapter,
    FeeClaimError,
    NoFeesAvailable,
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

logger = logging.getLogger("liquidify.pumpportal")

PUMPPORTAL_TRADE_URL = "https://pumpportal.fun/api/trade-local"

POOL_FOR_PHASE = {
    TokenPhase.BONDING: "pump",
    TokenPhase.GRADUATED: "auto",
}

_NO_FEES_MARKERS = ("no creator fees", "no fees")


class PumpPortalAdapter(BaseAdapter, VenueAdapter, FeeClaimAdapter):
    """
    Fee claims and buys through PumpPortal's local-transaction API.

    Args:
        rpc: Connected SolanaRpc used to sign-submit-confirm.
        trade_url: trade-local endpoint.
        slippage_pct: Buy slippage tolerance in percent.
        buy_priority_fee_sol: Priority fee attached to buys.
        claim_priority_fee_sol: Priority fee attached to claims.
        name: Adapter name in logs and telemetry; one instance per phase.
    """

    def __init__(
        self,
        rpc: SolanaRpc,
        trade_url: str = PUMPPORTAL_TRADE_URL,
        slippage_pct: int = 25,
        buy_priority_fee_sol: float = 0.0005,
        claim_priority_fee_sol: float = 0.0001,
        timeout_s: float = 20.0,
        name: str = "pumpportal",
    ) -> None:
        super().__init__()
        self.rpc = rpc
        self.trade_url = trade_url
        self.slippage_pct = slippage_pct
        self.buy_priority_fee_sol = buy_priority_fee_sol
        self.claim_priority_fee_sol = claim_priority_fee_sol
        self.timeout_s = timeout_s
        self.name = name
        self._claims: int = 0
        self._buys: int = 0

    async def connect(self) -> None:
        await super().connect()
        logger.info(f"PumpPortal adapter connected | {self.name}")

    async def disconnect(self) -> None:
        await super().disconnect()
        logger.info(f"PumpPortal adapter stopped | {self.name} claims={self._claims} buys={self._buys}")

    @track_latency("pumpportal", "trade_local")
    async def _trade_local(self, payload: dict[str, Any]) -> tuple[int, bytes | str]:
        """POST to trade-local. Returns (status, tx bytes on 200 else error text)."""
        session = self._require_session()
        async with session.post(self.trade_url, json=payload) as resp:
            if resp.status != 200:
                return resp.status, await resp.text()
            return resp.status, await resp.read()

    async def claim(self, wallet: Keypair) -> ClaimReceipt | NoFeesAvailable:
        payload = {
            "publicKey": str(wallet.pubkey()),
            "action": "collectCreatorFee",
            "priorityFee": self.claim_priority_fee_sol,
        }
        try:
            status, body = await self._trade_local(payload)
        except Exception as e:
            raise FeeClaimError(f"claim request failed: {e}") from e

        if status != 200:
            text = str(body)
            if any(marker in text.lower() for marker in _NO_FEES_MARKERS):
                logger.info("No creator fees to claim")
                return NoFeesAvailable()
            raise FeeClaimError(f"claim rejected ({status}): {text[:200]}")

        try:
            signature = await self.rpc.sign_and_send(bytes(body), wallet)
        except (RpcError, TransactionFailedError, TransactionExpiredError, ValueError) as e:
            if any(marker in str(e).lower() for marker in _NO_FEES_MARKERS):
                return NoFeesAvailable()
            raise FeeClaimError(f"claim transaction failed: {e}") from e

        self._claims += 1
        logger.info(f"Fees claimed | {signature[:16]}...")
        return ClaimReceipt(signature=signature)

    async def buy(
        self,
        wallet: Keypair,
        mint: str,
        lamports: int,
        phase_hint: TokenPhase,
    ) -> TradeReceipt:
        pool = POOL_FOR_PHASE[phase_hint]
        payload = {
            "publicKey": str(wallet.pubkey()),
            "action": "buy",
            "mint": mint,
            "amount": lamports_to_sol(lamports),
            "denominatedInSol": "true",
            "slippage": self.slippage_pct,
            "priorityFee": self.buy_priority_fee_sol,
            "pool": pool,
        }
        try:
            status, body = await self._trade_local(payload)
        except Exception as e:
            raise VenueError(f"buy request failed: {e}") from e

        if status != 200:
            text = str(body)
            kind = classify_failure(text) if status == 400 else FailureKind.VENUE_ERROR
            raise VenueError(f"buy rejected ({status}): {text[:200]}", kind)

        try:
            signature = await self.rpc.sign_and_send(bytes(body), wallet)
        except TransactionFailedError as e:
            raise VenueError(str(e), classify_failure(str(e.err))) from e
        except (RpcError, TransactionExpiredError, ValueError) as e:
            raise VenueError(f"buy transaction failed: {e}") from e

        self._buys += 1
        logger.info(
            f"Buy confirmed | {mint[:8]}... | {lamports_to_sol(lamports):.6f} SOL "
            f"pool={pool} | {signature[:16]}..."
        )
        return TradeReceipt(signature=signature)

    @property
    def stats(self) -> dict:
        return {
            "name": self.name,
            "connected": self._connected,
            "claims": self._claims,
            "buys": self._buys,
        }
