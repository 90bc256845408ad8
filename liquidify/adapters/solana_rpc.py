"""
Solana JSON-RPC client for the cycle engine.

Plain JSON-RPC over aiohttp against an ordered list of endpoints: every call
tries the endpoints in order until one answers. Standard methods only, so any
RPC provider works.

Besides reads (balances, account data) this module signs, sends and confirms
transactions. Confirmation follows one rule: a transaction is reported failed
only when the chain says it failed, or when the blockhash it was signed
against can no longer land. A slow confirmation is never treated as a failure.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
from typing import Any, Sequence

import aiohttp
import base58
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from solders.transaction import VersionedTransaction

from liquidify.adapters.base import (
    BalanceReader,
    BaseAdapter,
    LiquidifyError,
    TransferAdapter,
    TransferError,
)
from liquidify.core.telemetry import track_latency

logger = logging.getLogger("liquidify.rpc")

# Ordered fallback RPC endpoints
DEFAULT_RPCS = [
    "https://solana-rpc.publicnode.com",
    "https://api.mainnet-beta.solana.com",
]

LAMPORTS_PER_SOL = 1_000_000_000

TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
TOKEN_2022_PROGRAM_ID = "TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb"
TOKEN_PROGRAMS = (TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID)


def lamports_to_sol(lamports: int) -> float:
    return lamports / LAMPORTS_PER_SOL


def sol_to_lamports(sol: float) -> int:
    return int(round(sol * LAMPORTS_PER_SOL))


def explorer_url(signature: str) -> str:
    return f"https://solscan.io/tx/{signature}"


def load_keypair(secret: str) -> Keypair:
    """
    Decode a wallet secret.

    Accepts the solana-keygen JSON array form ("[12, 34, ...]") or a base58
    string of the 64-byte secret key. Raises WalletError on anything else.
    """
    text = (secret or "").strip()
    if not text:
        raise WalletError("wallet secret is empty")
    try:
        if text.startswith("["):
            raw = bytes(json.loads(text))
        else:
            raw = base58.b58decode(text)
        return Keypair.from_bytes(raw)
    except (ValueError, TypeError) as e:
        raise WalletError(f"malformed wallet secret: {e}") from e


class SolanaRpc(BaseAdapter, BalanceReader, TransferAdapter):
    """
    JSON-RPC reads, transaction submission and confirmation.

    Args:
        rpc_urls: Endpoints tried in order for every call.
        commitment: Commitment level for reads and confirmation.
        confirm_poll_s: Seconds between signature status polls.
    """

    name = "solana_rpc"

    def __init__(
        self,
        rpc_urls: Sequence[str] | None = None,
        commitment: str = "confirmed",
        confirm_poll_s: float = 1.0,
        timeout_s: float = 15.0,
    ) -> None:
        super().__init__()
        self.rpc_urls = list(rpc_urls or DEFAULT_RPCS)
        self.commitment = commitment
        self.confirm_poll_s = confirm_poll_s
        self.timeout_s = timeout_s
        self._tx_count: int = 0

    async def connect(self) -> None:
        await super().connect()
        logger.info(f"RPC connected | endpoints={len(self.rpc_urls)} primary={self.rpc_urls[0][:40]}")

    async def disconnect(self) -> None:
        await super().disconnect()
        logger.info(f"RPC disconnected | txs={self._tx_count}")

    # -- Raw calls --

    async def call(self, method: str, params: list[Any]) -> Any:
        """Run one JSON-RPC method, falling through the endpoint list."""
        session = self._require_session()
        last_error: Exception | None = None
        for endpoint in self.rpc_urls:
            try:
                return await _rpc_call(session, endpoint, method, params, self.timeout_s)
            except (aiohttp.ClientError, asyncio.TimeoutError, RpcError) as e:
                last_error = e
                logger.debug(f"RPC {endpoint[:30]} failed for {method}: {e}")
        raise RpcError(f"{method} failed on all endpoints: {last_error}")

    # -- Reads --

    @track_latency("rpc", "get_balance")
    async def get_balance(self, owner: str) -> int:
        result = await self.call("getBalance", [owner, {"commitment": self.commitment}])
        return int(result.get("value", 0))

    @track_latency("rpc", "get_token_balance")
    async def get_token_balance(self, owner: str, mint: str) -> int:
        result = await self.call("getTokenAccountsByOwner", [
            owner,
            {"mint": mint},
            {"encoding": "jsonParsed", "commitment": self.commitment},
        ])
        total = 0
        for account in result.get("value", []):
            info = account.get("account", {}).get("data", {}).get("parsed", {}).get("info", {})
            total += int(info.get("tokenAmount", {}).get("amount", "0"))
        return total

    async def get_token_account_balance(self, account: str) -> int | None:
        """Raw amount held by one token account, or None if it does not exist."""
        try:
            result = await self.call("getTokenAccountBalance", [account, {"commitment": self.commitment}])
        except RpcError as e:
            if "could not find account" in str(e).lower() or "invalid param" in str(e).lower():
                return None
            raise
        value = result.get("value") if isinstance(result, dict) else None
        if not value:
            return None
        return int(value.get("amount", "0"))

    async def get_account(self, address: str) -> dict[str, Any] | None:
        """Account info with base64 data decoded into ``data`` bytes, or None."""
        result = await self.call("getAccountInfo", [
            address,
            {"encoding": "base64", "commitment": self.commitment},
        ])
        value = result.get("value") if isinstance(result, dict) else None
        if not value:
            return None
        return {
            "owner": value.get("owner", ""),
            "lamports": int(value.get("lamports", 0)),
            "data": base64.b64decode(value["data"][0]),
        }

    async def get_latest_blockhash(self) -> tuple[str, int]:
        result = await self.call("getLatestBlockhash", [{"commitment": self.commitment}])
        value = result["value"]
        return value["blockhash"], int(value["lastValidBlockHeight"])

    async def get_block_height(self) -> int:
        return int(await self.call("getBlockHeight", [{"commitment": self.commitment}]))

    # -- Writes --

    async def send_transaction(self, tx: VersionedTransaction) -> str:
        encoded = base64.b64encode(bytes(tx)).decode()
        signature = await self.call("sendTransaction", [
            encoded,
            {"encoding": "base64", "skipPreflight": True, "maxRetries": 3},
        ])
        self._tx_count += 1
        return str(signature)

    @track_latency("rpc", "confirm")
    async def confirm_transaction(self, signature: str, last_valid_block_height: int) -> None:
        """
        Wait until `signature` reaches the configured commitment.

        Raises TransactionFailedError if the chain reports an error, or
        TransactionExpiredError once the block height passes
        `last_valid_block_height` with the signature still unseen.
        """
        while True:
            result = await self.call("getSignatureStatuses", [
                [signature], {"searchTransactionHistory": False},
            ])
            status = (result.get("value") or [None])[0]
            if status:
                if status.get("err"):
                    raise TransactionFailedError(signature, status["err"])
                if status.get("confirmationStatus") in ("confirmed", "finalized"):
                    return

            if await self.get_block_height() > last_valid_block_height:
                # One last look: it may have landed in the final valid block
                result = await self.call("getSignatureStatuses", [
                    [signature], {"searchTransactionHistory": True},
                ])
                status = (result.get("value") or [None])[0]
                if status and not status.get("err"):
                    return
                if status and status.get("err"):
                    raise TransactionFailedError(signature, status["err"])
                raise TransactionExpiredError(
                    f"{signature[:16]}... not seen before block {last_valid_block_height}"
                )

            await asyncio.sleep(self.confirm_poll_s)

    async def sign_and_send(self, raw_tx: bytes, wallet: Keypair) -> str:
        """
        Sign a venue-built transaction and wait for confirmation.

        The expiry bound comes from a blockhash fetched just before sending;
        the venue's own blockhash is never newer, so this bound never cuts a
        live transaction short.
        """
        unsigned = VersionedTransaction.from_bytes(raw_tx)
        _, last_valid = await self.get_latest_blockhash()
        signed = VersionedTransaction(unsigned.message, [wallet])
        signature = await self.send_transaction(signed)
        logger.debug(f"Sent {signature[:16]}... | waiting for {self.commitment}")
        await self.confirm_transaction(signature, last_valid)
        return signature

    async def send_instructions(self, wallet: Keypair, instructions: list[Instruction]) -> str:
        """Compile, sign, send and confirm a transaction from instructions."""
        blockhash, last_valid = await self.get_latest_blockhash()
        message = MessageV0.try_compile(
            wallet.pubkey(), instructions, [], Hash.from_string(blockhash),
        )
        signed = VersionedTransaction(message, [wallet])
        signature = await self.send_transaction(signed)
        await self.confirm_transaction(signature, last_valid)
        return signature

    @track_latency("rpc", "transfer")
    async def transfer(self, wallet: Keypair, recipient: str, lamports: int) -> str:
        try:
            ix = transfer(TransferParams(
                from_pubkey=wallet.pubkey(),
                to_pubkey=Pubkey.from_string(recipient),
                lamports=lamports,
            ))
            signature = await self.send_instructions(wallet, [ix])
        except (RpcError, TransactionFailedError, TransactionExpiredError, ValueError) as e:
            raise TransferError(f"transfer to {recipient[:8]}... failed: {e}") from e
        logger.info(f"Transfer confirmed | {lamports_to_sol(lamports):.6f} SOL -> {recipient[:8]}... | {signature[:16]}...")
        return signature

    @property
    def stats(self) -> dict:
        return {
            "name": self.name,
            "connected": self._connected,
            "endpoints": len(self.rpc_urls),
            "transactions": self._tx_count,
        }


async def _rpc_call(
    session: aiohttp.ClientSession,
    endpoint: str,
    method: str,
    params: list[Any],
    timeout_s: float = 10.0,
) -> Any:
    """Make a single JSON-RPC call."""
    payload = {
        "jsonrpc": "2.0",
        "id": 1,
        "method": method,
        "params": params,
    }
    async with session.post(
        endpoint,
        json=payload,
        timeout=aiohttp.ClientTimeout(total=timeout_s),
    ) as resp:
        if resp.status != 200:
            raise RpcError(f"HTTP {resp.status}")
        data = await resp.json()
        if "error" in data:
            raise RpcError(data["error"].get("message", "RPC error"))
        return data.get("result")


class RpcError(LiquidifyError):
    pass


class WalletError(LiquidifyError):
    pass


class TransactionFailedError(LiquidifyError):
    """The chain executed the transaction and it failed."""

    def __init__(self, signature: str, err: Any) -> None:
        super().__init__(f"transaction {signature[:16]}... failed: {err}")
        self.signature = signature
        self.err = err


class TransactionExpiredError(LiquidifyError):
    """The transaction's blockhash expired before it was seen on chain."""
    pass
