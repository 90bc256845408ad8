"""
PumpSwap liquidity adapter.

PumpSwap is pump.fun's native AMM. When a token graduates from the bonding
curve its liquidity migrates into a PumpSwap pool (token base / WSOL quote).
This adapter deposits SOL + token into that pool and burns the pool-share
(LP) tokens the deposit mints, locking the liquidity permanently.

Supports:
- Pool state reading (mints, vaults, reserves, LP supply)
- Deposit quoting at the pool's current ratio
- Deposit transactions with SOL wrapped into a temporary WSOL account
- Pool-share discovery under both token programs, and burning
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass

from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from spl.token.instructions import (
    BurnParams,
    CloseAccountParams,
    SyncNativeParams,
    burn,
    close_account,
    create_idempotent_associated_token_account,
    get_associated_token_address,
    sync_native,
)

from liquidify.adapters.base import (
    BaseAdapter,
    BurnReceipt,
    DepositReceipt,
    InsufficientTokenError,
    LiquidityAdapter,
    LiquidityError,
    PoolShareBalance,
)
from liquidify.adapters.solana_rpc import (
    TOKEN_2022_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
    TOKEN_PROGRAMS,
    RpcError,
    SolanaRpc,
    TransactionExpiredError,
    TransactionFailedError,
    lamports_to_sol,
)
from liquidify.core.telemetry import track_latency

logger = logging.getLogger("liquidify.pumpswap")

PUMPSWAP_PROGRAM = "pAMMBay6oceH9fJKBRHGP5D4bD4sWpmSwMn52FMfXEA"
PUMPSWAP_GLOBAL_CONFIG = "ADyA8hdefvWN2dbGGWFotbzWxrAvLW83WG6QCVXvJKqw"
PUMPSWAP_EVENT_AUTHORITY = "GS4CU59F31iL7aR2Q8zVS8DRrcRnXX1yjQ66TqNVQnaR"

WSOL_MINT = "So11111111111111111111111111111111111111112"

DEPOSIT_DISCRIMINATOR = bytes([0xF2, 0x23, 0xC6, 0x89, 0x52, 0xE1, 0xF2, 0xB6])

# discriminator(8) | bump u8 | index u16 | creator | base_mint | quote_mint
# | lp_mint | pool_base_vault | pool_quote_vault | lp_supply u64
_POOL_LAYOUT = struct.Struct("<BH32s32s32s32s32s32sQ")
_POOL_HEADER = 8

DEPOSIT_COMPUTE_UNITS = 400_000


@dataclass(frozen=True)
class PoolState:
    """Decoded PumpSwap pool account plus live vault reserves."""
    address: str
    base_mint: str
    quote_mint: str
    lp_mint: str
    base_vault: str
    quote_vault: str
    lp_supply: int
    base_reserve: int = 0
    quote_reserve: int = 0

    @classmethod
    def decode(cls, address: str, data: bytes) -> PoolState:
        if len(data) < _POOL_HEADER + _POOL_LAYOUT.size:
            raise LiquidityError(f"pool account {address[:8]}... too short ({len(data)} bytes)")
        (_bump, _index, _creator, base_mint, quote_mint, lp_mint,
         base_vault, quote_vault, lp_supply) = _POOL_LAYOUT.unpack_from(data, _POOL_HEADER)
        return cls(
            address=address,
            base_mint=str(Pubkey.from_bytes(base_mint)),
            quote_mint=str(Pubkey.from_bytes(quote_mint)),
            lp_mint=str(Pubkey.from_bytes(lp_mint)),
            base_vault=str(Pubkey.from_bytes(base_vault)),
            quote_vault=str(Pubkey.from_bytes(quote_vault)),
            lp_supply=lp_supply,
        )

    @property
    def price_sol(self) -> float:
        """Token price in SOL per raw token unit."""
        if self.base_reserve == 0:
            return 0.0
        return self.quote_reserve / self.base_reserve

    def __repr__(self) -> str:
        return (
            f"PoolState(pool={self.address[:8]}... token={self.base_mint[:8]}... "
            f"sol={lamports_to_sol(self.quote_reserve):.2f} tokens={self.base_reserve} "
            f"lp={self.lp_supply})"
        )


@dataclass(frozen=True)
class DepositQuote:
    lp_out: int
    base_in: int
    quote_in: int
    max_base_in: int
    max_quote_in: int


def quote_deposit(
    base_reserve: int,
    quote_reserve: int,
    lp_supply: int,
    quote_in: int,
    max_base: int,
    slippage_pct: int = 10,
) -> DepositQuote:
    """
    Size a deposit at the pool's current ratio.

    Starts from `quote_in` lamports and the token amount that ratio needs.
    If that exceeds `max_base`, the deposit shrinks to what `max_base`
    tokens can pair with. The LP amount is the smaller of the two sides'
    share of supply. Slippage widens the maxima, never the base cap.

    Raises InsufficientTokenError when no positive deposit fits.
    """
    if base_reserve <= 0 or quote_reserve <= 0 or lp_supply <= 0:
        raise LiquidityError("pool has no reserves")
    if max_base <= 0:
        raise InsufficientTokenError("no tokens available to pair with the deposit")
    if quote_in <= 0:
        raise InsufficientTokenError("no SOL allotted to the deposit")

    base_needed = -(-quote_in * base_reserve // quote_reserve)  # ceil
    if base_needed > max_base:
        base_in = max_base
        quote_used = base_in * quote_reserve // base_reserve
    else:
        base_in = base_needed
        quote_used = quote_in

    lp_out = min(quote_used * lp_supply // quote_reserve, base_in * lp_supply // base_reserve)
    if lp_out <= 0 or quote_used <= 0:
        raise InsufficientTokenError(
            f"{max_base} tokens too few to pair with any SOL at the pool ratio"
        )

    return DepositQuote(
        lp_out=lp_out,
        base_in=base_in,
        quote_in=quote_used,
        max_base_in=min(base_in * (100 + slippage_pct) // 100, max_base),
        max_quote_in=quote_used * (100 + slippage_pct) // 100,
    )


class PumpSwapLiquidity(BaseAdapter, LiquidityAdapter):
    """
    Deposits into PumpSwap pools and burns the resulting pool-share tokens.

    Args:
        rpc: Connected SolanaRpc for reads and submission.
        slippage_pct: Default deposit slippage tolerance in percent.
        compute_unit_price: Priority fee in micro-lamports per compute unit.
    """

    name = "pumpswap"

    def __init__(
        self,
        rpc: SolanaRpc,
        slippage_pct: int = 10,
        compute_unit_price: int = 500_000,
    ) -> None:
        super().__init__()
        self.rpc = rpc
        self.slippage_pct = slippage_pct
        self.compute_unit_price = compute_unit_price
        self._deposits: int = 0
        self._burns: int = 0

    async def connect(self) -> None:
        self._connected = True
        logger.info(f"PumpSwap liquidity adapter ready | slippage={self.slippage_pct}%")

    async def disconnect(self) -> None:
        self._connected = False
        logger.info(f"PumpSwap liquidity adapter stopped | deposits={self._deposits} burns={self._burns}")

    @track_latency("pumpswap", "pool_state")
    async def get_pool_state(self, pool_address: str) -> PoolState:
        """Read the pool account and both vault balances."""
        account = await self.rpc.get_account(pool_address)
        if not account:
            raise LiquidityError(f"pool {pool_address[:8]}... not found")
        if account["owner"] != PUMPSWAP_PROGRAM:
            raise LiquidityError(f"{pool_address[:8]}... is not a PumpSwap pool (owner {account['owner'][:8]}...)")
        state = PoolState.decode(pool_address, account["data"])

        base_reserve = await self.rpc.get_token_account_balance(state.base_vault)
        quote_reserve = await self.rpc.get_token_account_balance(state.quote_vault)
        if base_reserve is None or quote_reserve is None:
            raise LiquidityError(f"pool {pool_address[:8]}... vaults unreadable")
        return PoolState(
            address=state.address,
            base_mint=state.base_mint,
            quote_mint=state.quote_mint,
            lp_mint=state.lp_mint,
            base_vault=state.base_vault,
            quote_vault=state.quote_vault,
            lp_supply=state.lp_supply,
            base_reserve=base_reserve,
            quote_reserve=quote_reserve,
        )

    async def _token_program_of(self, mint: str) -> str:
        account = await self.rpc.get_account(mint)
        owner = account["owner"] if account else ""
        if owner not in TOKEN_PROGRAMS:
            raise LiquidityError(f"mint {mint[:8]}... has unknown owner {owner[:8]}")
        return owner

    @track_latency("pumpswap", "deposit")
    async def deposit(
        self,
        wallet: Keypair,
        pool_address: str,
        lamports: int,
        max_tokens: int,
        slippage_pct: int | None = None,
    ) -> DepositReceipt:
        slippage = self.slippage_pct if slippage_pct is None else slippage_pct
        owner = wallet.pubkey()

        try:
            pool = await self.get_pool_state(pool_address)
            if pool.quote_mint != WSOL_MINT:
                raise LiquidityError(f"pool {pool_address[:8]}... is not SOL-quoted")

            base_program = await self._token_program_of(pool.base_mint)
            user_base = get_associated_token_address(
                owner, Pubkey.from_string(pool.base_mint), Pubkey.from_string(base_program),
            )
            held = await self.rpc.get_token_account_balance(str(user_base)) or 0
            quote = quote_deposit(
                pool.base_reserve, pool.quote_reserve, pool.lp_supply,
                lamports, min(max_tokens, held), slippage,
            )
            logger.info(
                f"Deposit quote | pool={pool_address[:8]}... | "
                f"{lamports_to_sol(quote.quote_in):.6f} SOL + {quote.base_in} tokens -> {quote.lp_out} LP"
            )

            instructions = self._build_deposit_ixs(wallet, pool, user_base, quote)
            signature = await self.rpc.send_instructions(wallet, instructions)
        except (RpcError, TransactionFailedError, TransactionExpiredError) as e:
            raise LiquidityError(f"deposit failed: {e}") from e

        self._deposits += 1
        logger.info(f"Liquidity added | pool={pool_address[:8]}... | {signature[:16]}...")
        return DepositReceipt(
            signature=signature,
            pool_share_amount=quote.lp_out,
            lamports_spent=quote.quote_in,
            tokens_spent=quote.base_in,
        )

    def _build_deposit_ixs(
        self,
        wallet: Keypair,
        pool: PoolState,
        user_base: Pubkey,
        quote: DepositQuote,
    ) -> list[Instruction]:
        """
        compute budget -> wrap SOL -> ensure LP account -> deposit -> unwrap.

        Closing the WSOL account returns any SOL the deposit did not use.
        """
        owner = wallet.pubkey()
        token_program = Pubkey.from_string(TOKEN_PROGRAM_ID)
        token_2022 = Pubkey.from_string(TOKEN_2022_PROGRAM_ID)
        wsol = Pubkey.from_string(WSOL_MINT)
        lp_mint = Pubkey.from_string(pool.lp_mint)

        user_quote = get_associated_token_address(owner, wsol, token_program)
        user_lp = get_associated_token_address(owner, lp_mint, token_2022)

        data = DEPOSIT_DISCRIMINATOR + struct.pack(
            "<QQQ", quote.lp_out, quote.max_base_in, quote.max_quote_in,
        )
        program = Pubkey.from_string(PUMPSWAP_PROGRAM)
        accounts = [
            AccountMeta(Pubkey.from_string(pool.address), is_signer=False, is_writable=True),
            AccountMeta(Pubkey.from_string(PUMPSWAP_GLOBAL_CONFIG), is_signer=False, is_writable=False),
            AccountMeta(owner, is_signer=True, is_writable=True),
            AccountMeta(Pubkey.from_string(pool.base_mint), is_signer=False, is_writable=False),
            AccountMeta(wsol, is_signer=False, is_writable=False),
            AccountMeta(lp_mint, is_signer=False, is_writable=True),
            AccountMeta(user_base, is_signer=False, is_writable=True),
            AccountMeta(user_quote, is_signer=False, is_writable=True),
            AccountMeta(user_lp, is_signer=False, is_writable=True),
            AccountMeta(Pubkey.from_string(pool.base_vault), is_signer=False, is_writable=True),
            AccountMeta(Pubkey.from_string(pool.quote_vault), is_signer=False, is_writable=True),
            AccountMeta(token_program, is_signer=False, is_writable=False),
            AccountMeta(token_2022, is_signer=False, is_writable=False),
            AccountMeta(Pubkey.from_string(PUMPSWAP_EVENT_AUTHORITY), is_signer=False, is_writable=False),
            AccountMeta(program, is_signer=False, is_writable=False),
        ]

        return [
            set_compute_unit_limit(DEPOSIT_COMPUTE_UNITS),
            set_compute_unit_price(self.compute_unit_price),
            create_idempotent_associated_token_account(owner, owner, wsol, token_program),
            transfer(TransferParams(from_pubkey=owner, to_pubkey=user_quote, lamports=quote.max_quote_in)),
            sync_native(SyncNativeParams(program_id=token_program, account=user_quote)),
            create_idempotent_associated_token_account(owner, owner, lp_mint, token_2022),
            Instruction(program, data, accounts),
            close_account(CloseAccountParams(
                program_id=token_program, account=user_quote, dest=owner, owner=owner,
            )),
        ]

    async def pool_share_balance(self, owner: str, pool_address: str) -> PoolShareBalance | None:
        """
        Find the owner's pool-share account.

        PumpSwap mints LP under Token-2022 today, but both programs are probed;
        the first account with a positive balance wins, else the first that exists.
        """
        try:
            pool = await self.get_pool_state(pool_address)
            owner_key = Pubkey.from_string(owner)
            lp_mint = Pubkey.from_string(pool.lp_mint)
            found: PoolShareBalance | None = None
            for program in TOKEN_PROGRAMS:
                ata = get_associated_token_address(owner_key, lp_mint, Pubkey.from_string(program))
                amount = await self.rpc.get_token_account_balance(str(ata))
                if amount is None:
                    continue
                share = PoolShareBalance(mint=pool.lp_mint, token_program=program, account=str(ata), amount=amount)
                if amount > 0:
                    return share
                found = found or share
            return found
        except RpcError as e:
            raise LiquidityError(f"pool-share lookup failed: {e}") from e

    @track_latency("pumpswap", "burn")
    async def burn(self, wallet: Keypair, share: PoolShareBalance) -> BurnReceipt:
        if share.amount <= 0:
            raise LiquidityError("nothing to burn")
        ix = burn(BurnParams(
            program_id=Pubkey.from_string(share.token_program),
            account=Pubkey.from_string(share.account),
            mint=Pubkey.from_string(share.mint),
            owner=wallet.pubkey(),
            amount=share.amount,
        ))
        try:
            signature = await self.rpc.send_instructions(wallet, [ix])
        except (RpcError, TransactionFailedError, TransactionExpiredError) as e:
            raise LiquidityError(f"burn failed: {e}") from e
        self._burns += 1
        logger.info(f"LP burned | {share.amount} | {signature[:16]}...")
        return BurnReceipt(signature=signature, amount=share.amount)

    @property
    def stats(self) -> dict:
        return {
            "name": self.name,
            "connected": self._connected,
            "deposits": self._deposits,
            "burns": self._burns,
        }
