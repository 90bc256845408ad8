"""
Configuration loader for Liquidify.

Reads from liquidify.toml and environment variables.
Env vars override file values (prefixed LIQUIDIFY_).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from liquidify.core.cycle import CycleSettings


@dataclass
class LiquidifyConfig:
    # -- Connection --
    rpc_urls: list[str] = field(default_factory=lambda: [
        "https://api.mainnet-beta.solana.com",
    ])
    commitment: str = "confirmed"
    http_timeout_s: float = 15.0
    confirm_poll_s: float = 1.0

    # -- Registry --
    registry_path: str = "tokens.json"
    history_path: str = "feed_history.jsonl"

    # -- Runner --
    interval_seconds: float = 300.0

    # -- Cycle thresholds (lamports) --
    dust_threshold_lamports: int = 100_000
    max_claim_lamports: int = 500_000_000
    tx_fee_reserve_lamports: int = 500_000
    min_spend_lamports: int = 1_000_000
    settle_timeout_s: float = 20.0
    settle_poll_s: float = 2.0

    # -- PumpPortal --
    pumpportal_url: str = "https://pumpportal.fun/api/trade-local"
    pumpportal_slippage_pct: int = 25
    buy_priority_fee_sol: float = 0.0005
    claim_priority_fee_sol: float = 0.0001

    # -- Jupiter --
    jupiter_quote_url: str = "https://lite-api.jup.ag/swap/v1/quote"
    jupiter_swap_url: str = "https://lite-api.jup.ag/swap/v1/swap"
    jupiter_slippage_bps: int = 300
    jupiter_max_priority_lamports: int = 1_000_000

    # -- PumpSwap liquidity --
    lp_slippage_pct: int = 10
    lp_compute_unit_price: int = 500_000

    # -- Graduation sources --
    pump_coin_url: str = "https://frontend-api.pump.fun/coins/{mint}"
    dexscreener_url: str = "https://api.dexscreener.com/latest/dex/tokens/{mint}"

    # -- Paper mode --
    paper_wallet_lamports: int = 50_000_000
    paper_fees_per_cycle_lamports: int = 10_000_000
    paper_tokens_per_sol: int = 30_000_000_000_000

    # -- Telemetry --
    telemetry_path: str = ""

    def cycle_settings(self) -> CycleSettings:
        return CycleSettings(
            dust_threshold_lamports=self.dust_threshold_lamports,
            max_claim_lamports=self.max_claim_lamports,
            tx_fee_reserve_lamports=self.tx_fee_reserve_lamports,
            min_spend_lamports=self.min_spend_lamports,
            settle_timeout_s=self.settle_timeout_s,
            settle_poll_s=self.settle_poll_s,
        )


def load_config(path: Path | None) -> LiquidifyConfig:
    """Load config from TOML file (if it exists), with env var overrides."""
    config = LiquidifyConfig()

    if path is not None and Path(path).exists():
        try:
            import tomllib
        except ModuleNotFoundError:
            import tomli as tomllib  # type: ignore[no-redef]

        with open(path, "rb") as f:
            raw = tomllib.load(f)

        # Flatten nested sections
        flat: dict = {}
        for key, val in raw.items():
            if isinstance(val, dict):
                for k2, v2 in val.items():
                    flat[k2] = v2
            else:
                flat[key] = val

        for key, val in flat.items():
            if hasattr(config, key):
                setattr(config, key, val)

    # Env overrides (LIQUIDIFY_RPC_URLS, LIQUIDIFY_MIN_SPEND_LAMPORTS, etc.)
    for attr in config.__dataclass_fields__:
        env_val = os.environ.get(f"LIQUIDIFY_{attr.upper()}")
        if env_val is None:
            continue
        field_type = type(getattr(config, attr))
        if field_type == bool:
            setattr(config, attr, env_val.lower() in ("1", "true", "yes"))
        elif field_type == int:
            setattr(config, attr, int(env_val))
        elif field_type == float:
            setattr(config, attr, float(env_val))
        elif field_type == list:
            setattr(config, attr, [v.strip() for v in env_val.split(",") if v.strip()])
        else:
            setattr(config, attr, env_val)

    return config
