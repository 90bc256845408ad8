"""
File-backed token registry.

tokens.json::

    {
      "tokens": [
        {
          "id": "bonk2",
          "symbol": "BONK2",
          "mint": "...",
          "wallet_secret_env": "BONK2_WALLET",
          "status": "bonding",
          "fee_split": {"recipient": "...", "bps": 1000}
        }
      ]
    }

The wallet secret comes from ``wallet_secret`` or, preferably, from the
environment variable named by ``wallet_secret_env``. Each cycle adds to the
token's ``totals`` and appends one JSON line per confirmed operation to the
history file. The tokens file is rewritten atomically after every record.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from liquidify.adapters.base import LiquidifyError
from liquidify.core.batch import TokenRecord, TokenRegistry
from liquidify.core.cycle import CycleResult, FeeSplitPolicy
from liquidify.core.telemetry import TelemetryExporter

logger = logging.getLogger("liquidify.registry")

TOTAL_KEYS = (
    "cycles",
    "total_fees_claimed",
    "total_fee_split",
    "total_buyback",
    "total_liquidity",
    "total_burned_shares",
)


class JsonTokenRegistry(TokenRegistry):
    """
    Args:
        path: tokens JSON file. Created empty if missing.
        history_path: JSON-lines operation history. None disables history.
    """

    def __init__(self, path: str | Path, history_path: str | Path | None = None) -> None:
        self.path = Path(path)
        self.history_path = Path(history_path) if history_path else None
        self._raw: list[dict[str, Any]] = []
        self._history: TelemetryExporter | None = None
        self.load()

    def load(self) -> None:
        if not self.path.exists():
            self._raw = []
            return
        with open(self.path, encoding="utf-8") as f:
            data = json.load(f)
        tokens = data.get("tokens", []) if isinstance(data, dict) else data
        if not isinstance(tokens, list):
            raise RegistryError(f"{self.path}: 'tokens' must be a list")
        self._raw = tokens
        logger.debug(f"Loaded {len(tokens)} tokens from {self.path}")

    def all(self) -> list[TokenRecord]:
        """Every parseable entry. A malformed entry is logged and left out."""
        records = []
        for index, entry in enumerate(self._raw):
            try:
                records.append(self._to_record(entry))
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                label = entry.get("id") or entry.get("mint") if isinstance(entry, dict) else None
                logger.error(f"Skip registry entry {label or index} | malformed: {e!r}")
        return records

    def eligible(self) -> list[TokenRecord]:
        return [t for t in self.all() if t.eligible]

    def get(self, key: str) -> TokenRecord | None:
        """Look up by id or mint."""
        for entry in self._raw:
            if key in (entry.get("id"), entry.get("mint")):
                return self._to_record(entry)
        return None

    def record(self, token: TokenRecord, result: CycleResult) -> None:
        entry = self._entry(token.id)
        totals = entry.setdefault("totals", {})
        for key in TOTAL_KEYS:
            totals.setdefault(key, 0)
        totals["cycles"] += 1
        totals["total_fees_claimed"] += result.fees_claimed
        totals["total_fee_split"] += result.fee_split_paid
        totals["total_buyback"] += result.buyback_spent
        totals["total_liquidity"] += result.liquidity_spent
        totals["total_burned_shares"] += result.shares_burned

        if result.phase.value == "graduated" and entry.get("status") != "graduated":
            entry["status"] = "graduated"
            logger.info(f"Status updated | {token.label} | graduated")
        if result.pool_address:
            entry["pool_address"] = result.pool_address
        entry["last_cycle"] = {
            "succeeded": result.succeeded,
            "state": result.state.value,
            "notes": result.notes,
            "failure_reason": result.failure_reason,
        }

        self._append_history(token, result)
        self.save()

    def save(self) -> None:
        """Write tokens atomically: temp file in the same directory, then rename."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump({"tokens": self._raw}, f, indent=2)
                f.write("\n")
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def close(self) -> None:
        if self._history:
            self._history.close()
            self._history = None

    # -- Internal --

    def _entry(self, token_id: str) -> dict[str, Any]:
        for entry in self._raw:
            if _entry_id(entry) == token_id:
                return entry
        raise RegistryError(f"unknown token id {token_id!r}")

    def _append_history(self, token: TokenRecord, result: CycleResult) -> None:
        if not self.history_path or not result.operations:
            return
        if self._history is None:
            self._history = TelemetryExporter(str(self.history_path), flush_interval=0)
        for op in result.operations:
            self._history.emit(op.kind, {
                "token_id": token.id,
                "mint": token.mint,
                "signature": op.signature,
                "amount": op.amount,
                "explorer_url": op.explorer_url,
            })

    @staticmethod
    def _to_record(entry: dict[str, Any]) -> TokenRecord:
        secret = entry.get("wallet_secret", "") or ""
        env_name = entry.get("wallet_secret_env")
        if env_name:
            secret = os.environ.get(env_name, "")

        split = entry.get("fee_split")
        policy = None
        if split:
            policy = FeeSplitPolicy(recipient=split["recipient"], bps=int(split["bps"]))

        mint = entry.get("mint", "")
        return TokenRecord(
            id=_entry_id(entry),
            mint=mint,
            wallet_secret=secret,
            status=entry.get("status", "bonding"),
            symbol=entry.get("symbol", ""),
            fee_split=policy,
            totals=dict(entry.get("totals", {})),
        )


def _entry_id(entry: dict[str, Any]) -> str:
    return str(entry.get("id") or entry.get("mint", ""))


class RegistryError(LiquidifyError):
    pass
