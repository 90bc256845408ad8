"""Tests for CLI wiring in paper mode."""

import json

import pytest
from solders.keypair import Keypair

from liquidify.cli import build_runtime, cmd_once, cmd_status
from liquidify.config import LiquidifyConfig


def paper_config(tmp_path, tokens):
    registry = tmp_path / "tokens.json"
    registry.write_text(json.dumps({"tokens": tokens}))
    return LiquidifyConfig(
        registry_path=str(registry),
        history_path=str(tmp_path / "history.jsonl"),
        # Unroutable graduation sources: paper runs fall back to bonding
        pump_coin_url="http://127.0.0.1:9/coins/{mint}",
        dexscreener_url="http://127.0.0.1:9/tokens/{mint}",
        http_timeout_s=1.0,
        settle_timeout_s=0,
        settle_poll_s=0,
    )


class TestPaperMode:
    @pytest.mark.asyncio
    async def test_once_cycles_registry_tokens(self, tmp_path, capsys):
        config = paper_config(tmp_path, [
            {"id": "a", "mint": "MintA111111111111111111111111111111111pump", "wallet_secret": str(Keypair())},
            {"id": "b", "mint": "MintB111111111111111111111111111111111pump", "status": "paused"},
        ])

        report = await cmd_once(config, mode="paper")

        assert report.processed == 1
        assert report.results["a"].succeeded
        assert report.results["a"].buyback_spent > 0
        out = capsys.readouterr().out
        assert "paper_claim_" in out
        # Paper runs never write the tokens file or history
        saved = json.loads((tmp_path / "tokens.json").read_text())["tokens"][0]
        assert "totals" not in saved
        assert not (tmp_path / "history.jsonl").exists()

    def test_build_runtime_paper_uses_paper_registry(self, tmp_path):
        config = paper_config(tmp_path, [])
        runtime = build_runtime(config, "paper")
        assert type(runtime.registry).__name__ == "PaperRegistry"
        assert all(not a.connected for a in runtime.adapters)


class TestStatus:
    def test_lists_tokens(self, tmp_path, capsys):
        config = paper_config(tmp_path, [
            {"id": "a", "symbol": "AAA", "mint": "MintA", "wallet_secret": "x", "totals": {"cycles": 3}},
            {"id": "b", "symbol": "BBB", "mint": "MintB", "status": "paused"},
        ])
        cmd_status(config, tmp_path / "missing.toml")
        out = capsys.readouterr().out
        assert "2 tokens" in out
        assert "cycles=3" in out
        assert "no wallet" in out


class TestRuntime:
    def test_live_wiring_types(self, tmp_path):
        from liquidify.adapters.base import BaseAdapter
        from liquidify.core.batch import BatchRunner, TokenRegistry
        from liquidify.core.events import EventBus
        from liquidify.core.telemetry import OutcomeTally, TelemetryExporter

        config = paper_config(tmp_path, [])
        config.telemetry_path = str(tmp_path / "telemetry.jsonl")
        runtime = build_runtime(config, "live")

        assert isinstance(runtime.runner, BatchRunner)
        assert isinstance(runtime.registry, TokenRegistry)
        assert isinstance(runtime.bus, EventBus)
        assert isinstance(runtime.tally, OutcomeTally)
        assert isinstance(runtime.exporter, TelemetryExporter)
        assert runtime.adapters and all(isinstance(a, BaseAdapter) for a in runtime.adapters)
        runtime.exporter.close()
        runtime.registry.close()
