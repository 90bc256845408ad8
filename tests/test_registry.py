"""Tests for the JSON token registry."""

import json

import pytest
from solders.keypair import Keypair

from liquidify.adapters.base import LiquidifyError, TokenPhase
from liquidify.core.batch import TokenRecord
from liquidify.core.cycle import CycleResult, CycleState, OperationRecord
from liquidify.registry import JsonTokenRegistry, RegistryError

RECIPIENT = str(Keypair().pubkey())


def write_tokens(path, tokens):
    path.write_text(json.dumps({"tokens": tokens}))


def graduated_result(mint):
    return CycleResult(
        token_mint=mint,
        succeeded=True,
        phase=TokenPhase.GRADUATED,
        state=CycleState.COMPLETE,
        pool_address="Pool1",
        fees_claimed=20_500_000,
        spendable=20_000_000,
        buyback_spent=10_000_000,
        liquidity_spent=10_000_000,
        liquidity_shares=493_339,
        shares_burned=493_339,
        operations=[
            OperationRecord("claim_fees", "sigA", 20_500_000),
            OperationRecord("buyback", "sigB", 10_000_000),
            OperationRecord("add_liquidity", "sigC", 10_000_000),
            OperationRecord("burn_lp", "sigD", 493_339),
        ],
    )


class TestJsonTokenRegistry:
    def setup_method(self):
        self.wallet = str(Keypair())

    def test_missing_file_is_empty(self, tmp_path):
        registry = JsonTokenRegistry(tmp_path / "tokens.json")
        assert registry.all() == []

    def test_eligible_filters_status(self, tmp_path):
        path = tmp_path / "tokens.json"
        write_tokens(path, [
            {"id": "a", "mint": "MintA", "wallet_secret": self.wallet, "status": "bonding"},
            {"id": "b", "mint": "MintB", "wallet_secret": self.wallet, "status": "graduated"},
            {"id": "c", "mint": "MintC", "wallet_secret": self.wallet, "status": "paused"},
        ])
        registry = JsonTokenRegistry(path)
        assert [t.id for t in registry.eligible()] == ["a", "b"]

    def test_secret_from_environment(self, tmp_path, monkeypatch):
        path = tmp_path / "tokens.json"
        write_tokens(path, [{"id": "a", "mint": "MintA", "wallet_secret_env": "TOKEN_A_WALLET"}])
        monkeypatch.setenv("TOKEN_A_WALLET", self.wallet)
        assert JsonTokenRegistry(path).get("a").wallet_secret == self.wallet

    def test_secret_not_in_repr(self, tmp_path):
        path = tmp_path / "tokens.json"
        write_tokens(path, [{"id": "a", "mint": "MintA", "wallet_secret": self.wallet}])
        assert self.wallet not in repr(JsonTokenRegistry(path).get("a"))

    def test_fee_split_parsed(self, tmp_path):
        path = tmp_path / "tokens.json"
        write_tokens(path, [{
            "id": "a", "mint": "MintA",
            "fee_split": {"recipient": RECIPIENT, "bps": 1000},
        }])
        policy = JsonTokenRegistry(path).get("MintA").fee_split
        assert policy.recipient == RECIPIENT
        assert policy.bps == 1000

    def test_tokens_must_be_a_list(self, tmp_path):
        path = tmp_path / "tokens.json"
        path.write_text(json.dumps({"tokens": {"a": {}}}))
        with pytest.raises(RegistryError):
            JsonTokenRegistry(path)

    def test_record_updates_totals_status_and_history(self, tmp_path):
        path = tmp_path / "tokens.json"
        history = tmp_path / "history.jsonl"
        write_tokens(path, [{"id": "a", "mint": "MintA", "wallet_secret": self.wallet, "status": "bonding"}])
        registry = JsonTokenRegistry(path, history)
        token = registry.get("a")

        registry.record(token, graduated_result(token.mint))
        registry.record(token, graduated_result(token.mint))
        registry.close()

        saved = json.loads(path.read_text())["tokens"][0]
        assert saved["status"] == "graduated"
        assert saved["pool_address"] == "Pool1"
        assert saved["totals"]["cycles"] == 2
        assert saved["totals"]["total_fees_claimed"] == 41_000_000
        assert saved["totals"]["total_buyback"] == 20_000_000
        assert saved["totals"]["total_liquidity"] == 20_000_000
        assert saved["totals"]["total_burned_shares"] == 2 * 493_339
        assert saved["last_cycle"]["succeeded"] is True

        lines = [json.loads(line) for line in history.read_text().splitlines()]
        assert [line["type"] for line in lines[:4]] == ["claim_fees", "buyback", "add_liquidity", "burn_lp"]
        assert len(lines) == 8
        assert lines[0]["explorer_url"] == "https://solscan.io/tx/sigA"
        assert lines[0]["token_id"] == "a"

    def test_record_without_operations_writes_no_history(self, tmp_path):
        path = tmp_path / "tokens.json"
        history = tmp_path / "history.jsonl"
        write_tokens(path, [{"id": "a", "mint": "MintA"}])
        registry = JsonTokenRegistry(path, history)
        registry.record(registry.get("a"), CycleResult(token_mint="MintA", succeeded=True))
        assert not history.exists()

    def test_malformed_entries_are_left_out(self, tmp_path):
        path = tmp_path / "tokens.json"
        write_tokens(path, [
            {"id": "zero", "mint": "MintZ", "fee_split": {"recipient": RECIPIENT, "bps": 0}},
            {"id": "over", "mint": "MintO", "fee_split": {"recipient": RECIPIENT, "bps": 10_001}},
            {"id": "norecipient", "mint": "MintN", "fee_split": {"bps": 100}},
            {"id": "ok", "mint": "MintK", "wallet_secret": self.wallet},
        ])
        registry = JsonTokenRegistry(path)
        assert [t.id for t in registry.all()] == ["ok"]
        assert [t.id for t in registry.eligible()] == ["ok"]

    def test_record_entry_without_id_uses_mint(self, tmp_path):
        path = tmp_path / "tokens.json"
        history = tmp_path / "history.jsonl"
        write_tokens(path, [{"mint": "MintA", "wallet_secret": self.wallet}])
        registry = JsonTokenRegistry(path, history)
        token = registry.eligible()[0]
        assert token.id == "MintA"

        registry.record(token, graduated_result(token.mint))
        registry.close()

        saved = json.loads(path.read_text())["tokens"][0]
        assert saved["status"] == "graduated"
        assert saved["totals"]["cycles"] == 1
        assert "id" not in saved
        assert len(history.read_text().splitlines()) == 4

    def test_registry_error_is_a_liquidify_error(self):
        assert issubclass(RegistryError, LiquidifyError)

    def test_record_unknown_token(self, tmp_path):
        registry = JsonTokenRegistry(tmp_path / "tokens.json")
        with pytest.raises(RegistryError):
            registry.record(TokenRecord(id="ghost", mint="MintG"), CycleResult(token_mint="MintG"))

    def test_save_leaves_no_temp_files(self, tmp_path):
        path = tmp_path / "tokens.json"
        write_tokens(path, [{"id": "a", "mint": "MintA"}])
        registry = JsonTokenRegistry(path)
        registry.record(registry.get("a"), CycleResult(token_mint="MintA", succeeded=True))
        assert sorted(p.name for p in tmp_path.iterdir()) == ["tokens.json"]
