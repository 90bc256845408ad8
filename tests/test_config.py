"""Tests for config loading."""

from liquidify.config import LiquidifyConfig, load_config


class TestLoadConfig:
    def test_defaults_without_file(self, tmp_path):
        config = load_config(tmp_path / "missing.toml")
        assert config == LiquidifyConfig()
        assert config.min_spend_lamports == 1_000_000

    def test_nested_sections_are_flattened(self, tmp_path):
        path = tmp_path / "liquidify.toml"
        path.write_text(
            '[connection]\n'
            'rpc_urls = ["https://rpc.one", "https://rpc.two"]\n'
            '\n'
            '[cycle]\n'
            'min_spend_lamports = 2_000_000\n'
            'settle_timeout_s = 5.0\n'
            '\n'
            'interval_seconds = 60\n'
            'unknown_key = "ignored"\n'
        )
        config = load_config(path)
        assert config.rpc_urls == ["https://rpc.one", "https://rpc.two"]
        assert config.min_spend_lamports == 2_000_000
        assert config.settle_timeout_s == 5.0
        assert not hasattr(config, "unknown_key")

    def test_env_overrides_file(self, tmp_path, monkeypatch):
        path = tmp_path / "liquidify.toml"
        path.write_text("[cycle]\nmin_spend_lamports = 2_000_000\n")
        monkeypatch.setenv("LIQUIDIFY_MIN_SPEND_LAMPORTS", "3000000")
        monkeypatch.setenv("LIQUIDIFY_SETTLE_POLL_S", "0.5")
        monkeypatch.setenv("LIQUIDIFY_RPC_URLS", "https://a.test, https://b.test,")
        monkeypatch.setenv("LIQUIDIFY_REGISTRY_PATH", "/data/tokens.json")

        config = load_config(path)

        assert config.min_spend_lamports == 3_000_000
        assert config.settle_poll_s == 0.5
        assert config.rpc_urls == ["https://a.test", "https://b.test"]
        assert config.registry_path == "/data/tokens.json"

    def test_cycle_settings(self):
        config = LiquidifyConfig(dust_threshold_lamports=1, max_claim_lamports=2, settle_poll_s=0.1)
        settings = config.cycle_settings()
        assert settings.dust_threshold_lamports == 1
        assert settings.max_claim_lamports == 2
        assert settings.settle_poll_s == 0.1
        assert settings.tx_fee_reserve_lamports == config.tx_fee_reserve_lamports
