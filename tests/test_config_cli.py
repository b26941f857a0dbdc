"""Tests for config loading and the click CLI."""

from __future__ import annotations

import json

import pytest
import yaml
from click.testing import CliRunner

from tradesim.cli import cli
from tradesim.config import PlatformConfig, load_config


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    monkeypatch.setenv("TRADESIM_ENABLE_ORACLE", "false")
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump({
        "engine": {"cycle_interval_secs": 60},
        "storage": {"sqlite_path": str(tmp_path / "cli.db")},
        "observability": {"log_file": str(tmp_path / "logs" / "tradesim.log")},
    }))
    return path


class TestLoadConfig:

    def test_missing_file_gives_defaults(self, tmp_path):
        cfg = load_config(tmp_path / "absent.yaml")
        assert cfg.engine.cycle_interval_secs == 300
        assert cfg.trading.default_win_rate_pct == 70
        assert cfg.trading.default_asset.symbol == "BTC"

    def test_yaml_overrides(self, config_file):
        cfg = load_config(config_file)
        assert cfg.engine.cycle_interval_secs == 60
        assert cfg.engine.min_trade_spacing_secs == 60
        assert cfg.storage.sqlite_path.endswith("cli.db")

    def test_env_disables_oracle(self, config_file):
        assert load_config(config_file).oracle.enabled is False

    def test_oracle_on_by_default(self, tmp_path, monkeypatch):
        monkeypatch.delenv("TRADESIM_ENABLE_ORACLE", raising=False)
        assert load_config(tmp_path / "absent.yaml").oracle.enabled is True
        assert PlatformConfig().oracle.enabled is True


class TestCli:

    def _invoke(self, config_file, *args):
        result = CliRunner().invoke(cli, ["--config", str(config_file), *args])
        assert result.exit_code == 0, result.output
        return result

    def test_seed_run_once_and_inspect(self, config_file, tmp_path):
        self._invoke(config_file, "seed-demo")
        self._invoke(config_file, "run-once")

        status = self._invoke(config_file, "status")
        assert "Scheduler Status" in status.output

        portfolio = self._invoke(config_file, "portfolio", "--user", "1")
        assert "Balances for user 1" in portfolio.output

        trades = self._invoke(config_file, "trades", "--user", "1")
        assert "Trades for user 1" in trades.output

        from tradesim.config import StorageConfig
        from tradesim.engine.scheduler import STATE_KEY
        from tradesim.storage.database import Database

        db = Database(StorageConfig(sqlite_path=str(tmp_path / "cli.db")))
        db.connect()
        try:
            state = json.loads(db.get_engine_state(STATE_KEY))
            assert state["last_cycle"]["processed"] == 3
        finally:
            db.close()

    def test_subscribe_command(self, config_file):
        self._invoke(config_file, "seed-demo")
        result = self._invoke(
            config_file, "subscribe", "--user", "1", "--bot", "3", "--amount", "500",
        )
        assert "Subscription" in result.output

    def test_subscribe_insufficient_funds(self, config_file):
        self._invoke(config_file, "seed-demo")
        result = CliRunner().invoke(cli, [
            "--config", str(config_file),
            "subscribe", "--user", "2", "--bot", "1", "--amount", "999999",
        ])
        assert result.exit_code == 1

    @pytest.mark.parametrize("amount", ["nan", "inf", "abc"])
    def test_subscribe_rejects_bad_amount(self, config_file, amount):
        self._invoke(config_file, "seed-demo")
        result = CliRunner().invoke(cli, [
            "--config", str(config_file),
            "subscribe", "--user", "1", "--bot", "1", "--amount", amount,
        ])
        assert result.exit_code == 2
        assert "--amount" in result.output

    def test_status_before_first_run(self, config_file):
        result = self._invoke(config_file, "status")
        assert "has not run" in result.output
