"""
Configuration loading and validation.

Verifies the packaged config loads, that ${VAR} references expand from the
environment and that unexpanded placeholders count as unset.
"""
import os
from decimal import Decimal

import pytest
from pydantic import ValidationError

from position_ladder.config.config import DEFAULT_CONFIG_PATH, Config, LadderConfig, load_config
from position_ladder.config.dotenv_loader import load_dotenv_files


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("BITUNIX_API_KEY", "BITUNIX_API_SECRET", "ALERT_WEBHOOK_URL", "JOIN_API_KEY"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("ENVIRONMENT", "dev")


def test_packaged_config_loads():
    config = load_config()

    assert DEFAULT_CONFIG_PATH.exists()
    assert config.environment == "dev"
    assert config.ladder.allocation_pct == [Decimal(p) for p in (30, 30, 20, 10, 5, 5)]
    assert config.reconciliation.interval_seconds == 30
    assert config.price_monitor.debounce_seconds == 5


def test_unexpanded_placeholders_are_unset():
    config = load_config()

    assert config.exchange.api_key is None
    assert config.exchange.has_credentials() is False
    assert config.notifications.webhook_url is None


def test_env_references_expanded(tmp_path, monkeypatch):
    monkeypatch.setenv("BITUNIX_API_KEY", "abc")
    monkeypatch.setenv("BITUNIX_API_SECRET", "xyz")
    path = tmp_path / "config.yaml"
    path.write_text(
        "exchange:\n"
        "  api_key: ${BITUNIX_API_KEY}\n"
        "  api_secret: $BITUNIX_API_SECRET\n"
        "ladder:\n"
        "  allocation_pct: [50, 50]\n"
    )

    config = load_config(str(path))

    assert config.exchange.api_key == "abc"
    assert config.exchange.api_secret == "xyz"
    assert config.ladder.allocation_pct == [Decimal("50"), Decimal("50")]


def test_database_url_override(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite:///override.db")
    path = tmp_path / "config.yaml"
    path.write_text("storage:\n  database_url: sqlite:///file.db\n")

    assert Config.from_yaml(path).storage.database_url == "sqlite:///override.db"


def test_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(str(tmp_path / "missing.yaml"))


def test_prod_requires_credentials():
    config = Config(environment="prod")

    with pytest.raises(ValueError, match="credentials"):
        config.validate_config()


def test_min_fill_must_not_exceed_close_epsilon():
    config = Config(ladder=LadderConfig(min_fill_qty=Decimal("0.01"), close_qty_epsilon=Decimal("0.001")))

    with pytest.raises(ValueError, match="min_fill_qty"):
        config.validate_config()


@pytest.mark.parametrize("allocation", [[], [60, 50], [-5, 50]])
def test_allocation_schedule_rejected(allocation):
    with pytest.raises(ValidationError):
        LadderConfig(allocation_pct=allocation)


class TestDotenvLoader:
    def _isolate(self, monkeypatch, name):
        # Registers the variable for restore, then removes it
        monkeypatch.setenv(name, "sentinel")
        monkeypatch.delenv(name)

    def test_env_local_overrides_env(self, tmp_path, monkeypatch):
        self._isolate(monkeypatch, "LADDER_DOTENV_MARKER")
        (tmp_path / ".env").write_text("LADDER_DOTENV_MARKER=base\n")
        (tmp_path / ".env.local").write_text("LADDER_DOTENV_MARKER=local\n")

        loaded = load_dotenv_files(repo_root=tmp_path)

        assert [p.name for p in loaded] == [".env", ".env.local"]
        assert os.environ["LADDER_DOTENV_MARKER"] == "local"

    def test_prod_skips_dotenv(self, tmp_path, monkeypatch):
        self._isolate(monkeypatch, "LADDER_DOTENV_MARKER")
        monkeypatch.setenv("ENVIRONMENT", "prod")
        (tmp_path / ".env").write_text("LADDER_DOTENV_MARKER=base\n")

        assert load_dotenv_files(repo_root=tmp_path) == []
        assert "LADDER_DOTENV_MARKER" not in os.environ
