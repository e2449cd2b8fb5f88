"""
Unit tests for configuration loading and validation.

Tests strict validation and error handling for monitor configs.
"""

import os
import tempfile
from dataclasses import replace
from datetime import timedelta
from pathlib import Path

import pytest
import yaml

from ai_usage_monitor.config.loader import (
    MonitorConfig,
    NotificationConfig,
    PollingConfig,
    default_accounts,
    load_config,
)
from ai_usage_monitor.core.cost_store import CostStore
from ai_usage_monitor.core.pricing_resolver import DEFAULT_PRICING_URL, PricingResolver
from ai_usage_monitor.core.scheduler import PollingScheduler
from ai_usage_monitor.storage.models import Account, AccountKind, RateWindow, UsageSnapshot
from ai_usage_monitor.storage.usage_store import UsageStore


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data, filename: str = "config.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_valid_config_loads_correctly(self):
        """Test that a valid configuration loads correctly."""
        config_data = {
            "accounts": [
                {"name": "work", "kind": "claude", "log_roots": [os.path.join(self.temp_dir, "claude")]},
                {"kind": "codex", "enabled": False},
            ],
            "notifications": {"enabled": True, "threshold": 0.8},
            "polling": {"fetch_interval": 120, "refresh_cooldown": 10},
            "pricing": {"url": "https://example.com/prices.json", "cache_path": os.path.join(self.temp_dir, "p.json")},
            "logging": {"level": "debug"},
        }

        config = load_config(self._write_config(config_data))

        # Verify accounts
        work, codex = config.accounts
        assert work == Account("work", AccountKind.CLAUDE, (Path(self.temp_dir) / "claude",))
        assert codex.name == "codex"
        assert codex.kind is AccountKind.CODEX
        assert not codex.enabled
        assert codex.log_roots
        assert config.enabled_accounts == [work]

        # Verify sections
        assert config.notifications.threshold == 0.8
        assert config.polling.fetch_interval == 120.0
        assert config.polling.refresh_cooldown == 10.0
        assert config.polling.scan_interval == 60.0
        assert config.pricing.url == "https://example.com/prices.json"
        assert config.pricing.cache_path == Path(self.temp_dir) / "p.json"
        assert config.logging.level == "DEBUG"
        assert config.logging.file is None

    def test_sections_are_optional(self):
        """Test that omitted sections fall back to defaults."""
        config = load_config(self._write_config({"accounts": [{"kind": "claude"}]}))

        assert [account.name for account in config.accounts] == ["claude"]
        assert config.notifications == NotificationConfig()
        assert config.polling == PollingConfig()
        assert config.pricing.url == DEFAULT_PRICING_URL
        assert config.logging.level == "INFO"

    def test_empty_file_gives_defaults(self):
        """Test that an empty YAML file loads the default accounts."""
        config_path = os.path.join(self.temp_dir, "empty.yaml")
        Path(config_path).write_text("", encoding="utf-8")

        config = load_config(config_path)
        assert [account.kind for account in config.accounts] == [AccountKind.CLAUDE, AccountKind.CODEX]

    def test_missing_default_file_gives_defaults(self, monkeypatch):
        """Test that no config at the default location is not an error."""
        monkeypatch.setenv("XDG_CONFIG_HOME", self.temp_dir)
        config = load_config()
        assert config.accounts == default_accounts()

    def test_missing_explicit_file_raises(self):
        """Test that a missing explicitly given file raises."""
        with pytest.raises(FileNotFoundError):
            load_config(os.path.join(self.temp_dir, "missing.yaml"))

    def test_invalid_yaml_raises(self):
        """Test that malformed YAML raises a YAML error."""
        config_path = os.path.join(self.temp_dir, "broken.yaml")
        Path(config_path).write_text("accounts: [unclosed", encoding="utf-8")

        with pytest.raises(yaml.YAMLError):
            load_config(config_path)

    def test_paths_expand_environment(self, monkeypatch):
        """Test that log roots expand variables and ~."""
        monkeypatch.setenv("LOG_BASE", self.temp_dir)
        config = load_config(self._write_config({
            "accounts": [{"kind": "claude", "log_roots": ["$LOG_BASE/projects", "~/claude"]}],
        }))
        assert config.accounts[0].log_roots == (Path(self.temp_dir) / "projects", Path.home() / "claude")

    @pytest.mark.parametrize("config_data, message", [
        (["not", "a", "dict"], "root must be a dictionary"),
        ({"budget": {}}, "Unknown configuration keys"),
        ({"accounts": {"kind": "claude"}}, "must be a list"),
        ({"accounts": [{"name": "x"}]}, "Missing required 'kind'"),
        ({"accounts": [{"kind": "gemini"}]}, "must be one of"),
        ({"accounts": [{"kind": "claude", "colour": "red"}]}, "Unknown keys"),
        ({"accounts": [{"kind": "claude", "log_roots": []}]}, "non-empty list"),
        ({"accounts": [{"kind": "claude", "enabled": "yes"}]}, "true or false"),
        ({"accounts": [{"kind": "claude"}, {"kind": "claude"}]}, "Duplicate account names"),
        ({"notifications": {"threshold": 1.5}}, "threshold"),
        ({"notifications": {"threshold": "high"}}, "must be a number"),
        ({"polling": {"fetch_interval": 0}}, "fetch_interval must be > 0"),
        ({"polling": {"refresh_cooldown": -1}}, "refresh_cooldown must be >= 0"),
        ({"polling": {"interval": 5}}, "Unknown polling keys"),
        ({"pricing": {"url": "ftp://example.com"}}, "http"),
        ({"logging": {"level": "LOUD"}}, "logging level"),
        ({"logging": "debug"}, "must be a dictionary"),
    ])
    def test_invalid_config_raises(self, config_data, message):
        """Test that invalid configurations are rejected with a clear message."""
        with pytest.raises(ValueError, match=message):
            load_config(self._write_config(config_data))


class TestMonitorConfig:
    """Test MonitorConfig helpers."""

    def test_get_account(self):
        config = MonitorConfig(accounts=(Account("a", AccountKind.CLAUDE), Account("b", AccountKind.CODEX)))
        assert config.get_account("b").kind is AccountKind.CODEX
        with pytest.raises(KeyError):
            config.get_account("c")

    def test_default_accounts_use_scanner_roots(self, monkeypatch):
        monkeypatch.setenv("CODEX_HOME", "/tmp/codex-home")
        accounts = {account.kind: account for account in default_accounts()}
        assert accounts[AccountKind.CODEX].log_roots == (Path("/tmp/codex-home/sessions"),)
        assert Path.home() / ".claude" / "projects" in accounts[AccountKind.CLAUDE].log_roots


class TestConfigWiring:
    """Test that loaded settings reach the store, cost store and scheduler."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        config_path = os.path.join(self.temp_dir, "config.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump({
                "accounts": [
                    {"name": "work", "kind": "claude", "log_roots": [self.temp_dir]},
                    {"kind": "codex", "enabled": False, "log_roots": [self.temp_dir]},
                ],
                "notifications": {"threshold": 0.5},
                "polling": {
                    "fetch_interval": 120,
                    "scan_interval": 300,
                    "refresh_cooldown": 15,
                    "request_timeout": 10,
                    "pricing_refresh_hours": 6,
                },
            }, f)
        self.settings = load_config(config_path)

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_usage_store_from_config(self):
        store = UsageStore.from_config(self.settings)

        assert [account.name for account in store.accounts()] == ["work", "codex"]
        assert store.notification_threshold == 0.5
        crossed = store.update_snapshot("work", UsageSnapshot(primary=RateWindow(used_fraction=0.6)))
        assert crossed == ["primary"]

    def test_disabled_notifications_from_config(self):
        settings = replace(self.settings, notifications=NotificationConfig(enabled=False))
        store = UsageStore.from_config(settings)

        assert store.update_snapshot("work", UsageSnapshot(primary=RateWindow(used_fraction=1.0))) == []

    def test_cost_store_from_config(self):
        cost_store = CostStore.from_config(self.settings, PricingResolver(cache_path=None))
        assert cost_store.pricing_max_age == timedelta(hours=6)

    def test_scheduler_from_config(self):
        store = UsageStore.from_config(self.settings)
        cost_store = CostStore.from_config(self.settings, PricingResolver(cache_path=None))
        scheduler = PollingScheduler.from_config(self.settings, store, cost_store)

        assert scheduler.fetch_interval == 120.0
        assert scheduler.scan_interval == 300.0
        assert scheduler.refresh_cooldown == timedelta(seconds=15)
        assert scheduler.request_timeout == 10.0
        assert scheduler.store is store
        assert scheduler.fetcher is None
