"""Test Settings loading and validation."""

import pytest

from aggregate_store.core.config import MEMORY_URL, Settings, load_settings
from aggregate_store.core.errors import AggregateStoreError, ConfigError


class TestSettingsDefaults:
    def test_default_settings(self):
        settings = Settings()
        assert settings.database.url.startswith("postgresql+asyncpg://")
        assert settings.database.is_memory is False
        assert settings.read_batch_size == 500

    def test_snapshot_defaults(self):
        settings = Settings()
        assert settings.snapshots.enabled is True
        assert settings.snapshots.interval == 50

    def test_outbox_defaults(self):
        settings = Settings()
        assert settings.outbox.enabled is True
        assert settings.outbox.batch_size == 50
        assert settings.outbox.interval_seconds == 60.0

    def test_memory_url(self):
        settings = Settings(database={"url": MEMORY_URL})
        assert settings.database.is_memory is True


class TestEnvironmentOverrides:
    def test_nested_env_var(self, monkeypatch):
        monkeypatch.setenv("AGGREGATE_STORE_DATABASE__URL", MEMORY_URL)
        monkeypatch.setenv("AGGREGATE_STORE_SNAPSHOTS__INTERVAL", "7")
        settings = Settings()
        assert settings.database.is_memory
        assert settings.snapshots.interval == 7

    def test_top_level_env_var(self, monkeypatch):
        monkeypatch.setenv("AGGREGATE_STORE_READ_BATCH_SIZE", "25")
        assert Settings().read_batch_size == 25


class TestLoadSettings:
    def test_loads_toml_file(self, tmp_path):
        path = tmp_path / "events.toml"
        path.write_text(
            'read_batch_size = 10\n'
            '[database]\n'
            'url = "memory://"\n'
            '[snapshots]\n'
            'interval = 3\n'
        )
        settings = load_settings(path)
        assert settings.read_batch_size == 10
        assert settings.database.is_memory
        assert settings.snapshots.interval == 3

    def test_missing_file_uses_defaults(self, tmp_path):
        settings = load_settings(tmp_path / "absent.toml")
        assert settings.read_batch_size == 500

    def test_overrides_win(self, tmp_path):
        path = tmp_path / "events.toml"
        path.write_text("read_batch_size = 10\n")
        settings = load_settings(path, overrides={"read_batch_size": 99})
        assert settings.read_batch_size == 99


class TestValidateSettings:
    def test_zero_batch_size_rejected(self):
        with pytest.raises(ConfigError, match="read_batch_size"):
            load_settings(overrides={"read_batch_size": 0})

    def test_zero_interval_rejected_when_enabled(self):
        with pytest.raises(ConfigError, match="snapshots.interval"):
            load_settings(overrides={"snapshots": {"enabled": True, "interval": 0}})

    def test_zero_interval_allowed_when_disabled(self):
        settings = load_settings(overrides={"snapshots": {"enabled": False, "interval": 0}})
        assert settings.snapshots.enabled is False

    def test_outbox_values_rejected(self):
        with pytest.raises(ConfigError, match="outbox.batch_size"):
            load_settings(overrides={"outbox": {"batch_size": 0}})
        with pytest.raises(ConfigError, match="outbox.interval_seconds"):
            load_settings(overrides={"outbox": {"interval_seconds": 0}})

    def test_unknown_log_format(self):
        with pytest.raises(ConfigError, match="log format"):
            load_settings(overrides={"observability": {"log_format": "xml"}})

    def test_config_error_is_store_error(self):
        assert issubclass(ConfigError, AggregateStoreError)
