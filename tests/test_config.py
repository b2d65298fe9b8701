"""Tests for configuration loading."""

import pytest

from schoolkv.config import Config, load_config


class TestDefaults:
    """Tests for built-in defaults."""

    def test_default_config(self):
        """Test defaults without a file."""
        config = load_config(None)

        assert config.context.name == "admin-console"
        assert config.cache.quota_bytes == 5 * 1024 * 1024
        assert config.remote.url == ""
        assert config.broadcast.topic_prefix == "schoolkv"
        assert config.broadcast.skip_own_changes is True
        assert config.extra_sensitive_keys == []

    def test_missing_file_uses_defaults(self, tmp_path):
        """Test that a missing file is not an error."""
        config = load_config(tmp_path / "missing.yaml")

        assert config.server.port == 8080


class TestYamlLoading:
    """Tests for YAML config files."""

    def test_load_sections(self, tmp_path):
        """Test each section is read from YAML."""
        path = tmp_path / "config.yaml"
        path.write_text(
            """
context:
  name: principal-portal
cache:
  quota_bytes: 2048
remote:
  url: http://school.local:8080
  max_retries: 5
broadcast:
  broker: mqtt.school.local
  topic_prefix: academy
server:
  port: 9000
extra_sensitive_keys:
  - fee-ledger
"""
        )

        config = load_config(path)

        assert config.context.name == "principal-portal"
        assert config.cache.quota_bytes == 2048
        assert config.cache.outbox_retention_days == 7
        assert config.remote.url == "http://school.local:8080"
        assert config.remote.max_retries == 5
        assert config.remote.timeout_seconds == 10.0
        assert config.broadcast.broker == "mqtt.school.local"
        assert config.broadcast.topic_prefix == "academy"
        assert config.broadcast.port == 1883
        assert config.server.port == 9000
        assert config.extra_sensitive_keys == ["fee-ledger"]

    def test_empty_file(self, tmp_path):
        """Test an empty YAML file gives defaults."""
        path = tmp_path / "config.yaml"
        path.write_text("")

        config = load_config(path)

        assert isinstance(config, Config)
        assert config.context.name == "admin-console"


class TestEnvOverrides:
    """Tests for SCHOOLKV_ environment overrides."""

    def test_env_overrides_file(self, tmp_path, monkeypatch):
        """Test environment variables win over the file."""
        path = tmp_path / "config.yaml"
        path.write_text("context:\n  name: from-file\n")

        monkeypatch.setenv("SCHOOLKV_CONTEXT_NAME", "teacher-portal")
        monkeypatch.setenv("SCHOOLKV_REMOTE_URL", "http://remote:8080")
        monkeypatch.setenv("SCHOOLKV_MQTT_PORT", "1884")
        monkeypatch.setenv("SCHOOLKV_CACHE_QUOTA_BYTES", "1000")

        config = load_config(path)

        assert config.context.name == "teacher-portal"
        assert config.remote.url == "http://remote:8080"
        assert config.broadcast.port == 1884
        assert config.cache.quota_bytes == 1000

    @pytest.mark.parametrize("raw,expected", [("true", True), ("1", True), ("no", False)])
    def test_broadcast_enabled(self, monkeypatch, raw, expected):
        """Test boolean parsing of SCHOOLKV_BROADCAST_ENABLED."""
        monkeypatch.setenv("SCHOOLKV_BROADCAST_ENABLED", raw)

        config = load_config(None)

        assert config.broadcast.enabled is expected
