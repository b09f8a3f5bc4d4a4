"""Tests for configuration management."""

from pathlib import Path

import pytest
import yaml
from unittest.mock import patch

from binance_stream.config.settings import (
    BinanceConfig,
    StreamConfig,
    StreamSettings,
    load_settings,
    substitute_env_vars,
)


class TestStreamSettings:
    """Test StreamSettings validation and loading."""

    def test_default_settings(self):
        """Test default settings creation."""
        settings = StreamSettings()

        assert settings.service_name == "binance-stream"
        assert settings.environment == "development"
        assert isinstance(settings.binance, BinanceConfig)
        assert settings.binance.ws_base_url == "wss://stream.binance.com:9443/ws"
        assert settings.stream.max_reconnect_attempts == 10
        assert settings.stream.base_backoff_seconds == 5.0
        assert settings.stream.max_backoff_seconds == 60.0

    def test_environment_validation(self):
        """Test environment validation."""
        for env in ['development', 'production', 'test']:
            settings = StreamSettings(environment=env)
            assert settings.environment == env

        with pytest.raises(ValueError, match="Environment must be"):
            StreamSettings(environment="staging")

    def test_nested_config(self):
        """Test nested configuration validation."""
        settings = StreamSettings(
            stream={'streams': ['BTCUSDT@trade', ' ethusdt@depth5 ', ''], 'max_reconnect_attempts': 3},
            logging={'level': 'debug'},
        )

        assert settings.stream.streams == ['btcusdt@trade', 'ethusdt@depth5']
        assert settings.stream.max_reconnect_attempts == 3
        assert settings.logging.level == 'DEBUG'

    def test_invalid_log_level(self):
        with pytest.raises(ValueError, match="Level must be"):
            StreamSettings(logging={'level': 'VERBOSE'})

    def test_env_override(self):
        """Test environment variables override defaults."""
        env = {
            'STREAM__MAX_RECONNECT_ATTEMPTS': '4',
            'BINANCE__WS_BASE_URL': 'wss://testnet.binance.vision/ws',
        }
        with patch.dict('os.environ', env):
            settings = StreamSettings()

        assert settings.stream.max_reconnect_attempts == 4
        assert settings.binance.ws_base_url == 'wss://testnet.binance.vision/ws'


class TestStreamConfig:

    def test_derived_timings(self):
        config = StreamConfig(heartbeat_window_seconds=30, liveness_grace_seconds=5)

        assert config.heartbeat_interval == 15.0
        assert config.liveness_timeout == 35.0

    def test_backoff_bounds(self):
        with pytest.raises(ValueError, match="max_backoff_seconds"):
            StreamConfig(base_backoff_seconds=10, max_backoff_seconds=5)

    def test_negative_attempts_rejected(self):
        with pytest.raises(ValueError):
            StreamConfig(max_reconnect_attempts=-1)


class TestEnvSubstitution:
    """Test ${VAR} substitution in config files."""

    def test_required_and_default(self):
        with patch.dict('os.environ', {'API_KEY': 'abc'}, clear=False):
            result = substitute_env_vars({
                'key': '${API_KEY}',
                'url': '${WS_URL_UNSET_FOR_TEST:-wss://example.test/ws}',
                'items': ['${API_KEY}', 3],
            })

        assert result == {'key': 'abc', 'url': 'wss://example.test/ws', 'items': ['abc', 3]}

    def test_missing_required_variable(self):
        with patch.dict('os.environ', {}, clear=True):
            with pytest.raises(ValueError, match="MISSING_VAR"):
                substitute_env_vars('${MISSING_VAR}')


class TestLoadSettings:
    """Test loading settings from YAML files."""

    def test_load_from_yaml(self, tmp_path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text(yaml.safe_dump({
            'service_name': 'yaml-stream',
            'environment': 'test',
            'stream': {'streams': ['btcusdt@trade'], 'heartbeat_window_seconds': 20},
        }))

        settings = load_settings(str(config_file))

        assert settings.service_name == 'yaml-stream'
        assert settings.stream.streams == ['btcusdt@trade']
        assert settings.stream.liveness_timeout == 25.0

    def test_empty_yaml_uses_defaults(self, tmp_path):
        config_file = tmp_path / "empty.yaml"
        config_file.write_text("")

        settings = load_settings(str(config_file))

        assert settings.service_name == "binance-stream"

    def test_missing_file(self):
        with pytest.raises(FileNotFoundError):
            load_settings("/nonexistent/config.yaml")

    def test_no_file_returns_defaults(self):
        assert isinstance(load_settings(None), StreamSettings)

    def test_bundled_local_config(self):
        """The example config ships with working defaults for every variable."""
        config_file = Path(__file__).resolve().parents[2] / "config" / "local.yaml"
        with patch.dict('os.environ', {}, clear=True):
            settings = load_settings(str(config_file))

        assert settings.environment == "development"
        assert settings.health.port == 3000
        assert "btcusdt@trade" in settings.stream.streams
