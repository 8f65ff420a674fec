"""Tests for configuration loading."""

import pytest

from p2pchat.config import (
    DEFAULT_ICE_SERVERS,
    DEFAULT_SIGNALING_SERVERS,
    Config,
    TransferConfig,
    reload_config,
)


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Isolate config loading from the user's environment and home."""
    for var in ("P2PCHAT_ENV", "P2PCHAT_SIGNALING_SERVERS", "P2PCHAT_ICE_SERVERS"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    return tmp_path


class TestDefaults:
    def test_defaults(self, clean_env):
        config = reload_config()
        assert config.environment == "production"
        assert config.signaling_servers == DEFAULT_SIGNALING_SERVERS
        assert config.ice_servers == DEFAULT_ICE_SERVERS
        assert config.connect_timeout == 10.0
        assert config.connect_attempts == 2
        assert config.seen_message_ttl == 60.0
        assert config.transfer.chunk_size == 256_000
        assert config.transfer.buffer_threshold == 65_536
        assert config.transfer.max_file_size == 10 * 1024 * 1024
        assert config.transfer.assembly_timeout == 300.0

    def test_invalid_environment_falls_back(self, clean_env, monkeypatch):
        monkeypatch.setenv("P2PCHAT_ENV", "qa")
        assert reload_config().environment == "production"


class TestConfigFile:
    def test_environment_section(self, clean_env, monkeypatch):
        (clean_env / "p2pchat.toml").write_text(
            """
[environments.development]
signaling_servers = ["ws://a:1", "ws://b:2"]
ice_servers = ["stun:example.org:3478"]
connect_timeout = 4
connect_attempts = 3

[transfer]
chunk_size = 1000
assembly_timeout = 30
"""
        )
        monkeypatch.setenv("P2PCHAT_ENV", "development")
        config = reload_config()
        assert config.signaling_servers == ["ws://a:1", "ws://b:2"]
        assert config.ice_servers == ["stun:example.org:3478"]
        assert config.connect_timeout == 4.0
        assert config.connect_attempts == 3
        assert config.transfer.chunk_size == 1000
        assert config.transfer.assembly_timeout == 30.0

    def test_other_environment_ignored(self, clean_env):
        (clean_env / "p2pchat.toml").write_text(
            '[environments.staging]\nsignaling_servers = ["ws://staging:1"]\n'
        )
        assert reload_config().signaling_servers == DEFAULT_SIGNALING_SERVERS

    def test_broken_file_uses_defaults(self, clean_env):
        (clean_env / "p2pchat.toml").write_text("this is [ not toml")
        assert reload_config().signaling_servers == DEFAULT_SIGNALING_SERVERS

    def test_home_config(self, clean_env):
        home_dir = clean_env / "home" / ".p2pchat"
        home_dir.mkdir(parents=True)
        (home_dir / "config.toml").write_text(
            '[environments.production]\nsignaling_servers = ["ws://home:1"]\n'
        )
        assert reload_config().signaling_servers == ["ws://home:1"]


class TestEnvOverrides:
    def test_env_beats_file(self, clean_env, monkeypatch):
        (clean_env / "p2pchat.toml").write_text(
            '[environments.production]\nsignaling_servers = ["ws://file:1"]\n'
        )
        monkeypatch.setenv("P2PCHAT_SIGNALING_SERVERS", "ws://env:1, ws://env:2")
        monkeypatch.setenv("P2PCHAT_ICE_SERVERS", "stun:a:1")
        config = reload_config()
        assert config.signaling_servers == ["ws://env:1", "ws://env:2"]
        assert config.ice_servers == ["stun:a:1"]


class TestTransferConfig:
    def test_invalid_values_ignored(self):
        transfer = TransferConfig.from_dict(
            {"chunk_size": -1, "buffer_threshold": "big", "max_file_size": 2048}
        )
        assert transfer.chunk_size == 256_000
        assert transfer.buffer_threshold == 65_536
        assert transfer.max_file_size == 2048

    def test_plain_config_does_not_touch_disk(self):
        config = Config()
        assert config.signaling_servers == DEFAULT_SIGNALING_SERVERS
