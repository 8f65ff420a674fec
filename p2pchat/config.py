"""Configuration management for p2pchat.

This module handles loading configuration from multiple sources with the following priority:
1. CLI arguments (handled by caller)
2. Environment variables (P2PCHAT_SIGNALING_SERVERS, P2PCHAT_ICE_SERVERS)
3. TOML configuration file
4. Default values

Configuration files are loaded from:
- p2pchat.toml in current working directory
- ~/.p2pchat/config.toml

Environment selection via P2PCHAT_ENV (development, staging, production).
Defaults to production if not set.

Example file::

    [environments.development]
    signaling_servers = ["ws://localhost:8765"]
    ice_servers = ["stun:stun.l.google.com:19302"]
    connect_timeout = 5.0
    connect_attempts = 2

    [transfer]
    chunk_size = 256000
    max_file_size = 10485760
"""

import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from loguru import logger

DEFAULT_SIGNALING_SERVERS = ["ws://localhost:8765"]
DEFAULT_ICE_SERVERS = [
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
    "stun:stun2.l.google.com:19302",
]

# Valid environment names
VALID_ENVIRONMENTS = {"development", "staging", "production"}


@dataclass
class TransferConfig:
    """Settings for chunked file transfer.

    Attributes:
        chunk_size: Characters of base64 text per file-chunk envelope.
        buffer_threshold: Sender pauses while the channel buffer exceeds this.
        max_file_size: Largest file (in bytes) a session will send.
        assembly_timeout: Seconds before an incomplete incoming file is dropped.
    """

    chunk_size: int = 256_000
    buffer_threshold: int = 65_536
    max_file_size: int = 10 * 1024 * 1024
    assembly_timeout: float = 300.0

    @classmethod
    def from_dict(cls, data: dict) -> "TransferConfig":
        """Create TransferConfig from the TOML [transfer] table.

        Unknown keys and non-positive values are ignored with a warning.
        """
        config = cls()
        for key in ("chunk_size", "buffer_threshold", "max_file_size"):
            if key in data:
                value = data[key]
                if isinstance(value, int) and value > 0:
                    setattr(config, key, value)
                else:
                    logger.warning(f"Ignoring invalid transfer.{key}: {value!r}")
        if "assembly_timeout" in data:
            value = data["assembly_timeout"]
            if isinstance(value, (int, float)) and value > 0:
                config.assembly_timeout = float(value)
            else:
                logger.warning(f"Ignoring invalid transfer.assembly_timeout: {value!r}")
        return config


def _split_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Config:
    """Configuration manager for p2pchat."""

    def __init__(self):
        """Initialize configuration with defaults."""
        self.signaling_servers: List[str] = list(DEFAULT_SIGNALING_SERVERS)
        self.ice_servers: List[str] = list(DEFAULT_ICE_SERVERS)
        self.connect_timeout: float = 10.0
        self.connect_attempts: int = 2
        self.seen_message_ttl: float = 60.0
        self.reconnect_delay: float = 5.0
        self.transfer: TransferConfig = TransferConfig()
        self.environment: str = "production"
        self._config_data: dict = {}

    def load(self) -> None:
        """Load configuration from all sources.

        Priority order:
        1. Environment variables (P2PCHAT_SIGNALING_SERVERS, P2PCHAT_ICE_SERVERS)
        2. TOML configuration file
        3. Default values
        """
        self.environment = self._get_environment()

        config_file = self._find_config_file()
        if config_file:
            self._load_config_file(config_file)

        self._apply_env_overrides()

    def _get_environment(self) -> str:
        """Get the current environment from P2PCHAT_ENV.

        Returns:
            Environment name (development, staging, or production).
            Defaults to production if not set or invalid.
        """
        env = os.getenv("P2PCHAT_ENV", "production").lower()
        if env not in VALID_ENVIRONMENTS:
            logger.warning(
                f"Invalid P2PCHAT_ENV value '{env}'. "
                f"Valid values are: {', '.join(sorted(VALID_ENVIRONMENTS))}. "
                f"Defaulting to 'production'."
            )
            env = "production"
        return env

    def _find_config_file(self) -> Optional[Path]:
        """Find the configuration file.

        Searches in order:
        1. p2pchat.toml in current working directory
        2. ~/.p2pchat/config.toml

        Returns:
            Path to config file if found, None otherwise.
        """
        cwd_config = Path.cwd() / "p2pchat.toml"
        if cwd_config.exists():
            logger.info(f"Loading config from {cwd_config}")
            return cwd_config

        home_config = Path.home() / ".p2pchat" / "config.toml"
        if home_config.exists():
            logger.info(f"Loading config from {home_config}")
            return home_config

        logger.debug("No config file found, using defaults")
        return None

    def _load_config_file(self, config_file: Path) -> None:
        """Load configuration from TOML file.

        Args:
            config_file: Path to the TOML configuration file.
        """
        try:
            with open(config_file, "rb") as f:
                self._config_data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            logger.warning(
                f"Failed to load config file {config_file}: {e}. Using defaults."
            )
            return

        self.transfer = TransferConfig.from_dict(self._config_data.get("transfer", {}))

        environments = self._config_data.get("environments", {})
        env_config = environments.get(self.environment, {})
        if not env_config:
            logger.debug(
                f"No configuration found for environment '{self.environment}' "
                f"in {config_file}, using defaults"
            )
            return

        if "signaling_servers" in env_config:
            self.signaling_servers = list(env_config["signaling_servers"])
            logger.debug(
                f"Loaded signaling_servers from config: {self.signaling_servers}"
            )

        if "ice_servers" in env_config:
            self.ice_servers = list(env_config["ice_servers"])
            logger.debug(f"Loaded ice_servers from config: {self.ice_servers}")

        for key in ("connect_timeout", "seen_message_ttl", "reconnect_delay"):
            if key in env_config:
                setattr(self, key, float(env_config[key]))

        if "connect_attempts" in env_config:
            self.connect_attempts = max(1, int(env_config["connect_attempts"]))

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides.

        Environment variables take precedence over config file settings
        but are overridden by CLI arguments (handled by caller).
        """
        servers_override = os.getenv("P2PCHAT_SIGNALING_SERVERS")
        if servers_override:
            self.signaling_servers = _split_list(servers_override)
            logger.info(
                f"Overriding signaling_servers from env: {self.signaling_servers}"
            )

        ice_override = os.getenv("P2PCHAT_ICE_SERVERS")
        if ice_override:
            self.ice_servers = _split_list(ice_override)
            logger.info(f"Overriding ice_servers from env: {self.ice_servers}")


# Global configuration instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance.

    Loads configuration on first call.

    Returns:
        Global Config instance.
    """
    global _config
    if _config is None:
        _config = Config()
        _config.load()
    return _config


def reload_config() -> Config:
    """Reload configuration from sources.

    Useful for testing or runtime reconfiguration.

    Returns:
        Reloaded Config instance.
    """
    global _config
    _config = Config()
    _config.load()
    return _config
