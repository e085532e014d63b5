"""Configuration management for duo-call.

This module handles loading configuration from multiple sources with the following priority:
1. CLI arguments (handled by caller)
2. Environment variables (DUO_CALL_SIGNALING_WS, DUO_CALL_ID, DUO_CALL_STATS_INTERVAL)
3. TOML configuration file
4. Default values

Configuration files are loaded from:
- duo-call.toml in current working directory
- ~/.duo-call/config.toml

Environment selection via DUO_CALL_ENV (development, staging, production).
Defaults to production if not set.

Example file::

    [environments.production]
    signaling_websocket = "wss://relay.example.com/ws/signaling"

    [[environments.production.ice_servers]]
    urls = "turn:turn.example.com:3478"
    username = "user"
    credential = "secret"

    [call]
    call_id = "call1"
    stats_interval = 2.0

    [call.capture]
    camera = ["/dev/video1", "v4l2"]
    video_size = "1280x720"
"""

import os
import tomllib
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger

from duo_call.exceptions import ConfigError


DEFAULT_SIGNALING_WEBSOCKET = "ws://localhost:8443/ws/signaling"
DEFAULT_CALL_ID = "call1"
DEFAULT_STATS_INTERVAL = 2.0
DEFAULT_ICE_SERVERS = [{"urls": "stun:stun.l.google.com:19302"}]

# Valid environment names
VALID_ENVIRONMENTS = {"development", "staging", "production"}

CAPTURE_SOURCES = ("camera", "microphone", "screen")


def _parse_interval(value: Any) -> float:
    try:
        interval = float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"stats_interval must be a number, got {value!r}")
    if interval <= 0:
        raise ConfigError(f"stats_interval must be positive, got {interval}")
    return interval


def _table(data: Dict[str, Any], key: str, name: str) -> Dict[str, Any]:
    """Return the TOML table at ``key``, or an empty one if it is not a table."""
    value = data.get(key, {})
    if not isinstance(value, dict):
        logger.warning(f"Ignoring {name}: expected a table, got {type(value).__name__}")
        return {}
    return value


class Config:
    """Configuration manager for duo-call."""

    def __init__(self):
        """Initialize configuration with defaults."""
        self.signaling_websocket: str = DEFAULT_SIGNALING_WEBSOCKET
        self.ice_servers: List[Dict[str, Any]] = [dict(s) for s in DEFAULT_ICE_SERVERS]
        self.call_id: str = DEFAULT_CALL_ID
        self.stats_interval: float = DEFAULT_STATS_INTERVAL
        self.capture_devices: Dict[str, Tuple[str, str]] = {}
        self.video_options: Dict[str, str] = {}
        self.environment: str = "production"
        self._config_data: dict = {}

    def load(self) -> None:
        """Load configuration from all sources.

        Priority order:
        1. Environment variables
        2. TOML configuration file
        3. Default values
        """
        self.environment = self._get_environment()

        config_file = self._find_config_file()
        if config_file:
            self._load_config_file(config_file)

        self._apply_env_overrides()

    def _get_environment(self) -> str:
        """Get the current environment from DUO_CALL_ENV.

        Returns:
            Environment name (development, staging, or production).
            Defaults to production if not set or invalid.
        """
        env = os.getenv("DUO_CALL_ENV", "production").lower()
        if env not in VALID_ENVIRONMENTS:
            logger.warning(
                f"Invalid DUO_CALL_ENV value '{env}'. "
                f"Valid values are: {', '.join(sorted(VALID_ENVIRONMENTS))}. "
                f"Defaulting to 'production'."
            )
            env = "production"
        return env

    def _find_config_file(self) -> Optional[Path]:
        """Find the configuration file.

        Searches in order:
        1. duo-call.toml in current working directory
        2. ~/.duo-call/config.toml

        Returns:
            Path to config file if found, None otherwise.
        """
        cwd_config = Path.cwd() / "duo-call.toml"
        if cwd_config.exists():
            logger.info(f"Loading config from {cwd_config}")
            return cwd_config

        home_config = Path.home() / ".duo-call" / "config.toml"
        if home_config.exists():
            logger.info(f"Loading config from {home_config}")
            return home_config

        logger.debug("No config file found, using defaults")
        return None

    def _load_config_file(self, config_file: Path) -> None:
        """Load configuration from TOML file.

        Invalid files or values are logged and the defaults kept.

        Args:
            config_file: Path to the TOML configuration file.
        """
        try:
            with open(config_file, "rb") as f:
                self._config_data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            logger.warning(f"Failed to load config file {config_file}: {e}. Using defaults.")
            return

        environments = _table(self._config_data, "environments", "[environments]")
        env_config = _table(
            environments, self.environment, f"[environments.{self.environment}]"
        )
        if not env_config:
            logger.debug(
                f"No configuration found for environment '{self.environment}' "
                f"in {config_file}, using defaults"
            )

        if "signaling_websocket" in env_config:
            self.signaling_websocket = env_config["signaling_websocket"]
            logger.debug(f"Loaded signaling_websocket from config: {self.signaling_websocket}")

        if "ice_servers" in env_config:
            servers = env_config["ice_servers"]
            if isinstance(servers, list) and all(
                isinstance(s, dict) and "urls" in s for s in servers
            ):
                self.ice_servers = servers
                logger.debug(f"Loaded {len(servers)} ICE servers from config")
            else:
                logger.warning("Ignoring ice_servers: each entry needs 'urls'")

        call = _table(self._config_data, "call", "[call]")
        if "call_id" in call:
            self.call_id = str(call["call_id"])
        if "stats_interval" in call:
            try:
                self.stats_interval = _parse_interval(call["stats_interval"])
            except ConfigError as e:
                logger.warning(f"{e}. Using {self.stats_interval}s.")

        capture = _table(call, "capture", "[call.capture]")
        for source in CAPTURE_SOURCES:
            value = capture.get(source)
            if value is None:
                continue
            if isinstance(value, list) and len(value) == 2:
                self.capture_devices[source] = (str(value[0]), str(value[1]))
            else:
                logger.warning(f"Ignoring [call.capture] {source}: expected [file, format]")
        for option in ("video_size", "framerate"):
            if option in capture:
                self.video_options[option] = str(capture[option])

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides.

        Environment variables take precedence over config file settings
        but are overridden by CLI arguments (handled by caller).

        Raises:
            ConfigError: If an override has an invalid value.
        """
        ws_override = os.getenv("DUO_CALL_SIGNALING_WS")
        if ws_override:
            self.signaling_websocket = ws_override
            logger.info(f"Overriding signaling_websocket from env: {self.signaling_websocket}")

        call_id_override = os.getenv("DUO_CALL_ID")
        if call_id_override:
            self.call_id = call_id_override
            logger.info(f"Overriding call_id from env: {self.call_id}")

        interval_override = os.getenv("DUO_CALL_STATS_INTERVAL")
        if interval_override:
            self.stats_interval = _parse_interval(interval_override)
            logger.info(f"Overriding stats_interval from env: {self.stats_interval}")

    def as_dict(self) -> Dict[str, Any]:
        """Effective settings, for display."""
        return {
            "environment": self.environment,
            "signaling_websocket": self.signaling_websocket,
            "ice_servers": [s.get("urls") for s in self.ice_servers],
            "call_id": self.call_id,
            "stats_interval": self.stats_interval,
            "capture_devices": dict(self.capture_devices),
            "video_options": dict(self.video_options),
        }


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
