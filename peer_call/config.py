"""Configuration management for peer-call.

This module handles loading configuration from multiple sources with the following priority:
1. CLI arguments (handled by caller)
2. Environment variables (PEER_CALL_SIGNALING_WS, PEER_CALL_ICE_SERVERS)
3. TOML configuration file
4. Default values (production environment)

Configuration files are loaded from:
- peer-call.toml in current working directory
- ~/.peer-call/config.toml

Environment selection via PEER_CALL_ENV (development, staging, production).
Defaults to production if not set.

Example file::

    [environments.production]
    signaling_websocket = "wss://relay.example.org"

    [[environments.production.ice_servers]]
    urls = ["turn:turn.example.org:3478"]
    username = "call"
    credential = "secret"

    [media]
    video_size = "1280x720"
    framerate = 30
"""

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Union

from aiortc import RTCConfiguration, RTCIceServer
from loguru import logger


# Public STUN server used when no connectivity server is configured
DEFAULT_STUN_URL = "stun:stun.l.google.com:19302"

DEFAULT_SIGNALING_WEBSOCKET = "ws://localhost:8080"

# Valid environment names
VALID_ENVIRONMENTS = {"development", "staging", "production"}


@dataclass
class IceServerConfig:
    """Configuration for a single STUN or TURN server.

    Attributes:
        urls: One or more ``stun:`` / ``turn:`` / ``turns:`` URLs.
        username: Optional TURN username.
        credential: Optional TURN credential.
    """

    urls: Union[str, List[str]]
    username: Optional[str] = None
    credential: Optional[str] = None

    def __post_init__(self):
        """Validate ICE server configuration after initialization."""
        if isinstance(self.urls, str):
            self.urls = [self.urls]
        if not self.urls:
            raise ValueError("ICE server urls cannot be empty")
        for url in self.urls:
            if not url.startswith(("stun:", "turn:", "turns:")):
                raise ValueError(f"Unsupported ICE server url: {url}")

    @classmethod
    def from_dict(cls, data: dict) -> "IceServerConfig":
        return cls(
            urls=data.get("urls", []),
            username=data.get("username"),
            credential=data.get("credential"),
        )

    def to_rtc(self) -> RTCIceServer:
        return RTCIceServer(
            urls=self.urls, username=self.username, credential=self.credential
        )


@dataclass
class MediaConfig:
    """Local capture settings.

    Attributes:
        camera: Camera device; platform default when None.
        microphone: Microphone device; platform default when None.
        video_size: Capture resolution as ``WxH``.
        framerate: Capture frame rate.
    """

    camera: Optional[str] = None
    microphone: Optional[str] = None
    video_size: str = "640x480"
    framerate: int = 30

    def __post_init__(self):
        try:
            width, height = self.video_size.lower().split("x")
            int(width), int(height)
        except ValueError:
            raise ValueError(
                f"Invalid video_size '{self.video_size}'. Use WxH, e.g., '640x480'"
            )
        if self.framerate <= 0:
            raise ValueError("framerate must be positive")

    @classmethod
    def from_dict(cls, data: dict) -> "MediaConfig":
        defaults = cls()
        return cls(
            camera=data.get("camera"),
            microphone=data.get("microphone"),
            video_size=data.get("video_size", defaults.video_size),
            framerate=int(data.get("framerate", defaults.framerate)),
        )


class Config:
    """Configuration manager for peer-call."""

    def __init__(self):
        """Initialize configuration with defaults."""
        self.signaling_websocket: str = DEFAULT_SIGNALING_WEBSOCKET
        self.ice_servers: List[IceServerConfig] = []
        self.media: MediaConfig = MediaConfig()
        self.environment: str = "production"
        self._config_data: dict = {}

    def load(self) -> None:
        """Load configuration from all sources.

        Priority order:
        1. Environment variables (PEER_CALL_SIGNALING_WS, PEER_CALL_ICE_SERVERS)
        2. TOML configuration file
        3. Default values
        """
        self.environment = self._get_environment()

        config_file = self._find_config_file()
        if config_file:
            self._load_config_file(config_file)

        self._apply_env_overrides()

    def _get_environment(self) -> str:
        """Get the current environment from PEER_CALL_ENV.

        Returns:
            Environment name (development, staging, or production).
            Defaults to production if not set or invalid.
        """
        env = os.getenv("PEER_CALL_ENV", "production").lower()
        if env not in VALID_ENVIRONMENTS:
            logger.warning(
                f"Invalid PEER_CALL_ENV value '{env}'. "
                f"Valid values are: {', '.join(sorted(VALID_ENVIRONMENTS))}. "
                f"Defaulting to 'production'."
            )
            env = "production"
        return env

    def _find_config_file(self) -> Optional[Path]:
        """Find the configuration file.

        Searches in order:
        1. peer-call.toml in current working directory
        2. ~/.peer-call/config.toml

        Returns:
            Path to config file if found, None otherwise.
        """
        cwd_config = Path.cwd() / "peer-call.toml"
        if cwd_config.exists():
            logger.info(f"Loading config from {cwd_config}")
            return cwd_config

        home_config = Path.home() / ".peer-call" / "config.toml"
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

        if "media" in self._config_data:
            try:
                self.media = MediaConfig.from_dict(self._config_data["media"])
            except ValueError as e:
                logger.warning(f"Ignoring invalid [media] section: {e}")

        environments = self._config_data.get("environments", {})
        env_config = environments.get(self.environment, {})

        if not env_config:
            logger.debug(
                f"No configuration found for environment '{self.environment}' "
                f"in {config_file}, using defaults"
            )
            return

        if "signaling_websocket" in env_config:
            self.signaling_websocket = env_config["signaling_websocket"]
            logger.debug(
                f"Loaded signaling_websocket from config: {self.signaling_websocket}"
            )

        servers = []
        for entry in env_config.get("ice_servers", []):
            try:
                servers.append(IceServerConfig.from_dict(entry))
            except ValueError as e:
                logger.warning(f"Skipping invalid ICE server entry: {e}")
        if servers:
            self.ice_servers = servers
            logger.debug(f"Loaded {len(servers)} ICE server(s) from config")

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides.

        Environment variables take precedence over config file settings
        but are overridden by CLI arguments (handled by caller).
        """
        ws_override = os.getenv("PEER_CALL_SIGNALING_WS")
        if ws_override:
            self.signaling_websocket = ws_override
            logger.info(
                f"Overriding signaling_websocket from env: {self.signaling_websocket}"
            )

        # Comma-separated URLs, no credentials
        ice_override = os.getenv("PEER_CALL_ICE_SERVERS")
        if ice_override:
            urls = [url.strip() for url in ice_override.split(",") if url.strip()]
            try:
                self.ice_servers = [IceServerConfig(urls=url) for url in urls]
                logger.info(f"Overriding ICE servers from env: {urls}")
            except ValueError as e:
                logger.warning(f"Ignoring PEER_CALL_ICE_SERVERS: {e}")

    def get_ice_servers(self) -> List[IceServerConfig]:
        """Get the connectivity servers to use.

        Returns:
            Configured ICE servers, or a single default public STUN server
            when none are configured.
        """
        if self.ice_servers:
            return list(self.ice_servers)
        return [IceServerConfig(urls=DEFAULT_STUN_URL)]

    def get_rtc_configuration(self) -> RTCConfiguration:
        """Build the RTCConfiguration used for every peer connection."""
        return RTCConfiguration(
            iceServers=[server.to_rtc() for server in self.get_ice_servers()]
        )


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
    """Reload configuration from all sources.

    Returns:
        Freshly loaded global Config instance.
    """
    global _config
    _config = Config()
    _config.load()
    return _config
