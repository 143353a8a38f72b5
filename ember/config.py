"""
Configuration management for ember.
"""
import json
import os
from pathlib import Path
from dataclasses import dataclass, asdict, field
from typing import Optional, Dict, Any, List

from logging_config import get_logger, ConfigurationError

logger = get_logger('config')

DEFAULT_PLAYER_PATHS = [
    "~/Applications/mpv.app/Contents/MacOS/mpv",
    "/Applications/mpv.app/Contents/MacOS/mpv",
]

DEFAULT_SUBTITLE_LANGUAGES = ["chi", "zho", "zh", "chs", "cht", "cn", "chinese"]


@dataclass
class AppConfig:
    """Application configuration settings."""

    # Catalog requests
    page_size: int = 20
    resume_limit: int = 20
    favorites_limit: int = 20
    search_limit: int = 50
    http_timeout: float = 15.0
    image_timeout: float = 10.0
    image_max_width: int = 800

    # Background work
    ping_interval: float = 10.0
    workers: int = 8

    # UI settings
    sidebar_width: int = 24
    cover_window: int = 2

    # Player settings
    player_paths: List[str] = field(default_factory=lambda: list(DEFAULT_PLAYER_PATHS))
    subtitle_languages: List[str] = field(default_factory=lambda: list(DEFAULT_SUBTITLE_LANGUAGES))
    player_args: List[str] = field(default_factory=list)

    # Logging settings
    log_level: str = "INFO"
    log_file: Optional[str] = None
    debug_logging: bool = False


def get_config_dir() -> Path:
    """Directory holding config.json, servers.json and cached data."""
    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config:
        return Path(xdg_config) / "ember"
    return Path.home() / ".config" / "ember"


class ConfigManager:
    """Manages configuration loading, saving, and validation."""

    def __init__(self, config_path: Optional[Path] = None):
        self.config_path = config_path or get_config_dir() / "config.json"
        self.config: AppConfig = AppConfig()
        self._load_config()

    @property
    def config_dir(self) -> Path:
        return self.config_path.parent

    def _load_config(self) -> None:
        """Load configuration from file."""
        if not self.config_path.exists():
            logger.info(f"Config file not found at {self.config_path}, using defaults")
            self._create_default_config()
            return

        try:
            with open(self.config_path, 'r') as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ConfigurationError("top level must be an object")
            self._apply_config_data(data)
            logger.info(f"Loaded configuration from {self.config_path}")
        except (json.JSONDecodeError, IOError, ConfigurationError) as e:
            logger.error(f"Failed to load config: {e}")
            logger.info("Using default configuration")

    def _create_default_config(self) -> None:
        """Create a default configuration file."""
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_path, 'w') as f:
                json.dump(asdict(self.config), f, indent=2)
            logger.info(f"Created default config at {self.config_path}")
        except IOError as e:
            logger.warning(f"Failed to create default config: {e}")

    def _apply_config_data(self, data: Dict[str, Any]) -> None:
        """Apply configuration data to AppConfig object."""
        defaults = AppConfig()
        for key, value in data.items():
            if not hasattr(self.config, key):
                logger.warning(f"Unknown config key ignored: {key}")
                continue
            default = getattr(defaults, key)
            if default is not None and not _compatible(default, value):
                logger.warning(f"Invalid config value for {key}: {value!r}")
                continue
            setattr(self.config, key, value)

    def save_config(self) -> bool:
        """Save current configuration to file."""
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_path, 'w') as f:
                json.dump(asdict(self.config), f, indent=2)
            logger.info(f"Configuration saved to {self.config_path}")
            return True
        except IOError as e:
            logger.error(f"Failed to save configuration: {e}")
            return False

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value."""
        return getattr(self.config, key, default)

    def set(self, key: str, value: Any) -> None:
        """Set configuration value."""
        if hasattr(self.config, key):
            setattr(self.config, key, value)
            logger.debug(f"Config updated: {key} = {value}")

    def validate_config(self) -> List[str]:
        """Return a list of problems with the current configuration."""
        issues = []
        c = self.config

        if not (1 <= c.page_size <= 500):
            issues.append(f"Page size must be 1-500, got {c.page_size}")
        for name in ("resume_limit", "favorites_limit", "search_limit"):
            value = getattr(c, name)
            if not (1 <= value <= 1000):
                issues.append(f"{name} must be 1-1000, got {value}")
        if c.http_timeout <= 0 or c.image_timeout <= 0:
            issues.append("Timeouts must be positive")
        if c.ping_interval < 1:
            issues.append(f"Ping interval must be at least 1s, got {c.ping_interval}")
        if not (1 <= c.workers <= 64):
            issues.append(f"Workers must be 1-64, got {c.workers}")
        if not (12 <= c.sidebar_width <= 80):
            issues.append(f"Sidebar width must be 12-80, got {c.sidebar_width}")

        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if c.log_level.upper() not in valid_levels:
            issues.append(f"Invalid log level: {c.log_level}")

        if issues:
            logger.warning(f"Configuration validation issues: {issues}")
        return issues

    def reset_to_defaults(self) -> None:
        """Reset configuration to defaults."""
        self.config = AppConfig()
        logger.info("Configuration reset to defaults")

    def get_log_file_path(self) -> Path:
        if self.config.log_file:
            return Path(self.config.log_file).expanduser()
        return self.config_dir / "ember.log"


def _compatible(default: Any, value: Any) -> bool:
    if isinstance(default, bool):
        return isinstance(value, bool)
    if isinstance(value, bool):
        return False
    if isinstance(default, int):
        return isinstance(value, int)
    if isinstance(default, float):
        return isinstance(value, (int, float))
    return isinstance(value, type(default))


def load_config(config_path: Optional[Path] = None) -> ConfigManager:
    """Load configuration and return manager."""
    return ConfigManager(config_path)
