"""
ACD Configuration

This module manages daemon and CLI configuration via environment variables and the
config directory's config.toml.

Configuration is loaded from (in order of precedence):
1. Explicit keyword arguments (tests, CLI flags)
2. Environment variables (prefixed with ACD_)
3. <config_dir>/config.toml

Key settings:
- ACD_CONFIG_DIR: Config directory (default: ~/.config/acd, %APPDATA%/acd on Windows)
- ACD_PORT: Port the daemon listens on (default: 3000)
- ACD_ACCESS_TOKEN: Token required on /api/* routes (generated on first start if unset)
- ACD_GIT_CONCURRENCY: Max parallel git subprocesses per daemon (default: 10)

Config directory layout:
    <config_dir>/
    ├── config.toml     # Persisted port / access token
    ├── daemon.pid      # Daemon PID record (JSON)
    └── daemon.log      # Detached daemon stdout/stderr
"""

import logging
import os
import secrets
import sys
import tomllib
from pathlib import Path
from typing import Any, Dict, Optional

import tomli_w
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

CONFIG_DIR_ENV = "ACD_CONFIG_DIR"
PID_FILENAME = "daemon.pid"
LOG_FILENAME = "daemon.log"
CONFIG_FILENAME = "config.toml"

# Keys from config.toml that map onto Settings fields
_PERSISTED_KEYS = ("port", "access_token", "host", "git_concurrency")


def default_config_dir() -> Path:
    """
    Resolve the default config directory.

    ACD_CONFIG_DIR wins when set; otherwise the platform default is used.
    """
    env_dir = os.environ.get(CONFIG_DIR_ENV)
    if env_dir:
        return Path(env_dir).expanduser()

    home = Path.home()
    if sys.platform == "win32":
        appdata = os.environ.get("APPDATA")
        base = Path(appdata) if appdata else home / "AppData" / "Roaming"
        return base / "acd"
    return home / ".config" / "acd"


def is_custom_config_dir() -> bool:
    """Check if a custom config dir was provided via ACD_CONFIG_DIR."""
    return bool(os.environ.get(CONFIG_DIR_ENV))


def read_config_file(config_file: Path) -> Dict[str, Any]:
    """
    Read config.toml, returning an empty dict if missing or unparseable.

    Args:
        config_file: Path to config.toml

    Returns:
        Parsed TOML table
    """
    if not config_file.exists():
        return {}
    try:
        with open(config_file, "rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        logger.warning(f"Ignoring unreadable config file {config_file}: {e}")
        return {}


def write_config_file(config_file: Path, data: Dict[str, Any]) -> None:
    """Write config.toml, creating the config directory if needed."""
    config_file.parent.mkdir(parents=True, exist_ok=True)
    with open(config_file, "wb") as f:
        tomli_w.dump(data, f)


class Settings(BaseSettings):
    """
    ACD configuration settings.

    Values come from keyword arguments, ACD_* environment variables and the
    config directory's config.toml, in that order.
    """

    config_dir: Path = Field(default_factory=default_config_dir)

    # Daemon listener
    host: str = "127.0.0.1"
    port: int = 3000
    access_token: Optional[str] = None

    # Concurrency gate default limit for the "git" resource class
    git_concurrency: int = 10

    # Supervisor timings (seconds)
    ready_timeout: float = 15.0
    poll_interval: float = 0.2
    stop_timeout: float = 5.0

    # Daemon runtime timings (seconds)
    shutdown_timeout: float = 10.0
    session_stop_grace: float = 3.0

    # Pseudo-terminal defaults for new sessions
    terminal_cols: int = 80
    terminal_rows: int = 24
    output_history_lines: int = 500

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="ACD_",
        extra="ignore",
    )

    def __init__(self, **kwargs: Any):
        """
        Initialize settings, layering config.toml under env vars and kwargs.

        Args:
            **kwargs: Explicit settings overrides
        """
        config_dir = kwargs.get("config_dir") or default_config_dir()
        persisted = read_config_file(Path(config_dir) / CONFIG_FILENAME)
        for key in _PERSISTED_KEYS:
            if key in persisted and key not in kwargs and f"ACD_{key.upper()}" not in os.environ:
                kwargs[key] = persisted[key]

        super().__init__(**kwargs)

    @property
    def pid_file(self) -> Path:
        return self.config_dir / PID_FILENAME

    @property
    def log_file(self) -> Path:
        return self.config_dir / LOG_FILENAME

    @property
    def config_file(self) -> Path:
        return self.config_dir / CONFIG_FILENAME

    @property
    def base_url(self) -> str:
        """Local URL of the daemon (always loopback, even if bound to 0.0.0.0)."""
        return f"http://127.0.0.1:{self.port}"

    @property
    def web_url(self) -> str:
        """Browser URL; the access token is carried as the first path segment."""
        if self.access_token:
            return f"{self.base_url}/{self.access_token}"
        return self.base_url

    def ensure_access_token(self) -> str:
        """
        Return the access token, generating and persisting one if needed.

        Returns:
            The access token now stored in config.toml
        """
        if self.access_token:
            return self.access_token

        data = read_config_file(self.config_file)
        token = data.get("access_token")
        if not token:
            token = secrets.token_urlsafe(24)
            data["access_token"] = token
            write_config_file(self.config_file, data)
            logger.info(f"Generated new access token in {self.config_file}")

        self.access_token = token
        return token


# Global settings instance - will be created lazily
_settings: Optional[Settings] = None


def get_settings(force_reload: bool = False, **overrides: Any) -> Settings:
    """
    Get the global Settings instance.

    Args:
        force_reload: Force reload settings
        **overrides: Explicit overrides (forces a rebuild when given)

    Returns:
        Settings instance
    """
    global _settings

    if _settings is None or force_reload or overrides:
        _settings = Settings(**overrides)

    return _settings


def reload_settings() -> Settings:
    """Rebuild settings from the environment and config.toml."""
    return get_settings(force_reload=True)
