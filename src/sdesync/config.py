"""
Configuration for sdesync.

Settings are read from a JSON file (``--config``, ``$SDESYNC_CONFIG`` or
``~/.sdesync/config.json``) and can be overridden through environment
variables. A missing file yields defaults without any projects.

Example::

    {
      "settings": {
        "mapping_service_url": "http://mapping:8080",
        "request_timeout": 600,
        "shared_folder": "/var/shared"
      },
      "projects": {
        "ar24": {
          "data_folder": "/var/data/ar24",
          "languages": ["en", "nl"],
          "default_language": "en"
        }
      }
    }
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from sdesync.errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".sdesync"
DEFAULT_CONFIG_FILE = CONFIG_DIR / "config.json"

# The original bulk call allowed half an hour for very large projects
DEFAULT_REQUEST_TIMEOUT = 1800.0
DEFAULT_LOCK_TIMEOUT = 5.0


@dataclass
class SyncSettings:
    """Service-wide settings."""
    mapping_service_url: str = ""
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    always_refresh: bool = False       # ask the mapping service to bypass its ERP cache
    auto_create_cache: bool = False    # build a cache on render when none exists
    error_marker: Optional[str] = None  # rendered instead of retained values for 500-* facts
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT
    shared_folder: str = str(CONFIG_DIR / "shared")
    system_user: str = ""

    def to_dict(self) -> dict:
        return {
            "mapping_service_url": self.mapping_service_url,
            "request_timeout": self.request_timeout,
            "always_refresh": self.always_refresh,
            "auto_create_cache": self.auto_create_cache,
            "error_marker": self.error_marker,
            "lock_timeout": self.lock_timeout,
            "shared_folder": self.shared_folder,
            "system_user": self.system_user,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SyncSettings":
        return cls(
            mapping_service_url=data.get("mapping_service_url", ""),
            request_timeout=float(data.get("request_timeout", DEFAULT_REQUEST_TIMEOUT)),
            always_refresh=bool(data.get("always_refresh", False)),
            auto_create_cache=bool(data.get("auto_create_cache", False)),
            error_marker=data.get("error_marker"),
            lock_timeout=float(data.get("lock_timeout", DEFAULT_LOCK_TIMEOUT)),
            shared_folder=data.get("shared_folder", str(CONFIG_DIR / "shared")),
            system_user=data.get("system_user", ""),
        )


@dataclass
class ProjectConfig:
    """Per-project settings."""
    project_id: str
    data_folder: str
    languages: list[str] = field(default_factory=lambda: ["en"])
    default_language: str = ""
    disable_sync: bool = False  # skip injecting cached values on render

    def __post_init__(self):
        if not self.languages:
            raise ConfigError(f"Project '{self.project_id}' defines no languages")
        if not self.default_language:
            self.default_language = self.languages[0]

    @property
    def data_path(self) -> Path:
        return Path(self.data_folder)

    def to_dict(self) -> dict:
        return {
            "data_folder": self.data_folder,
            "languages": list(self.languages),
            "default_language": self.default_language,
            "disable_sync": self.disable_sync,
        }

    @classmethod
    def from_dict(cls, project_id: str, data: dict) -> "ProjectConfig":
        if "data_folder" not in data:
            raise ConfigError(f"Project '{project_id}' has no data_folder")
        return cls(
            project_id=project_id,
            data_folder=data["data_folder"],
            languages=list(data.get("languages", ["en"])),
            default_language=data.get("default_language", ""),
            disable_sync=bool(data.get("disable_sync", False)),
        )


@dataclass
class SdeConfig:
    """Complete configuration: service settings plus known projects."""
    settings: SyncSettings = field(default_factory=SyncSettings)
    projects: dict[str, ProjectConfig] = field(default_factory=dict)

    def get_project(self, project_id: str) -> ProjectConfig:
        try:
            return self.projects[project_id]
        except KeyError:
            raise ConfigError(f"Unknown project: {project_id}") from None

    def add_project(self, project: ProjectConfig) -> None:
        self.projects[project.project_id] = project

    def to_dict(self) -> dict:
        return {
            "settings": self.settings.to_dict(),
            "projects": {pid: p.to_dict() for pid, p in self.projects.items()},
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SdeConfig":
        return cls(
            settings=SyncSettings.from_dict(data.get("settings", {})),
            projects={
                pid: ProjectConfig.from_dict(pid, pdata)
                for pid, pdata in data.get("projects", {}).items()
            },
        )


def _resolve_config_path(path: Optional[str] = None) -> Path:
    if path:
        return Path(path).expanduser()
    env_path = os.getenv("SDESYNC_CONFIG")
    if env_path:
        return Path(env_path).expanduser()
    return DEFAULT_CONFIG_FILE


def _apply_env_overrides(settings: SyncSettings) -> None:
    url = os.getenv("SDESYNC_MAPPING_URL")
    if url:
        settings.mapping_service_url = url

    timeout = os.getenv("SDESYNC_TIMEOUT")
    if timeout:
        try:
            settings.request_timeout = float(timeout)
        except ValueError:
            raise ConfigError(f"SDESYNC_TIMEOUT is not a number: {timeout!r}") from None

    refresh = os.getenv("SDESYNC_ALWAYS_REFRESH")
    if refresh:
        settings.always_refresh = refresh.lower() in ("1", "true", "yes")


def load_config(path: Optional[str] = None) -> SdeConfig:
    """Load configuration from disk and apply environment overrides.

    Args:
        path: Explicit config file. Falls back to $SDESYNC_CONFIG, then
            ~/.sdesync/config.json.

    Returns:
        The loaded SdeConfig (defaults when no file exists).

    Raises:
        ConfigError: The file exists but cannot be parsed.
    """
    config_path = _resolve_config_path(path)
    config = SdeConfig()

    if config_path.exists():
        try:
            data = json.loads(config_path.read_text())
        except (json.JSONDecodeError, OSError) as e:
            raise ConfigError(f"Failed to read config {config_path}: {e}") from e
        config = SdeConfig.from_dict(data)
        logger.debug(f"Loaded config from {config_path} ({len(config.projects)} projects)")
    else:
        logger.debug(f"No config file at {config_path}, using defaults")

    _apply_env_overrides(config.settings)
    return config
