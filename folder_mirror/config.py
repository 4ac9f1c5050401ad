"""Configuration management for folder_mirror"""

import json
import os
import tomllib
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

# Base directory for the project
BASE_DIR = Path(__file__).resolve().parent.parent

# Load environment variables from a .env file in the working directory
ENV_FILE = Path(".env")
load_dotenv(ENV_FILE)

# Settings file paths
DEFAULT_SETTINGS_FILE = Path("folder_mirror.json")
PYPROJECT_FILE = BASE_DIR / "pyproject.toml"

# Environment variables override the settings file, e.g. FOLDER_MIRROR_TARGET_BUCKET
ENV_PREFIX = "FOLDER_MIRROR_"

ONE_HOUR = 60 * 60

DEFAULTS: dict[str, Any] = {
    "aws_profile": "",
    "aws_region": "us-west-2",
    "endpoint_url": "",
    "source_folder": "",
    "target_bucket": "",
    "target_folder": "",
    "upload_threads": 4,
    "in_memory": False,
    "upload_log": "",
    "skip_uploaded_log": "",
    "folder_ready_marker_file": "",
    "hot_file_extensions": [".xml"],
    "hot_file_quarantine_seconds": ONE_HOUR,
    "scan_interval_seconds": ONE_HOUR,
    "failure_backoff_seconds": 2 * ONE_HOUR,
    "log_directory": "logs",
}

_INT_KEYS = (
    "upload_threads",
    "hot_file_quarantine_seconds",
    "scan_interval_seconds",
    "failure_backoff_seconds",
)
_BOOL_KEYS = ("in_memory",)
_LIST_KEYS = ("hot_file_extensions",)


class ConfigError(ValueError):
    """Raised when the configuration cannot be used to start syncing."""


def get_package_version() -> str:
    """Get the package version from pyproject.toml."""
    try:
        with open(PYPROJECT_FILE, "rb") as f:
            pyproject = tomllib.load(f)
        return str(pyproject.get("project", {}).get("version", "0.0.0"))
    except Exception:
        return "0.0.0"


def _coerce(key: str, value: Any) -> Any:
    """Convert a raw (usually string) value to the type the setting expects."""
    if key in _INT_KEYS:
        try:
            return int(value)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Setting '{key}' must be an integer, got {value!r}") from e
    if key in _BOOL_KEYS:
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)
    if key in _LIST_KEYS and isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


class Settings:
    """Sync process settings merged from defaults, a JSON file and the environment."""

    _settings: dict[str, Any]

    def __init__(self, settings_file: str | Path | None = None) -> None:
        self.settings_file = Path(settings_file) if settings_file else DEFAULT_SETTINGS_FILE
        self._load_settings()

    def _load_settings(self) -> None:
        """Load settings from file, with environment variables taking precedence.

        Priority order (highest to lowest):
        1. Environment variables (from .env file or system)
        2. The JSON settings file
        3. Hardcoded defaults

        CLI overrides are applied afterwards through override().
        """
        settings = dict(DEFAULTS)

        if self.settings_file.exists():
            try:
                with open(self.settings_file, encoding="utf-8") as f:
                    settings.update(json.load(f))
            except (OSError, json.JSONDecodeError) as e:
                raise ConfigError(f"Failed to read settings file {self.settings_file}: {e}") from e

        for key in DEFAULTS:
            value = os.environ.get(f"{ENV_PREFIX}{key.upper()}")
            if value is not None:
                settings[key] = value

        self._settings = {key: _coerce(key, value) for key, value in settings.items()}

    def get(self, key: str, default: Any = None) -> Any:
        """Get a setting value by key."""
        return self._settings.get(key, default)

    def override(self, data: dict[str, Any]) -> None:
        """Apply in-memory overrides, ignoring None values. Nothing is saved."""
        for key, value in data.items():
            if value is not None:
                self._settings[key] = _coerce(key, value)

    def all(self) -> dict[str, Any]:
        """Get all settings as a dictionary."""
        return self._settings.copy()

    def reload(self) -> None:
        """Reload settings from file and environment, dropping overrides."""
        self._load_settings()

    def validate(self) -> None:
        """Check the settings required to start syncing.

        Raises:
            ConfigError: If a required setting is blank or out of range
        """
        if not self.aws_region.strip():
            raise ConfigError(
                "Failed to proceed: object store connection is not configured (aws_region is empty)"
            )
        if not self.source_folder.strip():
            raise ConfigError("Failed to proceed: source path is empty")
        if not self.target_bucket.strip():
            raise ConfigError("Failed to proceed: target bucket is empty")
        if self.upload_threads < 1:
            raise ConfigError(
                f"Failed to proceed: specified upload threads count {self.upload_threads} "
                "is less than 1"
            )

    @property
    def aws_profile(self) -> str:
        """Get the AWS profile name (blank means the default credential chain)."""
        return str(self._settings.get("aws_profile") or "")

    @property
    def aws_region(self) -> str:
        """Get the AWS region."""
        return str(self._settings.get("aws_region") or "")

    @property
    def endpoint_url(self) -> str:
        """Get the S3 endpoint URL for S3-compatible stores."""
        return str(self._settings.get("endpoint_url") or "")

    @property
    def source_folder(self) -> str:
        return str(self._settings.get("source_folder") or "")

    @property
    def target_bucket(self) -> str:
        return str(self._settings.get("target_bucket") or "")

    @property
    def target_folder(self) -> str:
        return str(self._settings.get("target_folder") or "")

    @property
    def upload_threads(self) -> int:
        return int(self._settings.get("upload_threads", 0))

    @property
    def in_memory(self) -> bool:
        """Whether file content is held in memory between hashing and upload."""
        return bool(self._settings.get("in_memory", False))

    @property
    def upload_log(self) -> str:
        """Path of the upload log that completed uploads are appended to."""
        return str(self._settings.get("upload_log") or "")

    @property
    def skip_uploaded_log(self) -> str:
        """Path of the upload log read at startup to seed the dedup ledger."""
        return str(self._settings.get("skip_uploaded_log") or "")

    @property
    def folder_ready_marker_file(self) -> str:
        return str(self._settings.get("folder_ready_marker_file") or "")

    @property
    def hot_file_extensions(self) -> tuple[str, ...]:
        return tuple(self._settings.get("hot_file_extensions") or ())

    @property
    def hot_file_quarantine_seconds(self) -> int:
        return int(self._settings.get("hot_file_quarantine_seconds", ONE_HOUR))

    @property
    def scan_interval_seconds(self) -> int:
        return int(self._settings.get("scan_interval_seconds", ONE_HOUR))

    @property
    def failure_backoff_seconds(self) -> int:
        return int(self._settings.get("failure_backoff_seconds", 2 * ONE_HOUR))

    @property
    def log_directory(self) -> Path:
        """Get the directory for JSONL event logs."""
        return Path(self._settings.get("log_directory") or "logs")


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get the global Settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def set_settings(settings: Settings) -> None:
    """Replace the global Settings instance (used by the CLI after parsing)."""
    global _settings
    _settings = settings
