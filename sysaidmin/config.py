"""
sysaidmin.config — Load, validate, and expose engine configuration.

Config search order (first found wins):
1. ``$SYSAIDMIN_CONFIG``              (explicit path)
2. ``~/.sysaidmin/config.yaml``       (user-level)
3. ``./config/config.yaml``           (project-level, for development)
4. Built-in Pydantic defaults

Environment variables override the file (``SYSAIDMIN_DRYRUN``,
``SYSAIDMIN_SESSION_DIR``, ``SYSAIDMIN_SHELL``, ``SYSAIDMIN_LOG_LEVEL``).

The built-in allowlist is empty: with no config file nothing is permitted.
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

from sysaidmin.errors import ConfigError

# ---------------------------------------------------------------------------
# Path helpers
# ---------------------------------------------------------------------------

# User-level config directory
SYSAIDMIN_HOME = Path.home() / ".sysaidmin"

# Project root (dev mode) = directory containing pyproject.toml
PROJECT_ROOT = Path(__file__).resolve().parent.parent
PROJECT_CONFIG_DIR = PROJECT_ROOT / "config"

DEFAULT_SESSION_DIR = SYSAIDMIN_HOME / "sessions"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------


class AllowlistSettings(BaseModel):
    """Regex rules gating which commands and file paths may run automatically."""

    command_patterns: list[str] = Field(default_factory=list)
    file_patterns: list[str] = Field(default_factory=list)
    max_edit_size_kb: int = 64


class SysaidminSettings(BaseModel):
    """Top-level settings object for the engine and CLI."""

    version: int = 1
    dry_run: bool = False
    default_shell: str = "/bin/bash"
    command_timeout: float = Field(default=120.0, gt=0)
    max_output_kb: int = Field(default=64, gt=0)
    max_workers: int = Field(default=1, ge=1)
    working_dir: str | None = None
    create_missing_files: bool = False
    session_dir: str = str(DEFAULT_SESSION_DIR)
    log_level: str = "INFO"
    log_file: str | None = None

    allowlist: AllowlistSettings = Field(default_factory=AllowlistSettings)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------


def _load_yaml(path: Path) -> dict[str, Any]:
    """Read and parse a YAML file.  Returns {} if not found."""
    if not path.exists():
        return {}
    try:
        with open(path, "r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"failed reading config file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a mapping at the top level")
    return data


def _env_value(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _env_bool(name: str) -> bool | None:
    value = _env_value(name)
    if value is None:
        return None
    lowered = value.lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    return None


def config_path() -> Path:
    """Return the config file that ``get_settings()`` would read."""
    if explicit := _env_value("SYSAIDMIN_CONFIG"):
        return Path(explicit).expanduser()
    user_config = SYSAIDMIN_HOME / "config.yaml"
    if user_config.exists():
        return user_config
    return PROJECT_CONFIG_DIR / "config.yaml"


def load_settings(path: Path | None = None) -> SysaidminSettings:
    """Build settings from *path* (or the search order) plus env overrides.

    Raises
    ------
    ConfigError
        If the file is unreadable, not YAML, or fails schema validation.
    """
    raw: dict[str, Any] = _load_yaml(path or config_path())

    if (dry_run := _env_bool("SYSAIDMIN_DRYRUN")) is not None:
        raw["dry_run"] = dry_run
    if session_dir := _env_value("SYSAIDMIN_SESSION_DIR"):
        raw["session_dir"] = session_dir
    if shell := _env_value("SYSAIDMIN_SHELL"):
        raw["default_shell"] = shell
    if log_level := _env_value("SYSAIDMIN_LOG_LEVEL"):
        raw["log_level"] = log_level

    try:
        return SysaidminSettings(**raw)
    except ValidationError as exc:
        raise ConfigError(f"invalid configuration: {exc}") from exc


@lru_cache(maxsize=1)
def get_settings() -> SysaidminSettings:
    """Return the validated, cached application settings.

    Loading order (each layer overrides the previous):
    1. Built-in defaults (Pydantic field defaults).
    2. Config YAML (see module docstring for the search order).
    3. Environment variables / ``.env`` file.
    """
    load_dotenv(SYSAIDMIN_HOME / ".env")
    load_dotenv(PROJECT_ROOT / ".env")
    return load_settings()
