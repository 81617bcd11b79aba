"""
Configuration settings for revisit.

Uses Pydantic Settings for environment variable management, layered under
an optional `.revisit.toml` file found by walking up from the working
directory.

Precedence (highest first):
1. Command-line options
2. .revisit.toml
3. REVISIT_* environment variables
4. Defaults
"""

from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Any, Literal

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigError

CONFIG_FILENAME = ".revisit.toml"

LogLevel = Literal["TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"]


def _default_editor() -> str:
    return os.environ.get("VISUAL") or os.environ.get("EDITOR") or "vim"


class Settings(BaseSettings):
    """Application settings, built once and passed to the store and session."""

    model_config = SettingsConfigDict(
        env_prefix="REVISIT_",
        case_sensitive=False,
        extra="ignore",
    )

    database_path: Path = Field(
        default=Path.home() / ".revisit" / "store",
        description="Store location: a directory, or a .db/.sqlite file for the SQLite backend",
    )
    editor_command: str = Field(
        default_factory=_default_editor,
        description="Program used to open a file for review (arguments allowed)",
    )
    root: Path | None = Field(
        default=None,
        description="Files under this directory are tracked by relative path",
    )
    log_level: LogLevel = Field(
        default="WARNING",
        description="Logging level for stderr output",
    )

    @field_validator("editor_command")
    @classmethod
    def _editor_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("editor_command must not be empty")
        return value.strip()

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_log_level(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value

    @field_validator("database_path", "root")
    @classmethod
    def _expand_user(cls, value: Path | None) -> Path | None:
        return value.expanduser() if value is not None else None


def find_config(start: Path) -> Path | None:
    """
    Look for .revisit.toml in `start` and each of its parents.

    Returns:
        Path of the first config file found, or None
    """
    current = start.resolve()
    for directory in (current, *current.parents):
        candidate = directory / CONFIG_FILENAME
        if candidate.is_file():
            return candidate
    return None


def read_config_file(path: Path) -> dict[str, Any]:
    """
    Parse a TOML config file.

    Relative database_path and root values are resolved against the
    directory holding the file.

    Raises:
        ConfigError: if the file cannot be read or is not valid TOML
    """
    try:
        with path.open("rb") as handle:
            data = tomllib.load(handle)
    except OSError as exc:
        raise ConfigError(f"Cannot read config file {path}: {exc}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Malformed config file {path}: {exc}") from exc

    for key in ("database_path", "root"):
        value = data.get(key)
        if isinstance(value, str):
            candidate = Path(value).expanduser()
            if not candidate.is_absolute():
                data[key] = str(path.parent / candidate)
    return data


def load_settings(
    config_path: Path | None = None,
    start: Path | None = None,
    **overrides: Any,
) -> Settings:
    """
    Build the settings value for one invocation.

    Args:
        config_path: Explicit config file (must exist); skips discovery
        start: Directory to start config discovery from (defaults to cwd)
        **overrides: Command-line values; None entries are ignored

    Raises:
        ConfigError: on a missing explicit file, malformed TOML or invalid values
    """
    if config_path is not None:
        if not config_path.is_file():
            raise ConfigError(f"Config file not found: {config_path}")
        found = config_path
    else:
        found = find_config(start or Path.cwd())

    values: dict[str, Any] = read_config_file(found) if found is not None else {}
    values.update({key: value for key, value in overrides.items() if value is not None})

    try:
        return Settings(**values)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in exc.errors()
        )
        source = f" in {found}" if found is not None else ""
        raise ConfigError(f"Invalid configuration{source}: {problems}") from exc


__all__ = ["CONFIG_FILENAME", "Settings", "find_config", "load_settings", "read_config_file"]
