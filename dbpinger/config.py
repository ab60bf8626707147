"""Configuration for the database pinger.

Two sources feed the runtime configuration:

- a JSON file with connection defaults (``appsettings.json``), whose field
  names are matched case-insensitively, and
- the process environment, which carries credentials and scheduling
  overrides and is modelled by :class:`Settings`.

:func:`resolve` merges both into immutable records. It performs no I/O.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Mapping

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

log = logger.bind(module="config")

__all__ = [
    "ConfigurationError",
    "Credentials",
    "FileDefaults",
    "ResolvedSettings",
    "RunConfig",
    "ScheduleParameters",
    "Settings",
    "clamp_interval",
    "get_settings",
    "load_file_defaults",
    "resolve",
]

DEFAULT_CONFIG_FILE = "appsettings.json"
DEFAULT_INTERVAL_SECONDS = 300
MIN_INTERVAL_SECONDS = 5
MAX_INTERVAL_SECONDS = 24 * 60 * 60

USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_.]{1,64}$")

# Normalised file keys -> FileDefaults field names.
_FILE_KEY_ALIASES: dict[str, str] = {
    "host": "host",
    "port": "port",
    "database": "database",
    "tlsmode": "tls_mode",
    "sslmode": "tls_mode",
    "connecttimeoutseconds": "connect_timeout_seconds",
    "timeoutseconds": "connect_timeout_seconds",
    "commandtimeoutseconds": "command_timeout_seconds",
    "expectedproduct": "expected_product",
}


class ConfigurationError(RuntimeError):
    """Raised when startup configuration or credentials are unusable."""


class Settings(BaseSettings):
    """Environment-sourced settings: credentials and scheduling overrides."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    db_user: str | None = Field(default=None, alias="DB_USER")
    db_password: SecretStr | None = Field(default=None, alias="DB_PASSWORD")
    interval_seconds: int = Field(default=DEFAULT_INTERVAL_SECONDS, alias="PINGER_INTERVAL_SECONDS")
    log_file: str | None = Field(default=None, alias="PINGER_LOG_FILE")
    config_file: str = Field(default=DEFAULT_CONFIG_FILE, alias="PINGER_CONFIG_FILE")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    @field_validator("interval_seconds", mode="before")
    @classmethod
    def _parse_interval(cls, value: Any) -> int:
        # Unparseable values fall back to the default instead of failing startup.
        if value is None:
            return DEFAULT_INTERVAL_SECONDS
        if isinstance(value, bool):
            return DEFAULT_INTERVAL_SECONDS
        if isinstance(value, int):
            return value
        try:
            return int(str(value).strip())
        except ValueError:
            return DEFAULT_INTERVAL_SECONDS

    def export_safe(self) -> dict[str, Any]:
        """Return non-sensitive settings for debugging/logging."""
        return {
            "db_user": self.db_user,
            "interval_seconds": self.interval_seconds,
            "log_file": self.log_file,
            "config_file": self.config_file,
            "log_level": self.log_level,
        }


class FileDefaults(BaseModel):
    """Connection defaults read from the JSON configuration file."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    host: str = "localhost"
    port: int = Field(default=5432, ge=1, le=65535)
    database: str = "appdb"
    tls_mode: str = "Disable"
    connect_timeout_seconds: int = 5
    command_timeout_seconds: int = 5
    expected_product: str = "PostgreSQL"

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "FileDefaults":
        """Validate a raw document, matching field names case-insensitively."""
        data: dict[str, Any] = {}
        for key, value in raw.items():
            normalised = re.sub(r"[_\-\s]", "", str(key)).lower()
            target = _FILE_KEY_ALIASES.get(normalised)
            if target is not None:
                data[target] = value
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid config file: {exc}") from exc


@dataclass(slots=True, frozen=True)
class RunConfig:
    """Immutable connection configuration for the process lifetime."""

    host: str
    port: int
    database: str
    tls_mode: str
    connect_timeout_seconds: int
    command_timeout_seconds: int
    expected_product: str = "PostgreSQL"


@dataclass(slots=True, frozen=True)
class Credentials:
    """Database login held only in memory."""

    username: str
    password: SecretStr = field(repr=False)


@dataclass(slots=True, frozen=True)
class ScheduleParameters:
    interval_seconds: int
    log_file: Path | None = None


@dataclass(slots=True, frozen=True)
class ResolvedSettings:
    run_config: RunConfig
    credentials: Credentials
    schedule: ScheduleParameters


def clamp_interval(value: int) -> int:
    """Clamp the polling interval into ``[5s, 24h]``."""
    return max(MIN_INTERVAL_SECONDS, min(MAX_INTERVAL_SECONDS, int(value)))


def load_file_defaults(path: str | Path) -> dict[str, Any]:
    """Read the JSON configuration document.

    Raises:
        ConfigurationError: When the file is missing, unreadable, malformed,
            or does not contain a JSON object.
    """
    target = Path(path).expanduser()
    try:
        text = target.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigurationError(f"Cannot read config file {target}: {exc}") from exc
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Malformed config file {target}: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigurationError(f"Invalid config file {target}: expected a JSON object.")
    return payload


def _resolve_credentials(settings: Settings) -> Credentials:
    username = settings.db_user or ""
    password = settings.db_password.get_secret_value() if settings.db_password else ""
    if not username.strip() or not password:
        raise ConfigurationError("DB_USER/DB_PASSWORD are not set in the environment.")
    if not USERNAME_PATTERN.fullmatch(username):
        raise ConfigurationError("DB_USER contains invalid characters.")
    return Credentials(username=username, password=SecretStr(password))


def resolve(file_defaults: Mapping[str, Any], settings: Settings) -> ResolvedSettings:
    """Merge file defaults with environment settings.

    Raises:
        ConfigurationError: When the file content is invalid or credentials
            are missing or malformed.
    """
    defaults = FileDefaults.from_mapping(file_defaults)
    credentials = _resolve_credentials(settings)

    run_config = RunConfig(
        host=defaults.host,
        port=defaults.port,
        database=defaults.database,
        tls_mode=defaults.tls_mode,
        connect_timeout_seconds=max(1, defaults.connect_timeout_seconds),
        command_timeout_seconds=max(1, defaults.command_timeout_seconds),
        expected_product=defaults.expected_product,
    )
    log_file = (settings.log_file or "").strip()
    schedule = ScheduleParameters(
        interval_seconds=clamp_interval(settings.interval_seconds),
        log_file=Path(log_file).expanduser() if log_file else None,
    )
    return ResolvedSettings(run_config=run_config, credentials=credentials, schedule=schedule)


@lru_cache
def get_settings() -> Settings:
    """Load and cache environment settings."""
    settings = Settings()
    log.debug("Settings initialised: {}", settings.export_safe())
    return settings
