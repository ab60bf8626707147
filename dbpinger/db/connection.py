"""Build driver connection parameters from the run configuration.

Everything here is deterministic and performs no I/O.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from typing import Any

from pydantic import SecretStr
from sqlalchemy.engine import URL

from dbpinger.config import Credentials, RunConfig

__all__ = [
    "ConnectionParameters",
    "TlsMode",
    "build_connection_parameters",
    "parse_tls_mode",
    "probe_deadline_seconds",
    "tls_mode_recognized",
]

DRIVER_NAME = "postgresql+psycopg"
MIN_PROBE_DEADLINE_SECONDS = 5
DEADLINE_MARGIN_SECONDS = 2


class TlsMode(str, enum.Enum):
    """libpq ``sslmode`` values."""

    DISABLE = "disable"
    ALLOW = "allow"
    PREFER = "prefer"
    REQUIRE = "require"
    VERIFY_CA = "verify-ca"
    VERIFY_FULL = "verify-full"


_TLS_LOOKUP: dict[str, TlsMode] = {
    re.sub(r"[_\-]", "", mode.value): mode for mode in TlsMode
}


def _normalise_tls(raw: str | None) -> str:
    return re.sub(r"[_\-\s]", "", raw or "").lower()


def tls_mode_recognized(raw: str | None) -> bool:
    return _normalise_tls(raw) in _TLS_LOOKUP


def parse_tls_mode(raw: str | None) -> TlsMode:
    """Match ``raw`` case-insensitively; unknown values fall back to ``DISABLE``."""
    return _TLS_LOOKUP.get(_normalise_tls(raw), TlsMode.DISABLE)


@dataclass(slots=True, frozen=True)
class ConnectionParameters:
    """Everything the database client needs to open one connection."""

    host: str
    port: int
    database: str
    username: str
    password: SecretStr = field(repr=False)
    tls_mode: TlsMode
    connect_timeout_seconds: int
    command_timeout_seconds: int

    @property
    def url(self) -> URL:
        return URL.create(
            DRIVER_NAME,
            username=self.username,
            password=self.password.get_secret_value(),
            host=self.host,
            port=self.port,
            database=self.database,
        )

    @property
    def connect_args(self) -> dict[str, Any]:
        """Driver-level keyword arguments passed to ``psycopg.connect``."""
        return {
            "sslmode": self.tls_mode.value,
            "connect_timeout": self.connect_timeout_seconds,
            "options": f"-c statement_timeout={self.command_timeout_seconds * 1000}",
        }

    @property
    def safe_dsn(self) -> str:
        """Return the DSN with the password hidden, for logging."""
        return self.url.render_as_string(hide_password=True)


def build_connection_parameters(run_config: RunConfig, credentials: Credentials) -> ConnectionParameters:
    return ConnectionParameters(
        host=run_config.host,
        port=run_config.port,
        database=run_config.database,
        username=credentials.username,
        password=credentials.password,
        tls_mode=parse_tls_mode(run_config.tls_mode),
        connect_timeout_seconds=max(1, run_config.connect_timeout_seconds),
        command_timeout_seconds=max(1, run_config.command_timeout_seconds),
    )


def probe_deadline_seconds(run_config: RunConfig) -> int:
    """Wall-clock budget for one probe, larger than both sub-timeouts combined."""
    return max(
        MIN_PROBE_DEADLINE_SECONDS,
        run_config.connect_timeout_seconds + run_config.command_timeout_seconds + DEADLINE_MARGIN_SECONDS,
    )
