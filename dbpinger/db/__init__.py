"""Database access for the pinger: connection parameters and client capability."""

from dbpinger.db.client import DatabaseClient, SqlAlchemyDatabaseClient
from dbpinger.db.connection import (
    ConnectionParameters,
    TlsMode,
    build_connection_parameters,
    parse_tls_mode,
    probe_deadline_seconds,
    tls_mode_recognized,
)

__all__ = [
    "ConnectionParameters",
    "DatabaseClient",
    "SqlAlchemyDatabaseClient",
    "TlsMode",
    "build_connection_parameters",
    "parse_tls_mode",
    "probe_deadline_seconds",
    "tls_mode_recognized",
]
