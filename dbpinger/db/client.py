"""Opaque database capability used by the probe: open, execute scalar, close."""

from __future__ import annotations

from typing import Any, Callable, Protocol

from loguru import logger
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.pool import NullPool

from dbpinger.db.connection import ConnectionParameters

log = logger.bind(module="db.client")

__all__ = ["ClientFactory", "DatabaseClient", "SqlAlchemyDatabaseClient"]


class DatabaseClient(Protocol):
    """Minimal surface the probe needs from a database driver.

    ``interrupt`` may be called from another thread while ``open`` or
    ``execute_scalar`` is blocked; it must make them return promptly.
    ``close`` must be safe to call more than once.
    """

    def open(self) -> None: ...

    def execute_scalar(self, sql: str) -> Any: ...

    def interrupt(self) -> None: ...

    def close(self) -> None: ...


ClientFactory = Callable[[ConnectionParameters], DatabaseClient]


class SqlAlchemyDatabaseClient:
    """Single-connection client built on a pool-less SQLAlchemy engine."""

    def __init__(self, params: ConnectionParameters) -> None:
        self.params = params
        self._engine: Engine | None = None
        self._connection: Connection | None = None

    def open(self) -> None:
        if self._connection is not None:
            return
        # One physical connection per probe; nothing is kept between cycles.
        self._engine = create_engine(
            self.params.url,
            poolclass=NullPool,
            connect_args=self.params.connect_args,
            future=True,
        )
        self._connection = self._engine.connect()
        log.debug("Connected to {}", self.params.safe_dsn)

    def execute_scalar(self, sql: str) -> Any:
        if self._connection is None:
            raise RuntimeError("Connection is not open.")
        return self._connection.execute(text(sql)).scalar()

    def interrupt(self) -> None:
        """Ask the server to cancel the running statement."""
        connection = self._connection
        if connection is None:
            return
        try:
            dbapi_connection = connection.connection.dbapi_connection
            if dbapi_connection is None:
                return
            cancel = getattr(dbapi_connection, "cancel_safe", None) or dbapi_connection.cancel
            cancel()
        except Exception as exc:  # pragma: no cover - depends on driver state
            log.debug("Cancel request for {} failed: {}", self.params.safe_dsn, exc)

    def close(self) -> None:
        connection, self._connection = self._connection, None
        engine, self._engine = self._engine, None
        try:
            if connection is not None:
                connection.close()
        finally:
            if engine is not None:
                engine.dispose()

    def __enter__(self) -> "SqlAlchemyDatabaseClient":
        self.open()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()
