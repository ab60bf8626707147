"""Loguru-backed log sink shared by the pinger components.

A :class:`LogSink` owns its handlers instead of reconfiguring the global
logger: every record it emits carries a ``sink_id`` and its handlers only
accept records with that id. INFO and WARN lines go to stdout, ERROR lines
go to stderr, and every line may be duplicated to an append-only file as::

    2026-10-18T08:15:02.123456+00:00 [WARN] ATYPICAL VERSION: <empty>
"""

from __future__ import annotations

import logging
import sys
import uuid
from pathlib import Path
from typing import Any, TextIO

from loguru import logger

__all__ = ["LogSink"]

_ERROR_LEVEL_NO = logger.level("ERROR").no

_LEVEL_TAGS: dict[str, str] = {
    "TRACE": "TRACE",
    "DEBUG": "DEBUG",
    "INFO": "INFO",
    "SUCCESS": "INFO",
    "WARNING": "WARN",
    "ERROR": "ERROR",
    "CRITICAL": "ERROR",
}


def _level_tag(record: dict[str, Any]) -> str:
    name = record["level"].name
    return _LEVEL_TAGS.get(name, name)


def _console_format(record: dict[str, Any]) -> str:
    return "{time:YYYY-MM-DD HH:mm:ss.SSS} [" + _level_tag(record) + "] {message}\n{exception}"


def _file_format(record: dict[str, Any]) -> str:
    return "{time:YYYY-MM-DDTHH:mm:ss.SSSSSSZ!UTC} [" + _level_tag(record) + "] {message}\n{exception}"


class _LoguruInterceptHandler(logging.Handler):
    """Bridge standard-library logging records into a sink."""

    def __init__(self, sink_logger: Any) -> None:
        super().__init__()
        self._logger = sink_logger

    def emit(self, record: logging.LogRecord) -> None:  # pragma: no cover - thin wrapper
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        self._logger.opt(exception=record.exc_info).log(level, record.getMessage())


class LogSink:
    """Explicit, closable set of loguru handlers for one pinger process."""

    def __init__(
        self,
        *,
        level: str = "INFO",
        duplicate_path: Path | str | None = None,
        stdout: TextIO | None = None,
        stderr: TextIO | None = None,
    ) -> None:
        self.level = (level or "INFO").upper()
        self.duplicate_path = Path(duplicate_path).expanduser() if duplicate_path else None
        self._stdout = stdout
        self._stderr = stderr
        self.sink_id = uuid.uuid4().hex
        self.logger = logger.bind(sink_id=self.sink_id)
        self._handler_ids: list[int] = []

    # Lifecycle -------------------------------------------------------------

    def open(self) -> "LogSink":
        """Install the handlers; on failure none of them stay installed."""
        if self._handler_ids:
            return self
        try:
            self._add_handlers()
        except Exception:
            self.close()
            raise
        return self

    def _add_handlers(self) -> None:
        self._handler_ids.append(
            logger.add(
                self._stdout or sys.stdout,
                level=self.level,
                format=_console_format,
                filter=self._accepts_below_error,
                colorize=False,
                backtrace=False,
                diagnose=False,
            )
        )
        self._handler_ids.append(
            logger.add(
                self._stderr or sys.stderr,
                level="ERROR",
                format=_console_format,
                filter=self._accepts,
                colorize=False,
                backtrace=False,
                diagnose=False,
            )
        )
        if self.duplicate_path is not None:
            self.duplicate_path.parent.mkdir(parents=True, exist_ok=True)
            # enqueue=True serialises appends even when several processes share the file.
            self._handler_ids.append(
                logger.add(
                    self.duplicate_path,
                    level=self.level,
                    format=_file_format,
                    filter=self._accepts,
                    enqueue=True,
                    encoding="utf-8",
                    backtrace=False,
                    diagnose=False,
                )
            )

    def close(self) -> None:
        """Remove this sink's handlers, flushing the duplicate file."""
        handler_ids, self._handler_ids = self._handler_ids, []
        for handler_id in handler_ids:
            try:
                logger.remove(handler_id)
            except ValueError:
                # Someone called logger.remove() globally in the meantime.
                continue

    def __enter__(self) -> "LogSink":
        return self.open()

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()

    # Emitting --------------------------------------------------------------

    def bind(self, **extra: Any) -> Any:
        """Return a loguru logger routed to this sink."""
        return self.logger.bind(**extra)

    def route_stdlib_logging(self) -> None:
        """Route stdlib logging (SQLAlchemy, psycopg) into this sink."""

        handler: logging.Handler = _LoguruInterceptHandler(self.bind(module="stdlib"))

        root = logging.getLogger()
        root.handlers = [handler]
        root.setLevel(self.level)

        logging.captureWarnings(True)

    # Filters ---------------------------------------------------------------

    def _accepts(self, record: dict[str, Any]) -> bool:
        return record["extra"].get("sink_id") == self.sink_id

    def _accepts_below_error(self, record: dict[str, Any]) -> bool:
        return self._accepts(record) and record["level"].no < _ERROR_LEVEL_NO
