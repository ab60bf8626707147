"""One connect-query cycle against the monitored database, under a deadline."""

from __future__ import annotations

import enum
import socket
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from time import monotonic
from typing import TYPE_CHECKING, Callable

from loguru import logger
from sqlalchemy import exc as sa_exc

from dbpinger.db.client import ClientFactory, DatabaseClient, SqlAlchemyDatabaseClient
from dbpinger.db.connection import ConnectionParameters

if TYPE_CHECKING:
    from loguru import Logger

__all__ = [
    "FailureKind",
    "ProbeCancelled",
    "ProbeExecutor",
    "ProbeFailure",
    "ProbeOutcome",
    "ProbeSuccess",
    "VERSION_QUERY",
    "classify_error",
]

VERSION_QUERY = "SELECT version();"

_DEFAULT_POLL_SECONDS = 0.1
_DEFAULT_GRACE_SECONDS = 1.0


class ProbeCancelled(RuntimeError):
    """Raised when the shutdown signal arrives while a probe is in flight."""


class FailureKind(str, enum.Enum):
    TIMEOUT = "timeout"
    CONNECTION = "connection"
    QUERY = "query"
    CANCELLED = "cancelled"


@dataclass(slots=True, frozen=True)
class ProbeSuccess:
    version: str | None
    duration_seconds: float = 0.0


@dataclass(slots=True, frozen=True)
class ProbeFailure:
    kind: FailureKind
    message: str
    duration_seconds: float = 0.0


ProbeOutcome = ProbeSuccess | ProbeFailure


def _is_timeout(exc: BaseException) -> bool:
    if isinstance(exc, (TimeoutError, socket.timeout, sa_exc.TimeoutError)):
        return True
    text = str(exc).lower()
    return "timeout" in text or "timed out" in text


def _is_query_cancel(exc: BaseException) -> bool:
    orig = getattr(exc, "orig", None)
    # psycopg.errors.QueryCanceled, SQLSTATE 57014
    return getattr(orig, "sqlstate", None) == "57014"


def classify_error(exc: BaseException, *, stage: str) -> FailureKind:
    """Map a driver exception raised during ``stage`` to a coarse failure kind."""
    if _is_query_cancel(exc):
        # statement_timeout also surfaces as a cancellation.
        return FailureKind.TIMEOUT if _is_timeout(exc) else FailureKind.CANCELLED
    if _is_timeout(exc):
        return FailureKind.TIMEOUT
    if stage == "open":
        return FailureKind.CONNECTION
    return FailureKind.QUERY


def _describe(exc: BaseException) -> str:
    orig = getattr(exc, "orig", None)
    source = orig if orig is not None else exc
    message = str(source).strip().splitlines()[0] if str(source).strip() else ""
    return f"{type(source).__name__}: {message}" if message else type(source).__name__


class ProbeExecutor:
    """Run a single version probe on a worker thread and bound its duration.

    The caller thread waits for the worker while watching two signals: the
    probe deadline and the process-wide stop event. On either, the client is
    interrupted so blocked driver calls return. The worker always closes the
    client before it exits.
    """

    def __init__(
        self,
        *,
        client_factory: ClientFactory = SqlAlchemyDatabaseClient,
        query: str = VERSION_QUERY,
        poll_seconds: float = _DEFAULT_POLL_SECONDS,
        grace_seconds: float = _DEFAULT_GRACE_SECONDS,
        clock: Callable[[], float] = monotonic,
        log: Logger | None = None,
    ) -> None:
        self.client_factory = client_factory
        self.query = query
        self.poll_seconds = max(0.01, float(poll_seconds))
        self.grace_seconds = max(0.0, float(grace_seconds))
        self.clock = clock
        self.log = log if log is not None else logger.bind(module="probe")

    def execute(
        self,
        params: ConnectionParameters,
        *,
        deadline_seconds: float,
        stop_event: threading.Event,
    ) -> ProbeOutcome:
        """Return the probe outcome.

        Raises:
            ProbeCancelled: When ``stop_event`` is set before the probe finishes.
        """
        if stop_event.is_set():
            raise ProbeCancelled("Shutdown requested before the probe started.")

        start = self.clock()
        client = self.client_factory(params)
        finished = threading.Event()
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="dbpinger-probe")
        try:
            future: Future[ProbeOutcome] = executor.submit(self._run, client, start)
            future.add_done_callback(lambda _f: finished.set())

            deadline = start + max(0.0, float(deadline_seconds))
            while not finished.is_set():
                if stop_event.is_set():
                    self._abandon(client, finished, grace_seconds=self.grace_seconds)
                    raise ProbeCancelled("Shutdown requested while the probe was running.")
                remaining = deadline - self.clock()
                if remaining <= 0:
                    # Return at the deadline; the worker still closes the client once it unblocks.
                    self._abandon(client, finished, grace_seconds=0.0)
                    return ProbeFailure(
                        FailureKind.TIMEOUT,
                        f"Probe exceeded its {deadline_seconds:g}s deadline.",
                        self.clock() - start,
                    )
                finished.wait(min(self.poll_seconds, remaining))
            return future.result()
        finally:
            executor.shutdown(wait=False)

    # Internal helpers ------------------------------------------------------

    def _run(self, client: DatabaseClient, start: float) -> ProbeOutcome:
        stage = "open"
        try:
            client.open()
            stage = "execute"
            result = client.execute_scalar(self.query)
        except Exception as exc:
            kind = classify_error(exc, stage=stage)
            self.log.debug("Probe {} stage failed: {!r}", stage, exc)
            return ProbeFailure(kind, _describe(exc), self.clock() - start)
        finally:
            try:
                client.close()
            except Exception as exc:
                self.log.warning("Closing the probe connection failed: {}", exc)
        version = None if result is None else str(result)
        return ProbeSuccess(version, self.clock() - start)

    def _abandon(
        self,
        client: DatabaseClient,
        finished: threading.Event,
        *,
        grace_seconds: float,
    ) -> None:
        try:
            client.interrupt()
        except Exception as exc:
            self.log.warning("Interrupting the probe failed: {}", exc)
        if grace_seconds <= 0:
            return
        if not finished.wait(grace_seconds):
            self.log.warning(
                "Probe worker still running {:.1f}s after interrupt; it will close its connection when it returns",
                grace_seconds,
            )
