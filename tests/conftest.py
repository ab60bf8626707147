from __future__ import annotations

import io
import threading
from pathlib import Path
from typing import Any, Callable, Generator

import pytest

import sys


ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from dbpinger.config import Credentials, RunConfig, ScheduleParameters, Settings
from dbpinger.db.connection import ConnectionParameters, build_connection_parameters
from dbpinger.logsink import LogSink
from pydantic import SecretStr

_ENV_KEYS = (
    "DB_USER",
    "DB_PASSWORD",
    "PINGER_INTERVAL_SECONDS",
    "PINGER_LOG_FILE",
    "PINGER_CONFIG_FILE",
    "LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the developer's shell environment out of Settings()."""

    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, DB_USER="monitor", DB_PASSWORD="s3cret")


@pytest.fixture
def run_config() -> RunConfig:
    return RunConfig(
        host="db.internal",
        port=5432,
        database="appdb",
        tls_mode="Disable",
        connect_timeout_seconds=1,
        command_timeout_seconds=1,
    )


@pytest.fixture
def credentials() -> Credentials:
    return Credentials(username="monitor", password=SecretStr("s3cret"))


@pytest.fixture
def params(run_config: RunConfig, credentials: Credentials) -> ConnectionParameters:
    return build_connection_parameters(run_config, credentials)


@pytest.fixture
def schedule() -> ScheduleParameters:
    return ScheduleParameters(interval_seconds=10)


class CapturedSink:
    """A LogSink writing into in-memory streams."""

    def __init__(self, sink: LogSink, stdout: io.StringIO, stderr: io.StringIO) -> None:
        self.sink = sink
        self.stdout = stdout
        self.stderr = stderr


@pytest.fixture
def captured_sink() -> Generator[CapturedSink, None, None]:
    stdout, stderr = io.StringIO(), io.StringIO()
    sink = LogSink(level="INFO", stdout=stdout, stderr=stderr).open()
    try:
        yield CapturedSink(sink, stdout, stderr)
    finally:
        sink.close()


class FakeClient:
    """In-memory DatabaseClient that can succeed, fail, or hang until interrupted.

    With ``ignore_interrupt`` the hang only ends after ``hang_seconds``, like a
    driver that never sees the cancel request.
    """

    def __init__(
        self,
        *,
        version: Any = "PostgreSQL 16.2 on x86_64-pc-linux-gnu",
        open_error: BaseException | None = None,
        execute_error: BaseException | None = None,
        hang_seconds: float = 0.0,
        ignore_interrupt: bool = False,
    ) -> None:
        self.version = version
        self.open_error = open_error
        self.execute_error = execute_error
        self.hang_seconds = hang_seconds
        self.ignore_interrupt = ignore_interrupt
        self.opened = False
        self.closed = False
        self.interrupted = threading.Event()
        self._released = threading.Event()
        self.queries: list[str] = []

    def open(self) -> None:
        if self.open_error is not None:
            raise self.open_error
        self.opened = True

    def execute_scalar(self, sql: str) -> Any:
        self.queries.append(sql)
        if self.hang_seconds:
            if self._released.wait(self.hang_seconds):
                raise RuntimeError("canceling statement due to user request")
        if self.execute_error is not None:
            raise self.execute_error
        return self.version

    def interrupt(self) -> None:
        self.interrupted.set()
        if not self.ignore_interrupt:
            self._released.set()

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_clients() -> Callable[..., tuple[Callable[[ConnectionParameters], FakeClient], list[FakeClient]]]:
    """Return ``make(**kwargs) -> (factory, created)`` for FakeClient instances."""

    def make(**kwargs: Any) -> tuple[Callable[[ConnectionParameters], FakeClient], list[FakeClient]]:
        created: list[FakeClient] = []

        def factory(_params: ConnectionParameters) -> FakeClient:
            client = FakeClient(**kwargs)
            created.append(client)
            return client

        return factory, created

    return make
