from __future__ import annotations

import dataclasses
import threading
import time
from typing import Iterable

from dbpinger.classifier import Verdict
from dbpinger.config import RunConfig, ScheduleParameters
from dbpinger.probe import FailureKind, ProbeCancelled, ProbeFailure, ProbeOutcome, ProbeSuccess
from dbpinger.scheduler import PingScheduler, SchedulerState


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedExecutor:
    """Return queued outcomes (or raise queued exceptions), advancing a fake clock."""

    def __init__(self, steps: Iterable[object], *, clock: FakeClock | None = None, cost: float = 0.0) -> None:
        self.steps = list(steps)
        self.clock = clock
        self.cost = cost
        self.calls = 0
        self.deadlines: list[float] = []

    def execute(self, params, *, deadline_seconds, stop_event) -> ProbeOutcome:
        self.calls += 1
        self.deadlines.append(deadline_seconds)
        if self.clock is not None:
            self.clock.advance(self.cost)
        step = self.steps.pop(0) if self.steps else ProbeSuccess("PostgreSQL 16.2")
        if isinstance(step, BaseException):
            raise step
        return step


class RecordingScheduler(PingScheduler):
    """Record requested sleeps instead of waiting; stop after ``stop_after`` sleeps."""

    def __init__(self, *args, stop_after: int = 1, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.sleeps: list[float] = []
        self.stop_after = stop_after

    def _sleep(self, delay: float) -> bool:
        self.sleeps.append(delay)
        if len(self.sleeps) >= self.stop_after:
            self.stop_event.set()
        return self.stop_event.is_set()


def _scheduler(cls, run_config, schedule, params, captured_sink, executor, **kwargs):
    return cls(
        run_config=run_config,
        schedule=schedule,
        params=params,
        sink=captured_sink.sink,
        executor=executor,
        **kwargs,
    )


def test_typical_version_logs_ok_on_stdout(run_config, schedule, params, captured_sink) -> None:
    executor = ScriptedExecutor([ProbeSuccess("PostgreSQL 14.2 on x86_64")])
    scheduler = _scheduler(PingScheduler, run_config, schedule, params, captured_sink, executor, max_cycles=1)

    assert scheduler.run_forever() == 0
    out = captured_sink.stdout.getvalue()
    assert "[INFO] OK: PostgreSQL 14.2 on x86_64" in out
    assert captured_sink.stderr.getvalue() == ""


def test_custom_product_scenario(schedule, params, captured_sink, run_config) -> None:
    cfg = dataclasses.replace(run_config, expected_product="ProductName")
    scheduler = _scheduler(PingScheduler, cfg, schedule, params, captured_sink, ScriptedExecutor([]))
    assert scheduler.report(ProbeSuccess("ProductName 14.2 on x86_64")) is Verdict.TYPICAL
    assert "OK: ProductName 14.2 on x86_64" in captured_sink.stdout.getvalue()


def test_empty_version_logs_warning(run_config, schedule, params, captured_sink) -> None:
    executor = ScriptedExecutor([ProbeSuccess("")])
    scheduler = _scheduler(PingScheduler, run_config, schedule, params, captured_sink, executor, max_cycles=1)

    scheduler.run_forever()
    assert "[WARN] ATYPICAL VERSION: <empty>" in captured_sink.stdout.getvalue()


def test_atypical_version_logs_warning(run_config, schedule, params, captured_sink) -> None:
    scheduler = _scheduler(PingScheduler, run_config, schedule, params, captured_sink, ScriptedExecutor([]))
    assert scheduler.report(ProbeSuccess("CockroachDB CCL v23.1")) is Verdict.ATYPICAL
    assert "[WARN] ATYPICAL VERSION: CockroachDB CCL v23.1" in captured_sink.stdout.getvalue()


def test_startup_summary_line(run_config, schedule, params, captured_sink) -> None:
    scheduler = _scheduler(PingScheduler, run_config, schedule, params, captured_sink, ScriptedExecutor([]), max_cycles=1)
    scheduler.run_forever()
    out = captured_sink.stdout.getvalue()
    assert "Pinger started. host=db.internal:5432 database=appdb tls=Disable interval=10s" in out
    assert "s3cret" not in out


def test_unknown_tls_mode_warns_at_startup(run_config, schedule, params, captured_sink) -> None:
    cfg = dataclasses.replace(run_config, tls_mode="strict")
    scheduler = _scheduler(PingScheduler, cfg, schedule, params, captured_sink, ScriptedExecutor([]), max_cycles=1)
    scheduler.run_forever()
    assert "Unrecognised TLS mode 'strict'; connecting with sslmode=disable" in captured_sink.stdout.getvalue()


def test_deadline_passed_to_executor(run_config, schedule, params, captured_sink) -> None:
    executor = ScriptedExecutor([])
    scheduler = _scheduler(PingScheduler, run_config, schedule, params, captured_sink, executor, max_cycles=1)
    scheduler.run_forever()
    assert executor.deadlines == [5]


def test_failed_cycle_logs_error_and_next_cycle_runs(run_config, params, captured_sink) -> None:
    clock = FakeClock()
    executor = ScriptedExecutor(
        [
            ProbeFailure(FailureKind.TIMEOUT, "Probe exceeded its 5s deadline."),
            ProbeSuccess("PostgreSQL 16.2"),
        ],
        clock=clock,
        cost=7.0,
    )
    scheduler = _scheduler(
        RecordingScheduler,
        run_config,
        ScheduleParameters(interval_seconds=10),
        params,
        captured_sink,
        executor,
        clock=clock,
        stop_after=2,
    )

    assert scheduler.run_forever() == 0
    assert executor.calls == 2
    assert scheduler.sleeps == [3.0, 3.0]
    assert "[ERROR] Ping failed: timeout: Probe exceeded its 5s deadline." in captured_sink.stderr.getvalue()
    assert "OK: PostgreSQL 16.2" in captured_sink.stdout.getvalue()


def test_unexpected_executor_error_is_contained(run_config, params, captured_sink) -> None:
    executor = ScriptedExecutor([RuntimeError("boom"), ProbeSuccess("PostgreSQL 16.2")])
    scheduler = _scheduler(
        RecordingScheduler,
        run_config,
        ScheduleParameters(interval_seconds=10),
        params,
        captured_sink,
        executor,
        stop_after=2,
    )

    assert scheduler.run_forever() == 0
    assert executor.calls == 2
    assert "Ping failed: RuntimeError: boom" in captured_sink.stderr.getvalue()


def test_reporting_error_is_contained(run_config, params, captured_sink, monkeypatch) -> None:
    calls: list[object] = []

    def flaky_classify(text, product="PostgreSQL"):
        calls.append(text)
        if len(calls) == 1:
            raise ValueError("classifier exploded")
        return Verdict.TYPICAL

    monkeypatch.setattr("dbpinger.scheduler.classify", flaky_classify)
    executor = ScriptedExecutor([ProbeSuccess("PostgreSQL 16.1"), ProbeSuccess("PostgreSQL 16.2")])
    scheduler = _scheduler(
        RecordingScheduler,
        run_config,
        ScheduleParameters(interval_seconds=10),
        params,
        captured_sink,
        executor,
        stop_after=2,
    )

    assert scheduler.run_forever() == 0
    assert executor.calls == 2
    assert scheduler.cycles == 2
    assert "Ping failed: ValueError: classifier exploded" in captured_sink.stderr.getvalue()
    assert "OK: PostgreSQL 16.2" in captured_sink.stdout.getvalue()


def test_sleep_is_zero_when_probe_overruns_interval(run_config, params, captured_sink) -> None:
    clock = FakeClock()
    executor = ScriptedExecutor([], clock=clock, cost=25.0)
    scheduler = _scheduler(
        RecordingScheduler,
        run_config,
        ScheduleParameters(interval_seconds=10),
        params,
        captured_sink,
        executor,
        clock=clock,
    )
    scheduler.run_forever()
    assert scheduler.sleeps == [0.0]


def test_cancellation_during_probe_stops_cleanly(run_config, schedule, params, captured_sink) -> None:
    executor = ScriptedExecutor([ProbeCancelled("shutdown")])
    scheduler = _scheduler(PingScheduler, run_config, schedule, params, captured_sink, executor)

    assert scheduler.run_forever() == 0
    assert scheduler.state is SchedulerState.STOPPED
    assert "Pinger stopped." in captured_sink.stdout.getvalue()
    assert captured_sink.stderr.getvalue() == ""


def test_shutdown_during_sleep_exits_promptly(run_config, params, captured_sink) -> None:
    stop_event = threading.Event()
    scheduler = _scheduler(
        PingScheduler,
        run_config,
        ScheduleParameters(interval_seconds=3600),
        params,
        captured_sink,
        ScriptedExecutor([]),
        stop_event=stop_event,
    )
    timer = threading.Timer(0.2, scheduler.stop)
    started = time.monotonic()
    timer.start()
    try:
        status = scheduler.run_forever()
    finally:
        timer.cancel()

    assert status == 0
    assert time.monotonic() - started < 5
    assert scheduler.cycles == 1
    assert scheduler.state is SchedulerState.STOPPED
    assert captured_sink.stdout.getvalue().rstrip().endswith("Pinger stopped.")


def test_stop_before_start_runs_no_probe(run_config, schedule, params, captured_sink) -> None:
    stop_event = threading.Event()
    stop_event.set()
    executor = ScriptedExecutor([])
    scheduler = _scheduler(
        PingScheduler, run_config, schedule, params, captured_sink, executor, stop_event=stop_event
    )
    assert scheduler.run_forever() == 0
    assert executor.calls == 0
