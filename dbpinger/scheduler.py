"""Scheduler loop that probes the database at a fixed interval until stopped."""

from __future__ import annotations

import enum
import threading
import time
from typing import Callable

from dbpinger.classifier import Verdict, classify
from dbpinger.config import RunConfig, ScheduleParameters
from dbpinger.db.connection import (
    ConnectionParameters,
    probe_deadline_seconds,
    tls_mode_recognized,
)
from dbpinger.logsink import LogSink
from dbpinger.probe import ProbeCancelled, ProbeExecutor, ProbeFailure, ProbeOutcome

__all__ = ["PingScheduler", "SchedulerState"]

EMPTY_VERSION_LABEL = "<empty>"


class SchedulerState(str, enum.Enum):
    """Lifecycle states of the scheduler loop."""

    STARTING = "starting"
    WAITING = "waiting"
    PROBING = "probing"
    SLEEPING = "sleeping"
    STOPPING = "stopping"
    STOPPED = "stopped"


class PingScheduler:
    """Drive the probe executor every ``interval_seconds`` until shutdown."""

    def __init__(
        self,
        *,
        run_config: RunConfig,
        schedule: ScheduleParameters,
        params: ConnectionParameters,
        sink: LogSink,
        stop_event: threading.Event | None = None,
        executor: ProbeExecutor | None = None,
        max_cycles: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.run_config = run_config
        self.schedule = schedule
        self.params = params
        self.sink = sink
        self.log = sink.bind(module="scheduler")
        self.stop_event = stop_event if stop_event is not None else threading.Event()
        self.executor = executor or ProbeExecutor(log=sink.bind(module="probe"))
        self.max_cycles = max_cycles if max_cycles is None else max(1, int(max_cycles))
        self.clock = clock
        self.deadline_seconds = probe_deadline_seconds(run_config)
        self.state = SchedulerState.STARTING
        self.cycles = 0

    # Public API ------------------------------------------------------------

    def run_forever(self) -> int:
        """Run cycles until the stop event is set; return the exit status."""

        self._log_startup()
        while not self.stop_event.is_set():
            self.state = SchedulerState.WAITING
            started = self.clock()
            try:
                self.tick()
            except ProbeCancelled:
                break

            self.cycles += 1
            if self.max_cycles is not None and self.cycles >= self.max_cycles:
                break

            elapsed = self.clock() - started
            delay = max(0.0, self.schedule.interval_seconds - elapsed)
            self.state = SchedulerState.SLEEPING
            if self._sleep(delay):
                break

        self.state = SchedulerState.STOPPING
        self.log.info("Pinger stopped.")
        self.state = SchedulerState.STOPPED
        return 0

    def tick(self) -> ProbeOutcome | None:
        """Run one probe and log its result.

        Only :class:`ProbeCancelled` escapes; every other fault is logged and
        swallowed at this boundary so the next cycle still runs.
        """

        self.state = SchedulerState.PROBING
        try:
            outcome = self.executor.execute(
                self.params,
                deadline_seconds=self.deadline_seconds,
                stop_event=self.stop_event,
            )
            self.report(outcome)
        except ProbeCancelled:
            raise
        except Exception as exc:
            self.log.opt(exception=exc).error("Ping failed: {}: {}", type(exc).__name__, exc)
            return None
        return outcome

    def report(self, outcome: ProbeOutcome) -> Verdict | None:
        if isinstance(outcome, ProbeFailure):
            self.log.error("Ping failed: {}: {}", outcome.kind.value, outcome.message)
            return None

        verdict = classify(outcome.version, self.run_config.expected_product)
        if verdict is Verdict.TYPICAL:
            self.log.info("OK: {}", outcome.version)
        else:
            label = EMPTY_VERSION_LABEL if verdict is Verdict.EMPTY else outcome.version
            self.log.warning("ATYPICAL VERSION: {}", label)
        self.log.debug("Probe took {:.3f}s verdict={}", outcome.duration_seconds, verdict.value)
        return verdict

    def stop(self) -> None:
        """Signal the loop to exit."""
        self.stop_event.set()

    # Internal helpers ------------------------------------------------------

    def _sleep(self, delay: float) -> bool:
        """Wait ``delay`` seconds; return True when shutdown was requested."""
        return self.stop_event.wait(delay)

    def _log_startup(self) -> None:
        cfg = self.run_config
        self.log.info(
            "Pinger started. host={}:{} database={} tls={} interval={}s",
            cfg.host,
            cfg.port,
            cfg.database,
            cfg.tls_mode,
            self.schedule.interval_seconds,
        )
        if not tls_mode_recognized(cfg.tls_mode):
            self.log.warning(
                "Unrecognised TLS mode {!r}; connecting with sslmode={}",
                cfg.tls_mode,
                self.params.tls_mode.value,
            )

