"""Command-line entrypoint for the database pinger.

Exit codes:

- ``0``: clean shutdown (signal, or ``--once`` finished).
- ``1``: unhandled fault.
- ``2``: configuration or credential validation failed at startup.
"""

from __future__ import annotations

import argparse
import signal
import threading
from pathlib import Path
from typing import Sequence, TextIO

from loguru import logger
from rich.console import Console
from rich.table import Table

from dbpinger.config import (
    ConfigurationError,
    ResolvedSettings,
    Settings,
    get_settings,
    load_file_defaults,
    resolve,
)
from dbpinger.db.connection import build_connection_parameters, probe_deadline_seconds
from dbpinger.logsink import LogSink
from dbpinger.probe import ProbeExecutor
from dbpinger.scheduler import PingScheduler

__all__ = ["EXIT_CONFIG_ERROR", "EXIT_FAULT", "EXIT_OK", "main", "run"]

EXIT_OK = 0
EXIT_FAULT = 1
EXIT_CONFIG_ERROR = 2

console = Console()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dbpinger",
        description="Periodically check that a PostgreSQL database answers with a typical version string.",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to the JSON config file (default: $PINGER_CONFIG_FILE or appsettings.json).",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single probe and exit.",
    )
    parser.add_argument(
        "--show-config",
        action="store_true",
        help="Print the resolved configuration (without secrets) and exit.",
    )
    return parser


def _install_signal_handlers(stop_event: threading.Event) -> None:
    """Install SIGINT/SIGTERM handlers that request a graceful shutdown."""

    def _handle_signal(_signum: int, _frame: object) -> None:
        stop_event.set()

    signal.signal(signal.SIGINT, _handle_signal)
    sigterm = getattr(signal, "SIGTERM", None)
    if sigterm is not None:
        signal.signal(sigterm, _handle_signal)


def _render_config(resolved: ResolvedSettings, *, out: Console) -> None:
    cfg = resolved.run_config
    table = Table(title="dbpinger configuration")
    table.add_column("setting", style="bold")
    table.add_column("value")
    rows = [
        ("host", cfg.host),
        ("port", str(cfg.port)),
        ("database", cfg.database),
        ("tls_mode", cfg.tls_mode),
        ("connect_timeout_seconds", str(cfg.connect_timeout_seconds)),
        ("command_timeout_seconds", str(cfg.command_timeout_seconds)),
        ("probe_deadline_seconds", str(probe_deadline_seconds(cfg))),
        ("expected_product", cfg.expected_product),
        ("db_user", resolved.credentials.username),
        ("interval_seconds", str(resolved.schedule.interval_seconds)),
        ("log_file", str(resolved.schedule.log_file or "-")),
    ]
    for name, value in rows:
        table.add_row(name, value)
    out.print(table)


def run(
    args: argparse.Namespace,
    *,
    settings: Settings,
    stop_event: threading.Event,
    executor: ProbeExecutor | None = None,
    stdout: TextIO | None = None,
    stderr: TextIO | None = None,
    out: Console | None = None,
) -> int:
    """Resolve configuration, then run the scheduler until ``stop_event`` is set."""

    sink: LogSink | None = None
    try:
        try:
            sink = _open_sink(settings, stdout=stdout, stderr=stderr)
            file_defaults = load_file_defaults(args.config or settings.config_file)
            resolved = resolve(file_defaults, settings)

            if args.show_config:
                _render_config(resolved, out=out or console)
                return EXIT_OK

            # Swap in the duplicating sink only once it has opened successfully.
            file_sink = _open_sink(
                settings,
                duplicate_path=resolved.schedule.log_file,
                stdout=stdout,
                stderr=stderr,
            )
            sink.close()
            sink = file_sink
        except ConfigurationError as exc:
            _report(sink, stdout, stderr, "Configuration error: {}", exc)
            return EXIT_CONFIG_ERROR

        sink.route_stdlib_logging()
        params = build_connection_parameters(resolved.run_config, resolved.credentials)
        if executor is None:
            executor = ProbeExecutor(log=sink.bind(module="probe"))
        scheduler = PingScheduler(
            run_config=resolved.run_config,
            schedule=resolved.schedule,
            params=params,
            sink=sink,
            stop_event=stop_event,
            executor=executor,
            max_cycles=1 if args.once else None,
        )
        return scheduler.run_forever()
    except Exception as exc:
        _report(sink, stdout, stderr, "Fatal error: {}: {}", type(exc).__name__, exc, exception=exc)
        return EXIT_FAULT
    finally:
        if sink is not None:
            sink.close()


def _open_sink(
    settings: Settings,
    *,
    duplicate_path: Path | None = None,
    stdout: TextIO | None = None,
    stderr: TextIO | None = None,
) -> LogSink:
    """Open a sink for ``settings``; logging setup failures are configuration errors."""

    sink = LogSink(level=settings.log_level, duplicate_path=duplicate_path, stdout=stdout, stderr=stderr)
    try:
        return sink.open()
    except (OSError, ValueError) as exc:
        raise ConfigurationError(f"Cannot initialise logging: {exc}") from exc


def _report(
    sink: LogSink | None,
    stdout: TextIO | None,
    stderr: TextIO | None,
    message: str,
    *args: object,
    exception: BaseException | None = None,
) -> None:
    """Log an error through ``sink``, or a plain console sink when none is open."""

    if sink is not None:
        sink.bind(module="cli").opt(exception=exception).error(message, *args)
        return
    with LogSink(level="INFO", stdout=stdout, stderr=stderr) as fallback:
        fallback.bind(module="cli").opt(exception=exception).error(message, *args)


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entrypoint."""

    args = build_parser().parse_args(argv)
    # Handlers are owned by LogSink; drop loguru's default stderr handler.
    logger.remove()
    stop_event = threading.Event()
    _install_signal_handlers(stop_event)
    try:
        settings = get_settings()
    except Exception as exc:
        _report(None, None, None, "Configuration error: {}", exc)
        return EXIT_CONFIG_ERROR
    return run(args, settings=settings, stop_event=stop_event)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
