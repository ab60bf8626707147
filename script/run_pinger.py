from __future__ import annotations

"""Entry script for running the database pinger from a source checkout.

This is a thin wrapper around ``dbpinger.cli`` that delegates CLI parsing,
logging setup and control flow to ``dbpinger.cli.main``.

Usage (with uv):

    uv run python script/run_pinger.py            # continuous loop
    uv run python script/run_pinger.py -- --once # single probe then exit
"""

import sys
from pathlib import Path
from typing import Sequence

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from dbpinger.cli import main as pinger_main  # noqa: E402


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entrypoint for the pinger wrapper."""

    return int(pinger_main(argv))


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
