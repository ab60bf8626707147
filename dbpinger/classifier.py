"""Classify the server version string returned by a probe."""

from __future__ import annotations

import enum
import re
from functools import lru_cache

__all__ = ["DEFAULT_PRODUCT", "Verdict", "classify"]

DEFAULT_PRODUCT = "PostgreSQL"


class Verdict(str, enum.Enum):
    """Possible classifications of a version string."""

    TYPICAL = "typical"
    ATYPICAL = "atypical"
    EMPTY = "empty"


@lru_cache(maxsize=8)
def _typical_pattern(product: str) -> re.Pattern[str]:
    return re.compile(rf"^{re.escape(product)}\s+\d+(\.\d+)?")


def classify(text: str | None, product: str = DEFAULT_PRODUCT) -> Verdict:
    """Return the verdict for ``text``.

    ``TYPICAL`` means the string starts with the product name, whitespace and
    a ``major[.minor]`` version. Anything after the version is ignored.
    """
    if text is None or not text.strip():
        return Verdict.EMPTY
    if _typical_pattern(product).match(text):
        return Verdict.TYPICAL
    return Verdict.ATYPICAL
