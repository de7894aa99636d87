"""Missing-value helpers.

Error-magnitude figures are legitimately absent in fast triage runs and are
carried as NaN in memory. JSON has no NaN, so serialization writes them as
null; every load path routes them back through ``nan_safe`` before any
arithmetic runs.
"""

from __future__ import annotations

import math
from typing import Any


def nan_safe(value: Any) -> float:
    """Coerce a possibly-null serialized number to float, NaN when missing."""
    if value is None or isinstance(value, bool):
        return math.nan
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return math.nan
    return math.nan


def is_missing(value: Any) -> bool:
    """True for None and NaN."""
    if value is None:
        return True
    try:
        return math.isnan(value)
    except TypeError:
        return False


def format_number(value: float, digits: int = 1, suffix: str = "") -> str:
    if is_missing(value):
        return "N/A"
    return f"{value:.{digits}f}{suffix}"
