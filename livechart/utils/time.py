"""Time helper utilities."""
from __future__ import annotations

import math
from datetime import datetime
from typing import Any

import pandas as pd


def timestamp_to_seconds(value: Any) -> int:
    """Convert a backend ``timestamp`` field to integer epoch seconds.

    Numbers (and digit strings) are epoch milliseconds, the way a browser
    ``Date`` reads them. Strings are parsed as ISO-8601; naive values are
    taken as UTC. Raises ``ValueError`` when the value cannot be converted.
    """

    if value is None or isinstance(value, bool):
        raise ValueError(f"Unsupported timestamp: {value!r}")
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            raise ValueError(f"Unsupported timestamp: {value!r}")
        return int(value) // 1000
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip()) // 1000
    if isinstance(value, datetime):
        ts = pd.Timestamp(value)
    else:
        try:
            ts = pd.Timestamp(value)
        except (TypeError, ValueError, OverflowError) as exc:
            raise ValueError(f"Unsupported timestamp: {value!r}") from exc
    if ts is pd.NaT:
        raise ValueError(f"Unsupported timestamp: {value!r}")
    if ts.tzinfo is None:
        ts = ts.tz_localize("UTC")
    return int(ts.timestamp())
