# FILE: sdeit/utils.py
from __future__ import annotations

import datetime as _dt
import math
from typing import Any

import blake3

# ---------------------------------------------------------------------------
# Numeric helpers
# ---------------------------------------------------------------------------


def is_finite_number(value: Any) -> bool:
    """
    Return True if `value` is an int/float (not bool) and is finite.

    This is a small helper used by other validators; it never raises.
    """
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        try:
            return math.isfinite(float(value))
        except (OverflowError, ValueError):
            return False
    return False


def clamp01(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


def combine_independent(accumulated: float, probability: float) -> float:
    """
    Fold one more independent event into an accumulated probability.

    acc' = acc + (1 - acc) * p

    For acc and p in [0, 1] the result stays in [acc, 1].
    """
    non_event = 1.0 - accumulated
    return accumulated + non_event * probability


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------


def ensure_utc(ts: _dt.datetime) -> _dt.datetime:
    """
    Normalize a datetime to an aware UTC value.

    Naive values are interpreted as UTC wall time (authority timestamps are
    issued in UTC).
    """
    if ts.tzinfo is None:
        return ts.replace(tzinfo=_dt.timezone.utc)
    return ts.astimezone(_dt.timezone.utc)


def epoch_seconds(ts: _dt.datetime) -> int:
    return int(ensure_utc(ts).timestamp())


def as_date(value: Any) -> _dt.date:
    if isinstance(value, _dt.datetime):
        return value.date()
    if isinstance(value, _dt.date):
        return value
    raise TypeError(f"expected date or datetime, got {type(value).__name__}")


# ---------------------------------------------------------------------------
# Identifier tags for logs
# ---------------------------------------------------------------------------


def short_tag(data: bytes, *, label: str = "peer") -> str:
    """
    Non-reversible short tag for an identifier, safe to put in logs.
    """
    digest = blake3.blake3(b"sdeit:tag:" + label.encode("utf-8") + b"|" + data).hexdigest()
    return f"{label}-h-{digest[:12]}"
