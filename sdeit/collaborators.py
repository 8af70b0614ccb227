# FILE: sdeit/collaborators.py
from __future__ import annotations

import datetime as _dt
import logging
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

from .schemas import AlertState, DeltaMessage

logger = logging.getLogger(__name__)


class ProximityScanner(Protocol):
    """Supplies peer id -> distance (meters) for one scan cycle; may be empty."""

    def scan(self) -> Mapping[Any, float]:
        ...


class DeltaSource(Protocol):
    """
    Supplies authority deltas newer than `older_than` (None: everything).

    Best-effort: may return nothing, or messages that were already applied.
    """

    def fetch(self, older_than: Optional[_dt.datetime]) -> Sequence[DeltaMessage]:
        ...


class AlertSink(Protocol):
    """Renders the alert state; called only when the state changes."""

    def emit(self, state: AlertState) -> None:
        ...


class NullScanner:
    def scan(self) -> Mapping[Any, float]:
        return {}


class StaticScanner:
    """Replays a fixed sequence of scan results, then reports nothing nearby."""

    def __init__(self, cycles: Sequence[Mapping[Any, float]]):
        self._cycles: List[Dict[Any, float]] = [dict(c) for c in cycles]

    def scan(self) -> Mapping[Any, float]:
        if not self._cycles:
            return {}
        return self._cycles.pop(0)


class NullDeltaSource:
    def fetch(self, older_than: Optional[_dt.datetime]) -> Sequence[DeltaMessage]:
        return []


class LoggingAlertSink:
    """Stand-in for the display driver: logs each new state and its diode colour."""

    def __init__(self, log: Optional[logging.Logger] = None):
        self._log = log or logger

    def emit(self, state: AlertState) -> None:
        self._log.info(
            "alert state changed",
            extra={"alert_state": state.value, "indicator": state.indicator.value},
        )
