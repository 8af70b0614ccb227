# FILE: sdeit/ledger.py
"""
Exposure ledger: per-peer cumulative transmission likelihood (TLOT).

Each proximity observation adds an exponentially distance-decayed increment,
composed as an independent event:

    increment = base_rate * 2 ** (-distance / half_life)
    new_tlot  = tlot + (1 - tlot) * increment

so repeated exposures saturate toward 1 and never exceed it.

Notes:
  - This module stores state only; it does not know about infection risks.
  - Callers serialize mutations (the engine holds one lock across tables);
    the ledger keeps its own lock so direct use stays safe too.
"""

from __future__ import annotations

import datetime as _dt
import math
import threading
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .schemas import InputContractViolation, PeerId, parse_peer_id
from .utils import as_date, combine_independent


@dataclass(frozen=True)
class ExposureRecord:
    tlot: float
    last_contact: _dt.date


class ExposureLedger:
    def __init__(self, *, base_rate: float = 0.062, half_life_meters: float = 1.0):
        if not (0.0 <= base_rate <= 1.0):
            raise ValueError("base_rate must be in [0, 1]")
        if not (half_life_meters > 0.0 and math.isfinite(half_life_meters)):
            raise ValueError("half_life_meters must be positive")
        self.base_rate = float(base_rate)
        self.half_life_meters = float(half_life_meters)
        self._records: Dict[PeerId, ExposureRecord] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Exposure math
    # ------------------------------------------------------------------

    def exposure_increment(self, distance_meters: float) -> float:
        """
        TLOT accrued over one scan period at the given distance.
        """
        if isinstance(distance_meters, bool) or not isinstance(distance_meters, (int, float)):
            raise InputContractViolation(
                f"distance must be a number, got {type(distance_meters).__name__}"
            )
        d = float(distance_meters)
        if not math.isfinite(d) or d < 0.0:
            raise InputContractViolation(f"distance must be finite and >= 0, got {d!r}")
        return self.base_rate * math.pow(2.0, -(d / self.half_life_meters))

    def record_observation(self, peer_id: Any, distance_meters: float, now: Any) -> float:
        """
        Fold one observation into the peer's TLOT and return the increase.
        """
        pid = parse_peer_id(peer_id)
        increment = self.exposure_increment(distance_meters)
        day = as_date(now)

        with self._lock:
            rec = self._records.get(pid)
            existing = rec.tlot if rec is not None else 0.0
            new_tlot = min(1.0, combine_independent(existing, increment))
            self._records[pid] = ExposureRecord(tlot=new_tlot, last_contact=day)
        return new_tlot - existing

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def remove_last_contact_before(self, cutoff: _dt.date) -> List[PeerId]:
        """
        Drop every record whose last contact is strictly before `cutoff`.
        Returns the removed peer ids.
        """
        with self._lock:
            stale = [pid for pid, rec in self._records.items() if rec.last_contact < cutoff]
            for pid in stale:
                del self._records[pid]
        return stale

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, peer_id: Any) -> Optional[ExposureRecord]:
        with self._lock:
            return self._records.get(parse_peer_id(peer_id))

    def tlot_items(self) -> List[Tuple[PeerId, float]]:
        with self._lock:
            return [(pid, rec.tlot) for pid, rec in self._records.items()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, peer_id: object) -> bool:
        try:
            pid = parse_peer_id(peer_id)
        except InputContractViolation:
            return False
        with self._lock:
            return pid in self._records

    def __iter__(self) -> Iterator[PeerId]:
        with self._lock:
            return iter(list(self._records.keys()))

    # ------------------------------------------------------------------
    # Snapshot support
    # ------------------------------------------------------------------

    def export(self) -> Tuple[Dict[PeerId, float], Dict[PeerId, _dt.date]]:
        with self._lock:
            return (
                {pid: rec.tlot for pid, rec in self._records.items()},
                {pid: rec.last_contact for pid, rec in self._records.items()},
            )

    def load(self, tlot: Dict[PeerId, float], last_contact: Dict[PeerId, _dt.date]) -> None:
        """
        Replace the ledger contents. Every TLOT entry needs a last-contact date.
        """
        missing = set(tlot) - set(last_contact)
        if missing:
            raise ValueError(f"{len(missing)} exposure entries have no last_contact")
        records = {}
        for pid, value in tlot.items():
            if not (0.0 <= value <= 1.0):
                raise ValueError("tlot outside [0, 1]")
            records[parse_peer_id(pid)] = ExposureRecord(
                tlot=float(value), last_contact=as_date(last_contact[pid])
            )
        with self._lock:
            self._records = records
