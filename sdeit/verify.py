# FILE: sdeit/verify.py
"""
Authenticated ingestion of authority delta batches.

A batch goes through three phases, in this order:

  1. well-formedness checks on every message;
  2. digest recomputation and Ed25519 verification of every message,
     including messages that are already older than the high-water mark;
  3. ordered, copy-on-write application of the messages newer than the
     high-water mark.

Any failure in phases 1-2 rejects the whole batch before a single field
touches state. Phase 3 builds the new table aside and publishes it with one
reference swap, so readers observe either the old or the new table.
"""

from __future__ import annotations

import datetime as _dt
import logging
import threading
import types
import uuid
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple

from .crypto import ED25519_SIGNATURE_LEN, AuthorityVerifier
from .kv import delta_digest
from .logging import log_security_event
from .schemas import DeltaMessage, PeerId, SdeitError
from .utils import ensure_utc, is_finite_number

logger = logging.getLogger(__name__)


class VerificationError(SdeitError):
    """
    A delta batch was rejected. `reason` is one of "malformed" or
    "signature_mismatch"; `index` is the offending message's position in
    the submitted batch.
    """

    def __init__(self, message: str, *, reason: str, index: Optional[int] = None):
        super().__init__(message)
        self.reason = reason
        self.index = index


# ---------------------------------------------------------------------------
# Known infection risk table
# ---------------------------------------------------------------------------


class KnownInfectionRiskTable:
    """
    PeerId -> authority-reported infection risk in (0, 1].

    Readers get an immutable view of the current table; writers publish a
    whole new table at once.
    """

    def __init__(self, initial: Optional[Mapping[PeerId, float]] = None):
        self._lock = threading.Lock()
        self._view: Mapping[PeerId, float] = types.MappingProxyType(dict(initial or {}))

    def view(self) -> Mapping[PeerId, float]:
        return self._view

    def get(self, peer_id: PeerId, default: float = 0.0) -> float:
        return self._view.get(peer_id, default)

    def __len__(self) -> int:
        return len(self._view)

    def __contains__(self, peer_id: object) -> bool:
        return peer_id in self._view

    def publish(self, table: Dict[PeerId, float]) -> None:
        with self._lock:
            self._view = types.MappingProxyType(table)


# ---------------------------------------------------------------------------
# Merge result
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MergeResult:
    applied_count: int
    skipped_count: int
    high_water_mark: Optional[_dt.datetime]
    daily_tlot_increase_allowance: float
    # peers whose final applied update in this batch was exactly 0
    cleared: FrozenSet[PeerId] = field(default_factory=frozenset)


# ---------------------------------------------------------------------------
# Verifier / merger
# ---------------------------------------------------------------------------


def _signed_instant(ts: _dt.datetime) -> _dt.datetime:
    # the signature covers whole epoch seconds only; a sub-second part is
    # unauthenticated and must not move a message past the high-water mark
    return ensure_utc(ts).replace(microsecond=0)


def _check_well_formed(msg: DeltaMessage, index: int) -> None:
    def bad(why: str) -> VerificationError:
        return VerificationError(
            f"delta #{index} malformed: {why}", reason="malformed", index=index
        )

    if not isinstance(msg, DeltaMessage):
        raise bad(f"expected DeltaMessage, got {type(msg).__name__}")
    if not isinstance(msg.signature, (bytes, bytearray)) or len(msg.signature) != ED25519_SIGNATURE_LEN:
        raise bad("signature must be 64 bytes")
    if not isinstance(msg.timestamp, _dt.datetime):
        raise bad("timestamp must be a datetime")
    allowance = msg.daily_tlot_increase_allowance
    if not is_finite_number(allowance) or allowance < 0:
        raise bad("allowance must be a finite non-negative number")
    for peer_id, risk in msg.risk_updates.items():
        if not isinstance(peer_id, uuid.UUID):
            raise bad("risk update keys must be UUIDs")
        if not is_finite_number(risk) or not (0.0 <= risk <= 1.0):
            raise bad("risk values must be finite and within [0, 1]")


class DeltaVerifier:
    """
    Verifies and merges authority delta batches into a KnownInfectionRiskTable.

    Owns the high-water mark and the current daily TLOT increase allowance.
    """

    def __init__(
        self,
        verifier: AuthorityVerifier,
        table: Optional[KnownInfectionRiskTable] = None,
        *,
        initial_allowance: float = 1.0,
        high_water_mark: Optional[_dt.datetime] = None,
    ):
        self._verifier = verifier
        self.table = table if table is not None else KnownInfectionRiskTable()
        self._allowance = float(initial_allowance)
        self._hwm: Optional[_dt.datetime] = _signed_instant(high_water_mark) if high_water_mark else None
        self._lock = threading.RLock()

    @property
    def key_id(self) -> str:
        return self._verifier.key_id

    @property
    def high_water_mark(self) -> Optional[_dt.datetime]:
        return self._hwm

    @property
    def daily_tlot_increase_allowance(self) -> float:
        return self._allowance

    def restore(
        self,
        *,
        table: Mapping[PeerId, float],
        allowance: float,
        high_water_mark: Optional[_dt.datetime],
    ) -> None:
        with self._lock:
            self.table.publish({pid: float(r) for pid, r in table.items() if r != 0.0})
            self._allowance = float(allowance)
            self._hwm = _signed_instant(high_water_mark) if high_water_mark else None

    def verify_batch(self, deltas: Sequence[DeltaMessage]) -> None:
        """
        Check every message in the batch; raise VerificationError on the first
        failure. Does not touch state.
        """
        for index, msg in enumerate(deltas):
            _check_well_formed(msg, index)
        for index, msg in enumerate(deltas):
            digest = delta_digest(
                timestamp=msg.timestamp,
                daily_tlot_increase_allowance=msg.daily_tlot_increase_allowance,
                risk_updates=msg.risk_updates,
            )
            if not self._verifier.verify_digest(digest, msg.signature):
                raise VerificationError(
                    f"delta #{index} signature does not match authority key",
                    reason="signature_mismatch",
                    index=index,
                )

    def verify_and_merge(self, deltas: Iterable[DeltaMessage]) -> MergeResult:
        """
        Authenticate a batch and apply it atomically.

        Messages at or below the high-water mark are verified but skipped, so
        re-delivering a batch is safe. Raises VerificationError with no state
        change if any message is malformed or fails verification.
        """
        batch: List[DeltaMessage] = list(deltas)

        with self._lock:
            try:
                self.verify_batch(batch)
            except VerificationError as e:
                log_security_event(
                    logger,
                    threat_label="delta_rejected",
                    reason=e.reason,
                    key_id=self.key_id,
                    message="authority delta batch rejected",
                    extra={"batch_size": len(batch), "index": e.index},
                )
                raise

            prev_hwm = self._hwm
            # stable: ties keep arrival order
            ordered: List[Tuple[_dt.datetime, DeltaMessage]] = sorted(
                ((_signed_instant(m.timestamp), m) for m in batch), key=lambda p: p[0]
            )

            table = dict(self.table.view())
            allowance = self._allowance
            applied = 0
            last_update: Dict[PeerId, float] = {}
            for ts, msg in ordered:
                if prev_hwm is not None and ts <= prev_hwm:
                    continue
                allowance = float(msg.daily_tlot_increase_allowance)
                for peer_id, risk in msg.risk_updates.items():
                    risk_f = float(risk)
                    if risk_f == 0.0:
                        # infectious window fully elapsed for this carrier
                        table.pop(peer_id, None)
                    else:
                        table[peer_id] = risk_f
                    last_update[peer_id] = risk_f
                applied += 1

            new_hwm = prev_hwm
            if ordered:
                batch_max = ordered[-1][0]
                if new_hwm is None or batch_max > new_hwm:
                    new_hwm = batch_max

            if applied:
                self.table.publish(table)
                self._allowance = allowance
            self._hwm = new_hwm

        cleared = frozenset(pid for pid, r in last_update.items() if r == 0.0)
        if batch:
            logger.info(
                "authority delta batch merged",
                extra={
                    "batch_size": len(batch),
                    "applied": applied,
                    "skipped": len(batch) - applied,
                    "known_risks": len(self.table),
                    "key_id": self.key_id,
                },
            )
        return MergeResult(
            applied_count=applied,
            skipped_count=len(batch) - applied,
            high_water_mark=new_hwm,
            daily_tlot_increase_allowance=allowance,
            cleared=cleared,
        )
