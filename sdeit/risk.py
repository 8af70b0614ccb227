# FILE: sdeit/risk.py
from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Dict, Iterable, Mapping, Optional, Tuple

from .ledger import ExposureLedger
from .schemas import AlertState, PeerId
from .utils import clamp01, combine_independent
from .verify import KnownInfectionRiskTable


def contact_contributions(
    exposures: Iterable[Tuple[PeerId, float]],
    known_risks: Mapping[PeerId, float],
) -> Dict[PeerId, float]:
    """
    Per-contact transmission probability risk(peer) * tlot(peer), for the
    contacts with a nonzero known risk.
    """
    out: Dict[PeerId, float] = {}
    for peer_id, tlot in exposures:
        peer_risk = known_risks.get(peer_id, 0.0)
        if peer_risk > 0.0:
            out[peer_id] = clamp01(peer_risk * tlot)
    return out


def compute_personal_risk(
    exposures: Iterable[Tuple[PeerId, float]],
    known_risks: Mapping[PeerId, float],
    covered: Optional[Mapping[PeerId, float]] = None,
) -> float:
    """
    Probability that at least one contact transmitted an infection.

    Each contact contributes risk(peer) * tlot(peer), composed as independent
    events. The composition is commutative, so iteration order does not
    matter beyond floating-point rounding.

    `covered` holds, per peer, the contribution already ruled out by a
    negative test. Only the part of a contribution p beyond its covered
    value c counts: p = 1 - (1 - c) * (1 - excess).
    """
    covered = covered or {}
    my_risk = 0.0
    for peer_id, p in contact_contributions(exposures, known_risks).items():
        c = covered.get(peer_id, 0.0)
        if c > 0.0:
            p = 0.0 if c >= 1.0 else clamp01((p - c) / (1.0 - c))
        my_risk = combine_independent(my_risk, p)
    return clamp01(my_risk)


def derive_alert_state(
    my_risk: float,
    sum_of_tlot_increase_today: float,
    daily_allowance: float,
    has_nearby_peers: bool,
    *,
    test_threshold: float,
) -> AlertState:
    """
    Map risk and allowance usage to an alert state.

    The test recommendation takes priority over every allowance state.
    """
    if my_risk >= test_threshold:
        return AlertState.TEST_RECOMMENDED
    if sum_of_tlot_increase_today > daily_allowance:
        return AlertState.ALLOWANCE_EXCEEDED
    if sum_of_tlot_increase_today > daily_allowance / 2.0:
        return (
            AlertState.ALLOWANCE_WARNING_NEARBY
            if has_nearby_peers
            else AlertState.ALLOWANCE_WARNING_IDLE
        )
    return AlertState.NOMINAL_NEARBY if has_nearby_peers else AlertState.NOMINAL_IDLE


@dataclass(frozen=True)
class Transition:
    previous: AlertState
    current: AlertState

    @property
    def changed(self) -> bool:
        return self.previous is not self.current


class AlertStateMachine:
    """
    Holds the current alert state.

    TEST_RECOMMENDED is sticky: once entered, derived states are ignored until
    clear_test_recommendation() is called (a verified negative-test signal
    for this device's own identifier).
    """

    def __init__(self, initial: AlertState = AlertState.NOMINAL_IDLE):
        self._state = initial
        self._lock = threading.Lock()

    @property
    def state(self) -> AlertState:
        return self._state

    def advance(self, derived: AlertState) -> Transition:
        with self._lock:
            prev = self._state
            if prev.is_sticky:
                return Transition(prev, prev)
            self._state = derived
            return Transition(prev, derived)

    def clear_test_recommendation(self, fallback: AlertState) -> Transition:
        with self._lock:
            prev = self._state
            if not prev.is_sticky:
                return Transition(prev, prev)
            # a sticky fallback would just re-enter the state we are leaving
            self._state = AlertState.NOMINAL_IDLE if fallback.is_sticky else fallback
            return Transition(prev, self._state)


class RiskPropagator:
    """
    Reads the exposure ledger and the known infection risk table to produce
    the personal risk estimate and the derived alert state.
    """

    def __init__(
        self,
        ledger: ExposureLedger,
        known_risks: KnownInfectionRiskTable,
        *,
        test_threshold: float,
    ):
        if not (0.0 < test_threshold <= 1.0):
            raise ValueError("test_threshold must be in (0, 1]")
        self._ledger = ledger
        self._known = known_risks
        self.test_threshold = float(test_threshold)

    def compute_personal_risk(self, covered: Optional[Mapping[PeerId, float]] = None) -> float:
        return compute_personal_risk(self._ledger.tlot_items(), self._known.view(), covered)

    def contact_contributions(self) -> Dict[PeerId, float]:
        return contact_contributions(self._ledger.tlot_items(), self._known.view())

    def derive_alert_state(
        self,
        my_risk: float,
        sum_of_tlot_increase_today: float,
        daily_allowance: float,
        has_nearby_peers: bool,
    ) -> AlertState:
        return derive_alert_state(
            my_risk,
            sum_of_tlot_increase_today,
            daily_allowance,
            has_nearby_peers,
            test_threshold=self.test_threshold,
        )
