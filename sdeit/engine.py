# FILE: sdeit/engine.py
"""
Exposure-risk engine: wires ledger, retention, risk propagation, delta
verification and alert state behind one lock.

Every mutating entry point (process_scan, expire_stale_contacts,
verify_and_merge) runs to completion under the engine lock; none of them
performs I/O. The tick_* methods pull data from the collaborators and
feed it to those entry points, and are what the scheduler calls.
"""

from __future__ import annotations

import datetime as _dt
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

from .collaborators import (
    AlertSink,
    DeltaSource,
    LoggingAlertSink,
    NullDeltaSource,
    NullScanner,
    ProximityScanner,
)
from .config import ConfigurationError, Settings, load_settings
from .crypto import AuthorityVerifier, CryptoError
from .exporter import SdeitPrometheusExporter
from .logging import configure_json_logging
from .ledger import ExposureLedger
from .retention import RetentionManager
from .risk import AlertStateMachine, RiskPropagator, Transition
from .schemas import (
    AlertState,
    DeltaMessage,
    EngineSnapshot,
    InputContractViolation,
    PeerId,
    parse_peer_id,
)
from .utils import as_date, short_tag
from .verify import DeltaVerifier, MergeResult, VerificationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScanResult:
    recorded: int
    rejected: int
    tlot_increase: float
    personal_risk: float
    alert_state: AlertState


class SdeitEngine:
    def __init__(
        self,
        settings: Settings,
        *,
        scanner: Optional[ProximityScanner] = None,
        delta_source: Optional[DeltaSource] = None,
        alert_sink: Optional[AlertSink] = None,
        exporter: Optional[SdeitPrometheusExporter] = None,
        clock: Optional[Callable[[], _dt.datetime]] = None,
    ) -> None:
        settings.require_engine_ready()
        try:
            verifier = AuthorityVerifier.from_raw(settings.authority_public_key_hex)
        except CryptoError as e:
            raise ConfigurationError(f"invalid authority public key: {e}") from e

        self._own_peer_id: Optional[PeerId] = None
        if settings.own_peer_id:
            try:
                self._own_peer_id = parse_peer_id(settings.own_peer_id)
            except InputContractViolation as e:
                raise ConfigurationError(f"invalid own_peer_id: {e}") from e

        self.settings = settings
        self.scanner: ProximityScanner = scanner or NullScanner()
        self.delta_source: DeltaSource = delta_source or NullDeltaSource()
        self.alert_sink: AlertSink = alert_sink or LoggingAlertSink()
        self.exporter = exporter
        self._clock: Callable[[], _dt.datetime] = clock or _dt.datetime.now

        self.ledger = ExposureLedger(
            base_rate=settings.base_exposure_rate,
            half_life_meters=settings.half_life_distance_meters,
        )
        self.retention = RetentionManager(self.ledger, horizon_days=settings.retention_horizon_days)
        self.deltas = DeltaVerifier(
            verifier,
            initial_allowance=settings.initial_daily_tlot_increase_allowance,
        )
        self.propagator = RiskPropagator(
            self.ledger,
            self.deltas.table,
            test_threshold=float(settings.infection_risk_test_threshold),
        )
        self.alerts = AlertStateMachine()

        self._lock = threading.RLock()
        self._sum_today = 0.0
        self._period_date: Optional[_dt.date] = None
        self._last_nearby = False
        # per-peer contribution already ruled out by a negative test
        self._covered: Dict[PeerId, float] = {}

        logger.info(
            "engine configured",
            extra={
                "key_id": verifier.key_id,
                "config_hash": settings.config_hash()[:16],
                "own_peer": short_tag(self._own_peer_id.bytes) if self._own_peer_id else None,
            },
        )

    # ------------------------------------------------------------------
    # Read-only state
    # ------------------------------------------------------------------

    @property
    def own_peer_id(self) -> Optional[PeerId]:
        return self._own_peer_id

    @property
    def current_alert_state(self) -> AlertState:
        return self.alerts.state

    @property
    def sum_of_tlot_increase_today(self) -> float:
        with self._lock:
            self._roll_period(self._clock())
            return self._sum_today

    @property
    def daily_tlot_increase_allowance(self) -> float:
        return self.deltas.daily_tlot_increase_allowance

    @property
    def last_delta_update_timestamp(self) -> Optional[_dt.datetime]:
        return self.deltas.high_water_mark

    @property
    def known_infection_risk(self) -> Mapping[PeerId, float]:
        return self.deltas.table.view()

    @property
    def infection_risk_test_threshold(self) -> float:
        return self.propagator.test_threshold

    def compute_personal_risk(self) -> float:
        """
        Personal infection-risk estimate from all retained contacts.
        """
        return self.propagator.compute_personal_risk()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _effective_risk(self) -> float:
        # risk from evidence gathered after the last negative test
        return self.propagator.compute_personal_risk(self._covered)

    def _prune_covered(self) -> None:
        # a covered entry lives only as long as both the contact record and
        # the peer's known risk
        if not self._covered:
            return
        known = self.deltas.table.view()
        for pid in [p for p in self._covered if p not in known or p not in self.ledger]:
            del self._covered[pid]

    def _roll_period(self, now: Any) -> None:
        today = as_date(now)
        if self._period_date is None:
            self._period_date = today
            return
        # forward only; a clock stepping back does not open a new period
        if today > self._period_date:
            logger.info(
                "allowance period reset",
                extra={"previous_sum": round(self._sum_today, 6), "period": today.isoformat()},
            )
            self._sum_today = 0.0
            self._period_date = today

    def _emit(self, transition: Transition) -> None:
        if self.exporter is not None:
            self.exporter.record_alert(transition.current, changed=transition.changed)
        if not transition.changed:
            return
        logger.info(
            "alert state transition",
            extra={"from_state": transition.previous.value, "to_state": transition.current.value},
        )
        try:
            self.alert_sink.emit(transition.current)
        except Exception:
            logger.exception("alert sink failed to render state %s", transition.current.value)

    def _reevaluate(self, now: Any) -> AlertState:
        self._roll_period(now)
        self._prune_covered()
        total = self.compute_personal_risk()
        derived = self.propagator.derive_alert_state(
            self._effective_risk(),
            self._sum_today,
            self.deltas.daily_tlot_increase_allowance,
            self._last_nearby,
        )
        self._emit(self.alerts.advance(derived))
        if self.exporter is not None:
            self.exporter.record_risk(personal_risk=total, tlot_today=self._sum_today)
        return self.alerts.state

    # ------------------------------------------------------------------
    # Mutating operations
    # ------------------------------------------------------------------

    def record_observation(self, peer_id: Any, distance_meters: float, now: Optional[Any] = None) -> float:
        """
        Fold one observation into the ledger and the running daily total.
        Returns the TLOT increase.
        """
        now = now if now is not None else self._clock()
        with self._lock:
            self._roll_period(now)
            delta = self.ledger.record_observation(peer_id, distance_meters, now)
            self._sum_today += delta
            return delta

    def process_scan(self, observations: Mapping[Any, float], now: Optional[Any] = None) -> ScanResult:
        """
        Apply one scan cycle and re-derive the alert state.

        A malformed observation is rejected and logged; the rest of the cycle
        is still processed.
        """
        now = now if now is not None else self._clock()
        with self._lock:
            self._roll_period(now)
            recorded = rejected = 0
            increase = 0.0
            for raw_peer, distance in observations.items():
                try:
                    increase += self.ledger.record_observation(raw_peer, distance, now)
                    recorded += 1
                except InputContractViolation as e:
                    rejected += 1
                    logger.warning("observation rejected", extra={"reason": str(e)})
            self._sum_today += increase
            self._last_nearby = recorded > 0

            if self.exporter is not None:
                self.exporter.record_scan(
                    recorded=recorded, rejected=rejected, ledger_size=len(self.ledger)
                )
            state = self._reevaluate(now)
            return ScanResult(
                recorded=recorded,
                rejected=rejected,
                tlot_increase=increase,
                personal_risk=self.compute_personal_risk(),
                alert_state=state,
            )

    def expire_stale_contacts(self, now: Optional[Any] = None) -> int:
        now = now if now is not None else self._clock()
        with self._lock:
            removed = self.retention.expire_stale_contacts(now)
            self._prune_covered()
            if self.exporter is not None:
                self.exporter.record_expired(removed=removed, ledger_size=len(self.ledger))
            return removed

    def verify_and_merge(self, deltas: Iterable[DeltaMessage], now: Optional[Any] = None) -> MergeResult:
        """
        Authenticate and apply a batch of authority deltas.

        Raises VerificationError (after logging and counting it) if the batch
        is rejected; state is then unchanged.
        """
        now = now if now is not None else self._clock()
        with self._lock:
            self._roll_period(now)
            try:
                result = self.deltas.verify_and_merge(deltas)
            except VerificationError as e:
                if self.exporter is not None:
                    self.exporter.record_rejection(e.reason)
                raise

            if self.exporter is not None:
                hwm = result.high_water_mark
                self.exporter.record_merge(
                    applied=result.applied_count,
                    skipped=result.skipped_count,
                    known_risks=len(self.deltas.table),
                    allowance=result.daily_tlot_increase_allowance,
                    high_water_mark_s=hwm.timestamp() if hwm is not None else None,
                )

            if (
                self._own_peer_id is not None
                and self._own_peer_id in result.cleared
                and self.alerts.state.is_sticky
            ):
                self._covered = self.propagator.contact_contributions()
                fallback = self.propagator.derive_alert_state(
                    0.0,
                    self._sum_today,
                    self.deltas.daily_tlot_increase_allowance,
                    self._last_nearby,
                )
                logger.info("negative test signal received; clearing test recommendation")
                self._emit(self.alerts.clear_test_recommendation(fallback))
            elif result.applied_count:
                self._reevaluate(now)
            else:
                self._prune_covered()
            return result

    # ------------------------------------------------------------------
    # Tick entry points (scheduler)
    # ------------------------------------------------------------------

    def tick_scan(self) -> ScanResult:
        return self.process_scan(self.scanner.scan())

    def tick_cleanup(self) -> int:
        return self.expire_stale_contacts()

    def tick_fetch(self) -> Optional[MergeResult]:
        """
        Pull deltas newer than the high-water mark and merge them.

        A rejected batch has already been logged and counted; it is not
        retried here, the next fetch re-requests from the same mark.
        """
        deltas = self.delta_source.fetch(self.last_delta_update_timestamp)
        try:
            return self.verify_and_merge(deltas)
        except VerificationError as e:
            logger.warning("delta fetch yielded a rejected batch", extra={"reason": e.reason})
            return None

    # ------------------------------------------------------------------
    # Snapshot / restore (persistence is owned by the host)
    # ------------------------------------------------------------------

    def snapshot(self) -> EngineSnapshot:
        with self._lock:
            self._roll_period(self._clock())
            tlot, last_contact = self.ledger.export()
            return EngineSnapshot(
                exposure_tlot=tlot,
                last_contact=last_contact,
                known_infection_risk=dict(self.deltas.table.view()),
                last_delta_update_timestamp=self.deltas.high_water_mark,
                daily_tlot_increase_allowance=self.deltas.daily_tlot_increase_allowance,
                sum_of_tlot_increase_today=self._sum_today,
                period_date=self._period_date,
                alert_state=self.alerts.state,
                covered_contributions=dict(self._covered),
            )

    def restore(self, snapshot: EngineSnapshot) -> None:
        with self._lock:
            self.ledger.load(dict(snapshot.exposure_tlot), dict(snapshot.last_contact))
            self.deltas.restore(
                table=snapshot.known_infection_risk,
                allowance=snapshot.daily_tlot_increase_allowance,
                high_water_mark=snapshot.last_delta_update_timestamp,
            )
            self._sum_today = float(snapshot.sum_of_tlot_increase_today)
            self._period_date = snapshot.period_date
            self._covered = dict(snapshot.covered_contributions)
            self._prune_covered()
            self.alerts = AlertStateMachine(snapshot.alert_state)
            logger.info(
                "engine state restored",
                extra={"peers": len(self.ledger), "known_risks": len(self.deltas.table)},
            )


def create_engine(
    settings: Optional[Settings] = None,
    *,
    configure_logging: bool = False,
    **kwargs: Any,
) -> SdeitEngine:
    """
    Build an engine from loaded settings, attaching a Prometheus exporter
    when metrics are enabled and none was supplied.

    With configure_logging=True the root logger is switched to JSON output
    at settings.log_level.
    """
    settings = settings or load_settings()
    if configure_logging:
        configure_json_logging(settings.log_level)
    if settings.metrics_enable and kwargs.get("exporter") is None:
        exporter = SdeitPrometheusExporter(
            port=settings.prometheus_port,
            version=settings.version,
            config_hash=settings.config_hash()[:16],
        )
        if settings.prom_http_enable:
            exporter.ensure_server()
        kwargs["exporter"] = exporter
    return SdeitEngine(settings, **kwargs)
