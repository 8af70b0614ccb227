# FILE: sdeit/exporter.py
# Prometheus exporter for the exposure-risk engine.
#
# - Metrics carry only aggregate values (counts, sizes, the personal risk
#   estimate); no peer identifiers ever appear in label values.
# - Label sets are small and fixed.
# - The exporter registers into the default registry unless a dedicated
#   CollectorRegistry is supplied (tests, multiple engines per process).
# - An HTTP endpoint is only started when ensure_server() is called.

from __future__ import annotations

import logging
import threading
from typing import Optional

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Enum,
    Gauge,
    Info,
    start_http_server,
)

from .schemas import AlertState

logger = logging.getLogger(__name__)

_REJECT_REASONS = ("malformed", "signature_mismatch")


class SdeitPrometheusExporter:
    """
    Observability collaborator for the engine.

        exporter = SdeitPrometheusExporter(port=8001, version="1.0.0", config_hash="abc")
        engine = SdeitEngine(settings, exporter=exporter)
        exporter.ensure_server()
    """

    def __init__(
        self,
        *,
        port: int = 0,
        version: str = "dev",
        config_hash: str = "",
        registry: Optional[CollectorRegistry] = None,
        namespace: str = "sdeit",
    ) -> None:
        self.port = int(port)
        self.registry = registry if registry is not None else REGISTRY
        self._server_lock = threading.Lock()
        self._server_started = False
        ns = namespace

        self._build_info = Info(f"{ns}_build", "Engine build metadata", registry=self.registry)
        self._build_info.info({"version": str(version), "config_hash": str(config_hash)})

        # Exposure ledger
        self.observations_recorded = Counter(
            f"{ns}_observations_recorded_total",
            "Proximity observations folded into the exposure ledger",
            registry=self.registry,
        )
        self.observations_rejected = Counter(
            f"{ns}_observations_rejected_total",
            "Proximity observations rejected for violating the input contract",
            registry=self.registry,
        )
        self.contacts_expired = Counter(
            f"{ns}_contacts_expired_total",
            "Exposure records removed by retention",
            registry=self.registry,
        )
        self.ledger_size = Gauge(
            f"{ns}_ledger_peers",
            "Peers currently held in the exposure ledger",
            registry=self.registry,
        )

        # Deltas
        self.deltas_applied = Counter(
            f"{ns}_deltas_applied_total",
            "Authority delta messages applied",
            registry=self.registry,
        )
        self.deltas_skipped = Counter(
            f"{ns}_deltas_skipped_total",
            "Verified delta messages skipped as already applied",
            registry=self.registry,
        )
        self.batches_rejected = Counter(
            f"{ns}_delta_batches_rejected_total",
            "Authority delta batches rejected by verification",
            ["reason"],
            registry=self.registry,
        )
        self.known_risks = Gauge(
            f"{ns}_known_infection_risks",
            "Peers with a nonzero authority-reported infection risk",
            registry=self.registry,
        )
        self.allowance = Gauge(
            f"{ns}_daily_tlot_allowance",
            "Current daily TLOT increase allowance",
            registry=self.registry,
        )
        self.high_water_mark = Gauge(
            f"{ns}_delta_high_water_mark_seconds",
            "Timestamp (epoch seconds) of the newest applied delta",
            registry=self.registry,
        )

        # Risk / alert
        self.personal_risk = Gauge(
            f"{ns}_personal_infection_risk",
            "Current personal infection-risk estimate",
            registry=self.registry,
        )
        self.tlot_today = Gauge(
            f"{ns}_tlot_increase_today",
            "Sum of TLOT increases in the current allowance period",
            registry=self.registry,
        )
        self.alert_state = Enum(
            f"{ns}_alert_state",
            "Current alert state",
            states=[s.value for s in AlertState],
            registry=self.registry,
        )
        self.alert_transitions = Counter(
            f"{ns}_alert_transitions_total",
            "Alert state changes by target state",
            ["state"],
            registry=self.registry,
        )

        for reason in _REJECT_REASONS:
            self.batches_rejected.labels(reason=reason)

    def ensure_server(self) -> None:
        """
        Start a standalone /metrics HTTP server once per exporter.
        """
        if self.port <= 0:
            return
        with self._server_lock:
            if self._server_started:
                return
            start_http_server(self.port, registry=self.registry)
            self._server_started = True
            logger.info("metrics server started", extra={"port": self.port})

    # ------------------------------------------------------------------
    # Update helpers used by the engine
    # ------------------------------------------------------------------

    def record_scan(self, *, recorded: int, rejected: int, ledger_size: int) -> None:
        if recorded:
            self.observations_recorded.inc(recorded)
        if rejected:
            self.observations_rejected.inc(rejected)
        self.ledger_size.set(ledger_size)

    def record_risk(self, *, personal_risk: float, tlot_today: float) -> None:
        self.personal_risk.set(personal_risk)
        self.tlot_today.set(tlot_today)

    def record_alert(self, state: AlertState, *, changed: bool) -> None:
        self.alert_state.state(state.value)
        if changed:
            self.alert_transitions.labels(state=state.value).inc()

    def record_expired(self, *, removed: int, ledger_size: int) -> None:
        if removed:
            self.contacts_expired.inc(removed)
        self.ledger_size.set(ledger_size)

    def record_merge(
        self,
        *,
        applied: int,
        skipped: int,
        known_risks: int,
        allowance: float,
        high_water_mark_s: Optional[float],
    ) -> None:
        if applied:
            self.deltas_applied.inc(applied)
        if skipped:
            self.deltas_skipped.inc(skipped)
        self.known_risks.set(known_risks)
        self.allowance.set(allowance)
        if high_water_mark_s is not None:
            self.high_water_mark.set(high_water_mark_s)

    def record_rejection(self, reason: str) -> None:
        self.batches_rejected.labels(reason=reason).inc()
