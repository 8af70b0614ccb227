# FILE: sdeit/retention.py
from __future__ import annotations

import datetime as _dt
import logging
from typing import Any

from .ledger import ExposureLedger
from .utils import as_date

logger = logging.getLogger(__name__)


class RetentionManager:
    """
    Expires exposure records without contact inside the retention horizon.

    Beyond the incubation horizon a stale contact cannot contribute new risk,
    and keeping it would only retain contact history. Known infection risks
    are never touched here.
    """

    def __init__(self, ledger: ExposureLedger, *, horizon_days: int = 7):
        if horizon_days < 0:
            raise ValueError("horizon_days must be >= 0")
        self._ledger = ledger
        self.horizon_days = int(horizon_days)

    def cutoff(self, now: Any) -> _dt.date:
        # "more than N whole days before now": kept iff (now - last) <= N days
        return as_date(now) - _dt.timedelta(days=self.horizon_days)

    def expire_stale_contacts(self, now: Any) -> int:
        removed = self._ledger.remove_last_contact_before(self.cutoff(now))
        if removed:
            logger.info(
                "expired stale contacts",
                extra={"removed": len(removed), "horizon_days": self.horizon_days},
            )
        return len(removed)
