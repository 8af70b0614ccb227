# FILE: sdeit/scheduler.py
"""
Periodic drivers for the engine's tick entry points.

Each tick runs on its own daemon thread and sleeps on a threading.Event, so
stop() takes effect without waiting out a full period. The engine lock
serializes the ticks against each other; a long fetch delays a scan rather
than interleaving with it.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, List, Optional

from .config import Settings
from .engine import SdeitEngine

logger = logging.getLogger(__name__)


class PeriodicTask:
    """
    Calls `fn` every `period_s` seconds until stopped.

    An exception from `fn` is logged and the loop continues with the next
    period; one bad scan or fetch must not silence the device.
    """

    def __init__(self, name: str, period_s: float, fn: Callable[[], object], *, run_immediately: bool = True):
        if period_s <= 0:
            raise ValueError("period_s must be > 0")
        self.name = name
        self.period_s = float(period_s)
        self._fn = fn
        self._run_immediately = run_immediately
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._lock = threading.RLock()
        self.runs = 0
        self.failures = 0

    @property
    def running(self) -> bool:
        with self._lock:
            return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._stop.clear()
            self._thread = threading.Thread(
                target=self._run_loop,
                name=f"sdeit-{self.name}",
                daemon=True,
            )
            logger.info("periodic task starting", extra={"task": self.name, "period_s": self.period_s})
            self._thread.start()

    def stop(self, *, join: bool = True, timeout: Optional[float] = 5.0) -> None:
        with self._lock:
            t = self._thread
            if t is None:
                return
            self._stop.set()
        if join:
            t.join(timeout=timeout)
        with self._lock:
            self._thread = None

    def run_once(self) -> None:
        try:
            self._fn()
        except Exception:
            self.failures += 1
            logger.exception("periodic task %s failed", self.name)
        finally:
            self.runs += 1

    def _run_loop(self) -> None:
        if not self._run_immediately and self._stop.wait(self.period_s):
            return
        while not self._stop.is_set():
            self.run_once()
            if self._stop.wait(self.period_s):
                break


class EngineScheduler:
    """
    Drives scan, cleanup and fetch ticks at the configured periods.

        scheduler = EngineScheduler(engine, settings)
        scheduler.start()
        ...
        scheduler.stop()
    """

    def __init__(self, engine: SdeitEngine, settings: Optional[Settings] = None):
        settings = settings or engine.settings
        self.engine = engine
        self.tasks: List[PeriodicTask] = [
            PeriodicTask("scan", settings.scan_period_s, engine.tick_scan),
            # retention runs once per day; skip the run at startup
            PeriodicTask("cleanup", settings.cleanup_period_s, engine.tick_cleanup, run_immediately=False),
            PeriodicTask("fetch", settings.fetch_period_s, engine.tick_fetch),
        ]

    def start(self) -> None:
        for task in self.tasks:
            task.start()

    def stop(self, *, timeout: Optional[float] = 5.0) -> None:
        for task in self.tasks:
            task.stop(timeout=timeout)

    @property
    def running(self) -> bool:
        return any(t.running for t in self.tasks)
