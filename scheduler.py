"""
Daily expiry sweep.

``ExpiryScheduler`` arms a ``threading.Timer`` for the next occurrence of the
configured wall-clock time, runs the sweep when it fires and re-arms itself.
``run_once`` is the manual entry point (also ``python scheduler.py``).
"""
from __future__ import annotations

import threading
from datetime import datetime, time, timedelta
from typing import Callable, Optional

import settings
from database import get_db
from logger import configure_logging, get_logger
from notifier import EmailNotifier
from workflow import SweepResult, WorkflowEngine

logger = get_logger(__name__)


class ExpiryScheduler:
    def __init__(self, engine_factory: Callable[[], WorkflowEngine], at: time = settings.SWEEP_TIME,
                 clock: Callable[[], datetime] = datetime.now) -> None:
        self.engine_factory = engine_factory
        self.at = at
        self.clock = clock
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()
        self._stopped = True

    def seconds_until_next_run(self, now: Optional[datetime] = None) -> float:
        now = now or self.clock()
        next_run = datetime.combine(now.date(), self.at)
        if next_run <= now:
            next_run += timedelta(days=1)
        return (next_run - now).total_seconds()

    def start(self) -> None:
        with self._lock:
            self._stopped = False
            self._arm()
        logger.info("Expiry sweep scheduled daily at %s", self.at.strftime("%H:%M"))

    def stop(self) -> None:
        with self._lock:
            self._stopped = True
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    @property
    def running(self) -> bool:
        return not self._stopped

    def _arm(self) -> None:
        timer = threading.Timer(self.seconds_until_next_run(), self._fire)
        timer.daemon = True
        timer.start()
        self._timer = timer

    def _fire(self) -> None:
        try:
            self.run_once()
        except Exception:
            logger.exception("Expiry sweep failed")
        with self._lock:
            if not self._stopped:
                self._arm()

    def run_once(self) -> SweepResult:
        result = self.engine_factory().sweep()
        logger.info("Expiry sweep finished: %d expired, %d reminders sent", result.expired, result.reminders)
        return result


def build_engine() -> WorkflowEngine:
    database = get_db()
    return WorkflowEngine(database, notifier=EmailNotifier(database))


if __name__ == "__main__":
    configure_logging(settings.LOG_LEVEL, settings.LOG_FILE)
    # Reminders are delivered on background threads; deliver inline so the process can exit
    engine = build_engine()
    engine.notifier.spawn = lambda func, *args: func(*args)
    ExpiryScheduler(lambda: engine).run_once()
