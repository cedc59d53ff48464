"""
Clinical Privilege Approvals
Scheduled Escalation Runner.

Drives the escalation sweep on a fixed interval from a daemon thread:

    runner = ScheduledEscalationRunner(sweep, app=app, interval_minutes=60)
    runner.start()      # sweeps once now, then every interval
    runner.stop()       # no further ticks; an in-progress sweep finishes

Sweeps never overlap: a tick that finds the previous sweep still running is
skipped. A sweep that raises is logged and the timer keeps going.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable

from flask import Flask

logger = logging.getLogger(__name__)


class ScheduledEscalationRunner:
    """Periodic, non-overlapping driver for an escalation sweep callable."""

    def __init__(
        self,
        sweep: Callable[[], Any],
        *,
        app: Flask | None = None,
        interval_minutes: float = 60,
    ):
        self._sweep = sweep
        self._app = app
        self.interval_minutes = interval_minutes
        self._state_lock = threading.Lock()
        self._sweep_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._active = False

    def is_active(self) -> bool:
        return self._active

    def start(self, interval_minutes: float | None = None) -> None:
        with self._state_lock:
            if self._active:
                logger.warning("Escalation runner already running")
                return
            if interval_minutes is not None:
                self.interval_minutes = interval_minutes
            self._stop_event = threading.Event()
            self._active = True
            self._thread = threading.Thread(
                target=self._loop, args=(self._stop_event,),
                name="escalation-runner", daemon=True,
            )
            logger.info("Starting escalation runner with interval of %s minutes", self.interval_minutes)
            self._thread.start()

    def stop(self) -> None:
        with self._state_lock:
            if not self._active:
                return
            self._stop_event.set()
            self._active = False
            self._thread = None
        logger.info("Escalation runner stopped")

    def run_once(self):
        """Run one sweep now. Returns its result, or None if skipped or failed."""
        if not self._sweep_lock.acquire(blocking=False):
            logger.warning("Escalation sweep still in progress; skipping this tick")
            return None
        try:
            if self._app is not None:
                with self._app.app_context():
                    result = self._sweep()
            else:
                result = self._sweep()
        except Exception:
            logger.exception("Error during escalation sweep")
            return None
        finally:
            self._sweep_lock.release()
        logger.info("Escalation sweep finished: %s", _summary(result))
        return result

    def _loop(self, stop_event: threading.Event) -> None:
        self.run_once()
        while not stop_event.wait(self.interval_minutes * 60):
            self.run_once()


def _summary(result) -> str:
    if isinstance(result, dict):
        keys = ("processed", "escalated", "errors", "skipped")
        return ", ".join(f"{k}={result[k]}" for k in keys if k in result) or str(result)
    return str(result)
