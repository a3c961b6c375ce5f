from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from datetime import datetime
from typing import Any

from app.crm.models import utcnow


logger = logging.getLogger("app.workflows.scheduler")


class WorkflowScheduler:
    """Runs ``run`` on a fixed period from a single daemon thread.

    The first tick fires as soon as the thread starts (unless ``run_on_start``
    is false) and each following tick is due ``interval_seconds`` after the
    previous one began. A tick that overruns the period is followed
    immediately by the next one. Exceptions raised by ``run`` are logged and
    the loop carries on.
    """

    def __init__(
        self,
        run: Callable[[], Any],
        interval_seconds: float,
        *,
        run_on_start: bool = True,
        name: str = "workflow-scheduler",
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._run = run
        self.interval_seconds = float(interval_seconds)
        self.run_on_start = run_on_start
        self.name = name
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._state_lock = threading.Lock()
        self.runs_started = 0
        self.last_started_at: datetime | None = None
        self.last_finished_at: datetime | None = None
        self.last_status: str | None = None
        self.last_error: str | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            raise RuntimeError("workflow scheduler is already running")
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        logger.info(
            "workflow_scheduler_started",
            extra={"interval_seconds": self.interval_seconds},
        )

    def stop(self, timeout: float | None = 10.0) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None
        logger.info("workflow_scheduler_stopped", extra={"runs_started": self.runs_started})

    def trigger(self) -> Any:
        """Run once on the calling thread, outside the periodic schedule."""
        return self._tick()

    def status(self) -> dict[str, Any]:
        with self._state_lock:
            return {
                "running": self.running,
                "interval_seconds": self.interval_seconds,
                "runs_started": self.runs_started,
                "last_started_at": self.last_started_at,
                "last_finished_at": self.last_finished_at,
                "last_status": self.last_status,
                "last_error": self.last_error,
            }

    def _loop(self) -> None:
        next_run = time.monotonic()
        if not self.run_on_start:
            next_run += self.interval_seconds

        while True:
            delay = max(0.0, next_run - time.monotonic())
            if self._stop_event.wait(delay):
                return
            tick_started = time.monotonic()
            self._tick()
            next_run = tick_started + self.interval_seconds

    def _tick(self) -> Any:
        with self._state_lock:
            self.runs_started += 1
            self.last_started_at = utcnow()

        outcome: Any = None
        error: str | None = None
        try:
            outcome = self._run()
        except Exception as exc:
            error = str(exc)[:2000]
            logger.exception("workflow_scheduled_run_failed", extra={"error": str(exc)[:500]})
            run_status = "failed"
        else:
            run_status = str(getattr(outcome, "status", "succeeded"))

        with self._state_lock:
            self.last_finished_at = utcnow()
            self.last_status = run_status
            self.last_error = error
        return outcome
