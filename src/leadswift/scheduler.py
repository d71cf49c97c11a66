"""Single-threaded tick scheduler for the engine's periodic jobs."""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from leadswift.clock import Clock, SystemClock

logger = logging.getLogger(__name__)


@dataclass
class _Job:
    name: str
    interval: timedelta
    fn: Callable[[], object]
    next_run: datetime


class AutomationScheduler:
    """
    Runs named periodic jobs serially on one worker thread.
    Due times come from the injected clock, so run_pending() can be driven
    synchronously from tests with a manual clock.
    """

    def __init__(
        self,
        clock: Optional[Clock] = None,
        *,
        poll_interval: float = 1.0,
        on_error: Optional[Callable[[str, Exception], None]] = None,
    ):
        self.clock = clock or SystemClock()
        self.poll_interval = poll_interval
        self.on_error = on_error
        self._jobs: dict[str, _Job] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def add_job(
        self,
        name: str,
        interval_seconds: float,
        fn: Callable[[], object],
        *,
        run_immediately: bool = False,
    ) -> None:
        interval = timedelta(seconds=interval_seconds)
        now = self.clock.now()
        with self._lock:
            self._jobs[name] = _Job(
                name=name,
                interval=interval,
                fn=fn,
                next_run=now if run_immediately else now + interval,
            )

    def set_interval(self, name: str, interval_seconds: float) -> None:
        """Change a job's period; the next run is rescheduled from now."""
        with self._lock:
            job = self._jobs[name]
            job.interval = timedelta(seconds=interval_seconds)
            job.next_run = self.clock.now() + job.interval

    def jobs(self) -> dict[str, datetime]:
        with self._lock:
            return {name: job.next_run for name, job in self._jobs.items()}

    def run_pending(self) -> list[str]:
        """Run every job that is due, in registration order. Returns names run."""
        now = self.clock.now()
        with self._lock:
            due = [job for job in self._jobs.values() if job.next_run <= now]
            for job in due:
                job.next_run = now + job.interval
        ran: list[str] = []
        for job in due:
            try:
                job.fn()
            except Exception as e:
                logger.exception("Scheduled job %s failed", job.name)
                if self.on_error is not None:
                    self.on_error(job.name, e)
            ran.append(job.name)
        return ran

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="leadswift-scheduler", daemon=True)
        self._thread.start()
        logger.info("Scheduler started with jobs: %s", ", ".join(self._jobs))

    def _loop(self) -> None:
        while not self._stop.is_set():
            self.run_pending()
            self._stop.wait(self.poll_interval)

    def stop(self, timeout: float = 5.0) -> None:
        """Signal the loop to exit and wait for the current job to finish."""
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None
        logger.info("Scheduler stopped")
