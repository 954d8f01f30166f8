"""
Periodic background jobs and cooperative cancellation.

:class:`SimpleJob` re-runs a callable on a timer thread.  After a run that
found nothing to do, or that failed, the delay before the next run grows
by ``backoff_multiplier`` up to ``max_interval_sec``; a productive run
resets it.  Runs never overlap.

:class:`CancellationToken` is the flag a long operation polls between
units of work to honour a stop request.
"""

from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from .config import JobConfig
from .errors import SyncCancelled

logger = logging.getLogger(__name__)


class CancellationToken:
    """Thread-safe, one-way stop flag."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise SyncCancelled("Operation was cancelled")


class JobState(str, enum.Enum):
    NOT_SCHEDULED = "NotScheduled"
    SCHEDULED = "Scheduled"
    RUNNING = "Running"


@dataclass
class JobResult:
    """Outcome of one job run.

    Attributes
    ----------
    should_back_off: bool
        The run found no work; wait longer before the next one.
    should_stop: bool
        Do not schedule further runs (for example after a fatal error).
    """
    should_back_off: bool = False
    should_stop: bool = False


class SimpleJob:
    """Run ``runner`` periodically on a timer thread.

    Parameters
    ----------
    config: JobConfig
        Base interval, back-off multiplier and maximum interval.
    runner: callable
        Called with no arguments for each run; returns a :class:`JobResult`.
        An exception counts as a run that should back off.
    name: str
        Used for the timer thread and in log messages.
    """

    def __init__(self, config: JobConfig, runner: Callable[[], JobResult], name: str = "job") -> None:
        self.config = config
        self.runner = runner
        self.name = name
        self.state = JobState.NOT_SCHEDULED
        self.interval_sec = config.interval_sec
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()
        self._stopped = False

    def start(self, delay: Optional[float] = None) -> None:
        """Schedule the next run after ``delay`` seconds (default: current interval).

        A job that is already running keeps running and is rescheduled when
        it finishes.
        """
        with self._lock:
            self._stopped = False
            if self.state == JobState.RUNNING:
                return
            if self._timer is not None:
                self._timer.cancel()
            self._schedule(self.interval_sec if delay is None else delay)

    def stop(self) -> None:
        """Cancel the pending run; a run in progress finishes but is not rescheduled."""
        with self._lock:
            self._stopped = True
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            if self.state == JobState.SCHEDULED:
                self.state = JobState.NOT_SCHEDULED
        logger.info("Stopped job %s", self.name)

    def _schedule(self, delay: float) -> None:
        timer = threading.Timer(max(0.0, delay), self._run)
        timer.name = f"{self.name}-timer"
        timer.daemon = True
        self._timer = timer
        self.state = JobState.SCHEDULED
        timer.start()
        logger.debug("Scheduled job %s in %.1fs", self.name, delay)

    def _run(self) -> None:
        with self._lock:
            if self._stopped or self.state != JobState.SCHEDULED:
                return
            self.state = JobState.RUNNING
            self._timer = None
        try:
            result = self.runner()
        except Exception:
            logger.exception("Job %s failed", self.name)
            result = JobResult(should_back_off=True)
        with self._lock:
            if result.should_back_off:
                self.interval_sec = min(self.interval_sec * self.config.backoff_multiplier,
                                        self.config.max_interval_sec)
            else:
                self.interval_sec = self.config.interval_sec
            self.state = JobState.NOT_SCHEDULED
            if result.should_stop:
                self._stopped = True
                logger.warning("Job %s stopped itself", self.name)
            if not self._stopped:
                self._schedule(self.interval_sec)
