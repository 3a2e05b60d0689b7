"""
In-process analysis job queue.

Decouples "entry created" from "entry analyzed". Jobs live in memory
only and are processed by a single background worker thread, strictly
one at a time, so at most one provider call and one aggregation merge
are in flight.

A failed job is appended to the tail of the queue with a ready-at time
``backoff_unit * backoff_base ** attempts`` seconds in the future; the
worker skips jobs that are not ready yet instead of sleeping on them.
Jobs that exhaust max_attempts are dropped with an error log line and
kept in a bounded in-memory dead-letter list for status(). Errors marked
non-retryable (bad input, missing configuration) are dropped at once.

Nothing here survives a restart: entries without an interpretation are
found again through the entry store's pending-analysis query.
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from .errors import QueueExhaustedError
from .types import utc_now

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3

# Dead-letter snapshots kept for status()
FAILED_HISTORY = 100


@dataclass
class AnalysisJob:
    """A queued unit of analysis work."""
    entry_id: str
    provider: Optional[str] = None
    attempts: int = 0
    max_attempts: int = MAX_ATTEMPTS
    ready_at: float = 0.0                   # queue clock value
    enqueued_at: str = field(default_factory=utc_now)
    last_error: Optional[str] = None
    delays: list[float] = field(default_factory=list)

    def snapshot(self, now: float) -> dict[str, Any]:
        """JSON-friendly view for status output."""
        return {
            "entry_id": self.entry_id,
            "provider": self.provider or "default",
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "retry_in": round(max(0.0, self.ready_at - now), 3),
            "enqueued_at": self.enqueued_at,
            "last_error": self.last_error,
        }


class AnalysisQueue:
    """
    FIFO analysis queue with a single on-demand worker thread.

    Args:
        handler: Called as handler(entry_id, provider) for each job; any
            exception counts as a failed attempt
        max_attempts: Attempts per job before it is dropped
        backoff_base: Exponential base for retry delays
        backoff_unit: Seconds multiplied by ``backoff_base ** attempts``
        job_pause: Seconds to pause after every job, successful or not
        autostart: Start the worker on enqueue (tests turn this off and
            call start() themselves)
        clock: Monotonic time source for readiness and retry delays
    """

    def __init__(
        self,
        handler: Callable[[str, Optional[str]], Any],
        *,
        max_attempts: int = MAX_ATTEMPTS,
        backoff_base: float = 2.0,
        backoff_unit: float = 1.0,
        job_pause: float = 0.1,
        autostart: bool = True,
        name: str = "compass-analysis",
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._handler = handler
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_unit = backoff_unit
        self.job_pause = job_pause
        self._autostart = autostart
        self._name = name
        self._clock = clock

        self._jobs: list[AnalysisJob] = []
        self._in_flight: Optional[AnalysisJob] = None
        self._failed: deque = deque(maxlen=FAILED_HISTORY)
        self._cond = threading.Condition()
        self._worker: Optional[threading.Thread] = None
        self._stopping = False

    def backoff_delay(self, attempts: int) -> float:
        """Seconds before a job that has failed ``attempts`` times runs again."""
        return self.backoff_unit * self.backoff_base ** attempts

    # -------------------------------------------------------------------------
    # Producer side
    # -------------------------------------------------------------------------

    def enqueue(self, entry_id: str, provider: Optional[str] = None) -> AnalysisJob:
        """
        Append a job and wake (or start) the worker. Never waits on analysis.
        """
        job = AnalysisJob(
            entry_id=entry_id,
            provider=provider,
            max_attempts=self.max_attempts,
            ready_at=self._clock(),
        )
        with self._cond:
            self._jobs.append(job)
            depth = len(self._jobs)
            self._cond.notify_all()
        logger.info("Queued analysis of %s (depth %d)", entry_id, depth)
        if self._autostart:
            self.start()
        return job

    def clear(self) -> int:
        """Drop all queued jobs (not the one in flight). Returns the count."""
        with self._cond:
            count = len(self._jobs)
            self._jobs.clear()
            self._cond.notify_all()
        if count:
            logger.warning("Cleared %d queued analysis jobs", count)
        return count

    def status(self) -> dict[str, Any]:
        """
        Queue snapshot for operators.

        Returns:
            Dict with: depth (int), in_flight (bool), running (bool),
            current (job snapshot or None), jobs (pending job snapshots
            in queue order), failed (recently dropped jobs)
        """
        with self._cond:
            now = self._clock()
            return {
                "depth": len(self._jobs),
                "in_flight": self._in_flight is not None,
                "running": self._worker is not None,
                "current": self._in_flight.snapshot(now) if self._in_flight else None,
                "jobs": [job.snapshot(now) for job in self._jobs],
                "failed": list(self._failed),
            }

    def __len__(self) -> int:
        with self._cond:
            return len(self._jobs)

    # -------------------------------------------------------------------------
    # Worker lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Start the worker thread if it is not already running."""
        with self._cond:
            if self._worker is not None:
                return
            self._stopping = False
            self._worker = threading.Thread(
                target=self._run, name=self._name, daemon=True
            )
            self._worker.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """
        Ask the worker to exit after its current job and wait for it.

        Queued jobs stay queued; start() resumes them.
        """
        with self._cond:
            worker = self._worker
            self._stopping = True
            self._cond.notify_all()
        if worker is not None and worker is not threading.current_thread():
            worker.join(timeout)

    def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        """
        Block until the queue is empty and the worker has exited.

        Returns:
            True if idle, False on timeout or if jobs remain with no
            worker to run them
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while self._jobs or self._in_flight is not None or self._worker is not None:
                if self._worker is None:
                    return False
                remaining = None
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return False
                self._cond.wait(remaining)
            return True

    # -------------------------------------------------------------------------
    # Worker loop
    # -------------------------------------------------------------------------

    def _next_ready(self, now: float) -> Optional[AnalysisJob]:
        """First job in queue order whose ready-at time has passed."""
        for job in self._jobs:
            if job.ready_at <= now:
                return job
        return None

    def _take_next(self) -> Optional[AnalysisJob]:
        """Wait for the next ready job; None when the worker should exit."""
        with self._cond:
            while True:
                if self._stopping or not self._jobs:
                    self._worker = None
                    self._cond.notify_all()
                    return None
                now = self._clock()
                job = self._next_ready(now)
                if job is not None:
                    self._jobs.remove(job)
                    self._in_flight = job
                    return job
                earliest = min(j.ready_at for j in self._jobs)
                self._cond.wait(max(earliest - now, 0.001))

    def _run(self) -> None:
        logger.debug("Analysis worker started")
        while True:
            job = self._take_next()
            if job is None:
                logger.debug("Analysis queue idle")
                return
            try:
                self._execute(job)
            finally:
                with self._cond:
                    self._in_flight = None
                    self._cond.notify_all()
            # Smooth bursts between jobs
            if self.job_pause > 0:
                time.sleep(self.job_pause)

    def _execute(self, job: AnalysisJob) -> None:
        job.attempts += 1
        logger.info(
            "Analyzing %s (attempt %d/%d)", job.entry_id, job.attempts, job.max_attempts
        )
        try:
            self._handler(job.entry_id, job.provider)
        except Exception as e:
            job.last_error = f"{type(e).__name__}: {e}"
            if not getattr(e, "retryable", True):
                logger.error(
                    "Dropping analysis of %s, not retryable: %s", job.entry_id, job.last_error
                )
                self._record_failure(job, "not_retryable")
            elif job.attempts < job.max_attempts:
                delay = self.backoff_delay(job.attempts)
                job.delays.append(delay)
                job.ready_at = self._clock() + delay
                with self._cond:
                    self._jobs.append(job)
                    self._cond.notify_all()
                logger.warning(
                    "Analysis of %s failed (attempt %d/%d), retry in %.1fs: %s",
                    job.entry_id, job.attempts, job.max_attempts, delay, job.last_error,
                )
            else:
                error = QueueExhaustedError(job.entry_id, job.attempts, job.last_error)
                logger.error("%s", error)
                self._record_failure(job, "exhausted")
            return
        logger.info("Analysis of %s done", job.entry_id)

    def _record_failure(self, job: AnalysisJob, reason: str) -> None:
        with self._cond:
            self._failed.append({
                "entry_id": job.entry_id,
                "provider": job.provider or "default",
                "attempts": job.attempts,
                "reason": reason,
                "error": job.last_error,
                "delays": list(job.delays),
                "failed_at": utc_now(),
            })
