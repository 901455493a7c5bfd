"""Dispatcher: admits pending jobs into channels and executes them."""

import signal
import threading
import traceback
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from typing import Callable, List, Optional

from .errors import ConcurrencyConflict, ExecutionError, Outcome
from .logging import get_logger
from .models import Job, JobState, utcnow
from .queue import JobQueue
from .registry import OperationRegistry
from .storage import Storage

logger = get_logger(__name__)


class Dispatcher:
    """Runs jobs from the queue.

    Each tick has two phases. Admission moves pending jobs to enqueued,
    channel by channel, up to each channel's capacity. Execution marks every
    enqueued job as running and hands it to a thread pool; the pool worker
    records the outcome as done or failed.
    """

    def __init__(self, storage: Storage, registry: OperationRegistry,
                 max_workers: int = 8, clock: Callable[[], datetime] = utcnow):
        self.storage = storage
        self.queue = JobQueue(storage, registry)
        self.clock = clock
        self._stop = threading.Event()
        self._closed = False
        self._executor = ThreadPoolExecutor(max_workers=max_workers,
                                            thread_name_prefix="jobctl-job")

    def _handle_shutdown(self, signum, frame):
        """Handle shutdown signal gracefully."""
        logger.info("dispatcher_signal", signal=signum)
        self.stop()

    def admit(self, now: Optional[datetime] = None) -> List[int]:
        """Enqueue candidate jobs on each channel up to its capacity."""
        now = now or self.clock()
        admitted = []
        for channel in self.storage.get_channels():
            available = channel.capacity - self.storage.count_active(channel.name)
            if available <= 0:
                continue
            for job in self.storage.find_candidates(channel.name, limit=available):
                try:
                    if not self.storage.admit_job(job.id, channel.capacity, now):
                        # Filled up by a concurrent pass
                        break
                except ConcurrencyConflict:
                    continue
                admitted.append(job.id)
                logger.debug("job_enqueued", job_id=job.id, channel=channel.name,
                             priority=job.priority)
        return admitted

    def execute(self, now: Optional[datetime] = None) -> List[Future]:
        """Start every enqueued job. Returns the futures of the launched runs."""
        if self._closed:
            return []
        now = now or self.clock()
        futures = []
        for job in self.storage.get_jobs_by_state(JobState.ENQUEUED):
            try:
                # Committed before the run starts so everyone sees it running
                job = self.storage.transition_job(job.id, JobState.ENQUEUED,
                                                  JobState.RUNNING, started_at=now)
            except ConcurrencyConflict:
                continue
            logger.debug("job_started", job_id=job.id, channel=job.channel)
            futures.append(self._executor.submit(self._execute_job, job))
        return futures

    def tick(self, now: Optional[datetime] = None) -> bool:
        """Run one admission and execution pass.

        Returns True if ready pending jobs are left behind, False when the
        loop may hold before polling again.
        """
        now = now or self.clock()
        self.admit(now)
        self.execute(now)
        return self.has_candidates()

    def has_candidates(self) -> bool:
        """Whether some pending job on a known channel has its dependency done.

        Full channels still count: their candidates are admitted as soon as
        running jobs finish, so the loop keeps polling at its normal pace.
        This drops the "some channel has free capacity" half of the
        eligibility rule on purpose, a saturated channel never adds the hold
        delay.
        """
        channels = {c.name for c in self.storage.get_channels()}
        return any(job.channel in channels for job in self.storage.find_candidates())

    def run_job(self, job: Job) -> Outcome:
        """Run a job's operation and capture its outcome. Never raises."""
        try:
            return Outcome(result=self.queue.run(job))
        except Exception as e:
            return Outcome(error=ExecutionError(f"{type(e).__name__}: {e}",
                                                traceback.format_exc()))

    def _execute_job(self, job: Job) -> Outcome:
        """Execute a single job and record the result."""
        outcome = self.run_job(job)
        now = self.clock()
        try:
            if outcome.ok:
                self.storage.transition_job(job.id, JobState.RUNNING, JobState.DONE,
                                            done_at=now, result=outcome.result)
                logger.info("job_done", job_id=job.id, channel=job.channel)
            else:
                self.storage.transition_job(job.id, JobState.RUNNING, JobState.FAILED,
                                            done_at=now, error_info=str(outcome.error))
                logger.warning("job_failed", job_id=job.id, channel=job.channel,
                               error=outcome.error.message)
        except ConcurrencyConflict as e:
            logger.warning("job_finish_conflict", job_id=job.id, error=str(e))
        except Exception:
            logger.exception("job_finish_failed", job_id=job.id)
            raise
        return outcome

    def run(self, poll_period: float = 0.01, hold_delay: float = 0.5) -> None:
        """Run the dispatcher loop until stopped."""
        if threading.current_thread() is threading.main_thread():
            signal.signal(signal.SIGTERM, self._handle_shutdown)
            signal.signal(signal.SIGINT, self._handle_shutdown)
        logger.info("dispatcher_started", poll_period=poll_period, hold_delay=hold_delay)
        while not self._stop.is_set():
            try:
                more = self.tick()
            except Exception:
                logger.exception("dispatcher_tick_failed")
                more = False
            # Calm down when no candidate job is left behind
            self._stop.wait(poll_period if more else poll_period + hold_delay)
        logger.info("dispatcher_stopped")

    def stop(self) -> None:
        self._stop.set()

    def drain(self, wait: bool = True) -> None:
        """Stop the loop and shut down the execution pool.

        With ``wait`` False, runs still in flight are abandoned: their jobs
        stay running in the store.
        """
        self.stop()
        self._closed = True
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> "Dispatcher":
        return self

    def __exit__(self, *exc) -> None:
        self.drain(wait=True)
