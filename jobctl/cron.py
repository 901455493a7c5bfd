"""Cron ticker: turns due cron entries into jobs and reschedules them."""

import threading
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from dateutil.relativedelta import relativedelta
import pydantic

from .errors import ConcurrencyConflict, ValidationError
from .logging import get_logger
from .models import CronEntry, IntervalUnit, Job, TargetRef, utcnow
from .queue import JobQueue, check_target
from .registry import OperationRegistry
from .storage import Storage

logger = get_logger(__name__)


def future_call(cron: CronEntry) -> datetime:
    """Return the call that follows ``cron.next_call_at``.

    Minutes and hours are fixed durations, days, weeks and months are
    calendar steps (a month after January 31st is the last day of February).
    """
    n = cron.interval_number
    unit = cron.interval_unit
    if unit == IntervalUnit.MINUTES:
        step = timedelta(minutes=n)
    elif unit == IntervalUnit.HOURS:
        step = timedelta(hours=n)
    elif unit == IntervalUnit.DAYS:
        step = relativedelta(days=n)
    elif unit == IntervalUnit.WEEKS:
        step = relativedelta(weeks=n)
    else:
        step = relativedelta(months=n)
    return cron.next_call_at + step


def cron_job_name(cron: CronEntry) -> str:
    return f"Cron Job: {cron.name}"


class CronTicker:
    """Finds due cron entries and creates their jobs."""

    def __init__(self, storage: Storage, registry: OperationRegistry,
                 clock: Callable[[], datetime] = utcnow):
        self.storage = storage
        self.registry = registry
        self.queue = JobQueue(storage, registry)
        self.clock = clock
        self._stop = threading.Event()

    def schedule(self, name: str, target: TargetRef, owner: str,
                 interval_number: int = 1,
                 interval_unit: IntervalUnit = IntervalUnit.MONTHS,
                 next_call_at: Optional[datetime] = None,
                 active: Optional[bool] = None) -> CronEntry:
        """Create the cron entry ``name``, or update it if it exists.

        An update keeps the stored ``next_call_at`` and ``active`` flag
        unless new values are given.
        """
        check_target(self.registry, target)
        try:
            cron = CronEntry(
                name=name,
                target=target,
                owner=owner,
                interval_number=interval_number,
                interval_unit=interval_unit,
                next_call_at=next_call_at or self.clock(),
                active=True if active is None else active,
            )
        except pydantic.ValidationError as e:
            raise ValidationError(f"invalid cron {name}: {e.errors()[0]['msg']}") from e

        fields = dict(target=target, owner=owner, interval_number=interval_number,
                      interval_unit=interval_unit)
        if next_call_at is not None:
            fields["next_call_at"] = cron.next_call_at
        if active is not None:
            fields["active"] = active
        updated = self.storage.set_cron_fields(name, **fields)
        if updated is not None:
            logger.info("cron_updated", cron=name)
            return updated
        cron = self.storage.add_cron(cron)
        logger.info("cron_created", cron=name, next_call_at=cron.next_call_at.isoformat())
        return cron

    def set_active(self, name: str, active: bool) -> CronEntry:
        cron = self.storage.set_cron_fields(name, active=active)
        if cron is None:
            raise ValidationError(f"unknown cron: {name}")
        return cron

    def tick(self, now: Optional[datetime] = None) -> List[Job]:
        """Create the jobs of every due cron, then reschedule those crons.

        Rescheduling is a separate step: a cron whose job could not be
        created still moves on to its next call, the missed one is lost.
        """
        now = now or self.clock()
        due = self.storage.find_due_crons(now)
        jobs = []
        for cron in due:
            try:
                job = self.queue.create_job(cron_job_name(cron), cron.target, cron.owner)
            except Exception:
                logger.exception("cron_job_failed", cron=cron.name)
                continue
            jobs.append(job)
            logger.info("cron_fired", cron=cron.name, job_id=job.id)

        for cron in due:
            next_call = future_call(cron)
            try:
                self.storage.advance_cron(cron.id, cron.next_call_at, next_call)
            except ConcurrencyConflict as e:
                logger.warning("cron_advance_conflict", cron=cron.name, error=str(e))
                continue
            logger.debug("cron_rescheduled", cron=cron.name, next_call_at=next_call.isoformat())
        return jobs

    def run(self, period: float = 30.0) -> None:
        """Tick every ``period`` seconds until stopped."""
        logger.info("cron_started", period=period)
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("cron_tick_failed")
            self._stop.wait(period)
        logger.info("cron_stopped")

    def stop(self) -> None:
        self._stop.set()
