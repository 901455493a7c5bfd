"""Persistent storage for channels, jobs and cron entries using JSON files."""

import json
import os
import sys
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .errors import ConcurrencyConflict, ValidationError
from .models import (
    ACTIVE_STATES,
    DEFAULT_CHANNEL,
    Channel,
    CronEntry,
    Job,
    JobState,
    utcnow,
)

# Handle platform-specific locking
if sys.platform == "win32":
    import msvcrt
else:
    import fcntl

_EDITABLE_JOB_FIELDS = ("channel", "priority", "depends_on", "name")
_EDITABLE_CRON_FIELDS = ("target", "owner", "interval_number", "interval_unit",
                         "next_call_at", "active")


class Storage:
    """File-based store with a single process-wide write lock.

    Every public method runs under the lock, so each write is one atomic
    read-modify-replace step. Transitions are compare-and-set: they only
    apply if the row is still in the state the caller expects.
    """

    def __init__(self, data_dir: str = ".jobctl"):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.channels_file = self.data_dir / "channels.json"
        self.jobs_file = self.data_dir / "jobs.json"
        self.crons_file = self.data_dir / "crons.json"
        self.sequences_file = self.data_dir / "sequences.json"
        self.lock_file = self.data_dir / "store.lock"
        self._mutex = threading.RLock()
        self._depth = 0

        with self._locked():
            # Initialize files if they don't exist
            for path in (self.channels_file, self.jobs_file, self.crons_file):
                if not path.exists():
                    self._write_json(path, [])
            if not self.sequences_file.exists():
                self._write_json(self.sequences_file, {"jobs": 0, "crons": 0})
            channels = self._read_json(self.channels_file)
            if not any(c["name"] == DEFAULT_CHANNEL for c in channels):
                channels.append(Channel(name=DEFAULT_CHANNEL).model_dump(mode="json"))
                self._write_json(self.channels_file, channels)

    # Low level helpers

    @contextmanager
    def _locked(self) -> Iterator[None]:
        """Hold the store lock, across threads and processes."""
        with self._mutex:
            if self._depth:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return
            fd = os.open(str(self.lock_file), os.O_CREAT | os.O_RDWR, 0o644)
            try:
                if sys.platform == "win32":
                    msvcrt.locking(fd, msvcrt.LK_LOCK, 1)
                else:
                    fcntl.flock(fd, fcntl.LOCK_EX)
                self._depth = 1
                try:
                    yield
                finally:
                    self._depth = 0
                    if sys.platform == "win32":
                        os.lseek(fd, 0, os.SEEK_SET)
                        msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
                    else:
                        fcntl.flock(fd, fcntl.LOCK_UN)
            finally:
                os.close(fd)

    def _write_json(self, file_path: Path, data: Any) -> None:
        """Write data to JSON file with atomic write."""
        temp_file = file_path.with_suffix(".tmp")
        with open(temp_file, "w") as f:
            json.dump(data, f, indent=2, default=str)
        temp_file.replace(file_path)

    def _read_json(self, file_path: Path) -> Any:
        """Read JSON file safely."""
        if not file_path.exists():
            return {} if file_path == self.sequences_file else []
        with open(file_path, "r") as f:
            return json.load(f)

    def _next_id(self, sequence: str) -> int:
        sequences = self._read_json(self.sequences_file)
        value = sequences.get(sequence, 0) + 1
        sequences[sequence] = value
        self._write_json(self.sequences_file, sequences)
        return value

    def _load_jobs(self) -> List[Job]:
        return [Job(**data) for data in self._read_json(self.jobs_file)]

    def _save_jobs(self, jobs: List[Job]) -> None:
        self._write_json(self.jobs_file, [j.model_dump(mode="json") for j in jobs])

    def _load_crons(self) -> List[CronEntry]:
        return [CronEntry(**data) for data in self._read_json(self.crons_file)]

    def _save_crons(self, crons: List[CronEntry]) -> None:
        self._write_json(self.crons_file, [c.model_dump(mode="json") for c in crons])

    # Channels

    def add_channel(self, channel: Channel) -> Channel:
        """Add a new channel; names are unique."""
        with self._locked():
            channels = self._read_json(self.channels_file)
            if any(c["name"] == channel.name for c in channels):
                raise ValidationError(f"channel {channel.name} already exists")
            channels.append(channel.model_dump(mode="json"))
            self._write_json(self.channels_file, channels)
        return channel

    def get_channel(self, name: str) -> Optional[Channel]:
        """Get a channel by name."""
        with self._locked():
            for data in self._read_json(self.channels_file):
                if data["name"] == name:
                    return Channel(**data)
        return None

    def get_channels(self) -> List[Channel]:
        """Get all channels, in creation order."""
        with self._locked():
            return [Channel(**data) for data in self._read_json(self.channels_file)]

    def update_channel(self, channel: Channel) -> None:
        """Update an existing channel."""
        with self._locked():
            channels = self._read_json(self.channels_file)
            for i, data in enumerate(channels):
                if data["name"] == channel.name:
                    channels[i] = channel.model_dump(mode="json")
                    self._write_json(self.channels_file, channels)
                    return
        raise ValidationError(f"unknown channel: {channel.name}")

    def delete_channel(self, name: str) -> int:
        """Delete a channel. Returns the number of channels removed.

        The default channel is never removed. A channel that still has
        unfinished jobs cannot be removed either.
        """
        if name == DEFAULT_CHANNEL:
            return 0
        with self._locked():
            channels = self._read_json(self.channels_file)
            remaining = [c for c in channels if c["name"] != name]
            if len(remaining) == len(channels):
                return 0
            busy = [j.id for j in self._load_jobs()
                    if j.channel == name and not j.state.is_terminal]
            if busy:
                raise ValidationError(
                    f"channel {name} still has unfinished jobs: {busy}"
                )
            self._write_json(self.channels_file, remaining)
        return 1

    # Jobs

    def add_job(self, job: Job) -> Job:
        """Persist a new job, assigning its id and creation time."""
        with self._locked():
            job.id = self._next_id("jobs")
            job.created_at = utcnow()
            jobs = self._read_json(self.jobs_file)
            jobs.append(job.model_dump(mode="json"))
            self._write_json(self.jobs_file, jobs)
        return job

    def get_job(self, job_id: int) -> Optional[Job]:
        """Get a job by ID."""
        with self._locked():
            for data in self._read_json(self.jobs_file):
                if data["id"] == job_id:
                    return Job(**data)
        return None

    def get_all_jobs(self) -> List[Job]:
        """Get all jobs."""
        with self._locked():
            return self._load_jobs()

    def get_jobs_by_state(self, state: JobState) -> List[Job]:
        """Get all jobs in a specific state."""
        with self._locked():
            return [j for j in self._load_jobs() if j.state == state]

    def count_active(self, channel: str) -> int:
        """Number of enqueued or running jobs in a channel."""
        with self._locked():
            return sum(1 for j in self._load_jobs()
                       if j.channel == channel and j.state in ACTIVE_STATES)

    def find_candidates(self, channel: Optional[str] = None,
                        limit: Optional[int] = None) -> List[Job]:
        """Pending jobs whose dependency, if any, is done.

        Ordered by priority, then creation time, then id.
        """
        with self._locked():
            jobs = self._load_jobs()
        states = {j.id: j.state for j in jobs}
        candidates = [
            j for j in jobs
            if j.state == JobState.PENDING
            and (channel is None or j.channel == channel)
            and (j.depends_on is None or states.get(j.depends_on) == JobState.DONE)
        ]
        candidates.sort(key=lambda j: (j.priority, j.created_at, j.id))
        if limit is not None:
            candidates = candidates[:max(limit, 0)]
        return candidates

    def transition_job(self, job_id: int, expected: JobState, new: JobState,
                       **fields: Any) -> Job:
        """Move a job from ``expected`` to ``new``, setting ``fields``.

        Raises ConcurrencyConflict if the job is no longer in ``expected``.
        """
        if not expected.can_advance_to(new):
            raise ValueError(f"invalid transition {expected.value} -> {new.value}")
        with self._locked():
            jobs = self._load_jobs()
            job = self._find(jobs, job_id)
            if job.state != expected:
                raise ConcurrencyConflict("job", job_id, expected.value, job.state.value)
            job.state = new
            for key, value in fields.items():
                setattr(job, key, value)
            self._save_jobs(jobs)
        return job

    def admit_job(self, job_id: int, capacity: int, now: datetime) -> bool:
        """Move a pending job to enqueued if its channel has room.

        Occupancy and the dependency are re-checked under the lock, so
        overlapping admission passes never push a channel over capacity.
        Returns False when the channel is full or the dependency is not
        done; raises ConcurrencyConflict when the job is no longer pending.
        """
        with self._locked():
            jobs = self._load_jobs()
            job = self._find(jobs, job_id)
            if job.state != JobState.PENDING:
                raise ConcurrencyConflict("job", job_id, JobState.PENDING.value, job.state.value)
            if job.depends_on is not None:
                parent = next((j for j in jobs if j.id == job.depends_on), None)
                if parent is None or parent.state != JobState.DONE:
                    return False
            occupancy = sum(1 for j in jobs
                            if j.channel == job.channel and j.state in ACTIVE_STATES)
            if occupancy >= capacity:
                return False
            job.state = JobState.ENQUEUED
            job.enqueued_at = now
            self._save_jobs(jobs)
        return True

    def update_job(self, job_id: int, **fields: Any) -> Job:
        """Edit the scheduling fields of a job that is still pending."""
        unknown = set(fields) - set(_EDITABLE_JOB_FIELDS)
        if unknown:
            raise ValueError(f"fields cannot be edited: {sorted(unknown)}")
        with self._locked():
            jobs = self._load_jobs()
            job = self._find(jobs, job_id)
            if job.state != JobState.PENDING:
                raise ConcurrencyConflict("job", job_id, JobState.PENDING.value, job.state.value)
            for key, value in fields.items():
                setattr(job, key, value)
            self._save_jobs(jobs)
        return job

    @staticmethod
    def _find(jobs: List[Job], job_id: int) -> Job:
        for job in jobs:
            if job.id == job_id:
                return job
        raise ValueError(f"Job {job_id} not found")

    # Cron entries

    def add_cron(self, cron: CronEntry) -> CronEntry:
        """Persist a new cron entry; names are unique."""
        with self._locked():
            crons = self._read_json(self.crons_file)
            if any(c["name"] == cron.name for c in crons):
                raise ValidationError(f"cron {cron.name} already exists")
            cron.id = self._next_id("crons")
            crons.append(cron.model_dump(mode="json"))
            self._write_json(self.crons_file, crons)
        return cron

    def get_cron(self, cron_id: int) -> Optional[CronEntry]:
        with self._locked():
            for cron in self._load_crons():
                if cron.id == cron_id:
                    return cron
        return None

    def get_cron_by_name(self, name: str) -> Optional[CronEntry]:
        with self._locked():
            for cron in self._load_crons():
                if cron.name == name:
                    return cron
        return None

    def get_crons(self) -> List[CronEntry]:
        with self._locked():
            return self._load_crons()

    def set_cron_fields(self, name: str, **fields: Any) -> Optional[CronEntry]:
        """Edit some fields of the cron entry ``name`` in one locked step.

        Fields not given keep their stored value, so a concurrent advance of
        ``next_call_at`` is never overwritten by a stale copy. Returns None
        if no entry has that name.
        """
        unknown = set(fields) - set(_EDITABLE_CRON_FIELDS)
        if unknown:
            raise ValueError(f"fields cannot be edited: {sorted(unknown)}")
        with self._locked():
            crons = self._load_crons()
            for i, cron in enumerate(crons):
                if cron.name != name:
                    continue
                crons[i] = CronEntry(**{**cron.model_dump(), **fields})
                self._save_crons(crons)
                return crons[i]
        return None

    def delete_cron(self, cron_id: int) -> int:
        with self._locked():
            crons = self._load_crons()
            remaining = [c for c in crons if c.id != cron_id]
            self._save_crons(remaining)
        return len(crons) - len(remaining)

    def find_due_crons(self, now: datetime) -> List[CronEntry]:
        """Active cron entries whose next call is at or before ``now``."""
        with self._locked():
            return [c for c in self._load_crons() if c.active and c.next_call_at <= now]

    def advance_cron(self, cron_id: int, expected: datetime,
                     next_call_at: datetime) -> Optional[CronEntry]:
        """Set a cron's next call, only if it is still ``expected``.

        Returns None if the entry has been deleted meanwhile.
        """
        with self._locked():
            crons = self._load_crons()
            for cron in crons:
                if cron.id != cron_id:
                    continue
                if cron.next_call_at != expected:
                    raise ConcurrencyConflict(
                        "cron", cron_id, expected.isoformat(), cron.next_call_at.isoformat()
                    )
                cron.next_call_at = max(next_call_at, expected)
                self._save_crons(crons)
                return cron
        return None

    # Statistics

    def get_stats(self) -> Dict[str, int]:
        """Get job statistics."""
        with self._locked():
            jobs = self._read_json(self.jobs_file)
            channels = self._read_json(self.channels_file)
            crons = self._read_json(self.crons_file)

        stats = {state.value: 0 for state in JobState}
        stats["total"] = len(jobs)
        for job in jobs:
            state = job.get("state", JobState.PENDING.value)
            if state in stats:
                stats[state] += 1
        stats["channels"] = len(channels)
        stats["crons"] = len(crons)
        return stats
