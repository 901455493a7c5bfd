"""Job queue management: creation, validation and execution of jobs."""

import json
from typing import Any, List, Optional, Tuple
from pydantic import BaseModel
import pydantic

from .errors import ValidationError
from .logging import get_logger
from .models import DEFAULT_CHANNEL, DEFAULT_RESULT, Channel, Job, JobState, TargetRef
from .registry import ExecutionContext, Operation, OperationRegistry, Subjects, decode_argument
from .storage import Storage

logger = get_logger(__name__)


def check_target(registry: OperationRegistry, target: TargetRef) -> Tuple[List[int], List[Any], Operation]:
    """Check that a target reference can be executed.

    Returns the decoded subject ids, the decoded arguments and the resolved
    operation. Raises ValidationError otherwise.
    """
    domain = registry.get_domain(target.domain)
    try:
        ids = json.loads(target.subject_ids)
    except json.JSONDecodeError as e:
        raise ValidationError(f"unable to unmarshal SubjectIDs: {e}") from e
    if not isinstance(ids, list) or not all(isinstance(i, int) and not isinstance(i, bool) for i in ids):
        raise ValidationError(f"unable to unmarshal SubjectIDs: expected a list of integers, got {target.subject_ids}")
    try:
        arguments = json.loads(target.arguments)
    except json.JSONDecodeError as e:
        raise ValidationError(f"unable to unmarshal Arguments: {e}") from e
    if not isinstance(arguments, list):
        raise ValidationError(f"unable to unmarshal Arguments: expected a list, got {target.arguments}")
    operation = domain.get_operation(target.operation)
    if len(arguments) != operation.arity:
        raise ValidationError(
            f"wrong number of arguments given: expect {operation.arity} arguments, "
            f"received {json.dumps(arguments)}"
        )
    return ids, arguments, operation


def encode_argument(value: Any) -> Any:
    """Turn a native argument into its JSON form."""
    if isinstance(value, Subjects):
        return list(value.ids)
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", exclude_unset=True)
    return value


class JobQueue:
    """Manages job queue operations."""

    def __init__(self, storage: Storage, registry: OperationRegistry):
        self.storage = storage
        self.registry = registry

    def create_job(self, name: str, target: TargetRef, owner: str,
                   channel: Optional[str] = None, priority: int = 0,
                   depends_on: Optional[int] = None, max_retries: int = 0) -> Job:
        """Validate and persist a new pending job."""
        check_target(self.registry, target)
        channel = channel or DEFAULT_CHANNEL
        if self.storage.get_channel(channel) is None:
            raise ValidationError(f"unknown channel: {channel}")
        if depends_on is not None and self.storage.get_job(depends_on) is None:
            raise ValidationError(f"unknown job: {depends_on}")
        job = Job(
            name=name,
            target=target,
            owner=owner,
            channel=channel,
            priority=priority,
            depends_on=depends_on,
            max_retries=max_retries,
        )
        job = self.storage.add_job(job)
        logger.info("job_created", job_id=job.id, name=job.name, channel=job.channel,
                    operation=f"{target.domain}.{target.operation}")
        return job

    def enqueue(self, subjects: Subjects, description: str, operation: str, *args: Any,
                owner: str, channel: Optional[str] = None, priority: int = 0,
                after: Optional[int] = None) -> Job:
        """Queue the execution of ``operation`` on ``subjects`` with ``args``.

        Example:
            partners = registry.get_domain("partner").browse([2])
            queue.enqueue(partners, "Get name", "name_get", owner="admin")
        """
        target = TargetRef(
            domain=subjects.domain,
            operation=operation,
            subject_ids=json.dumps(list(subjects.ids)),
            arguments=json.dumps([encode_argument(a) for a in args]),
        )
        return self.create_job(description, target, owner, channel=channel,
                               priority=priority, depends_on=after)

    def on_channel(self, job_id: int, channel: str) -> Job:
        """Move a pending job to the channel with the given name.

        An unknown channel name leaves the job where it is.
        """
        if self.storage.get_channel(channel) is None:
            logger.warning("channel_not_found", job_id=job_id, channel=channel)
            return self._get(job_id)
        return self.storage.update_job(job_id, channel=channel)

    def with_priority(self, job_id: int, priority: int) -> Job:
        return self.storage.update_job(job_id, priority=priority)

    def after_job(self, job_id: int, other_id: int) -> Job:
        """Run a pending job only once ``other_id`` is done."""
        if other_id == job_id:
            raise ValidationError(f"job {job_id} cannot depend on itself")
        if self.storage.get_job(other_id) is None:
            raise ValidationError(f"unknown job: {other_id}")
        return self.storage.update_job(job_id, depends_on=other_id)

    def run(self, job: Job) -> str:
        """Execute a job's operation and return its textual result.

        This MUST NOT modify the job: state changes are the dispatcher's.
        Errors raised by the operation propagate to the caller.
        """
        ids, arguments, operation = check_target(self.registry, job.target)
        domain = self.registry.get_domain(job.target.domain)
        subjects = domain.browse(ids)
        values = [decode_argument(param, value, domain)
                  for param, value in zip(operation.params, arguments)]
        ctx = ExecutionContext(owner=job.owner, job_id=job.id)
        result = operation.handler(ctx, subjects, *values)
        if isinstance(result, str):
            return result
        return DEFAULT_RESULT

    def _get(self, job_id: int) -> Job:
        job = self.storage.get_job(job_id)
        if job is None:
            raise ValidationError(f"unknown job: {job_id}")
        return job

    def get_job(self, job_id: int) -> Optional[Job]:
        return self.storage.get_job(job_id)

    def get_jobs_by_state(self, state: JobState) -> List[Job]:
        """Get all jobs in a specific state."""
        return self.storage.get_jobs_by_state(state)

    def get_all_jobs(self) -> List[Job]:
        """Get all jobs."""
        return self.storage.get_all_jobs()

    # Channel administration

    def add_channel(self, name: str, capacity: int = 1) -> Channel:
        try:
            channel = Channel(name=name, capacity=capacity)
        except pydantic.ValidationError as e:
            raise ValidationError(f"invalid channel: {e.errors()[0]['msg']}") from e
        self.storage.add_channel(channel)
        logger.info("channel_created", channel=name, capacity=capacity)
        return channel

    def set_capacity(self, name: str, capacity: int) -> Channel:
        if capacity <= 0:
            raise ValidationError(f"capacity must be positive, got {capacity}")
        channel = self.storage.get_channel(name)
        if channel is None:
            raise ValidationError(f"unknown channel: {name}")
        channel.capacity = capacity
        self.storage.update_channel(channel)
        logger.info("channel_updated", channel=name, capacity=capacity)
        return channel

    def remove_channel(self, name: str) -> int:
        """Delete a channel. Returns 0 for the default channel."""
        removed = self.storage.delete_channel(name)
        if removed:
            logger.info("channel_removed", channel=name)
        return removed
