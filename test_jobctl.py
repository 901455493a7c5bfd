"""Test suite for jobctl - job queue and dispatcher."""

import json
import threading
import time
from concurrent.futures import wait
from datetime import datetime, timezone

import pytest

from jobctl.dispatcher import Dispatcher
from jobctl.errors import ConcurrencyConflict, ErrorKind, ValidationError
from jobctl.models import DEFAULT_CHANNEL, DEFAULT_RESULT, Job, JobState, TargetRef
from jobctl.queue import JobQueue, check_target
from jobctl.registry import OperationRegistry, Param, ParamKind, Subjects, decode_argument
from jobctl.storage import Storage

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def build_registry(partners, calls):
    """Registry with a small partner domain backed by ``partners``."""
    registry = OperationRegistry()
    registry.register_domain("partner", lambda ids: [partners[i] for i in ids])

    @registry.operation("partner")
    def name_get(ctx, subjects):
        return ", ".join(p["name"] for p in subjects)

    @registry.operation("partner", params=[Param("values", ParamKind.DATA)])
    def write(ctx, subjects, values):
        for partner in subjects:
            partner.update(values)
        return True

    @registry.operation("partner", params=[Param("a"), Param("b"), Param("c")])
    def record(ctx, subjects, a, b, c):
        calls.append((ctx, subjects, (a, b, c)))

    @registry.operation("partner", params=[Param("others", ParamKind.SUBJECTS)])
    def merge(ctx, subjects, others):
        calls.append((ctx, subjects, others))
        return f"merged {others.ids}"

    @registry.operation("partner")
    def explode(ctx, subjects):
        raise RuntimeError("boom")

    return registry


@pytest.fixture
def partners():
    return {
        1: {"id": 1, "name": "ASUSTeK"},
        2: {"id": 2, "name": "Agrolait"},
        3: {"id": 3, "name": "Camptocamp"},
    }


@pytest.fixture
def calls():
    return []


@pytest.fixture
def registry(partners, calls):
    return build_registry(partners, calls)


@pytest.fixture
def storage(tmp_path):
    return Storage(str(tmp_path))


@pytest.fixture
def queue(storage, registry):
    return JobQueue(storage, registry)


@pytest.fixture
def dispatcher(storage, registry):
    d = Dispatcher(storage, registry, max_workers=4, clock=lambda: NOW)
    yield d
    d.drain(wait=True)


def target(operation="name_get", ids="[2]", arguments="[]", domain="partner"):
    return TargetRef(domain=domain, operation=operation, subject_ids=ids, arguments=arguments)


def run_until_idle(dispatcher, storage, check=None, max_ticks=50):
    """Tick and wait for launched runs until nothing moves anymore."""
    for _ in range(max_ticks):
        admitted = dispatcher.admit()
        if check:
            check()
        futures = dispatcher.execute()
        if check:
            check()
        wait(futures)
        if check:
            check()
        if not admitted and not futures:
            return
    raise AssertionError("dispatcher did not become idle")


# Job creation and validation

def test_job_creation(queue, storage):
    """Test: Create a job with a valid target."""
    job = queue.create_job("Get name", target(), "admin")

    stored = storage.get_job(job.id)
    assert stored is not None
    assert stored.state == JobState.PENDING
    assert stored.channel == DEFAULT_CHANNEL
    assert stored.owner == "admin"
    assert stored.priority == 0
    assert stored.depends_on is None
    assert stored.retry_count == 0
    assert stored.enqueued_at is None and stored.started_at is None and stored.done_at is None


def test_eta_is_reserved(storage, dispatcher):
    """Test: The eta field defaults to None, persists, and does not delay admission."""
    assert Job(name="plain", target=target(), owner="admin").eta is None

    later = datetime(2030, 1, 1, 8, 0)
    job = storage.add_job(Job(name="later", target=target(), owner="admin", eta=later))

    stored = storage.get_job(job.id)
    assert stored.eta == later.replace(tzinfo=timezone.utc)
    assert job.id in dispatcher.admit()


def test_job_ids_increase(queue):
    """Test: Job ids are assigned in creation order."""
    ids = [queue.create_job(f"job{i}", target(), "admin").id for i in range(3)]
    assert ids == sorted(ids)
    assert len(set(ids)) == 3


def test_enqueue_on_subjects(queue, registry, storage):
    """Test: Enqueue encodes subjects and arguments as JSON arrays."""
    partners = registry.get_domain("partner").browse([2])
    job = queue.enqueue(partners, "Set name", "write", {"name": "Agrolait modified"},
                        owner="demo", priority=3)

    stored = storage.get_job(job.id)
    assert stored.name == "Set name"
    assert stored.owner == "demo"
    assert stored.priority == 3
    assert json.loads(stored.target.subject_ids) == [2]
    assert json.loads(stored.target.arguments) == [{"name": "Agrolait modified"}]


def test_invalid_domain_rejected(queue, storage):
    """Test: Unknown domain raises ValidationError and stores nothing."""
    with pytest.raises(ValidationError) as exc:
        queue.create_job("Test Job", target(domain="NoDomain"), "admin")
    assert str(exc.value) == "unknown domain: NoDomain"
    assert exc.value.kind == ErrorKind.VALIDATION
    assert storage.get_all_jobs() == []


def test_invalid_operation_rejected(queue, storage):
    """Test: Unknown operation raises ValidationError."""
    with pytest.raises(ValidationError) as exc:
        queue.create_job("Test Job", target(operation="no_method"), "admin")
    assert str(exc.value) == "unknown operation in domain: partner.no_method"
    assert storage.get_all_jobs() == []


def test_malformed_subject_ids_rejected(queue, storage):
    """Test: Unparsable subject ids raise ValidationError."""
    with pytest.raises(ValidationError) as exc:
        queue.create_job("Test Job", target(ids="[no_ids]"), "admin")
    assert str(exc.value).startswith("unable to unmarshal SubjectIDs: ")
    assert storage.get_all_jobs() == []

    with pytest.raises(ValidationError) as exc:
        queue.create_job("Test Job", target(ids='["a"]'), "admin")
    assert str(exc.value).startswith("unable to unmarshal SubjectIDs: ")


def test_malformed_arguments_rejected(queue, storage):
    """Test: Unparsable arguments raise a ValidationError of their own."""
    with pytest.raises(ValidationError) as exc:
        queue.create_job("Test Job", target(arguments="[unparseable args"), "admin")
    assert str(exc.value).startswith("unable to unmarshal Arguments: ")
    assert storage.get_all_jobs() == []

    with pytest.raises(ValidationError) as exc:
        queue.create_job("Test Job", target(arguments='{"a": 1}'), "admin")
    assert str(exc.value).startswith("unable to unmarshal Arguments: ")


def test_arity_mismatch_rejected(queue, storage):
    """Test: Wrong number of arguments names expected and received."""
    with pytest.raises(ValidationError) as exc:
        queue.create_job("Test Job", target(arguments='["too", "many", "args"]'), "admin")
    assert str(exc.value) == (
        'wrong number of arguments given: expect 0 arguments, received ["too", "many", "args"]'
    )
    assert storage.get_all_jobs() == []


def test_unknown_channel_and_dependency_rejected(queue, storage):
    """Test: A job needs an existing channel and an existing prerequisite."""
    with pytest.raises(ValidationError):
        queue.create_job("Test Job", target(), "admin", channel="nowhere")
    with pytest.raises(ValidationError):
        queue.create_job("Test Job", target(), "admin", depends_on=42)
    assert storage.get_all_jobs() == []


def test_check_target_returns_decoded_values(registry):
    """Test: check_target decodes ids and arguments."""
    ids, arguments, operation = check_target(registry, target("record", "[1, 2]", '[12, "x", true]'))
    assert ids == [1, 2]
    assert arguments == [12, "x", True]
    assert operation.arity == 3


def test_decode_argument_kinds(registry):
    """Test: Arguments are decoded according to their declared kind."""
    domain = registry.get_domain("partner")

    subjects = decode_argument(Param("p", ParamKind.SUBJECTS), 3, domain)
    assert isinstance(subjects, Subjects)
    assert subjects.ids == [3]
    assert decode_argument(Param("p", ParamKind.SUBJECTS), [1, 2], domain).ids == [1, 2]
    assert decode_argument(Param("p", ParamKind.DATA), {"name": "x"}, domain) == {"name": "x"}
    assert decode_argument(Param("p"), "plain", domain) == "plain"


# Builder helpers and channels

def test_job_helpers(queue, storage):
    """Test: Channel, priority and dependency can be set on pending jobs."""
    queue.add_channel("Channel 4", capacity=2)
    first = queue.create_job("first", target(), "admin")
    job = queue.create_job("second", target(), "admin")

    queue.on_channel(job.id, "Channel 4")
    queue.with_priority(job.id, 7)
    queue.after_job(job.id, first.id)

    stored = storage.get_job(job.id)
    assert stored.channel == "Channel 4"
    assert stored.priority == 7
    assert stored.depends_on == first.id


def test_on_unknown_channel_keeps_channel(queue, storage):
    """Test: Moving a job to an unknown channel leaves it where it was."""
    job = queue.create_job("Get name", target(), "admin")
    queue.on_channel(job.id, "Unknown channel")
    assert storage.get_job(job.id).channel == DEFAULT_CHANNEL


def test_after_job_rejects_self_and_unknown(queue):
    """Test: A job cannot depend on itself or on a missing job."""
    job = queue.create_job("Get name", target(), "admin")
    with pytest.raises(ValidationError):
        queue.after_job(job.id, job.id)
    with pytest.raises(ValidationError):
        queue.after_job(job.id, 999)


def test_helpers_refuse_started_jobs(queue, storage):
    """Test: Scheduling fields are frozen once a job left pending."""
    job = queue.create_job("Get name", target(), "admin")
    storage.admit_job(job.id, capacity=1, now=NOW)
    with pytest.raises(ConcurrencyConflict):
        queue.with_priority(job.id, 5)


def test_default_channel_cannot_be_deleted(queue, storage):
    """Test: Other channels can be removed, the default one cannot."""
    queue.add_channel("Channel 4")
    assert queue.remove_channel("Channel 4") == 1
    assert queue.remove_channel(DEFAULT_CHANNEL) == 0
    assert storage.get_channel(DEFAULT_CHANNEL) is not None
    assert storage.get_channel("Channel 4") is None


def test_channel_with_unfinished_jobs_is_kept(queue, storage):
    """Test: A channel still holding pending jobs cannot be removed."""
    queue.add_channel("busy")
    queue.create_job("Get name", target(), "admin", channel="busy")
    with pytest.raises(ValidationError):
        queue.remove_channel("busy")
    assert storage.get_channel("busy") is not None


def test_channel_validation(queue):
    """Test: Channel names are unique and capacities positive."""
    queue.add_channel("reports", capacity=3)
    with pytest.raises(ValidationError):
        queue.add_channel("reports")
    with pytest.raises(ValidationError):
        queue.add_channel("zero", capacity=0)
    with pytest.raises(ValidationError):
        queue.set_capacity("reports", -1)
    assert queue.set_capacity("reports", 5).capacity == 5


# Store transitions

def test_transition_is_compare_and_set(queue, storage):
    """Test: A transition from a stale state is a conflict."""
    job = queue.create_job("Get name", target(), "admin")
    assert storage.admit_job(job.id, capacity=1, now=NOW)

    with pytest.raises(ConcurrencyConflict) as exc:
        storage.admit_job(job.id, capacity=1, now=NOW)
    assert exc.value.kind == ErrorKind.CONCURRENCY_CONFLICT

    with pytest.raises(ConcurrencyConflict):
        storage.transition_job(job.id, JobState.RUNNING, JobState.DONE)


def test_transitions_only_move_forward(queue, storage):
    """Test: Backward transitions are refused outright."""
    job = queue.create_job("Get name", target(), "admin")
    with pytest.raises(ValueError):
        storage.transition_job(job.id, JobState.DONE, JobState.PENDING)
    with pytest.raises(ValueError):
        storage.transition_job(job.id, JobState.PENDING, JobState.RUNNING)
    assert JobState.PENDING.can_advance_to(JobState.ENQUEUED)
    assert not JobState.FAILED.can_advance_to(JobState.RUNNING)


def test_job_persistence(queue, tmp_path):
    """Test: Jobs persist across storage instances."""
    job = queue.create_job("Persistent", target(), "admin")

    new_storage = Storage(str(tmp_path))
    new_job = new_storage.get_job(job.id)
    assert new_job is not None
    assert new_job.name == "Persistent"
    assert new_job.target == job.target
    assert new_job.created_at == job.created_at


def test_stats(queue, storage):
    """Test: Get job statistics."""
    for i in range(3):
        queue.create_job(f"job{i}", target(), "admin")
    storage.admit_job(1, capacity=1, now=NOW)

    stats = storage.get_stats()
    assert stats["total"] == 3
    assert stats["pending"] == 2
    assert stats["enqueued"] == 1
    assert stats["channels"] == 1


# Admission

def test_priority_decides_admission(queue, dispatcher, storage):
    """Test: With capacity 1 the lower priority value is admitted first."""
    b = queue.create_job("B", target(), "admin", priority=12)
    a = queue.create_job("A", target(), "admin", priority=1)

    assert dispatcher.admit() == [a.id]
    assert storage.get_job(a.id).state == JobState.ENQUEUED
    assert storage.get_job(a.id).enqueued_at == NOW
    assert storage.get_job(b.id).state == JobState.PENDING


def test_creation_order_breaks_priority_ties(queue, dispatcher, storage):
    """Test: Same priority jobs are admitted in creation order."""
    storage.update_channel(storage.get_channel(DEFAULT_CHANNEL).model_copy(update={"capacity": 2}))
    jobs = [queue.create_job(f"job{i}", target(), "admin", priority=5) for i in range(3)]
    assert dispatcher.admit() == [jobs[0].id, jobs[1].id]


def test_capacity_is_respected(queue, dispatcher, storage):
    """Test: A channel never holds more active jobs than its capacity."""
    queue.add_channel("batch", capacity=2)
    for i in range(5):
        queue.create_job(f"job{i}", target(), "admin", channel="batch")

    assert len(dispatcher.admit()) == 2
    assert dispatcher.admit() == []
    assert storage.count_active("batch") == 2


def test_channels_are_admitted_independently(queue, dispatcher, storage):
    """Test: A full channel does not block another one."""
    queue.add_channel("other", capacity=1)
    queue.create_job("d1", target(), "admin")
    queue.create_job("d2", target(), "admin")
    queue.create_job("o1", target(), "admin", channel="other")

    admitted = dispatcher.admit()
    assert len(admitted) == 2
    assert storage.count_active(DEFAULT_CHANNEL) == 1
    assert storage.count_active("other") == 1


def test_concurrent_admission_respects_capacity(queue, storage, registry):
    """Test: Overlapping admission passes never exceed capacity."""
    queue.add_channel("batch", capacity=3)
    for i in range(10):
        queue.create_job(f"job{i}", target(), "admin", channel="batch")

    dispatchers = [Dispatcher(storage, registry, clock=lambda: NOW) for _ in range(4)]
    results = []
    threads = [threading.Thread(target=lambda d=d: results.append(d.admit())) for d in dispatchers]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    for d in dispatchers:
        d.drain()

    admitted = [job_id for r in results for job_id in r]
    assert len(admitted) == 3
    assert len(set(admitted)) == 3
    assert storage.count_active("batch") == 3


def test_dependency_blocks_admission(queue, dispatcher, storage):
    """Test: A job waiting on another one is not a candidate."""
    storage.update_channel(storage.get_channel(DEFAULT_CHANNEL).model_copy(update={"capacity": 5}))
    parent = queue.create_job("parent", target(), "admin", priority=10)
    child = queue.create_job("child", target(), "admin", priority=1, depends_on=parent.id)

    assert dispatcher.admit() == [parent.id]
    assert storage.get_job(child.id).state == JobState.PENDING


# Execution

def test_execution_success(queue, dispatcher, storage):
    """Test: A run records the operation's textual result."""
    job = queue.create_job("Get name", target(), "admin")

    dispatcher.admit()
    futures = dispatcher.execute()
    assert len(futures) == 1
    outcome = futures[0].result()
    assert outcome.ok

    done = storage.get_job(job.id)
    assert done.state == JobState.DONE
    assert done.result == "Agrolait"
    assert done.started_at == NOW
    assert done.done_at == NOW
    assert done.error_info is None


def test_default_result_for_non_string(queue, dispatcher, storage, partners):
    """Test: Operations without a string result get the default one."""
    partners_set = dispatcher.queue.registry.get_domain("partner").browse([2])
    job = queue.enqueue(partners_set, "Set name", "write", {"name": "Agrolait modified"}, owner="admin")

    run_until_idle(dispatcher, storage)
    assert storage.get_job(job.id).result == DEFAULT_RESULT
    assert partners[2]["name"] == "Agrolait modified"


def test_execution_failure_is_isolated(queue, dispatcher, storage):
    """Test: A failing job ends failed without affecting others."""
    storage.update_channel(storage.get_channel(DEFAULT_CHANNEL).model_copy(update={"capacity": 2}))
    bad = queue.create_job("Explode", target("explode"), "admin")
    good = queue.create_job("Get name", target(), "admin")

    run_until_idle(dispatcher, storage)

    failed = storage.get_job(bad.id)
    assert failed.state == JobState.FAILED
    assert failed.error_info.startswith("RuntimeError: boom")
    assert "Traceback" in failed.error_info
    assert failed.result is None
    assert failed.done_at == NOW
    assert failed.retry_count == 0
    assert storage.get_job(good.id).state == JobState.DONE


def test_missing_subject_fails_job(queue, dispatcher, storage):
    """Test: Errors while decoding subjects are captured on the job."""
    job = queue.create_job("Get name", target(ids="[99]"), "admin")
    run_until_idle(dispatcher, storage)
    failed = storage.get_job(job.id)
    assert failed.state == JobState.FAILED
    assert failed.error_info.startswith("KeyError")


def test_argument_round_trip(queue, dispatcher, storage, calls):
    """Test: Arguments and subjects reach the operation unchanged."""
    job = queue.create_job("Record", target("record", "[1, 2]", '[12, "x", true]'), "demo")

    run_until_idle(dispatcher, storage)

    assert storage.get_job(job.id).state == JobState.DONE
    assert len(calls) == 1
    ctx, subjects, args = calls[0]
    assert args == (12, "x", True)
    assert subjects.ids == [1, 2]
    assert [p["name"] for p in subjects] == ["ASUSTeK", "Agrolait"]
    assert ctx.owner == "demo"
    assert ctx.job_id == job.id


def test_subject_arguments_are_browsed(queue, dispatcher, storage, calls):
    """Test: Subject arguments are resolved in the job's domain."""
    job = queue.create_job("Merge", target("merge", "[1]", "[[2, 3]]"), "admin")
    run_until_idle(dispatcher, storage)

    assert storage.get_job(job.id).result == "merged [2, 3]"
    _, _, others = calls[0]
    assert [p["name"] for p in others] == ["Agrolait", "Camptocamp"]


def test_run_does_not_modify_job(queue, storage):
    """Test: Running a job leaves its record untouched."""
    job = queue.create_job("Get name", target(), "admin")
    before = storage.get_job(job.id)

    assert queue.run(before) == "Agrolait"
    assert storage.get_job(job.id) == before


def test_execute_skips_jobs_taken_by_another_pass(queue, dispatcher, storage):
    """Test: A job already started elsewhere is not launched twice."""
    job = queue.create_job("Get name", target(), "admin")
    dispatcher.admit()
    storage.transition_job(job.id, JobState.ENQUEUED, JobState.RUNNING, started_at=NOW)

    assert dispatcher.execute() == []
    assert storage.get_job(job.id).state == JobState.RUNNING


def test_dependency_overrides_priority(queue, dispatcher, storage):
    """Test: The prerequisite is done before the dependent job is enqueued."""
    job2 = queue.create_job("Set name", target(), "admin", priority=1)
    job1 = queue.create_job("Get name", target(), "admin", priority=12, depends_on=job2.id)
    # Same scenario with the dependency pointing at the less urgent job
    job4 = queue.create_job("Later", target(), "admin", priority=10)
    job3 = queue.create_job("Sooner", target(), "admin", priority=0, depends_on=job4.id)

    def check():
        for child_id, parent_id in ((job1.id, job2.id), (job3.id, job4.id)):
            child = storage.get_job(child_id)
            parent = storage.get_job(parent_id)
            if child.state != JobState.PENDING:
                assert parent.state == JobState.DONE
        assert storage.count_active(DEFAULT_CHANNEL) <= 1

    run_until_idle(dispatcher, storage, check=check)

    for job_id in (job1.id, job2.id, job3.id, job4.id):
        assert storage.get_job(job_id).state == JobState.DONE
    assert storage.get_job(job2.id).done_at <= storage.get_job(job1.id).enqueued_at
    assert storage.get_job(job4.id).done_at <= storage.get_job(job3.id).enqueued_at


def test_failed_dependency_never_runs_child(queue, dispatcher, storage):
    """Test: A job depending on a failed one stays pending."""
    parent = queue.create_job("Explode", target("explode"), "admin")
    child = queue.create_job("Get name", target(), "admin", depends_on=parent.id)

    run_until_idle(dispatcher, storage)
    assert storage.get_job(parent.id).state == JobState.FAILED
    assert storage.get_job(child.id).state == JobState.PENDING


# Loop

def test_tick_reports_remaining_candidates(queue, dispatcher, storage):
    """Test: tick returns whether ready jobs are left behind."""
    assert dispatcher.tick() is False

    queue.create_job("job1", target(), "admin")
    queue.create_job("job2", target(), "admin")
    assert dispatcher.tick() is True
    dispatcher.drain(wait=True)


def test_full_channel_still_has_candidates(queue, dispatcher, storage):
    """Test: A ready job behind a saturated channel keeps the loop at its normal pace."""
    first = queue.create_job("job1", target(), "admin")
    second = queue.create_job("job2", target(), "admin")
    assert dispatcher.admit() == [first.id]
    assert storage.count_active(DEFAULT_CHANNEL) == 1

    assert dispatcher.has_candidates() is True
    assert storage.get_job(second.id).state == JobState.PENDING


def test_run_loop_processes_jobs(queue, storage, registry):
    """Test: The dispatcher loop runs jobs until stopped."""
    dispatcher = Dispatcher(storage, registry, max_workers=2)
    jobs = [queue.create_job(f"job{i}", target(), "admin") for i in range(3)]

    thread = threading.Thread(target=dispatcher.run,
                              kwargs={"poll_period": 0.01, "hold_delay": 0.05})
    thread.start()
    try:
        deadline = time.monotonic() + 10
        while time.monotonic() < deadline:
            if all(storage.get_job(j.id).state == JobState.DONE for j in jobs):
                break
            time.sleep(0.05)
    finally:
        dispatcher.stop()
        thread.join(timeout=5)
        dispatcher.drain(wait=True)

    assert not thread.is_alive()
    assert all(storage.get_job(j.id).state == JobState.DONE for j in jobs)


def test_drained_dispatcher_launches_nothing(queue, dispatcher, storage):
    """Test: After draining, enqueued jobs are left for another dispatcher."""
    job = queue.create_job("Get name", target(), "admin")
    dispatcher.drain(wait=True)
    dispatcher.admit()
    assert dispatcher.execute() == []
    assert storage.get_job(job.id).state == JobState.ENQUEUED
