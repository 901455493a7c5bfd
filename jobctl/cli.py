"""CLI interface for jobctl."""

import click
import importlib
import json
import sys
import time
from typing import Optional

from .errors import JobCtlError
from .logging import configure_logging
from .models import IntervalUnit, JobState, TargetRef
from .queue import JobQueue
from .registry import OperationRegistry
from .cron import CronTicker
from .service import Scheduler
from .settings import Settings
from .storage import Storage


# Global storage instance
_storage: Optional[Storage] = None


def get_settings() -> Settings:
    return Settings()


def get_storage() -> Storage:
    """Get or create storage instance."""
    global _storage
    if _storage is None:
        _storage = Storage(get_settings().data_dir)
    return _storage


def load_registry(path: str) -> OperationRegistry:
    """Import an OperationRegistry from ``module:attribute``.

    The attribute may be a registry or a callable returning one.
    """
    module_name, _, attr = path.partition(":")
    if not attr:
        raise click.BadParameter("expected module:attribute", param_hint="--registry")
    obj = getattr(importlib.import_module(module_name), attr)
    if callable(obj) and not isinstance(obj, OperationRegistry):
        obj = obj()
    if not isinstance(obj, OperationRegistry):
        raise click.BadParameter(f"{path} is not an OperationRegistry", param_hint="--registry")
    return obj


registry_option = click.option(
    "--registry", "registry_path", required=True,
    help="Operation registry to use, as module:attribute",
)


def _fail(message: str) -> None:
    click.echo(f"✗ {message}", err=True)
    sys.exit(1)


@click.group()
def cli():
    """jobctl - Job queue and cron scheduler"""
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json)


@cli.command()
@click.argument("job_json")
@registry_option
def enqueue(job_json: str, registry_path: str):
    """Create a new pending job.

    Example:
        jobctl enqueue --registry app.jobs:registry \\
            '{"name":"Rename","domain":"partner","operation":"write",
              "subject_ids":[2],"arguments":[{"name":"Agrolait"}],"owner":"admin"}'
    """
    try:
        data = json.loads(job_json)
        target = TargetRef(
            domain=data["domain"],
            operation=data["operation"],
            subject_ids=json.dumps(data.get("subject_ids", [])),
            arguments=json.dumps(data.get("arguments", [])),
        )
        queue = JobQueue(get_storage(), load_registry(registry_path))
        job = queue.create_job(
            data.get("name", data["operation"]),
            target,
            data["owner"],
            channel=data.get("channel"),
            priority=data.get("priority", 0),
            depends_on=data.get("depends_on"),
        )
        click.echo(f"✓ Job {job.id} created on channel {job.channel}")
    except json.JSONDecodeError as e:
        _fail(f"Invalid JSON: {e}")
    except KeyError as e:
        _fail(f"Missing field: {e}")
    except JobCtlError as e:
        _fail(f"Error: {e}")


@cli.command()
@registry_option
def run(registry_path: str):
    """Run the dispatcher and the cron ticker until interrupted.

    Example:
        jobctl run --registry app.jobs:registry
    """
    settings = get_settings()
    scheduler = Scheduler(load_registry(registry_path), settings)
    click.echo(f"Starting scheduler on {settings.data_dir}...")
    scheduler.start()
    try:
        while scheduler.is_running():
            time.sleep(0.5)
    except KeyboardInterrupt:
        click.echo("\nShutting down, waiting for running jobs...")
    finally:
        scheduler.shutdown(wait=True)
    click.echo("Scheduler stopped")


@cli.command()
def status():
    """Show job queue status and statistics.

    Example:
        jobctl status
    """
    storage = get_storage()
    stats = storage.get_stats()

    click.echo("\n" + "=" * 50)
    click.echo("jobctl Status")
    click.echo("=" * 50)
    click.echo(f"Total Jobs:     {stats['total']}")
    click.echo(f"  Pending:      {stats['pending']}")
    click.echo(f"  Enqueued:     {stats['enqueued']}")
    click.echo(f"  Running:      {stats['running']}")
    click.echo(f"  Done:         {stats['done']}")
    click.echo(f"  Failed:       {stats['failed']}")
    click.echo("\nChannels:")
    for channel in storage.get_channels():
        active = storage.count_active(channel.name)
        click.echo(f"  {channel.name:<20} {active}/{channel.capacity}")
    click.echo(f"\nCron entries:   {stats['crons']}")
    click.echo("=" * 50 + "\n")


@cli.command(name="list")
@click.option("--state", type=click.Choice([s.value for s in JobState]), help="Filter by state")
@click.option("--limit", default=10, help="Maximum jobs to display")
def list_jobs(state: Optional[str], limit: int):
    """List jobs by state.

    Example:
        jobctl list --state pending
        jobctl list --state failed --limit 20
    """
    storage = get_storage()

    if state:
        jobs = storage.get_jobs_by_state(JobState(state))
    else:
        jobs = storage.get_all_jobs()

    jobs = jobs[:limit]

    if not jobs:
        click.echo("No jobs found")
        return

    click.echo(f"\n{'ID':<8} {'Name':<30} {'Channel':<12} {'Prio':<6} {'State':<10} {'Created':<20}")
    click.echo("-" * 90)
    for job in jobs:
        created = job.created_at.strftime("%Y-%m-%d %H:%M:%S")
        click.echo(f"{job.id:<8} {job.name[:30]:<30} {job.channel[:12]:<12} "
                   f"{job.priority:<6} {job.state.value:<10} {created:<20}")
    click.echo()


@cli.command()
@click.argument("job_id", type=int)
def show(job_id: int):
    """Show the details of a job.

    Example:
        jobctl show 12
    """
    job = get_storage().get_job(job_id)
    if job is None:
        _fail(f"Job {job_id} not found")
    click.echo(json.dumps(job.model_dump(mode="json"), indent=2))


@cli.group()
def channel():
    """Manage channels"""
    pass


@channel.command(name="add")
@click.argument("name")
@click.option("--capacity", default=1, help="Maximum enqueued and running jobs")
def channel_add(name: str, capacity: int):
    """Create a channel.

    Example:
        jobctl channel add reports --capacity 3
    """
    try:
        JobQueue(get_storage(), OperationRegistry()).add_channel(name, capacity)
        click.echo(f"✓ Channel {name} created (capacity {capacity})")
    except JobCtlError as e:
        _fail(f"Error: {e}")


@channel.command(name="list")
def channel_list():
    """List channels with their occupancy."""
    storage = get_storage()
    click.echo(f"\n{'Name':<20} {'Capacity':<10} {'Active':<10}")
    click.echo("-" * 40)
    for ch in storage.get_channels():
        click.echo(f"{ch.name:<20} {ch.capacity:<10} {storage.count_active(ch.name):<10}")
    click.echo()


@channel.command(name="set-capacity")
@click.argument("name")
@click.argument("capacity", type=int)
def channel_set_capacity(name: str, capacity: int):
    """Change the capacity of a channel.

    Example:
        jobctl channel set-capacity reports 5
    """
    try:
        JobQueue(get_storage(), OperationRegistry()).set_capacity(name, capacity)
        click.echo(f"✓ Channel {name} capacity set to {capacity}")
    except JobCtlError as e:
        _fail(f"Error: {e}")


@channel.command(name="remove")
@click.argument("name")
def channel_remove(name: str):
    """Delete a channel. The default channel cannot be deleted."""
    try:
        removed = JobQueue(get_storage(), OperationRegistry()).remove_channel(name)
    except JobCtlError as e:
        _fail(f"Error: {e}")
    if not removed:
        _fail(f"Channel {name} was not removed")
    click.echo(f"✓ Channel {name} removed")


@cli.group()
def cron():
    """Manage cron entries"""
    pass


@cron.command(name="add")
@click.argument("cron_json")
@registry_option
def cron_add(cron_json: str, registry_path: str):
    """Create or update a cron entry.

    Example:
        jobctl cron add --registry app.jobs:registry \\
            '{"name":"nightly","domain":"report","operation":"build",
              "owner":"admin","interval_number":1,"interval_unit":"days"}'
    """
    try:
        data = json.loads(cron_json)
        target = TargetRef(
            domain=data["domain"],
            operation=data["operation"],
            subject_ids=json.dumps(data.get("subject_ids", [])),
            arguments=json.dumps(data.get("arguments", [])),
        )
        ticker = CronTicker(get_storage(), load_registry(registry_path))
        entry = ticker.schedule(
            data["name"],
            target,
            data["owner"],
            interval_number=data.get("interval_number", 1),
            interval_unit=IntervalUnit(data.get("interval_unit", IntervalUnit.MONTHS.value)),
            next_call_at=data.get("next_call_at"),
            active=data.get("active"),
        )
        click.echo(f"✓ Cron {entry.name} next call at {entry.next_call_at:%Y-%m-%d %H:%M:%S}")
    except json.JSONDecodeError as e:
        _fail(f"Invalid JSON: {e}")
    except (KeyError, ValueError) as e:
        _fail(f"Invalid cron: {e}")
    except JobCtlError as e:
        _fail(f"Error: {e}")


@cron.command(name="list")
def cron_list():
    """List cron entries."""
    crons = get_storage().get_crons()
    if not crons:
        click.echo("No cron entries")
        return
    click.echo(f"\n{'Name':<20} {'Every':<14} {'Next call':<20} {'Active':<6}")
    click.echo("-" * 62)
    for entry in crons:
        every = f"{entry.interval_number} {entry.interval_unit.value}"
        click.echo(f"{entry.name[:20]:<20} {every:<14} "
                   f"{entry.next_call_at:%Y-%m-%d %H:%M:%S} {'yes' if entry.active else 'no':<6}")
    click.echo()


def _set_cron_active(name: str, active: bool) -> None:
    try:
        CronTicker(get_storage(), OperationRegistry()).set_active(name, active)
    except JobCtlError as e:
        _fail(f"Error: {e}")
    click.echo(f"✓ Cron {name} {'resumed' if active else 'paused'}")


@cron.command()
@click.argument("name")
def pause(name: str):
    """Stop a cron entry from firing."""
    _set_cron_active(name, False)


@cron.command()
@click.argument("name")
def resume(name: str):
    """Let a paused cron entry fire again."""
    _set_cron_active(name, True)


@cli.group()
def config():
    """Show configuration"""
    pass


@config.command(name="show")
def config_show():
    """Show the effective configuration.

    Values come from JOBCTL_* environment variables.
    """
    settings = get_settings()
    click.echo("\nCurrent Configuration:")
    for key, value in settings.model_dump().items():
        click.echo(f"  {key.replace('_', '-'):<14} {value}")
    click.echo()


if __name__ == "__main__":
    cli()
