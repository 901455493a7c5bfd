"""jobctl - job queue and cron scheduler."""

from .cron import CronTicker
from .dispatcher import Dispatcher
from .errors import ConcurrencyConflict, ExecutionError, Outcome, ValidationError
from .models import Channel, CronEntry, IntervalUnit, Job, JobState, TargetRef
from .queue import JobQueue
from .registry import ExecutionContext, OperationRegistry, Param, ParamKind
from .service import Scheduler
from .settings import Settings
from .storage import Storage

__version__ = "1.0.0"
