"""Host process running the dispatcher and the cron ticker side by side."""

import threading
from typing import List, Optional

from .cron import CronTicker
from .dispatcher import Dispatcher
from .logging import get_logger
from .queue import JobQueue
from .registry import OperationRegistry
from .settings import Settings
from .storage import Storage

logger = get_logger(__name__)


class Scheduler:
    """Owns the store and both periodic loops.

    Example:
        scheduler = Scheduler(registry, Settings(data_dir="/var/lib/jobctl"))
        scheduler.start()
        ...
        scheduler.shutdown()
    """

    def __init__(self, registry: OperationRegistry, settings: Optional[Settings] = None):
        self.settings = settings or Settings()
        self.registry = registry
        self.storage = Storage(self.settings.data_dir)
        self.queue = JobQueue(self.storage, registry)
        self.dispatcher = Dispatcher(self.storage, registry,
                                     max_workers=self.settings.max_workers)
        self.cron = CronTicker(self.storage, registry)
        self._threads: List[threading.Thread] = []

    def start(self) -> None:
        """Start both loops in background threads."""
        if self._threads:
            return
        self._threads = [
            threading.Thread(
                target=self.dispatcher.run,
                kwargs={"poll_period": self.settings.poll_period,
                        "hold_delay": self.settings.hold_delay},
                name="jobctl-dispatcher",
                daemon=True,
            ),
            threading.Thread(
                target=self.cron.run,
                kwargs={"period": self.settings.cron_period},
                name="jobctl-cron",
                daemon=True,
            ),
        ]
        for thread in self._threads:
            thread.start()
        logger.info("scheduler_started", data_dir=self.settings.data_dir)

    def is_running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def shutdown(self, wait: bool = True, timeout: float = 5.0) -> None:
        """Stop both loops, then drain the execution pool if ``wait``."""
        self.cron.stop()
        self.dispatcher.stop()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        self.dispatcher.drain(wait=wait)
        logger.info("scheduler_stopped", drained=wait)
