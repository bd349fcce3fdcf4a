"""
Scheduler loop.

Every tick the loop reloads the task registry from disk, rebuilds the
schedule index, runs the tasks that are due one after another, and writes
their new last-run times back in a single save. The tick itself is driven
by an APScheduler interval job on a single worker thread, so ticks never
overlap and shutdown waits for the tick in progress to finish.

Failures are isolated: a bad expression or a failing command only affects
its own task, and a registry that cannot be reloaded leaves the loop
running on the previously loaded state.
"""

import copy
import logging
import signal
import threading
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional, Dict, Any, List, Callable

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers import SchedulerNotRunningError
from apscheduler.events import (
    EVENT_JOB_ERROR,
    EVENT_JOB_MISSED,
    EVENT_JOB_MAX_INSTANCES
)

from singleschedule.config import Settings
from singleschedule.jobs import TaskRunner, HistoryStore, JobExecutionError, make_run_record
from singleschedule.registry import RegistryStore, RegistryLoadError, Task
from singleschedule.schedule import build_index, consumed_through, due_occurrence

logger = logging.getLogger(__name__)

TICK_JOB_ID = "singleschedule-tick"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LoopState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


class SchedulerLoop:
    """
    Owns the registry and schedule index for the lifetime of the daemon.

    Other threads only ever see copies of that state through snapshot().
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        runner: Optional[TaskRunner] = None,
        history: Optional[HistoryStore] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        """
        Initialize the loop.

        Args:
            settings: Resolved file locations (default: Settings())
            runner: Task runner (default: TaskRunner())
            history: Run history store (default: one at settings.history_file)
            clock: Source of "now" for scheduled ticks
        """
        self.settings = settings or Settings()
        self.registry_path: Path = self.settings.registry_path
        self.runner = runner or TaskRunner()
        self.history = history if history is not None else HistoryStore(self.settings.history_file)
        self.clock = clock

        self.interval = self.settings.tick_interval
        self.tolerance = self.settings.tolerance

        self.state = LoopState.IDLE
        self.last_tick: Optional[datetime] = None

        self._store: Optional[RegistryStore] = None
        self._index: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self._scheduler: Optional[BlockingScheduler] = None

    def load(self):
        """
        Load the registry for the first time.

        Raises:
            RegistryLoadError: If the registry cannot be read; startup must abort
        """
        store = RegistryStore(self.registry_path)
        index = build_index(store.tasks)
        with self._lock:
            self._store = store
            self._index = index
        logger.info(f"Loaded {len(store)} task(s), {len(index)} schedulable")

    def reload(self) -> bool:
        """
        Reload the registry and rebuild the index.

        Returns:
            False if the registry could not be read; previous state is kept
        """
        try:
            store = RegistryStore(self.registry_path)
        except RegistryLoadError as e:
            logger.error(f"Failed to reload tasks: {e}")
            return False

        index = build_index(store.tasks)
        with self._lock:
            self._store = store
            self._index = index
        return True

    def tick(self, now: Optional[datetime] = None) -> List[str]:
        """
        Run one scheduling pass.

        Args:
            now: Evaluation time (default: the loop's clock)

        Returns:
            Slugs of the tasks that were run
        """
        now = now or self.clock()
        self.last_tick = now

        if not self.reload() and self._store is None:
            logger.error("No task registry loaded, skipping tick")
            return []

        store, index = self._store, self._index
        runs: Dict[str, datetime] = {}

        for task in store.tasks:
            if not task.active:
                continue
            rule = index.get(task.slug)
            if rule is None:
                continue

            occurrence = due_occurrence(rule, task.last_run, now, self.tolerance)
            if occurrence is None:
                continue

            self._run_task(task)
            runs[task.slug] = consumed_through(rule, occurrence, now, self.tolerance)

        if runs:
            self._persist(runs)

        return list(runs)

    def _run_task(self, task: Task):
        logger.info(f"Running task '{task.slug}'")
        start_time = utcnow()
        outcome = None
        error = None

        try:
            outcome = self.runner.run(task.command, slug=task.slug)
            if outcome.success:
                logger.info(f"Task '{task.slug}' completed successfully")
            else:
                logger.error(f"Task '{task.slug}' failed with exit code {outcome.returncode}")
        except JobExecutionError as e:
            error = e
            logger.error(f"Failed to run task '{task.slug}': {e}")

        if self.history is not None:
            record = make_run_record(task.slug, task.command, start_time, utcnow(), outcome, error)
            try:
                self.history.add_run(record)
            except (OSError, ValueError) as e:
                logger.warning(f"Failed to record history for task '{task.slug}': {e}")

    def _persist(self, runs: Dict[str, datetime]):
        """Write last-run times with one whole-registry save."""
        with self._lock:
            self._store.record_runs(runs)
            target = self._store

        # Re-read so mutations made since the tick's reload are not overwritten
        try:
            target = RegistryStore(self.registry_path)
            target.record_runs(runs)
        except RegistryLoadError as e:
            logger.warning(f"Could not re-read registry before saving, writing tick state: {e}")

        try:
            target.save()
        except OSError as e:
            logger.error(f"Failed to save registry: {e}")
            return

        logger.debug(f"Saved last run for {len(runs)} task(s)")

    def snapshot(self) -> Dict[str, Any]:
        """Copy of the loop's current view, safe to hand to other threads."""
        with self._lock:
            tasks = copy.deepcopy(self._store.tasks) if self._store is not None else []
            scheduled = sorted(self._index)
        return {
            'state': self.state.value,
            'last_tick': self.last_tick.isoformat() if self.last_tick else None,
            'tasks': tasks,
            'scheduled': scheduled,
        }

    def _scheduled_tick(self):
        if self.state != LoopState.RUNNING:
            return
        self.tick()

    def _setup_event_listeners(self):
        """Log tick problems reported by APScheduler."""

        def job_error_listener(event):
            logger.error(f"Tick raised exception: {event.exception}")

        def job_missed_listener(event):
            logger.warning("Tick missed its scheduled run time")

        def job_max_instances_listener(event):
            logger.debug("Previous tick still running, skipping")

        self._scheduler.add_listener(job_error_listener, EVENT_JOB_ERROR)
        self._scheduler.add_listener(job_missed_listener, EVENT_JOB_MISSED)
        self._scheduler.add_listener(job_max_instances_listener, EVENT_JOB_MAX_INSTANCES)

    def _setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown."""

        def signal_handler(signum, frame):
            logger.info(f"Received signal {signum}, shutting down...")
            self.stop()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    def run(self, install_signal_handlers: bool = True):
        """
        Load the registry and tick until stop() is called.

        Blocks the calling thread.

        Raises:
            RegistryLoadError: If the registry cannot be loaded at startup
        """
        self.load()

        self._scheduler = BlockingScheduler(
            executors={'default': ThreadPoolExecutor(1)},
            job_defaults={
                'coalesce': True,
                'max_instances': 1,
                'misfire_grace_time': None
            },
            timezone='UTC'
        )
        self._scheduler.add_job(
            self._scheduled_tick,
            'interval',
            seconds=self.interval,
            id=TICK_JOB_ID,
            next_run_time=utcnow()
        )
        self._setup_event_listeners()

        if install_signal_handlers:
            self._setup_signal_handlers()

        if self.state == LoopState.SHUTTING_DOWN:
            self.state = LoopState.STOPPED
            return
        self.state = LoopState.RUNNING
        logger.info(f"Scheduler running (tick every {self.interval}s)")

        try:
            self._scheduler.start()
        finally:
            self.state = LoopState.STOPPED
            logger.info("Scheduler stopped")

    def stop(self, wait: bool = True):
        """
        Request shutdown.

        The tick in progress, if any, is allowed to finish.

        Args:
            wait: Block until the tick in progress has finished
        """
        if self.state in (LoopState.SHUTTING_DOWN, LoopState.STOPPED):
            return
        self.state = LoopState.SHUTTING_DOWN

        if self._scheduler is None:
            return
        try:
            self._scheduler.shutdown(wait=wait)
        except SchedulerNotRunningError:
            pass
