"""
singleschedule

Register shell commands to run on cron schedules (with a seconds field)
and run them from a single background daemon.

Features:
- JSON task registry, reloaded by the daemon on every tick
- Missed runs collapse into one catch-up run
- Single-instance daemon guarded by a PID file
- Run history for every execution attempt
"""

from singleschedule.config import Settings
from singleschedule.registry import RegistryStore, Task
from singleschedule.schedule import parse_recurrence, is_due
from singleschedule.jobs import TaskRunner, Outcome
from singleschedule.service import SchedulerLoop
from singleschedule.daemon import start_daemon, stop_daemon, restart_daemon

__version__ = "0.1.0"
__all__ = [
    "Settings",
    "RegistryStore",
    "Task",
    "parse_recurrence",
    "is_due",
    "TaskRunner",
    "Outcome",
    "SchedulerLoop",
    "start_daemon",
    "stop_daemon",
    "restart_daemon",
]
