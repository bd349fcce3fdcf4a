"""
Settings for the singleschedule daemon and its collaborators.

Resolves the data directory and the files kept in it (task registry,
PID marker, run history, log file). All paths can be redirected through
environment variables so tests and multiple installs stay isolated.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

ENV_HOME = "SINGLESCHEDULE_HOME"
DEFAULT_HOME = Path.home() / ".singleschedule"

# Polling granularity matches the finest cron unit we schedule on (seconds).
TICK_INTERVAL_SECONDS = 10
# Look-ahead used when deciding whether an occurrence is due.
TOLERANCE_SECONDS = 30
# How long `stop` waits after SIGTERM before removing the marker.
STOP_GRACE_SECONDS = 0.5
HISTORY_MAX_ENTRIES = 1000


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    file: Optional[str] = None


class Settings:
    """
    Resolved file locations for one singleschedule installation.

    Data directory resolution order (highest to lowest priority):
    1. Explicitly passed home parameter
    2. SINGLESCHEDULE_HOME environment variable
    3. Default (~/.singleschedule)

    Directory structure:
        {home}/
        ├── events.json        # Task registry
        ├── daemon.pid         # PID marker of the running daemon
        ├── history.json       # Run history
        └── logs/singleschedule.log
    """

    def __init__(self, home: Optional[str] = None):
        self.home = self._resolve_home(home)

        self.registry_path = self._env_path('SINGLESCHEDULE_REGISTRY', self.home / "events.json")
        self.pid_file = self._env_path('SINGLESCHEDULE_PID_FILE', self.home / "daemon.pid")
        self.history_file = self._env_path('SINGLESCHEDULE_HISTORY_FILE', self.home / "history.json")
        self.log_dir = self._env_path('SINGLESCHEDULE_LOG_DIR', self.home / "logs")

        self.logging = LoggingConfig(
            level=os.environ.get('SINGLESCHEDULE_LOG_LEVEL', "INFO").upper(),
            file=str(self.log_dir / "singleschedule.log"),
        )

        self.tick_interval = TICK_INTERVAL_SECONDS
        self.tolerance = TOLERANCE_SECONDS
        self.stop_grace = STOP_GRACE_SECONDS

    @staticmethod
    def _resolve_home(home: Optional[str]) -> Path:
        if home:
            return Path(home).expanduser()
        env_home = os.environ.get(ENV_HOME)
        if env_home:
            return Path(env_home).expanduser()
        return DEFAULT_HOME

    @staticmethod
    def _env_path(name: str, default: Path) -> Path:
        value = os.environ.get(name)
        if value:
            return Path(value).expanduser()
        return default

    @property
    def log_file(self) -> Path:
        return Path(self.logging.file)

    def ensure_dirs(self):
        """Create the data and log directories if they are missing."""
        for directory in (self.home, self.registry_path.parent, self.pid_file.parent, self.log_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def __repr__(self):
        return f"Settings(home={self.home})"
