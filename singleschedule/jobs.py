"""
Command execution for scheduled tasks.

Runs a task's command line as a subprocess, captures its output for
logging, and records each run in a JSON history file. Commands are split
on whitespace and executed without a shell.
"""

import json
import logging
import os
import subprocess
import tempfile
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Any, Optional, List

from singleschedule.config import HISTORY_MAX_ENTRIES

logger = logging.getLogger(__name__)


class JobExecutionError(Exception):
    """Raised when a command cannot be executed."""
    pass


class EmptyCommand(JobExecutionError):
    """Raised when the command line has no program to run."""
    pass


class SpawnFailure(JobExecutionError):
    """Raised when the program cannot be launched."""
    pass


@dataclass
class Outcome:
    """Result of one command execution."""
    success: bool
    returncode: int
    stdout: str = ""
    stderr: str = ""


class TaskRunner:
    """
    Spawns task commands and waits for them to finish.

    There is no shell quoting: "echo 'a b'" runs echo with the two
    arguments "'a" and "b'".
    """

    def __init__(self, working_dir: Optional[str] = None, env: Optional[Dict[str, str]] = None):
        """
        Initialize the runner.

        Args:
            working_dir: Working directory for commands (default: inherited)
            env: Environment for commands (default: inherited)
        """
        self.working_dir = working_dir
        self.env = env

    def run(self, command: str, slug: Optional[str] = None) -> Outcome:
        """
        Execute a command line.

        Args:
            command: Command line, split on whitespace into program and args
            slug: Task slug (for logging)

        Returns:
            Outcome with the exit status and captured output

        Raises:
            EmptyCommand: If the command line has no tokens
            SpawnFailure: If the program could not be started
        """
        log_prefix = f"[{slug}] " if slug else ""

        parts = command.split()
        if not parts:
            raise EmptyCommand(f"{log_prefix}Empty command")

        logger.debug(f"{log_prefix}Executing command: {command}")

        try:
            process = subprocess.Popen(
                parts,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=self.working_dir,
                env=self.env,
            )
        except OSError as e:
            raise SpawnFailure(f"{log_prefix}Failed to start '{parts[0]}': {e}") from e

        raw_stdout, raw_stderr = process.communicate()
        stdout = raw_stdout.decode('utf-8', errors='replace')
        stderr = raw_stderr.decode('utf-8', errors='replace')

        if stdout:
            logger.debug(f"{log_prefix}Command stdout: {stdout.rstrip()}")
        if stderr:
            logger.debug(f"{log_prefix}Command stderr: {stderr.rstrip()}")

        return Outcome(
            success=process.returncode == 0,
            returncode=process.returncode,
            stdout=stdout,
            stderr=stderr,
        )


class HistoryStore:
    """
    Persists task run history to a JSON file.

    Each run record contains:
    - slug: Task that ran
    - run_id: Unique run identifier
    - command: The command that was executed
    - start_time / end_time: ISO timestamps (UTC)
    - elapsed_seconds: Duration in seconds
    - status: 'success', 'failed' (non-zero exit) or 'error' (could not run)
    - exit_code: Process exit code (if it ran)
    - error: Error message (if it could not run)
    """

    def __init__(self, history_file: Path, max_entries: int = HISTORY_MAX_ENTRIES):
        self.history_file = Path(history_file)
        self.max_entries = max_entries

    def _read_history(self) -> List[Dict[str, Any]]:
        try:
            with open(self.history_file, 'r', encoding='utf-8') as f:
                history = json.load(f)
        except FileNotFoundError:
            return []
        except ValueError as e:
            logger.warning(f"Ignoring unreadable history file {self.history_file}: {e}")
            return []
        return history if isinstance(history, list) else []

    def _write_history(self, history: List[Dict[str, Any]]):
        self.history_file.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".history-", suffix=".json", dir=str(self.history_file.parent))
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(history, f, indent=2, default=str)
            os.replace(tmp_path, self.history_file)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise

    def add_run(self, record: Dict[str, Any]):
        """Append a run record, keeping only the most recent max_entries."""
        history = self._read_history()
        history.append(record)

        if len(history) > self.max_entries:
            history = history[-self.max_entries:]

        self._write_history(history)

    def get_history(
        self,
        slug: Optional[str] = None,
        status: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """
        Get run history with optional filters.

        Returns:
            List of run records (most recent first)
        """
        history = self._read_history()

        if slug:
            history = [r for r in history if r.get('slug') == slug]
        if status:
            history = [r for r in history if r.get('status') == status]

        history.sort(key=lambda r: r.get('start_time', ''), reverse=True)

        if limit:
            history = history[:limit]

        return history


def make_run_record(
    slug: str,
    command: str,
    start_time: datetime,
    end_time: datetime,
    outcome: Optional[Outcome] = None,
    error: Optional[Exception] = None
) -> Dict[str, Any]:
    """Build a history record for one execution attempt."""
    if outcome is not None:
        status = 'success' if outcome.success else 'failed'
    else:
        status = 'error'

    return {
        'slug': slug,
        'run_id': str(uuid.uuid4())[:8],
        'command': command,
        'start_time': start_time.astimezone(timezone.utc).isoformat(),
        'end_time': end_time.astimezone(timezone.utc).isoformat(),
        'elapsed_seconds': round((end_time - start_time).total_seconds(), 2),
        'status': status,
        'exit_code': outcome.returncode if outcome is not None else None,
        'error': str(error) if error is not None else None,
    }
