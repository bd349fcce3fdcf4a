"""
Daemon lifecycle: single-instance start, stop and restart.

The PID marker file is the only record of a running daemon. Starting in
the background is two-phase: the caller spawns a detached worker
(`python -m singleschedule worker` in a new session), writes the worker's
PID to the marker and returns. The worker runs the scheduler loop until
it receives SIGTERM or SIGINT, then removes the marker if it still names
the worker.
"""

import logging
import os
import signal
import subprocess
import sys
import time
from pathlib import Path
from typing import Optional, Tuple

from singleschedule.config import Settings, ENV_HOME
from singleschedule.registry import RegistryStore
from singleschedule.service import SchedulerLoop

logger = logging.getLogger(__name__)


class DaemonError(Exception):
    """Base class for lifecycle failures."""
    pass


class AlreadyRunning(DaemonError):
    """Raised by start when a live daemon already holds the PID marker."""

    def __init__(self, pid: int):
        super().__init__(f"Daemon is already running with PID {pid}")
        self.pid = pid


class NotRunning(DaemonError):
    """Raised by stop when there is no PID marker."""
    pass


class StaleState(DaemonError):
    """Raised by stop when the PID marker names a dead process."""
    pass


def is_process_running(pid: int) -> bool:
    """Check if a process with the given PID is running."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)  # Signal 0 doesn't kill, just checks
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, but belongs to another user
        return True
    except OSError:
        return False
    return True


def read_pid_file(pid_file: Path) -> Tuple[bool, Optional[int]]:
    """
    Read the PID marker.

    Returns:
        Tuple of (exists, pid). pid is None if the marker is missing or unreadable.
    """
    try:
        content = pid_file.read_text().strip()
    except FileNotFoundError:
        return False, None
    except OSError as e:
        logger.warning(f"Failed to read PID file {pid_file}: {e}")
        return True, None

    try:
        return True, int(content)
    except ValueError:
        logger.warning(f"PID file {pid_file} does not contain a PID: {content!r}")
        return True, None


def write_pid_file(pid_file: Path, pid: int):
    pid_file.parent.mkdir(parents=True, exist_ok=True)
    pid_file.write_text(f"{pid}\n")
    logger.debug(f"Wrote PID file: {pid_file}")


def remove_pid_file(pid_file: Path, only_pid: Optional[int] = None):
    """
    Remove the PID marker.

    Args:
        pid_file: Marker path
        only_pid: If given, remove only when the marker still holds this PID
    """
    if only_pid is not None:
        _, pid = read_pid_file(pid_file)
        if pid != only_pid:
            return
    try:
        pid_file.unlink()
        logger.debug(f"Removed PID file: {pid_file}")
    except FileNotFoundError:
        pass


def daemon_status(settings: Optional[Settings] = None) -> Tuple[bool, Optional[int]]:
    """
    Check whether a daemon is running.

    Returns:
        Tuple of (is_running, pid). pid is whatever the marker holds, if anything.
    """
    settings = settings or Settings()
    exists, pid = read_pid_file(settings.pid_file)
    if not exists or pid is None:
        return False, pid
    return is_process_running(pid), pid


def _claim_marker(pid_file: Path):
    """Fail if a live daemon holds the marker; clear a stale one."""
    exists, pid = read_pid_file(pid_file)
    if not exists:
        return
    if pid is not None and is_process_running(pid):
        raise AlreadyRunning(pid)

    logger.info(f"Removing stale PID file {pid_file}")
    remove_pid_file(pid_file)


def spawn_worker(settings: Settings) -> int:
    """Launch a detached worker process and return its PID."""
    env = dict(os.environ)
    env[ENV_HOME] = str(settings.home)

    process = subprocess.Popen(
        [sys.executable, '-m', 'singleschedule', 'worker'],
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        cwd=str(settings.home),
        env=env,
        start_new_session=True,
        close_fds=True,
    )
    return process.pid


def run_worker(settings: Optional[Settings] = None):
    """
    Run the scheduler loop in this process until a termination signal.

    Raises:
        RegistryLoadError: If the registry cannot be loaded at startup
    """
    settings = settings or Settings()
    pid = os.getpid()
    logger.info(f"Starting scheduler (PID: {pid})")

    loop = SchedulerLoop(settings)
    try:
        loop.run()
    finally:
        remove_pid_file(settings.pid_file, only_pid=pid)


def start_daemon(settings: Optional[Settings] = None, foreground: bool = False) -> int:
    """
    Start the daemon.

    Args:
        settings: Resolved file locations
        foreground: Run the loop in this process instead of detaching

    Returns:
        PID of the daemon (in foreground mode, returns after the loop stops)

    Raises:
        AlreadyRunning: If a live daemon holds the PID marker
        RegistryLoadError: If the registry cannot be loaded
    """
    settings = settings or Settings()
    settings.ensure_dirs()
    pid_file = settings.pid_file

    _claim_marker(pid_file)

    # Abort before detaching if the worker could not load the registry
    RegistryStore(settings.registry_path)

    if foreground:
        pid = os.getpid()
        write_pid_file(pid_file, pid)
        run_worker(settings)
        return pid

    pid = spawn_worker(settings)
    write_pid_file(pid_file, pid)
    logger.info(f"Daemon started with PID {pid}")
    return pid


def stop_daemon(settings: Optional[Settings] = None) -> int:
    """
    Stop the running daemon.

    Sends SIGTERM, waits the grace period, then removes the marker whether
    or not the process has exited yet.

    Returns:
        PID that was signalled

    Raises:
        NotRunning: If there is no PID marker
        StaleState: If the marker named a dead process (the marker is removed)
    """
    settings = settings or Settings()
    pid_file = settings.pid_file

    exists, pid = read_pid_file(pid_file)
    if not exists:
        raise NotRunning("Daemon is not running")

    if pid is None or not is_process_running(pid):
        remove_pid_file(pid_file)
        raise StaleState("Daemon is not running (stale PID file removed)")

    logger.info(f"Stopping daemon (PID: {pid})...")
    try:
        os.kill(pid, signal.SIGTERM)
    except OSError as e:
        raise DaemonError(f"Failed to stop daemon: {e}") from e

    time.sleep(settings.stop_grace)
    remove_pid_file(pid_file)

    logger.info("Daemon stopped")
    return pid


def restart_daemon(settings: Optional[Settings] = None) -> int:
    """Stop the daemon if it is running, then start it in the background."""
    settings = settings or Settings()
    try:
        stop_daemon(settings)
    except DaemonError as e:
        logger.debug(f"Ignoring stop failure during restart: {e}")
    return start_daemon(settings)
