"""
Command-line interface for singleschedule.

Provides commands for:
- Adding/removing/enabling/disabling tasks
- Starting/stopping/restarting the daemon
- Viewing task status, run history and logs

Registry changes take effect on the daemon's next tick; there is no need
to restart it after editing tasks.
"""

import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from singleschedule.config import Settings
from singleschedule.daemon import (
    AlreadyRunning,
    DaemonError,
    daemon_status,
    restart_daemon,
    run_worker,
    start_daemon,
    stop_daemon,
)
from singleschedule.jobs import HistoryStore
from singleschedule.registry import RegistryStore, RegistryLoadError
from singleschedule.schedule import parse_recurrence, next_occurrence

logger = logging.getLogger(__name__)


def setup_logging(log_file: Optional[str] = None, verbose: bool = False,
                  level: str = "INFO", console: bool = True):
    """Setup logging configuration."""
    if verbose:
        level = "DEBUG"
    level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Console handler
    if console:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))
        root_logger.addHandler(console_handler)

    # File handler
    if log_file:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s: %(message)s'
        ))
        root_logger.addHandler(file_handler)

    # APScheduler logs every tick submission at INFO
    logging.getLogger('apscheduler').setLevel(max(level, logging.WARNING))


def _settings(args) -> Settings:
    return Settings(args.home)


def _load_registry(settings: Settings) -> RegistryStore:
    return RegistryStore(settings.registry_path)


def _format_time(value: Optional[datetime]) -> str:
    if value is None:
        return "Never"
    return value.astimezone(timezone.utc).strftime('%Y-%m-%d %H:%M:%S')


def cmd_add(args):
    """Add a new scheduled task."""
    settings = _settings(args)

    command = list(args.task_command)
    if command and command[0] == '--':
        command = command[1:]

    registry = _load_registry(settings)
    registry.add_task(args.slug, args.cron, command)
    registry.save()

    logger.info(f"Task '{args.slug}' added successfully")


def cmd_remove(args):
    """Remove a scheduled task."""
    settings = _settings(args)

    registry = _load_registry(settings)
    registry.remove_task(args.slug)
    registry.save()

    logger.info(f"Task '{args.slug}' removed successfully")


def cmd_enable(args):
    """Enable tasks."""
    settings = _settings(args)

    registry = _load_registry(settings)
    found = registry.set_active(args.slugs, True)
    registry.save()

    logger.info(f"Enabled {len(found)} task(s)")


def cmd_disable(args):
    """Disable tasks."""
    settings = _settings(args)

    registry = _load_registry(settings)
    found = registry.set_active(args.slugs, False)
    registry.save()

    logger.info(f"Disabled {len(found)} task(s)")


def cmd_list(args):
    """List all tasks."""
    settings = _settings(args)
    registry = _load_registry(settings)

    if not registry.tasks:
        print("No scheduled tasks")
        return

    now = datetime.now(timezone.utc)
    print(f"{'SLUG':<20} {'CRON':<20} {'COMMAND':<40} {'STATUS':<10} {'LAST RUN':<20} {'NEXT RUN':<20}")
    print("-" * 135)

    for task in registry.tasks:
        command = task.command if len(task.command) <= 37 else task.command[:37] + "..."
        status = "Active" if task.active else "Inactive"

        try:
            rule = parse_recurrence(task.recurrence)
            next_run = _format_time(next_occurrence(rule, now))
        except ValueError:
            next_run = "Invalid cron"

        print(f"{task.slug:<20} {task.recurrence:<20} {command:<40} {status:<10} "
              f"{_format_time(task.last_run):<20} {next_run:<20}")


def cmd_start(args):
    """Activate tasks and start the daemon."""
    if args.all and args.slugs:
        raise ValueError("--all cannot be combined with task slugs")

    settings = _settings(args)
    registry = _load_registry(settings)

    if args.slugs:
        found = registry.set_active(args.slugs, True)
        registry.save()
        logger.info(f"Started {len(found)} task(s)")
    else:
        changed = registry.set_all_active(True)
        if changed:
            registry.save()
            logger.info(f"Started all {changed} inactive task(s)")

    if args.foreground:
        logger.info("Running in foreground mode. Press Ctrl+C to stop.")

    try:
        pid = start_daemon(settings, foreground=args.foreground)
    except AlreadyRunning as e:
        logger.info(f"Daemon already running (PID: {e.pid}); changes apply on its next tick")
        return

    if not args.foreground:
        logger.info(f"Daemon started (PID: {pid})")
        logger.info(f"Logs: {settings.log_file}")


def cmd_stop(args):
    """Deactivate tasks, or stop the daemon."""
    if args.all and args.slugs:
        raise ValueError("--all cannot be combined with task slugs")

    settings = _settings(args)

    if args.slugs:
        registry = _load_registry(settings)
        found = registry.set_active(args.slugs, False)
        registry.save()
        logger.info(f"Stopped {len(found)} task(s)")

        if registry.active_tasks():
            return

        logger.info("No active tasks left, stopping daemon")

    pid = stop_daemon(settings)
    logger.info(f"Daemon stopped (PID: {pid})")


def cmd_restart(args):
    """Restart the daemon."""
    settings = _settings(args)
    pid = restart_daemon(settings)
    logger.info(f"Daemon restarted (PID: {pid})")


def cmd_status(args):
    """Show daemon status."""
    settings = _settings(args)
    running, pid = daemon_status(settings)

    if running:
        print(f"  Status:     Running")
        print(f"  PID:        {pid}")
    elif pid is not None:
        print(f"  Status:     Not Running (stale PID file: {pid})")
    else:
        print(f"  Status:     Not Running")

    print(f"  Registry:   {settings.registry_path}")
    print(f"  Log file:   {settings.log_file}")

    try:
        registry = _load_registry(settings)
    except RegistryLoadError as e:
        print(f"  Tasks:      unreadable ({e})")
        return
    print(f"  Tasks:      {len(registry.active_tasks())} active / {len(registry)} total")


def cmd_history(args):
    """Show task run history."""
    settings = _settings(args)
    history_store = HistoryStore(settings.history_file)

    history = history_store.get_history(
        slug=args.slug,
        status=args.status,
        limit=None if args.show_all else args.limit
    )

    if not history:
        print("No run history found.")
        return

    if args.json:
        print(json.dumps(history, indent=2))
        return

    print(f"{'SLUG':<20} {'RUN ID':<10} {'START':<26} {'ELAPSED':<9} {'STATUS':<8} EXIT")
    for record in history:
        start = (record.get('start_time') or '')[:26]
        elapsed = record.get('elapsed_seconds')
        elapsed_str = f"{elapsed:.1f}s" if elapsed is not None else '-'
        exit_code = record.get('exit_code')
        print(f"{record.get('slug', 'unknown'):<20} {record.get('run_id', 'N/A'):<10} {start:<26} "
              f"{elapsed_str:<9} {record.get('status', 'unknown'):<8} "
              f"{exit_code if exit_code is not None else '-'}")
        if args.verbose and record.get('error'):
            print(f"    Error: {record['error'][:80]}")

    print(f"\nShowing {len(history)} run(s) from {history_store.history_file}")


def cmd_logs(args):
    """Show the daemon log."""
    settings = _settings(args)
    log_file = settings.log_file

    if not log_file.exists():
        print(f"No log file found at: {log_file}")
        return

    with open(log_file, 'r') as f:
        lines = f.readlines()

    if args.slug:
        lines = [l for l in lines if f"'{args.slug}'" in l or f"[{args.slug}]" in l]
    if args.tail:
        lines = lines[-args.tail:]

    for line in lines:
        print(line.rstrip())


def cmd_worker(args):
    """Run the scheduler loop in this process (spawned by start)."""
    settings = _settings(args)
    setup_logging(log_file=str(settings.log_file), console=False,
                  verbose=args.verbose, level=settings.logging.level)
    run_worker(settings)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='singleschedule',
        description="Run commands on cron schedules from a single background daemon",
    )
    parser.add_argument('--home', type=str, help='Data directory (default: ~/.singleschedule)')
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable verbose logging')

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    add_parser = subparsers.add_parser('add', help='Add a new scheduled task')
    add_parser.add_argument('slug', help='Unique identifier for the task')
    add_parser.add_argument('--cron', '-c', required=True,
                            help='Cron expression with seconds (e.g., "0 */5 * * * *")')
    add_parser.add_argument('task_command', nargs=argparse.REMAINDER,
                            help='Command to execute (everything after --)')
    add_parser.set_defaults(func=cmd_add)

    remove_parser = subparsers.add_parser('remove', help='Remove a scheduled task')
    remove_parser.add_argument('slug', help='Slug of the task to remove')
    remove_parser.set_defaults(func=cmd_remove)

    enable_parser = subparsers.add_parser('enable', help='Enable tasks')
    enable_parser.add_argument('slugs', nargs='+', metavar='SLUG')
    enable_parser.set_defaults(func=cmd_enable)

    disable_parser = subparsers.add_parser('disable', help='Disable tasks')
    disable_parser.add_argument('slugs', nargs='+', metavar='SLUG')
    disable_parser.set_defaults(func=cmd_disable)

    list_parser = subparsers.add_parser('list', help='List all scheduled tasks')
    list_parser.set_defaults(func=cmd_list)

    start_parser = subparsers.add_parser('start', help='Activate tasks and start the daemon')
    start_parser.add_argument('slugs', nargs='*', metavar='SLUG',
                              help='Tasks to activate (default: all)')
    start_parser.add_argument('--all', '-a', action='store_true', help='Activate all tasks')
    start_parser.add_argument('--foreground', action='store_true',
                              help='Run in the foreground instead of detaching')
    start_parser.set_defaults(func=cmd_start)

    stop_parser = subparsers.add_parser('stop', help='Deactivate tasks or stop the daemon')
    stop_parser.add_argument('slugs', nargs='*', metavar='SLUG',
                             help='Tasks to deactivate (default: stop the daemon)')
    stop_parser.add_argument('--all', '-a', action='store_true', help='Stop the daemon')
    stop_parser.set_defaults(func=cmd_stop)

    restart_parser = subparsers.add_parser('restart', help='Restart the daemon')
    restart_parser.set_defaults(func=cmd_restart)

    status_parser = subparsers.add_parser('status', help='Show daemon status')
    status_parser.set_defaults(func=cmd_status)

    history_parser = subparsers.add_parser('history', help='View task run history')
    history_parser.add_argument('--slug', '-s', type=str, help='Filter by task slug')
    history_parser.add_argument('--status', type=str, choices=['success', 'failed', 'error'],
                                help='Filter by status')
    history_parser.add_argument('--limit', '-n', type=int, default=20,
                                help='Maximum number of entries to show (default: 20)')
    history_parser.add_argument('--all', '-a', dest='show_all', action='store_true',
                                help='Show all history entries')
    history_parser.add_argument('--json', action='store_true', help='Output in JSON format')
    history_parser.set_defaults(func=cmd_history)

    logs_parser = subparsers.add_parser('logs', help='View daemon logs')
    logs_parser.add_argument('--slug', '-s', type=str, help='Filter logs by task slug')
    logs_parser.add_argument('--tail', '-n', type=int, default=50,
                             help='Show last N lines (default: 50, 0 for all)')
    logs_parser.set_defaults(func=cmd_logs)

    worker_parser = subparsers.add_parser('worker')
    worker_parser.set_defaults(func=cmd_worker)

    return parser


def main(argv=None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    if args.command == 'start' and args.foreground:
        settings = _settings(args)
        setup_logging(log_file=str(settings.log_file), verbose=args.verbose,
                      level=settings.logging.level)
    elif args.command != 'worker':
        setup_logging(verbose=args.verbose)

    try:
        args.func(args)
    except (ValueError, RegistryLoadError, DaemonError) as e:
        logger.error(str(e))
        return 1
    except OSError as e:
        logger.error(f"{args.command} failed: {e}", exc_info=args.verbose)
        return 1

    return 0


if __name__ == '__main__':
    sys.exit(main())
