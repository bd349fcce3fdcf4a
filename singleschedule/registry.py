"""
Task registry storage.

The registry is a single JSON document holding every registered Task.
Collaborators (the CLI, the daemon) always read the whole document,
mutate it in memory and write the whole document back; there is no
partial-update API. Validation happens here, at mutation time, so that
malformed tasks never reach the scheduler loop.
"""

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Dict, List, Iterable, Any, Union

from singleschedule.schedule import parse_recurrence

logger = logging.getLogger(__name__)


class RegistryError(ValueError):
    """Base class for rejected registry mutations."""
    pass


class DuplicateTaskError(RegistryError):
    """Raised when a slug is already registered."""
    pass


class TaskNotFoundError(RegistryError):
    """Raised when a slug is not registered."""
    pass


class EmptyCommandError(RegistryError):
    """Raised when a task is registered without a command."""
    pass


class InvalidSlugError(RegistryError):
    """Raised for empty slugs or slugs containing whitespace."""
    pass


class RegistryLoadError(Exception):
    """Raised when the registry document cannot be read or decoded."""
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass
class Task:
    """
    A registered command and the recurrence it runs on.

    `recurrence` is kept as the raw expression; it is parsed by the
    schedule index on every reload, so a task edited into an invalid
    state on disk is skipped rather than rejected.
    """
    slug: str
    recurrence: str
    command: str
    active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    last_run: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'slug': self.slug,
            'cron': self.recurrence,
            'command': self.command,
            'active': self.active,
            'created_at': _format_timestamp(self.created_at),
            'last_run': _format_timestamp(self.last_run),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Task':
        slug = data['slug']
        active = data.get('active', True)
        if not isinstance(active, bool):
            raise ValueError(f"Task '{slug}' has a non-boolean active flag: {active!r}")

        return cls(
            slug=slug,
            recurrence=data['cron'],
            command=data['command'],
            active=active,
            created_at=_parse_timestamp(data.get('created_at')) or utcnow(),
            last_run=_parse_timestamp(data.get('last_run')),
        )


class RegistryStore:
    """
    Whole-document store of Task records.

    The store is loaded on construction (an absent file is an empty
    registry) and written back with save(). Writes go through a temporary
    file in the same directory so readers never observe a half-written
    document. Concurrent writers are not coordinated: the last save wins.
    """

    def __init__(self, path: Union[str, Path], load: bool = True):
        """
        Initialize the store.

        Args:
            path: Location of the registry JSON document
            load: Read the document immediately (default True)

        Raises:
            RegistryLoadError: If the document exists but cannot be decoded
        """
        self.path = Path(path)
        self.tasks: List[Task] = []

        if load:
            self.load()

    def load(self):
        """Replace the in-memory tasks with the contents of the document."""
        if not self.path.exists():
            logger.debug(f"No registry at {self.path}, starting empty")
            self.tasks = []
            return

        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
            records = data.get('tasks', []) if isinstance(data, dict) else None
            if not isinstance(records, list):
                raise RegistryLoadError(f"Registry {self.path} has no task list")
            tasks = [Task.from_dict(record) for record in records]
        except RegistryLoadError:
            raise
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise RegistryLoadError(f"Failed to load registry from {self.path}: {e}") from e

        seen = set()
        self.tasks = []
        for task in tasks:
            if task.slug in seen:
                logger.warning(f"Duplicate slug '{task.slug}' in {self.path}, keeping the first entry")
                continue
            seen.add(task.slug)
            self.tasks.append(task)

        logger.debug(f"Loaded {len(self.tasks)} task(s) from {self.path}")

    def save(self):
        """Write every task back to the document."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = {'tasks': [task.to_dict() for task in self.tasks]}

        fd, tmp_path = tempfile.mkstemp(prefix=".events-", suffix=".json", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self.path)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise

        logger.debug(f"Saved {len(self.tasks)} task(s) to {self.path}")

    def get_task(self, slug: str) -> Optional[Task]:
        """Get a task by slug."""
        for task in self.tasks:
            if task.slug == slug:
                return task
        return None

    def active_tasks(self) -> List[Task]:
        return [t for t in self.tasks if t.active]

    def add_task(
        self,
        slug: str,
        recurrence: str,
        command: Union[str, Iterable[str]],
        created_at: Optional[datetime] = None
    ) -> Task:
        """
        Validate and append a new task.

        Args:
            slug: Unique identifier for the task
            recurrence: 6-field (or 7 with year) cron expression
            command: Command line, or its words
            created_at: Creation time (defaults to now)

        Returns:
            The new Task

        Raises:
            InvalidSlugError, InvalidRecurrenceError, EmptyCommandError,
            DuplicateTaskError: The registry is left unchanged
        """
        if not slug or any(c.isspace() for c in slug):
            raise InvalidSlugError(f"Invalid slug '{slug}': must be non-empty without whitespace")

        parse_recurrence(recurrence)

        if not isinstance(command, str):
            command = " ".join(command)
        if not command.strip():
            raise EmptyCommandError(f"Task '{slug}' has an empty command")

        if self.get_task(slug) is not None:
            raise DuplicateTaskError(f"Task with slug '{slug}' already exists")

        task = Task(
            slug=slug,
            recurrence=recurrence.strip(),
            command=command.strip(),
            created_at=created_at or utcnow(),
        )
        self.tasks.append(task)
        logger.info(f"Added task: {slug}")
        return task

    def remove_task(self, slug: str) -> Task:
        """
        Remove a task by slug.

        Raises:
            TaskNotFoundError: If no task has this slug
        """
        task = self.get_task(slug)
        if task is None:
            raise TaskNotFoundError(f"Task with slug '{slug}' not found")

        self.tasks = [t for t in self.tasks if t.slug != slug]
        logger.info(f"Removed task: {slug}")
        return task

    def set_active(self, slugs: Iterable[str], active: bool) -> List[str]:
        """
        Set the active flag on the named tasks.

        Unknown slugs are logged and skipped.

        Returns:
            Slugs that were found

        Raises:
            TaskNotFoundError: If none of the slugs are registered
        """
        found = []
        for slug in slugs:
            task = self.get_task(slug)
            if task is None:
                logger.warning(f"Task with slug '{slug}' not found")
                continue
            task.active = active
            found.append(slug)

        if not found:
            raise TaskNotFoundError("No matching tasks found")
        return found

    def set_all_active(self, active: bool) -> int:
        """Set the active flag on every task; returns how many changed."""
        changed = 0
        for task in self.tasks:
            if task.active != active:
                task.active = active
                changed += 1
        return changed

    def record_runs(self, runs: Dict[str, datetime]) -> int:
        """
        Advance last_run for the given slugs.

        last_run never moves backwards; slugs removed since the runs
        were started are ignored.

        Returns:
            Number of tasks updated
        """
        updated = 0
        for task in self.tasks:
            ran_at = runs.get(task.slug)
            if ran_at is None:
                continue
            if task.last_run is None or ran_at > task.last_run:
                task.last_run = ran_at
            updated += 1
        return updated

    def __len__(self):
        return len(self.tasks)

    def __repr__(self):
        return f"RegistryStore(tasks={len(self.tasks)}, path={self.path})"
