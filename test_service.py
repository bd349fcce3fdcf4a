"""
Tests for the scheduler loop: tick evaluation, persistence and shutdown.
"""

import json
import threading
from datetime import datetime, timedelta, timezone

from singleschedule.jobs import HistoryStore, Outcome, SpawnFailure
from singleschedule.registry import RegistryStore
from singleschedule.service import LoopState, SchedulerLoop

NOW = datetime(2024, 5, 1, 12, 0, 15, tzinfo=timezone.utc)


class RecordingRunner:
    """Stands in for TaskRunner; remembers what it was asked to run."""

    def __init__(self, fail=(), on_run=None):
        self.calls = []
        self.fail = set(fail)
        self.on_run = on_run

    def run(self, command, slug=None):
        self.calls.append(slug)
        if self.on_run:
            self.on_run(slug)
        if slug in self.fail:
            raise SpawnFailure(f"cannot start {command}")
        return Outcome(success=True, returncode=0)


def write_registry(settings, tasks):
    records = []
    for slug, cron, active in tasks:
        records.append({
            'slug': slug,
            'cron': cron,
            'command': f"echo {slug}",
            'active': active,
            'created_at': "2024-01-01T00:00:00+00:00",
            'last_run': None,
        })
    settings.registry_path.write_text(json.dumps({'tasks': records}))


def make_loop(settings, runner):
    return SchedulerLoop(settings, runner=runner, history=HistoryStore(settings.history_file))


def test_tick_runs_due_tasks_and_skips_invalid(settings):
    write_registry(settings, [
        ("hourly", "0 0 * * * *", True),
        ("daily", "0 0 0 * * *", True),
        ("broken", "not a cron", True),
    ])
    runner = RecordingRunner()
    loop = make_loop(settings, runner)

    ran = loop.tick(NOW)

    assert sorted(ran) == ["daily", "hourly"]
    assert sorted(runner.calls) == ["daily", "hourly"]

    registry = RegistryStore(settings.registry_path)
    assert registry.get_task("hourly").last_run == NOW
    assert registry.get_task("daily").last_run == NOW
    assert registry.get_task("broken").last_run is None


def test_second_tick_does_not_rerun(settings):
    write_registry(settings, [("hourly", "0 0 * * * *", True)])
    runner = RecordingRunner()
    loop = make_loop(settings, runner)

    loop.tick(NOW)
    loop.tick(NOW + timedelta(seconds=10))

    assert runner.calls == ["hourly"]


def test_occurrences_inside_tolerance_are_consumed(settings):
    write_registry(settings, [("hourly", "0 0 * * * *", True)])
    runner = RecordingRunner()
    loop = make_loop(settings, runner)
    before_hour = datetime(2024, 5, 1, 12, 59, 45, tzinfo=timezone.utc)

    loop.tick(before_hour)
    loop.tick(before_hour + timedelta(seconds=10))
    loop.tick(before_hour + timedelta(seconds=20))

    assert runner.calls == ["hourly"]
    assert RegistryStore(settings.registry_path).get_task("hourly").last_run == \
        datetime(2024, 5, 1, 13, 0, 0, tzinfo=timezone.utc)


def test_inactive_tasks_are_skipped(settings):
    write_registry(settings, [
        ("on", "0 0 * * * *", True),
        ("off", "0 0 * * * *", False),
    ])
    runner = RecordingRunner()

    make_loop(settings, runner).tick(NOW)

    assert runner.calls == ["on"]
    assert RegistryStore(settings.registry_path).get_task("off").last_run is None


def test_spawn_failure_is_isolated(settings):
    write_registry(settings, [
        ("bad", "0 0 * * * *", True),
        ("good", "0 0 * * * *", True),
    ])
    runner = RecordingRunner(fail={"bad"})
    loop = make_loop(settings, runner)

    ran = loop.tick(NOW)

    assert runner.calls == ["bad", "good"]
    assert sorted(ran) == ["bad", "good"]
    registry = RegistryStore(settings.registry_path)
    assert registry.get_task("bad").last_run == NOW

    statuses = {r['slug']: r['status'] for r in loop.history.get_history()}
    assert statuses == {"bad": "error", "good": "success"}


def test_registry_edits_are_picked_up_next_tick(settings):
    write_registry(settings, [("first", "0 0 * * * *", True)])
    runner = RecordingRunner()
    loop = make_loop(settings, runner)
    loop.tick(NOW)

    registry = RegistryStore(settings.registry_path)
    registry.add_task("second", "0 0 * * * *", "true")
    registry.save()
    loop.tick(NOW + timedelta(seconds=10))

    assert runner.calls == ["first", "second"]


def test_save_keeps_tasks_added_during_tick(settings):
    write_registry(settings, [("first", "0 0 * * * *", True)])

    def add_task(slug):
        registry = RegistryStore(settings.registry_path)
        registry.add_task("added", "0 0 0 1 1 *", "true")
        registry.save()

    loop = make_loop(settings, RecordingRunner(on_run=add_task))
    loop.tick(NOW)

    registry = RegistryStore(settings.registry_path)
    assert registry.get_task("added") is not None
    assert registry.get_task("first").last_run == NOW


def test_reload_failure_keeps_previous_state(settings):
    write_registry(settings, [("hourly", "0 0 * * * *", True)])
    runner = RecordingRunner()
    loop = make_loop(settings, runner)
    loop.load()

    settings.registry_path.write_text("{broken")

    assert loop.reload() is False
    ran = loop.tick(NOW)

    assert ran == ["hourly"]
    assert [t.slug for t in loop.snapshot()['tasks']] == ["hourly"]


def test_snapshot_is_a_copy(settings):
    write_registry(settings, [("hourly", "0 0 * * * *", True)])
    loop = make_loop(settings, RecordingRunner())
    loop.load()

    snapshot = loop.snapshot()
    snapshot['tasks'][0].active = False

    assert loop.snapshot()['tasks'][0].active is True
    assert snapshot['scheduled'] == ["hourly"]
    assert snapshot['state'] == "idle"


def test_stop_before_run(settings):
    loop = make_loop(settings, RecordingRunner())
    loop.stop()

    loop.run(install_signal_handlers=False)

    assert loop.state == LoopState.STOPPED


def test_run_ticks_until_stopped(settings):
    write_registry(settings, [("hourly", "0 0 * * * *", True)])
    ran = threading.Event()
    loop = make_loop(settings, RecordingRunner(on_run=lambda slug: ran.set()))

    worker = threading.Thread(target=loop.run, kwargs={'install_signal_handlers': False})
    worker.start()
    try:
        assert ran.wait(timeout=10)
        assert loop.state == LoopState.RUNNING
    finally:
        loop.stop()
        worker.join(timeout=10)

    assert not worker.is_alive()
    assert loop.state == LoopState.STOPPED
    assert RegistryStore(settings.registry_path).get_task("hourly").last_run is not None


def test_undecodable_history_does_not_stop_tick(settings):
    write_registry(settings, [
        ("a", "0 0 * * * *", True),
        ("b", "0 0 * * * *", True),
    ])
    settings.history_file.write_bytes(b'[\xff\xfe]')
    runner = RecordingRunner()

    ran = make_loop(settings, runner).tick(NOW)

    assert runner.calls == ["a", "b"]
    assert sorted(ran) == ["a", "b"]
    registry = RegistryStore(settings.registry_path)
    assert registry.get_task("a").last_run == NOW
    assert registry.get_task("b").last_run == NOW


class BrokenHistory:
    def add_run(self, record):
        raise ValueError("history is broken")


def test_history_failure_is_isolated(settings):
    write_registry(settings, [
        ("a", "0 0 * * * *", True),
        ("b", "0 0 * * * *", True),
    ])
    runner = RecordingRunner()
    loop = SchedulerLoop(settings, runner=runner, history=BrokenHistory())

    assert sorted(loop.tick(NOW)) == ["a", "b"]
    assert RegistryStore(settings.registry_path).get_task("b").last_run == NOW


def test_failed_save_is_logged_and_loop_continues(settings, monkeypatch, caplog):
    write_registry(settings, [("hourly", "0 0 * * * *", True)])
    runner = RecordingRunner()
    loop = make_loop(settings, runner)

    def failing_save(self):
        raise OSError("disk full")

    with monkeypatch.context() as patch:
        patch.setattr(RegistryStore, "save", failing_save)
        ran = loop.tick(NOW)

    assert ran == ["hourly"]
    assert "Failed to save registry" in caplog.text
    assert RegistryStore(settings.registry_path).get_task("hourly").last_run is None

    assert loop.tick(NOW + timedelta(seconds=10)) == ["hourly"]
    assert RegistryStore(settings.registry_path).get_task("hourly").last_run == NOW + timedelta(seconds=10)
