# tests/test_scheduler.py

from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Iterator, List

import pytest

from autocheckin.config.manager import ConfigManager
from autocheckin.config.models import AppConfig, Task
from autocheckin.exceptions import TaskBusyError, TaskNotFoundError
from autocheckin.logger_setup import LogLevel
from autocheckin.services.checkin_executor import CheckinOutcome, OutcomeKind
from autocheckin.services.notification import NotificationManager
from autocheckin.tasks.scheduler import CheckinScheduler

from .fakes import FakeClock, FakeExecutor, FakeNotifier, InMemoryStorage, RecordingLogger, make_task_dict

TODAY = date(2026, 3, 2)


def _results(futures: List) -> List:
    return [f.result(timeout=5) for f in futures]


@pytest.fixture()
def store(logger: RecordingLogger) -> ConfigManager:
    return ConfigManager(InMemoryStorage({"tasks": [make_task_dict()]}), logger)


@pytest.fixture()
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture()
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture()
def scheduler(logger: RecordingLogger, store: ConfigManager, executor: FakeExecutor,
              notifier: FakeNotifier, clock: FakeClock) -> Iterator[CheckinScheduler]:
    notifications = NotificationManager(logger, notifiers=[notifier], clock=clock)
    sched = CheckinScheduler(logger, store, executor, notifications, clock=clock, max_workers=2)
    yield sched
    sched.shutdown(wait=True)


def _enable_notifications(store: ConfigManager) -> None:
    config = store.snapshot()
    config.global_settings.notification.enabled = True
    store.replace_config(config)


@pytest.mark.parametrize(
    "now, last_fired, enabled, expected",
    [
        (datetime(2026, 3, 2, 7, 59), None, True, False),
        (datetime(2026, 3, 2, 8, 0), None, True, True),
        (datetime(2026, 3, 2, 23, 0), None, True, True),
        (datetime(2026, 3, 2, 9, 0), TODAY, True, False),
        (datetime(2026, 3, 2, 9, 0), TODAY - timedelta(days=1), True, True),
        (datetime(2026, 3, 2, 9, 0), TODAY + timedelta(days=1), True, False),
        (datetime(2026, 3, 2, 9, 0), None, False, False),
    ],
)
def test_is_due(now: datetime, last_fired, enabled: bool, expected: bool) -> None:
    task = Task.model_validate(make_task_dict(last_fired_date=last_fired, enabled=enabled))
    assert CheckinScheduler.is_due(task, now) is expected


def test_fires_once_per_day(scheduler: CheckinScheduler, executor: FakeExecutor,
                            store: ConfigManager, clock: FakeClock) -> None:
    assert scheduler.tick() == []

    clock.now = datetime(2026, 3, 2, 8, 1)
    outcomes = _results(scheduler.tick())
    assert [o.kind for o in outcomes] == [OutcomeKind.SUCCESS]
    assert executor.calls == ["task-a"]
    assert store.get_task("task-a").last_fired_date == TODAY

    clock.now = datetime(2026, 3, 2, 8, 5)
    assert scheduler.tick() == []

    clock.now = datetime(2026, 3, 3, 8, 1)
    _results(scheduler.tick())
    assert executor.calls == ["task-a", "task-a"]
    assert store.get_task("task-a").last_fired_date == date(2026, 3, 3)


def test_late_wakeup_still_fires_missed_task(scheduler: CheckinScheduler, executor: FakeExecutor,
                                             clock: FakeClock) -> None:
    clock.now = datetime(2026, 3, 2, 21, 30)
    _results(scheduler.tick())
    assert executor.calls == ["task-a"]


def test_each_due_task_runs_once_per_tick(scheduler: CheckinScheduler, executor: FakeExecutor,
                                          store: ConfigManager, clock: FakeClock) -> None:
    store.upsert_task(Task.model_validate(make_task_dict(id="task-b", time="07:30")))
    store.upsert_task(Task.model_validate(make_task_dict(id="task-c", time="12:00")))
    clock.now = datetime(2026, 3, 2, 8, 30)

    _results(scheduler.tick())

    assert sorted(executor.calls) == ["task-a", "task-b"]


def test_disabled_task_is_not_dispatched(scheduler: CheckinScheduler, executor: FakeExecutor,
                                         store: ConfigManager, clock: FakeClock) -> None:
    task = store.get_task("task-a")
    task.enabled = False
    store.update_task(task)
    clock.now = datetime(2026, 3, 2, 8, 1)

    assert scheduler.tick() == []
    assert executor.calls == []


def test_reenabling_after_firing_does_not_fire_again(scheduler: CheckinScheduler, executor: FakeExecutor,
                                                     store: ConfigManager, clock: FakeClock) -> None:
    clock.now = datetime(2026, 3, 2, 8, 1)
    stale = store.get_task("task-a")
    _results(scheduler.tick())

    stale.enabled = False
    store.update_task(stale)
    stale.enabled = True
    store.update_task(stale)
    clock.now = datetime(2026, 3, 2, 8, 2)

    assert scheduler.tick() == []
    assert executor.calls == ["task-a"]


@pytest.mark.parametrize("kind", [OutcomeKind.TRANSIENT_FAILURE, OutcomeKind.REJECTED, OutcomeKind.CONFIG_ERROR])
def test_failed_outcomes_still_mark_task_fired(logger: RecordingLogger, store: ConfigManager,
                                               clock: FakeClock, kind: OutcomeKind) -> None:
    executor = FakeExecutor(CheckinOutcome(kind=kind, reason="失败了", attempts=3))
    sched = CheckinScheduler(logger, store, executor, NotificationManager(logger, notifiers=[]), clock=clock)
    clock.now = datetime(2026, 3, 2, 8, 1)
    try:
        outcomes = _results(sched.tick())
        assert outcomes[0].kind is kind
        assert store.get_task("task-a").last_fired_date == TODAY
        assert sched.tick() == []
    finally:
        sched.shutdown(wait=True)


def test_executor_crash_becomes_transient_failure(logger: RecordingLogger, store: ConfigManager,
                                                  clock: FakeClock) -> None:
    executor = FakeExecutor(error=RuntimeError("boom"))
    sched = CheckinScheduler(logger, store, executor, NotificationManager(logger, notifiers=[]), clock=clock)
    clock.now = datetime(2026, 3, 2, 8, 1)
    try:
        outcome = _results(sched.tick())[0]
        assert outcome.kind is OutcomeKind.TRANSIENT_FAILURE
        assert "boom" in outcome.reason
        assert store.get_task("task-a").last_fired_date == TODAY
    finally:
        sched.shutdown(wait=True)


def test_no_double_dispatch_while_in_flight(scheduler: CheckinScheduler, executor: FakeExecutor,
                                            clock: FakeClock) -> None:
    executor.release.clear()
    clock.now = datetime(2026, 3, 2, 8, 1)

    first = scheduler.tick()
    assert executor.started.wait(timeout=5)
    assert scheduler.tick() == []
    assert scheduler.in_flight_count() == 1

    executor.release.set()
    _results(first)
    assert executor.calls == ["task-a"]
    assert scheduler.in_flight_count() == 0


def test_storage_failure_does_not_cause_refire(scheduler: CheckinScheduler, executor: FakeExecutor,
                                               store: ConfigManager, logger: RecordingLogger,
                                               clock: FakeClock) -> None:
    store.storage.fail_saves = True
    clock.now = datetime(2026, 3, 2, 8, 1)

    _results(scheduler.tick())
    clock.now = datetime(2026, 3, 2, 8, 2)

    assert scheduler.tick() == []
    assert executor.calls == ["task-a"]
    assert any("触发日期失败" in m for m in logger.messages(LogLevel.ERROR))


def test_task_deleted_while_running_is_not_recreated(scheduler: CheckinScheduler, executor: FakeExecutor,
                                                     store: ConfigManager, clock: FakeClock) -> None:
    executor.release.clear()
    clock.now = datetime(2026, 3, 2, 8, 1)

    futures = scheduler.tick()
    assert executor.started.wait(timeout=5)
    store.delete_task("task-a")
    executor.release.set()
    _results(futures)

    assert store.snapshot().tasks == []


def test_outcome_is_notified_when_enabled(scheduler: CheckinScheduler, notifier: FakeNotifier,
                                          store: ConfigManager, clock: FakeClock) -> None:
    _enable_notifications(store)
    clock.now = datetime(2026, 3, 2, 8, 1)

    _results(scheduler.tick())

    assert len(notifier.sent) == 1
    title, content = notifier.sent[0]
    assert title == "签到成功"
    assert "高数" in content


def test_notification_skipped_when_disabled(scheduler: CheckinScheduler, notifier: FakeNotifier,
                                            clock: FakeClock) -> None:
    clock.now = datetime(2026, 3, 2, 8, 1)
    _results(scheduler.tick())
    assert notifier.sent == []


def test_notifier_failure_does_not_affect_outcome(logger: RecordingLogger, store: ConfigManager,
                                                  executor: FakeExecutor, clock: FakeClock) -> None:
    _enable_notifications(store)
    broken = FakeNotifier(error=RuntimeError("wecom down"))
    sched = CheckinScheduler(logger, store, executor, NotificationManager(logger, notifiers=[broken]), clock=clock)
    clock.now = datetime(2026, 3, 2, 8, 1)
    try:
        outcome = _results(sched.tick())[0]
        assert outcome.kind is OutcomeKind.SUCCESS
        assert store.get_task("task-a").last_fired_date == TODAY
        assert broken.sent
    finally:
        sched.shutdown(wait=True)


def test_run_now_does_not_mark_fired(scheduler: CheckinScheduler, executor: FakeExecutor,
                                     store: ConfigManager, clock: FakeClock) -> None:
    outcome = scheduler.run_now("task-a").result(timeout=5)

    assert outcome.kind is OutcomeKind.SUCCESS
    assert store.get_task("task-a").last_fired_date is None

    clock.now = datetime(2026, 3, 2, 8, 1)
    _results(scheduler.tick())
    assert executor.calls == ["task-a", "task-a"]


def test_run_now_unknown_task(scheduler: CheckinScheduler) -> None:
    with pytest.raises(TaskNotFoundError):
        scheduler.run_now("ghost")


def test_run_now_refused_while_scheduled_run_in_flight(scheduler: CheckinScheduler, executor: FakeExecutor,
                                                       clock: FakeClock) -> None:
    executor.release.clear()
    clock.now = datetime(2026, 3, 2, 8, 1)

    first = scheduler.tick()
    assert executor.started.wait(timeout=5)
    with pytest.raises(TaskBusyError):
        scheduler.run_now("task-a")

    executor.release.set()
    _results(first)
    assert executor.calls == ["task-a"]


def test_tick_skips_task_during_manual_run(scheduler: CheckinScheduler, executor: FakeExecutor,
                                           store: ConfigManager, clock: FakeClock) -> None:
    executor.release.clear()
    manual = scheduler.run_now("task-a")
    assert executor.started.wait(timeout=5)

    clock.now = datetime(2026, 3, 2, 8, 1)
    assert scheduler.tick() == []

    executor.release.set()
    manual.result(timeout=5)
    assert scheduler.in_flight_count() == 0
    _results(scheduler.tick())
    assert executor.calls == ["task-a", "task-a"]
    assert store.get_task("task-a").last_fired_date == TODAY


def test_tick_interval_follows_config(scheduler: CheckinScheduler, store: ConfigManager) -> None:
    assert scheduler.tick_interval_seconds() == 30

    config = store.snapshot()
    config.global_settings.scheduler.tick_interval_seconds = 5
    store.replace_config(config)

    assert scheduler.tick_interval_seconds() == 5


def test_due_tasks_reads_snapshot(scheduler: CheckinScheduler) -> None:
    config = AppConfig.model_validate({"tasks": [make_task_dict(id="x", time="06:00"),
                                                 make_task_dict(id="y", time="10:00")]})
    due = scheduler.due_tasks(config, datetime(2026, 3, 2, 8, 0))
    assert [t.id for t in due] == ["x"]
