# autocheckin/tasks/scheduler.py
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import date, datetime
from typing import Callable, Dict, List, Optional, Set

from autocheckin.constants import AppConstants
from autocheckin.config.manager import ConfigManager
from autocheckin.config.models import AppConfig, GlobalSettings, Task
from autocheckin.exceptions import StorageError, TaskBusyError, TaskNotFoundError
from autocheckin.logger_setup import LoggerInterface, LogLevel
from autocheckin.services.checkin_executor import CheckinExecutor, CheckinOutcome, OutcomeKind
from autocheckin.services.notification import NotificationManager


class CheckinScheduler:
    """
    定时签到调度器。

    每次 tick 读取配置快照，找出"已启用、时间已过、今天尚未触发"的任务，
    交给线程池执行。执行得到最终结果后才记录 last_fired_date，
    因此同一任务每天最多触发一次，错过的时间点会在进程醒来后补触发。
    """

    _LOG_LEVELS = {
        OutcomeKind.SUCCESS: LogLevel.INFO,
        OutcomeKind.REJECTED: LogLevel.WARNING,
        OutcomeKind.TRANSIENT_FAILURE: LogLevel.ERROR,
        OutcomeKind.CONFIG_ERROR: LogLevel.ERROR,
    }
    _TITLES = {
        OutcomeKind.SUCCESS: "签到成功",
        OutcomeKind.REJECTED: "签到被拒绝",
        OutcomeKind.TRANSIENT_FAILURE: "签到失败（网络）",
        OutcomeKind.CONFIG_ERROR: "任务配置错误",
    }

    def __init__(self,
                 logger: LoggerInterface,
                 config_manager: ConfigManager,
                 executor: CheckinExecutor,
                 notification_manager: NotificationManager,
                 clock: Callable[[], datetime] = datetime.now,
                 max_workers: int = AppConstants.DEFAULT_MAX_WORKERS):
        self.logger = logger
        self.config_manager = config_manager
        self.executor = executor
        self.notification_manager = notification_manager
        self.clock = clock
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="checkin")
        self._state_lock = threading.Lock()
        self._in_flight: Set[str] = set()
        # 落盘失败时仍能阻止同一天重复触发
        self._fired_dates: Dict[str, date] = {}

    @staticmethod
    def is_due(task: Task, now: datetime) -> bool:
        if not task.enabled:
            return False
        today = now.date()
        # 时钟回拨时 last_fired_date 可能晚于今天，同样视为已触发
        if task.last_fired_date is not None and task.last_fired_date >= today:
            return False
        return task.time_of_day() <= now.time()

    def due_tasks(self, config: AppConfig, now: datetime) -> List[Task]:
        today = now.date()
        with self._state_lock:
            return [
                task for task in config.tasks
                if self.is_due(task, now)
                and task.id not in self._in_flight
                and self._fired_dates.get(task.id) != today
            ]

    def tick(self) -> List["Future[Optional[CheckinOutcome]]"]:
        now = self.clock()
        config = self.config_manager.snapshot()
        due = self.due_tasks(config, now)
        if not due:
            return []

        futures = []
        for task in due:
            with self._state_lock:
                if task.id in self._in_flight:
                    continue
                self._in_flight.add(task.id)
            self.logger.log(f"任务 '{task.name or task.id}' 已到时间 ({task.time})，开始执行。", LogLevel.INFO)
            try:
                futures.append(self._pool.submit(self._run_task, task.id, now.date()))
            except RuntimeError as e:
                # 线程池已关闭（程序正在退出）
                with self._state_lock:
                    self._in_flight.discard(task.id)
                self.logger.log(f"无法提交任务 '{task.name or task.id}': {e}", LogLevel.WARNING)
        return futures

    def run_now(self, task_id: str) -> "Future[Optional[CheckinOutcome]]":
        """手动立即执行一次，不影响 last_fired_date。任务正在执行时拒绝。"""
        if self.config_manager.get_task(task_id) is None:
            raise TaskNotFoundError(task_id)
        with self._state_lock:
            if task_id in self._in_flight:
                raise TaskBusyError(task_id)
            self._in_flight.add(task_id)
        try:
            return self._pool.submit(self._run_task, task_id, None)
        except RuntimeError:
            with self._state_lock:
                self._in_flight.discard(task_id)
            raise

    def tick_interval_seconds(self) -> int:
        """每轮从当前配置读取调度间隔。"""
        return self.config_manager.snapshot().global_settings.scheduler.tick_interval_seconds

    def _run_task(self, task_id: str, fire_date: Optional[date]) -> Optional[CheckinOutcome]:
        try:
            config = self.config_manager.snapshot()
            task = config.find_task(task_id)
            if task is None or not task.enabled:
                self.logger.log(f"任务 {task_id} 在执行前已被删除或停用，跳过。", LogLevel.INFO)
                return None

            try:
                outcome = self.executor.execute(task, config.global_settings.scheduler)
            except Exception as e:
                self.logger.log(f"任务 '{task.name or task_id}' 执行时发生未预期的错误: {e}", LogLevel.ERROR, exc_info=True)
                outcome = CheckinOutcome(kind=OutcomeKind.TRANSIENT_FAILURE, reason=f"内部错误: {e}")

            if fire_date is not None:
                self._record_fired(task_id, fire_date)
            self._report(task, outcome, config.global_settings)
            return outcome
        finally:
            with self._state_lock:
                self._in_flight.discard(task_id)

    def _record_fired(self, task_id: str, fire_date: date) -> None:
        with self._state_lock:
            self._fired_dates[task_id] = fire_date
        try:
            self.config_manager.mark_fired(task_id, fire_date)
        except StorageError as e:
            self.logger.log(f"记录任务 {task_id} 的触发日期失败: {e}", LogLevel.ERROR)

    def _report(self, task: Task, outcome: CheckinOutcome, settings: GlobalSettings) -> None:
        label = task.name or task.id
        level = self._LOG_LEVELS[outcome.kind]
        self.logger.log(f"任务 '{label}' 结果: [{outcome.kind.value}] {outcome.reason}", level)

        content = f"任务: {label}\n班级: {task.class_id}\n结果: {outcome.reason}"
        if outcome.coordinates:
            content += f"\n坐标: {outcome.coordinates.get('lat')}, {outcome.coordinates.get('lng')}"
        try:
            self.notification_manager.notify(settings, self._TITLES[outcome.kind], content)
        except Exception as e:
            self.logger.log(f"发送任务 '{label}' 的结果通知时出错: {e}", LogLevel.ERROR, exc_info=True)

    def in_flight_count(self) -> int:
        with self._state_lock:
            return len(self._in_flight)

    def shutdown(self, wait: bool = False) -> None:
        self._pool.shutdown(wait=wait, cancel_futures=True)
        self.logger.log("调度器线程池已关闭。", LogLevel.DEBUG)
