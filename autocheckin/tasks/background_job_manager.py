# autocheckin/tasks/background_job_manager.py
import threading
import time
from typing import Any, Callable, List, Optional, Tuple, Union

from autocheckin.constants import AppConstants
from autocheckin.logger_setup import LoggerInterface, LogLevel

Interval = Union[int, Callable[[], int]]


class BackgroundJobManager:
    def __init__(self, logger: LoggerInterface, application_run_event: threading.Event,
                 sleep: Callable[[float], None] = time.sleep):
        self.logger = logger
        self.application_run_event = application_run_event
        self._sleep = sleep
        self.jobs: List[Tuple[Callable[[], Any], Interval, str]] = []
        self.threads: List[threading.Thread] = []

    def add_job(self, task: Callable[[], Any], interval_seconds: Interval, job_name: str) -> bool:
        """
        添加一个后台任务到任务列表。

        interval_seconds 可以是固定秒数，也可以是每轮调用一次的函数，
        这样配置中修改的间隔无需重启即可生效。
        """
        if not callable(interval_seconds) and interval_seconds <= 0:
            self.logger.log(f"后台任务 '{job_name}' 的间隔时间必须为正数，无法添加。", LogLevel.WARNING)
            return False
        self.jobs.append((task, interval_seconds, job_name))
        self.logger.log(f"后台任务 '{job_name}' 已添加到队列 (间隔: {self._describe(interval_seconds)})。", LogLevel.DEBUG)
        return True

    @staticmethod
    def _describe(interval_seconds: Interval) -> str:
        return "动态" if callable(interval_seconds) else f"{interval_seconds}s"

    def _current_interval(self, interval_seconds: Interval, job_name: str, previous: Optional[int]) -> int:
        if not callable(interval_seconds):
            return interval_seconds
        fallback = previous or AppConstants.DEFAULT_TICK_INTERVAL_SECONDS
        try:
            value = int(interval_seconds())
        except Exception as e:
            self.logger.log(f"读取后台任务 '{job_name}' 的间隔失败，使用 {fallback}s: {e}", LogLevel.WARNING)
            return fallback
        if value <= 0:
            self.logger.log(f"后台任务 '{job_name}' 的间隔 {value} 无效，使用 {fallback}s。", LogLevel.WARNING)
            return fallback
        if previous is not None and value != previous:
            self.logger.log(f"后台任务 '{job_name}' 的间隔调整为 {value}s。", LogLevel.INFO)
        return value

    def _run_job(self, task: Callable[[], Any], interval_seconds: Interval, job_name: str) -> None:
        """单个后台任务的执行循环，由单独的线程运行。"""
        self.logger.log(f"后台任务 '{job_name}' (间隔: {self._describe(interval_seconds)}) 线程已启动。", LogLevel.DEBUG)
        wait_seconds: Optional[int] = None

        while self.application_run_event.is_set():
            try:
                task()
            except Exception as e:
                self.logger.log(f"后台任务 '{job_name}' 在执行时发生错误: {e}", LogLevel.ERROR, exc_info=True)

            wait_seconds = self._current_interval(interval_seconds, job_name, wait_seconds)
            # 按秒等待，停止信号最多延迟一秒生效
            for _ in range(wait_seconds):
                if not self.application_run_event.is_set():
                    break
                self._sleep(1)

        self.logger.log(f"后台任务 '{job_name}' 线程已停止。", LogLevel.INFO)

    def start_jobs(self) -> None:
        """启动所有已添加的后台任务，每个任务在自己的线程中运行。"""
        if not self.jobs:
            self.logger.log("没有已配置的后台任务需要启动。", LogLevel.INFO)
            return

        if not self.application_run_event.is_set():
            self.logger.log("应用程序未处于运行状态，无法启动后台任务。", LogLevel.WARNING)
            return

        self.threads = []
        for task, interval, name in self.jobs:
            thread = threading.Thread(target=self._run_job, args=(task, interval, name), name=name, daemon=True)
            self.threads.append(thread)
            thread.start()

        self.logger.log(f"{len(self.threads)} 个后台任务线程已成功启动。", LogLevel.INFO)

    def stop_jobs(self, join_timeout: float = 2.0) -> None:
        """请求停止所有后台任务：清除 application_run_event 并等待线程退出。"""
        self.logger.log("请求停止所有后台任务...", LogLevel.INFO)
        if self.application_run_event.is_set():
            self.application_run_event.clear()

        for thread in self.threads:
            if thread.is_alive():
                thread.join(timeout=join_timeout)
                if thread.is_alive():
                    self.logger.log(f"后台线程 {thread.name} 在超时后仍未结束。", LogLevel.WARNING)

        self.logger.log("所有后台任务已被通知停止。", LogLevel.INFO)
        self.jobs = []
        self.threads = []
