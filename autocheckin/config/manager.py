# autocheckin/config/manager.py
import threading
import uuid
from datetime import date
from typing import List, Optional

from pydantic import ValidationError

from .models import AppConfig, Task
from .storage import ConfigStorageInterface
from autocheckin.exceptions import StorageError, TaskNotFoundError
from autocheckin.logger_setup import LoggerInterface, LogLevel


class ConfigManager:
    """
    配置的唯一持有者。

    所有修改都在同一把锁内完成并立即落盘；读取方拿到的是深拷贝快照，
    调度器记录 last_fired_date 与界面编辑任务不会互相覆盖。
    """

    def __init__(self, storage: ConfigStorageInterface, logger: LoggerInterface):
        self.storage = storage
        self.logger = logger
        self._lock = threading.RLock()
        self._config = self._load_or_default()

    def _load_or_default(self) -> AppConfig:
        try:
            return self._read_from_storage()
        except StorageError as e:
            self.logger.log(f"本地配置无法读取，将使用空的默认配置: {e}", LogLevel.WARNING)
            try:
                backup_path = self.storage.backup_corrupt()
                if backup_path:
                    self.logger.log(f"已将损坏的配置文件备份到: {backup_path}", LogLevel.WARNING)
            except StorageError as e_backup:
                self.logger.log(f"{e_backup}。下次保存将覆盖原文件。", LogLevel.ERROR)
            return AppConfig()

    def _read_from_storage(self) -> AppConfig:
        raw_config = self.storage.load()
        try:
            config = AppConfig.model_validate(raw_config)
        except ValidationError as e:
            raise StorageError("配置验证失败:\n" + self._format_validation_error(e)) from e

        for task in config.tasks:
            if not task.id:
                task.id = uuid.uuid4().hex
                self.logger.log(f"任务 '{task.name}' 缺少ID，已分配新ID: {task.id}", LogLevel.DEBUG)
        return config

    @staticmethod
    def _format_validation_error(error: ValidationError) -> str:
        return "\n".join(
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in error.errors()
        )

    def load(self) -> AppConfig:
        """从磁盘重新读取配置并替换内存中的状态。失败时抛出 StorageError，内存状态保持不变。"""
        with self._lock:
            config = self._read_from_storage()
            self._config = config
            return config.model_copy(deep=True)

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self._commit(config.model_copy(deep=True))
        self.logger.log("本地配置保存成功。", LogLevel.DEBUG)

    def snapshot(self) -> AppConfig:
        with self._lock:
            return self._config.model_copy(deep=True)

    def get_task(self, task_id: str) -> Optional[Task]:
        with self._lock:
            task = self._config.find_task(task_id)
            return task.model_copy(deep=True) if task else None

    def replace_config(self, new_config: AppConfig) -> AppConfig:
        with self._lock:
            incoming = new_config.model_copy(deep=True)
            for task in incoming.tasks:
                if not task.id:
                    task.id = uuid.uuid4().hex
                self._keep_fire_state(task, self._config.find_task(task.id))
            self._commit(incoming)
            self.logger.log(f"配置已整体更新，共 {len(incoming.tasks)} 个任务。", LogLevel.INFO)
            return incoming.model_copy(deep=True)

    def upsert_task(self, task: Task) -> Task:
        with self._lock:
            new_task = task.model_copy(deep=True)
            if not new_task.id:
                new_task.id = uuid.uuid4().hex
            existing = self._config.find_task(new_task.id)
            self._keep_fire_state(new_task, existing)
            if existing:
                tasks = self._replaced(new_task)
            else:
                tasks = [t.model_copy(deep=True) for t in self._config.tasks] + [new_task]
            self._commit(self._with_tasks(tasks))
            self.logger.log(f"任务已{'更新' if existing else '添加'}: {new_task.name or new_task.id} ({new_task.time})", LogLevel.INFO)
            return new_task.model_copy(deep=True)

    def update_task(self, task: Task) -> Task:
        with self._lock:
            if not task.id or self._config.find_task(task.id) is None:
                raise TaskNotFoundError(task.id)
            return self.upsert_task(task)

    def delete_task(self, task_id: str) -> None:
        with self._lock:
            if self._config.find_task(task_id) is None:
                raise TaskNotFoundError(task_id)
            tasks = [t.model_copy(deep=True) for t in self._config.tasks if t.id != task_id]
            self._commit(self._with_tasks(tasks))
        self.logger.log(f"任务已删除: {task_id}", LogLevel.INFO)

    def mark_fired(self, task_id: str, fired_on: date) -> bool:
        """只修改 last_fired_date；任务在执行期间被删除时不做任何事。"""
        with self._lock:
            current = self._config.find_task(task_id)
            if current is None:
                self.logger.log(f"任务 {task_id} 已不存在，跳过记录触发日期。", LogLevel.DEBUG)
                return False
            if current.last_fired_date is not None and current.last_fired_date >= fired_on:
                return True
            updated = current.model_copy(deep=True)
            updated.last_fired_date = fired_on
            self._commit(self._with_tasks(self._replaced(updated)))
            return True

    @staticmethod
    def _keep_fire_state(incoming: Task, existing: Optional[Task]) -> None:
        # 界面可能持有旧副本，触发日期只能前进不能后退
        if existing is None or existing.last_fired_date is None:
            return
        if incoming.last_fired_date is None or incoming.last_fired_date < existing.last_fired_date:
            incoming.last_fired_date = existing.last_fired_date

    def _replaced(self, task: Task) -> List[Task]:
        return [task if t.id == task.id else t.model_copy(deep=True) for t in self._config.tasks]

    def _with_tasks(self, tasks: List[Task]) -> AppConfig:
        return AppConfig(global_settings=self._config.global_settings.model_copy(deep=True), tasks=tasks)

    def _commit(self, config: AppConfig) -> None:
        # 先落盘，成功后才替换内存状态
        self.storage.save(config.to_document())
        self._config = config
