# autocheckin/commands.py
from typing import Any, Dict, Optional, Tuple, Union

from pydantic import ValidationError

from autocheckin.config.manager import ConfigManager
from autocheckin.config.models import AppConfig, Task
from autocheckin.exceptions import ConfigError, TaskNotFoundError
from autocheckin.logger_setup import LoggerInterface, LogLevel
from autocheckin.services.qr_login_service import LoginResult, QRLoginService


class CommandService:
    """界面/命令行与核心之间的边界。所有配置读写都经过 ConfigManager。"""

    def __init__(self, logger: LoggerInterface, config_manager: ConfigManager, login_service: QRLoginService):
        self.logger = logger
        self.config_manager = config_manager
        self.login_service = login_service

    def get_config(self) -> AppConfig:
        return self.config_manager.snapshot()

    def update_config(self, new_config: Union[AppConfig, Dict[str, Any]]) -> AppConfig:
        config = self._validate(AppConfig, new_config)
        return self.config_manager.replace_config(config)

    def add_task(self, task: Union[Task, Dict[str, Any]]) -> Task:
        return self.config_manager.upsert_task(self._validate_task(task))

    def update_task(self, task: Union[Task, Dict[str, Any]]) -> Task:
        return self.config_manager.update_task(self._validate(Task, task))

    def delete_task(self, task_id: str) -> bool:
        """删除任务。任务不存在时视为成功，返回 False。"""
        try:
            self.config_manager.delete_task(task_id)
            return True
        except TaskNotFoundError:
            self.logger.log(f"要删除的任务 {task_id} 不存在，忽略。", LogLevel.DEBUG)
            return False

    def get_login_qr(self) -> Tuple[bytes, str]:
        challenge = self.login_service.begin_login()
        return challenge.qr_image, challenge.poll_token

    def check_login(self, poll_token: str) -> Optional[LoginResult]:
        return self.login_service.poll(poll_token)

    def check_login_status(self, poll_token: str) -> Optional[Tuple[str, str]]:
        result = self.check_login(poll_token)
        if result is None:
            return None
        return result.credential, result.class_id

    def apply_login(self, task_id: str, credential: str, class_id: str = "") -> Task:
        """把扫码得到的 Cookie 写回任务；任务尚无班级ID时一并写入。"""
        task = self.config_manager.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        task.credential = credential
        if class_id and not task.class_id:
            task.class_id = class_id
        updated = self.config_manager.update_task(task)
        self.logger.log(f"任务 '{updated.name or updated.id}' 的 Cookie 已更新。", LogLevel.INFO)
        return updated

    @staticmethod
    def _validate(model: Any, value: Any) -> Any:
        if isinstance(value, model):
            return value
        try:
            return model.model_validate(value)
        except ValidationError as e:
            messages = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
            raise ConfigError("配置验证失败: " + "; ".join(messages)) from e

    @classmethod
    def _validate_task(cls, task: Union[Task, Dict[str, Any]]) -> Task:
        validated = cls._validate(Task, task)
        validated.location.to_decimals()
        return validated
