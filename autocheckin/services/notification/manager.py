# autocheckin/services/notification/manager.py
from datetime import datetime
from typing import Callable, List, Optional

from autocheckin.constants import AppConstants
from autocheckin.config.models import GlobalSettings
from autocheckin.logger_setup import LoggerInterface, LogLevel
from .interface import NotifierInterface
from .wecom_notifier import WeComNotifier


class NotificationManager:
    def __init__(self,
                 logger: LoggerInterface,
                 notifiers: Optional[List[NotifierInterface]] = None,
                 app_name: str = AppConstants.APP_NAME,
                 clock: Callable[[], datetime] = datetime.now):
        self.logger = logger
        self.notifiers: List[NotifierInterface] = notifiers if notifiers is not None else [WeComNotifier(logger)]
        self.app_name = app_name
        self.clock = clock

    def format_message(self, title: str, content: str) -> str:
        return (
            f"【{self.app_name}】\n{title}\n{AppConstants.NOTIFICATION_SEPARATOR}\n"
            f"{content}\n时间: {self.clock().strftime('%Y-%m-%d %H:%M:%S')}"
        )

    def notify(self, settings: GlobalSettings, title: str, content: str) -> bool:
        """
        分发一条通知。通知未启用时直接返回 True，不产生任何网络请求。

        本方法不抛出异常：通知失败只记录日志，不影响签到结果。
        """
        notification_settings = settings.notification
        if not notification_settings.enabled:
            self.logger.log(f"NotificationManager: 通知未启用，跳过 '{title}'。", LogLevel.DEBUG)
            return True

        message = self.format_message(title, content)
        dispatch_successful_count = 0
        for notifier in self.notifiers:
            try:
                if notifier.send(title, message, settings=notification_settings):
                    dispatch_successful_count += 1
            except Exception as e_dispatch:
                notifier_name = notifier.__class__.__name__
                self.logger.log(f"NotificationManager: 调用 {notifier_name}.send() 时发生错误: {e_dispatch}", LogLevel.ERROR, exc_info=True)

        if dispatch_successful_count == len(self.notifiers):
            self.logger.log(f"NotificationManager: 通知 '{title}' 已成功分发。", LogLevel.DEBUG)
            return True
        self.logger.log(
            f"NotificationManager: 通知 '{title}' 仅成功分发给 {dispatch_successful_count}/{len(self.notifiers)} 个通知器。",
            LogLevel.WARNING,
        )
        return False
