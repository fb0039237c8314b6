# autocheckin/services/notification/interface.py
from abc import ABC, abstractmethod
from typing import Any

class NotifierInterface(ABC):
    """通知器接口，所有具体的通知实现都应继承此类。"""

    @abstractmethod
    def send(self, title: str, content: str, **kwargs: Any) -> bool:
        """
        发送通知的核心方法。

        参数:
            title (str): 通知的标题。
            content (str): 已格式化好的通知正文。
            **kwargs (Any): 特定于通知器的参数，例如企业微信通知器需要
                            settings=NotificationSettings。

        返回:
            bool: True 表示接口确认发送成功，False 表示发送失败（失败原因已记录日志）。
        """
        pass
