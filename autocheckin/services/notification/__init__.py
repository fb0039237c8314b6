# autocheckin/services/notification/__init__.py
from .interface import NotifierInterface
from .wecom_notifier import AccessToken, WeComNotifier
from .manager import NotificationManager

__all__ = [
    "NotifierInterface",
    "AccessToken",
    "WeComNotifier",
    "NotificationManager",
]
