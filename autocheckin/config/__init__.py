# autocheckin/config/__init__.py

"""
配置管理模块，包含配置模型、JSON 存储与配置管理器。
"""

from .models import AppConfig, GlobalSettings, Location, NotificationSettings, SchedulerSettings, Task
from .storage import ConfigStorageInterface, JsonConfigStorage
from .manager import ConfigManager

__all__ = [
    "AppConfig",
    "GlobalSettings",
    "Location",
    "NotificationSettings",
    "SchedulerSettings",
    "Task",
    "ConfigStorageInterface",
    "JsonConfigStorage",
    "ConfigManager",
]
