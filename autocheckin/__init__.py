# autocheckin/__init__.py

"""
班级魔方定时自动签到：任务调度、签到执行、扫码登录与企业微信通知。
"""

from .constants import AppConstants, SCRIPT_VERSION
from .logger_setup import FileLogger, LogLevel, LoggerInterface
from .exceptions import (
    ConfigError,
    LoginExpiredError,
    RejectedError,
    StorageError,
    TaskNotFoundError,
    TransientFailureError,
    UpstreamError,
)

__all__ = [
    "AppConstants",
    "SCRIPT_VERSION",
    "FileLogger",
    "LogLevel",
    "LoggerInterface",
    "ConfigError",
    "LoginExpiredError",
    "RejectedError",
    "StorageError",
    "TaskNotFoundError",
    "TransientFailureError",
    "UpstreamError",
]
