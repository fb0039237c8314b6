# autocheckin/logger_setup.py
import os
import sys
import threading
import traceback
from enum import Enum, auto
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

import colorama
from colorama import Fore, Style

from autocheckin.constants import AppConstants

colorama.init(autoreset=True)

class LogLevel(Enum):
    DEBUG = auto()
    INFO = auto()
    WARNING = auto()
    ERROR = auto()
    CRITICAL = auto()

class LoggerInterface(ABC):
    @abstractmethod
    def log(self, message: str, level: LogLevel = LogLevel.INFO, exc_info: bool = False) -> None:
        pass

class FileLogger(LoggerInterface):
    def __init__(
        self,
        log_file: str = f"{AppConstants.APP_NAME}.log",
        console_level: LogLevel = LogLevel.INFO,
        log_dir: Optional[str] = None,
    ):
        self.log_dir = log_dir or AppConstants.LOG_DIR
        self.log_file = os.path.join(self.log_dir, log_file)
        self._setup_log_directory()
        self.console_level = console_level
        # 调度器的工作线程会并发写日志
        self._write_lock = threading.Lock()
        self.color_map = {
            LogLevel.DEBUG: Fore.CYAN,
            LogLevel.INFO: Fore.GREEN,
            LogLevel.WARNING: Fore.YELLOW,
            LogLevel.ERROR: Fore.RED,
            LogLevel.CRITICAL: Fore.MAGENTA + Style.BRIGHT,
        }
        self.icon_map = {
            LogLevel.DEBUG: "🔍",
            LogLevel.INFO: "ℹ️",
            LogLevel.WARNING: "⚠️",
            LogLevel.ERROR: "❌",
            LogLevel.CRITICAL: "🚨",
        }

    def _setup_log_directory(self) -> None:
        if not os.path.exists(self.log_dir):
            try:
                os.makedirs(self.log_dir, exist_ok=True)
            except OSError as e:
                print(f"创建日志目录失败 ({self.log_dir}): {e}")

    def log(self, message: str, level: LogLevel = LogLevel.INFO, exc_info: bool = False) -> None:
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        console_message = message

        if exc_info and sys.exc_info()[0] is not None:
            message += "\n" + traceback.format_exc()

        log_entry_file = f"[{timestamp}] [{level.name}] [{threading.current_thread().name}] {message}\n"

        with self._write_lock:
            if level.value >= self.console_level.value:
                color = self.color_map.get(level, Fore.WHITE)
                icon = self.icon_map.get(level, "")
                if sys.stdout.isatty() and "--silent" not in sys.argv:
                    print(f"{color}{icon} [{timestamp}] {console_message}{Style.RESET_ALL}")

            try:
                with open(self.log_file, "a", encoding="utf-8") as f:
                    f.write(log_entry_file)
            except IOError as e:
                print(
                    f"{Fore.RED}[{timestamp}] [CRITICAL_ERROR] 无法写入日志文件 {self.log_file}: {e}{Style.RESET_ALL}"
                )

    def set_console_level(self, level: LogLevel) -> None:
        self.console_level = level


def mask_secret(value: str, visible: int = 6) -> str:
    """日志中只显示凭证/密钥的末尾几位。"""
    if not value:
        return "<空>"
    if len(value) <= visible:
        return "*" * len(value)
    return f"...{value[-visible:]}"
