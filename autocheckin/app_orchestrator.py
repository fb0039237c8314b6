# autocheckin/app_orchestrator.py
import sys
import threading
import time
import traceback
from typing import List, Optional

from colorama import Fore, Style

from autocheckin.constants import AppConstants, SCRIPT_VERSION
from autocheckin.logger_setup import LoggerInterface, FileLogger, LogLevel
from autocheckin.exceptions import ConfigError, StorageError

from autocheckin.config.storage import JsonConfigStorage
from autocheckin.config.manager import ConfigManager

from autocheckin.services.location_engine import LocationEngine
from autocheckin.services.platform import K8nPlatform
from autocheckin.services.checkin_executor import CheckinExecutor
from autocheckin.services.qr_login_service import QRLoginService
from autocheckin.services.notification import NotificationManager

from autocheckin.commands import CommandService
from autocheckin.cli.command_handler import CommandHandler

from autocheckin.tasks.background_job_manager import BackgroundJobManager
from autocheckin.tasks.scheduler import CheckinScheduler


class AppOrchestrator:
    def __init__(self, argv: Optional[List[str]] = None):
        self.argv = list(sys.argv[1:] if argv is None else argv)
        self.application_run_event = threading.Event()
        self.application_run_event.set()

        self._exit_code: int = 0
        self._exit_reason: str = "应用启动流程未完成"

        self.logger: Optional[LoggerInterface] = None
        self.config_manager: Optional[ConfigManager] = None
        self.notification_manager: Optional[NotificationManager] = None
        self.scheduler: Optional[CheckinScheduler] = None
        self.command_service: Optional[CommandService] = None
        self.command_handler: Optional[CommandHandler] = None
        self.bg_job_manager: Optional[BackgroundJobManager] = None

    def _get_option(self, name: str, default: Optional[str] = None) -> Optional[str]:
        """读取形如 `--config path` 或 `--config=path` 的参数。"""
        for index, arg in enumerate(self.argv):
            if arg == name and index + 1 < len(self.argv):
                return self.argv[index + 1]
            if arg.startswith(f"{name}="):
                return arg.split("=", 1)[1]
        return default

    def _initialize_logger(self) -> None:
        if "--debug-console" in self.argv:
            console_log_level = LogLevel.DEBUG
        else:
            console_log_level = LogLevel.INFO

        self.logger = FileLogger(log_file=f"{AppConstants.APP_NAME}.log", console_level=console_log_level)
        self.logger.log(f"--- {AppConstants.APP_NAME} v{SCRIPT_VERSION} 应用编排器开始初始化 ---", LogLevel.INFO)
        self.logger.log(f"控制台日志级别已设置为: {console_log_level.name} (文件日志始终为DEBUG及以上)", LogLevel.DEBUG)

    def _initialize_core_components(self) -> None:
        if not self.logger:
            raise RuntimeError("核心组件初始化失败：Logger 未初始化。")

        config_path = self._get_option("--config", AppConstants.CONFIG_FILE)
        self.config_manager = ConfigManager(storage=JsonConfigStorage(config_path=config_path), logger=self.logger)
        config = self.config_manager.snapshot()
        self.logger.log(f"已加载配置文件 {config_path}: 共 {len(config.tasks)} 个任务。", LogLevel.INFO)

        if config.global_settings.debug and isinstance(self.logger, FileLogger):
            self.logger.set_console_level(LogLevel.DEBUG)
            self.logger.log("配置中启用了调试模式，控制台日志级别提升为 DEBUG。", LogLevel.DEBUG)

        self.notification_manager = NotificationManager(logger=self.logger, app_name=AppConstants.APP_NAME)
        executor = CheckinExecutor(
            logger=self.logger,
            platform=K8nPlatform(self.logger),
            location_engine=LocationEngine(self.logger),
        )
        self.scheduler = CheckinScheduler(
            logger=self.logger,
            config_manager=self.config_manager,
            executor=executor,
            notification_manager=self.notification_manager,
        )
        self.command_service = CommandService(
            logger=self.logger,
            config_manager=self.config_manager,
            login_service=QRLoginService(self.logger),
        )

        if "--headless" not in self.argv:
            self.command_handler = CommandHandler(
                logger=self.logger,
                application_run_event=self.application_run_event,
                command_service=self.command_service,
                scheduler=self.scheduler,
            )

        self.bg_job_manager = BackgroundJobManager(self.logger, self.application_run_event)
        self.bg_job_manager.add_job(
            self.scheduler.tick,
            self.scheduler.tick_interval_seconds,
            "CheckinScheduler",
        )
        self.logger.log("核心组件初始化完毕。", LogLevel.INFO)

    def _wait_for_shutdown(self) -> None:
        # 按秒轮询，主线程能及时响应 Ctrl+C
        while self.application_run_event.is_set():
            time.sleep(1)

    def run(self) -> int:
        try:
            self._initialize_logger()
            self._initialize_core_components()

            self.logger.log("所有组件初始化完成，准备启动调度器...", LogLevel.INFO)
            if self.bg_job_manager:
                self.bg_job_manager.start_jobs()
            if self.command_handler:
                self.command_handler.start_command_monitoring()

            self._exit_reason = "应用正常关闭"
            self._exit_code = 0
            self._wait_for_shutdown()

        except (ConfigError, StorageError) as ce:
            self._handle_specific_exit_exception(f"配置流程错误: {ce}")
        except KeyboardInterrupt:
            if self.logger:
                self.logger.log("AppOrchestrator: 检测到用户中断 (Ctrl+C)。", LogLevel.INFO)
            self._exit_reason = "用户通过 Ctrl+C 中断操作"
            self._exit_code = 0
        except Exception as e:
            if self.logger:
                self.logger.log(f"AppOrchestrator: 发生未捕获的致命错误: {e}", LogLevel.CRITICAL, exc_info=True)
            else:
                print(f"CRITICAL ERROR (Logger not available): {e}")
                traceback.print_exc()
            self._exit_reason = f"发生未处理的致命错误: {type(e).__name__}"
            self._exit_code = 1
        finally:
            self._perform_shutdown()

        return self._exit_code

    def _handle_specific_exit_exception(self, reason: str) -> None:
        if self.logger:
            self.logger.log(f"AppOrchestrator: {reason}，应用终止。", LogLevel.CRITICAL)
        else:
            print(f"CRITICAL ERROR (Logger N/A): {reason}")
        self._exit_reason = reason
        self._exit_code = 1
        if self.application_run_event.is_set():
            self.application_run_event.clear()

    def _perform_shutdown(self) -> None:
        if self.application_run_event.is_set():
            self.application_run_event.clear()
        if not self.logger:
            print(f"{self._exit_reason} (退出码: {self._exit_code})")
            return

        self.logger.log("AppOrchestrator: 开始执行关闭流程...", LogLevel.INFO)
        if self.command_handler:
            self.command_handler.stop_command_monitoring()
        if self.bg_job_manager:
            self.bg_job_manager.stop_jobs()
        if self.scheduler:
            # 正在执行的签到随进程结束；未记录触发日期的任务会在下次启动后补触发
            self.scheduler.shutdown(wait=False)

        final_log_level = LogLevel.ERROR if self._exit_code != 0 else LogLevel.INFO
        self.logger.log(
            f"--- {AppConstants.APP_NAME} v{SCRIPT_VERSION} {self._exit_reason} (最终退出码: {self._exit_code}) ---",
            final_log_level,
        )
        if self._exit_code != 0:
            print(f"{Fore.RED}程序因错误退出。详情请查看日志文件。{Style.RESET_ALL}")
        print(Style.RESET_ALL, end="")

    def request_shutdown(self, reason: str, exit_code: int = 0) -> None:
        if self.logger:
            self.logger.log(f"AppOrchestrator: 收到关闭请求，原因: {reason}, 建议退出码: {exit_code}", LogLevel.INFO)
        self._exit_reason = reason
        self._exit_code = exit_code
        if self.application_run_event.is_set():
            self.application_run_event.clear()
