# autocheckin/cli/command_handler.py
import sys
import threading
import time
from typing import Callable, Dict, List, Optional

from colorama import Fore, Style

from autocheckin.constants import AppConstants
from autocheckin.commands import CommandService
from autocheckin.exceptions import (ConfigError, LoginExpiredError, StorageError, TaskBusyError, TaskNotFoundError,
                                    UpstreamError)
from autocheckin.logger_setup import LoggerInterface, LogLevel
from autocheckin.tasks.scheduler import CheckinScheduler


class CommandHandler:
    def __init__(self,
                 logger: LoggerInterface,
                 application_run_event: threading.Event,
                 command_service: CommandService,
                 scheduler: CheckinScheduler,
                 input_func: Callable[[str], str] = input,
                 sleep: Callable[[float], None] = time.sleep):
        self.logger = logger
        self.application_run_event = application_run_event
        self.command_service = command_service
        self.scheduler = scheduler
        self._input = input_func
        self._sleep = sleep

        self._user_requested_stop_monitor = False
        self._control_thread: Optional[threading.Thread] = None

        self.command_handlers: Dict[str, Callable[[], bool]] = {}
        self.command_descriptions: Dict[str, str] = {}
        self._setup_command_system()

    def _setup_command_system(self) -> None:
        self.command_handlers = {
            'q': self._handle_quit_command,
            'h': self._handle_help_command,
            'c': self._handle_status_command,
            'l': self._handle_list_command,
            'add': self._handle_add_command,
            'toggle': self._handle_toggle_command,
            'del': self._handle_delete_command,
            'run': self._handle_run_command,
            'login': self._handle_login_command,
        }
        self.command_descriptions = {
            'q': "退出程序",
            'h': "显示帮助信息",
            'c': "查看当前状态",
            'l': "列出所有签到任务",
            'add': "添加签到任务",
            'toggle': "启用/停用任务",
            'del': "删除任务",
            'run': "立即执行一次任务 (不影响当天的定时触发)",
            'login': "微信扫码登录并更新任务的 Cookie",
        }

    def start_command_monitoring(self) -> None:
        if not self._control_thread or not self._control_thread.is_alive():
            self._user_requested_stop_monitor = False
            self._control_thread = threading.Thread(target=self._monitor_commands_loop, name="CommandHandler", daemon=True)
            self._control_thread.start()
            self.logger.log("CommandHandler: 命令监控线程已启动。", LogLevel.INFO)

    def stop_command_monitoring(self) -> None:
        self._user_requested_stop_monitor = True
        # input() 阻塞时无法打断，daemon 线程会随主程序退出
        if self._control_thread and self._control_thread.is_alive():
            self._control_thread.join(timeout=1.5)
        self._control_thread = None

    def _monitor_commands_loop(self) -> None:
        if sys.stdin.isatty():
            print(f"{Fore.CYAN}命令处理器已就绪。输入 'h' 获取可用命令列表。{Style.RESET_ALL}")

        while self.application_run_event.is_set() and not self._user_requested_stop_monitor:
            try:
                cmd_input = self._input(f"{Fore.BLUE}(输入命令):{Style.RESET_ALL} ").strip().lower()
            except EOFError:
                self.logger.log("CommandHandler: 检测到输入流结束 (EOF)，停止命令监控。", LogLevel.INFO)
                break
            except KeyboardInterrupt:
                self.logger.log("CommandHandler: 检测到中断信号 (Ctrl+C)。", LogLevel.INFO)
                self.application_run_event.clear()
                break

            if not self.application_run_event.is_set() or self._user_requested_stop_monitor:
                break
            if cmd_input:
                self.execute_command(cmd_input)

        self.logger.log("CommandHandler: 命令监控循环结束。", LogLevel.DEBUG)

    def execute_command(self, cmd_input: str) -> bool:
        handler = self.command_handlers.get(cmd_input)
        if handler is None:
            suggestions = [c for c in self.command_handlers if c.startswith(cmd_input[:1])]
            msg = f"{Fore.YELLOW}未知命令 '{cmd_input}'"
            if suggestions:
                msg += f", 您是否想输入: {', '.join(suggestions)}?"
            print(msg + Style.RESET_ALL)
            return False
        try:
            return handler()
        except (ConfigError, StorageError, TaskNotFoundError, TaskBusyError, UpstreamError, LoginExpiredError) as e:
            self.logger.log(f"CommandHandler: 命令 '{cmd_input}' 执行失败: {e}", LogLevel.WARNING)
            print(f"{Fore.RED}命令 '{cmd_input}' 执行失败: {e}{Style.RESET_ALL}")
            return False
        except Exception as e:
            self.logger.log(f"CommandHandler: 命令 '{cmd_input}' 执行出错: {e}", LogLevel.ERROR, exc_info=True)
            print(f"{Fore.RED}命令 '{cmd_input}' 执行出错: {e}{Style.RESET_ALL}")
            return False

    def _prompt(self, message: str, default: str = "") -> str:
        suffix = f" [{default}]" if default else ""
        value = self._input(f"{message}{suffix}: ").strip()
        return value or default

    def _resolve_task_id(self, raw: str) -> str:
        """支持输入任务ID的前缀。"""
        tasks = self.command_service.get_config().tasks
        exact = [t.id for t in tasks if t.id == raw]
        if exact:
            return exact[0]
        matches = [t.id for t in tasks if raw and t.id.startswith(raw)]
        if len(matches) == 1:
            return matches[0]
        if len(matches) > 1:
            raise ConfigError(f"任务ID前缀 '{raw}' 匹配到多个任务，请输入更长的前缀")
        raise TaskNotFoundError(raw)

    def _handle_quit_command(self) -> bool:
        self.logger.log("CommandHandler: 用户请求退出 ('q'命令)...", LogLevel.INFO)
        self._user_requested_stop_monitor = True
        self.application_run_event.clear()
        return True

    def _handle_help_command(self) -> bool:
        print(f"\n{Fore.CYAN}{Style.BRIGHT}=== 可用命令 ==={Style.RESET_ALL}")
        for cmd, desc in self.command_descriptions.items():
            print(f"  {Fore.GREEN}{cmd.ljust(8)}{Style.RESET_ALL} {desc}")
        return True

    def _handle_status_command(self) -> bool:
        config = self.command_service.get_config()
        enabled = [t for t in config.tasks if t.enabled]
        notification = config.global_settings.notification
        print(f"\n{Fore.CYAN}{Style.BRIGHT}=== 当前运行状态 ==={Style.RESET_ALL}")
        print("-" * 40)
        print(f"程序运行状态: {'运行中' if self.application_run_event.is_set() else '已停止/正在停止'}")
        print(f"任务总数: {len(config.tasks)} (已启用 {len(enabled)})")
        print(f"正在执行: {self.scheduler.in_flight_count()}")
        print(f"调度间隔: {config.global_settings.scheduler.tick_interval_seconds} 秒, "
              f"最大尝试次数: {config.global_settings.scheduler.max_attempts}")
        print(f"企业微信通知: {'已启用' if notification.enabled else '未启用'}")
        print("-" * 40)
        return True

    def _handle_list_command(self) -> bool:
        tasks = self.command_service.get_config().tasks
        if not tasks:
            print(f"{Fore.YELLOW}暂无任务，输入 'add' 添加。{Style.RESET_ALL}")
            return True
        print(f"\n{Fore.CYAN}{Style.BRIGHT}{'ID'.ljust(10)}{'名称'.ljust(14)}{'时间'.ljust(8)}{'班级ID'.ljust(12)}{'状态'.ljust(6)}上次触发{Style.RESET_ALL}")
        for task in tasks:
            status = f"{Fore.GREEN}启用{Style.RESET_ALL}" if task.enabled else f"{Fore.RED}停用{Style.RESET_ALL}"
            fired = task.last_fired_date.isoformat() if task.last_fired_date else "-"
            print(f"{task.id[:8].ljust(10)}{(task.name or '-')[:12].ljust(14)}{task.time.ljust(8)}"
                  f"{(task.class_id or '-').ljust(12)}{status}    {fired}")
        return True

    def _handle_add_command(self) -> bool:
        created = self.command_service.add_task({
            "name": self._prompt("任务名称"),
            "time": self._prompt("签到时间 (HH:MM)", "08:00"),
            "class_id": self._prompt("班级ID (可留空，扫码登录后自动填写)"),
            "location": {
                "lat": self._prompt("纬度"),
                "lng": self._prompt("经度"),
                "accuracy_radius": self._prompt("精度/偏移半径 (米)", AppConstants.DEFAULT_ACCURACY),
            },
        })
        print(f"{Fore.GREEN}✓ 任务已添加，ID: {created.id}。请使用 'login' 命令为其扫码获取 Cookie。{Style.RESET_ALL}")
        return True

    def _handle_toggle_command(self) -> bool:
        task_id = self._resolve_task_id(self._prompt("任务ID"))
        task = self.command_service.config_manager.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        task.enabled = not task.enabled
        self.command_service.update_task(task)
        print(f"{Fore.GREEN}✓ 任务 '{task.name or task.id}' 已{'启用' if task.enabled else '停用'}。{Style.RESET_ALL}")
        return True

    def _handle_delete_command(self) -> bool:
        task_id = self._resolve_task_id(self._prompt("任务ID"))
        if self.command_service.delete_task(task_id):
            print(f"{Fore.GREEN}✓ 任务 {task_id} 已删除。{Style.RESET_ALL}")
        return True

    def _handle_run_command(self) -> bool:
        task_id = self._resolve_task_id(self._prompt("任务ID"))
        print(f"{Fore.CYAN}正在执行任务 {task_id[:8]}...{Style.RESET_ALL}")
        outcome = self.scheduler.run_now(task_id).result()
        if outcome is None:
            print(f"{Fore.YELLOW}任务已停用，未执行。{Style.RESET_ALL}")
            return False
        color = Fore.GREEN if outcome.is_success else Fore.RED
        print(f"{color}[{outcome.kind.value}] {outcome.reason}{Style.RESET_ALL}")
        return outcome.is_success

    def _handle_login_command(self) -> bool:
        task_id = self._resolve_task_id(self._prompt("要更新 Cookie 的任务ID"))
        qr_image, poll_token = self.command_service.get_login_qr()
        try:
            with open(AppConstants.LOGIN_QR_FILE, "wb") as f:
                f.write(qr_image)
        except OSError as e:
            self.logger.log(f"CommandHandler: 保存二维码到 {AppConstants.LOGIN_QR_FILE} 失败: {e}", LogLevel.ERROR)
            print(f"{Fore.RED}无法保存二维码图片: {e}{Style.RESET_ALL}")
            return False
        print(f"{Fore.CYAN}二维码已保存到 {AppConstants.LOGIN_QR_FILE}，请使用微信扫码并确认登录。{Style.RESET_ALL}")

        while self.application_run_event.is_set():
            result = self.command_service.check_login(poll_token)
            if result is not None:
                self.command_service.apply_login(task_id, result.credential, result.class_id)
                self._print_classes(result.classes)
                print(f"{Fore.GREEN}✓ 微信扫码登录成功，任务 {task_id[:8]} 的 Cookie 已更新。{Style.RESET_ALL}")
                return True
            self._sleep(AppConstants.LOGIN_POLL_INTERVAL_SECONDS)
        return False

    def _print_classes(self, classes: List[Dict[str, str]]) -> None:
        if len(classes) > 1:
            print(f"{Fore.YELLOW}找到多个班级，如需更换请编辑任务的班级ID：{Style.RESET_ALL}")
            for cls_info in classes:
                print(f"  {Fore.CYAN}{cls_info.get('name', '未知名称')}{Style.RESET_ALL} (ID: {cls_info['id']})")
