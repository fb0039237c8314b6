# autocheckin/services/checkin_executor.py
import random
import time
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple, TypeVar

import requests
from pydantic import BaseModel, Field

from autocheckin.constants import AppConstants
from autocheckin.config.models import SchedulerSettings, Task
from autocheckin.exceptions import ConfigError, RejectedError, TransientFailureError
from autocheckin.logger_setup import LoggerInterface, LogLevel, mask_secret
from autocheckin.services.location_engine import LocationEngine
from autocheckin.services.platform import CheckinPlatform

T = TypeVar("T")


class OutcomeKind(Enum):
    SUCCESS = "success"
    REJECTED = "rejected"
    TRANSIENT_FAILURE = "transient_failure"
    CONFIG_ERROR = "config_error"


class CheckinOutcome(BaseModel):
    kind: OutcomeKind
    reason: str
    attempts: int = 0
    sign_ids: List[str] = Field(default_factory=list)
    coordinates: Optional[Dict[str, str]] = None

    @property
    def is_success(self) -> bool:
        return self.kind is OutcomeKind.SUCCESS


class CheckinExecutor:
    """
    对单个任务执行一次完整签到。

    流程：校验任务 -> 生成微信 UA 与请求头 -> 获取进行中的签到 ->
    逐个随机延迟、随机偏移坐标后提交。瞬时错误按指数退避重试，
    平台拒绝与配置错误不重试。执行器不修改配置。
    """

    def __init__(self,
                 logger: LoggerInterface,
                 platform: CheckinPlatform,
                 location_engine: LocationEngine,
                 settings: Optional[SchedulerSettings] = None,
                 session_factory: Callable[[], requests.Session] = requests.Session,
                 sleep: Callable[[float], None] = time.sleep,
                 rng: Optional[random.Random] = None):
        self.logger = logger
        self.platform = platform
        self.location_engine = location_engine
        self.settings = settings or SchedulerSettings()
        self.session_factory = session_factory
        self._sleep = sleep
        self._rng = rng or random.SystemRandom()

    def execute(self, task: Task, settings: Optional[SchedulerSettings] = None) -> CheckinOutcome:
        settings = settings or self.settings
        label = task.name or task.id
        try:
            self._validate_task(task)
        except ConfigError as e:
            self.logger.log(f"任务 '{label}' 配置无效: {e}", LogLevel.ERROR)
            return CheckinOutcome(kind=OutcomeKind.CONFIG_ERROR, reason=str(e))

        user_agent = self._generate_random_user_agent()
        headers = self.platform.build_headers(task.credential, task.class_id, user_agent)
        self.logger.log(
            f"任务 '{label}': 开始签到 (班级 {task.class_id}, Cookie {mask_secret(task.credential)})", LogLevel.INFO
        )
        self.logger.log(f"任务 '{label}': 使用 User-Agent: {user_agent}", LogLevel.DEBUG)

        with self.session_factory() as session:
            try:
                sign_ids, attempts = self._with_retries(
                    lambda: self.platform.list_active_sign_ids(session, task.class_id, headers),
                    settings, f"任务 '{label}' 获取签到列表",
                )
            except RejectedError as e:
                return CheckinOutcome(kind=OutcomeKind.REJECTED, reason=str(e), attempts=1)
            except TransientFailureError as e:
                return CheckinOutcome(kind=OutcomeKind.TRANSIENT_FAILURE, reason=str(e), attempts=settings.max_attempts)

            if not sign_ids:
                return CheckinOutcome(kind=OutcomeKind.SUCCESS, reason="当前没有进行中的签到", attempts=attempts)

            results: List[CheckinOutcome] = []
            for sign_id in sign_ids:
                results.append(self._sign_once(session, task, sign_id, headers, settings))

        return self._aggregate(results, sign_ids)

    def _sign_once(self, session: requests.Session, task: Task, sign_id: str,
                   headers: Dict[str, str], settings: SchedulerSettings) -> CheckinOutcome:
        low = min(settings.min_submit_delay_seconds, settings.max_submit_delay_seconds)
        high = max(settings.min_submit_delay_seconds, settings.max_submit_delay_seconds)
        delay = self._rng.uniform(low, high)
        if delay > 0:
            self.logger.log(f"签到ID {sign_id}: 随机等待 {delay:.1f} 秒后提交。", LogLevel.DEBUG)
            self._sleep(delay)

        used_coordinates: Dict[str, str] = {}

        def submit() -> str:
            # 每次尝试都重新抽取偏移
            coordinates = self.location_engine.jitter(task.location)
            used_coordinates.clear()
            used_coordinates.update(coordinates)
            return self.platform.submit_sign(session, task.class_id, sign_id, coordinates, headers)

        try:
            message, attempts = self._with_retries(submit, settings, f"签到ID {sign_id}")
        except ConfigError as e:
            return CheckinOutcome(kind=OutcomeKind.CONFIG_ERROR, reason=str(e), sign_ids=[sign_id])
        except RejectedError as e:
            return CheckinOutcome(kind=OutcomeKind.REJECTED, reason=str(e), attempts=1,
                                  sign_ids=[sign_id], coordinates=dict(used_coordinates) or None)
        except TransientFailureError as e:
            return CheckinOutcome(kind=OutcomeKind.TRANSIENT_FAILURE, reason=str(e), attempts=settings.max_attempts,
                                  sign_ids=[sign_id], coordinates=dict(used_coordinates) or None)
        return CheckinOutcome(kind=OutcomeKind.SUCCESS, reason=message, attempts=attempts,
                              sign_ids=[sign_id], coordinates=dict(used_coordinates))

    def _with_retries(self, operation: Callable[[], T], settings: SchedulerSettings, label: str) -> Tuple[T, int]:
        last_error: Optional[TransientFailureError] = None
        for attempt in range(1, settings.max_attempts + 1):
            try:
                return operation(), attempt
            except TransientFailureError as e:
                last_error = e
                self.logger.log(f"{label}: 瞬时错误 (尝试 {attempt}/{settings.max_attempts}): {e}", LogLevel.WARNING)
                if attempt < settings.max_attempts:
                    self._sleep(settings.base_delay_seconds * (2 ** (attempt - 1)))
        self.logger.log(f"{label}: {settings.max_attempts} 次尝试后仍失败，今天不再重试。", LogLevel.ERROR)
        raise TransientFailureError(f"{last_error} (已尝试 {settings.max_attempts} 次)")

    def _aggregate(self, results: List[CheckinOutcome], sign_ids: List[str]) -> CheckinOutcome:
        attempts = sum(r.attempts for r in results)
        coordinates = next((r.coordinates for r in reversed(results) if r.coordinates), None)
        failure = next((r for r in results if not r.is_success), None)
        if failure is not None:
            return CheckinOutcome(kind=failure.kind, reason=failure.reason, attempts=attempts,
                                  sign_ids=list(sign_ids), coordinates=coordinates)
        reasons = "; ".join(f"{r.sign_ids[0]}: {r.reason}" for r in results)
        return CheckinOutcome(kind=OutcomeKind.SUCCESS, reason=f"签到成功 ({reasons})", attempts=attempts,
                              sign_ids=list(sign_ids), coordinates=coordinates)

    @staticmethod
    def _validate_task(task: Task) -> None:
        if not task.class_id or not task.class_id.isdigit():
            raise ConfigError(f"班级ID '{task.class_id}' 必须为纯数字")
        if not task.credential.strip():
            raise ConfigError("Cookie 不能为空，请先扫码登录")
        task.location.to_decimals()

    def _generate_random_user_agent(self) -> str:
        pool = AppConstants.USER_AGENT_POOL
        return AppConstants.USER_AGENT_TEMPLATE.format(
            android_version=self._rng.choice(pool["android_versions"]),
            device=self._rng.choice(pool["devices"]),
            build_number=self._rng.choice(pool["build_numbers"]),
            chrome_version=self._rng.choice(pool["chrome_versions"]),
            wechat_version=self._rng.choice(pool["wechat_versions"]),
            net_type=self._rng.choice(pool["net_types"]),
        )
