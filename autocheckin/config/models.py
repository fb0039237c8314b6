# autocheckin/config/models.py
from decimal import Decimal, InvalidOperation
from datetime import date, datetime, time as dt_time
from typing import Any, Dict, List, Optional, Tuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from autocheckin.constants import AppConstants
from autocheckin.exceptions import ConfigError


def _coerce_to_str(v: Any) -> Any:
    # JSON 里手写的数字（如 agentid: 1000002, lat: 39.9）统一按字符串保存
    if isinstance(v, bool):
        return v
    if isinstance(v, (int, float)):
        return str(v)
    if isinstance(v, str):
        return v.strip()
    return v


# --- Notification Config Models ---
class NotificationSettings(BaseModel):
    """企业微信应用消息配置。保存时不校验完整性，发送时才检查。"""
    model_config = ConfigDict(populate_by_name=True)

    enabled: bool = Field(default=False, validation_alias=AliasChoices("enabled", "enable"))
    corp_id: str = Field(default="", validation_alias=AliasChoices("corp_id", "corpid"))
    secret: str = ""
    agent_id: str = Field(default="", validation_alias=AliasChoices("agent_id", "agentid"))
    recipient: str = Field(
        default=AppConstants.WECOM_DEFAULT_RECIPIENT,
        validation_alias=AliasChoices("recipient", "touser"),
    )

    @field_validator("corp_id", "secret", "agent_id", "recipient", mode="before")
    @classmethod
    def coerce_strings(cls, v: Any) -> Any:
        return _coerce_to_str(v)

    def missing_fields(self) -> List[str]:
        return [name for name in ("corp_id", "secret", "agent_id", "recipient") if not getattr(self, name)]


class SchedulerSettings(BaseModel):
    tick_interval_seconds: int = AppConstants.DEFAULT_TICK_INTERVAL_SECONDS
    max_attempts: int = AppConstants.DEFAULT_MAX_ATTEMPTS
    base_delay_seconds: float = AppConstants.DEFAULT_BASE_DELAY_SECONDS
    min_submit_delay_seconds: float = AppConstants.DEFAULT_MIN_SUBMIT_DELAY_SECONDS
    max_submit_delay_seconds: float = AppConstants.DEFAULT_MAX_SUBMIT_DELAY_SECONDS

    @field_validator("tick_interval_seconds", "max_attempts")
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        if v <= 0: raise ValueError("必须为正整数")
        return v

    @field_validator("base_delay_seconds", "min_submit_delay_seconds", "max_submit_delay_seconds")
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        if v < 0: raise ValueError("不能为负数")
        return v


class GlobalSettings(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    notification: NotificationSettings = Field(
        default_factory=NotificationSettings,
        validation_alias=AliasChoices("notification", "wecom"),
    )
    debug: bool = False
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)


# --- Task Models ---
class Location(BaseModel):
    """经纬度以字符串原样保存，避免浮点往返造成的精度漂移。"""
    model_config = ConfigDict(populate_by_name=True)

    lat: str = ""
    lng: str = ""
    accuracy_radius: str = Field(
        default=AppConstants.DEFAULT_ACCURACY,
        validation_alias=AliasChoices("accuracy_radius", "acc"),
    )

    @field_validator("lat", "lng", "accuracy_radius", mode="before")
    @classmethod
    def coerce_strings(cls, v: Any) -> Any:
        return _coerce_to_str(v)

    def to_decimals(self) -> Tuple[Decimal, Decimal, Decimal]:
        """解析并校验坐标，不合法时抛出 ConfigError。"""
        lat = self._parse_decimal(self.lat, "纬度")
        lng = self._parse_decimal(self.lng, "经度")
        radius = self._parse_decimal(self.accuracy_radius, "精度")
        if not Decimal(-90) <= lat <= Decimal(90): raise ConfigError("纬度需在 -90 到 90 之间")
        if not Decimal(-180) <= lng <= Decimal(180): raise ConfigError("经度需在 -180 到 180 之间")
        if radius < AppConstants.MIN_ACCURACY_METERS:
            raise ConfigError(f"精度不能小于 {AppConstants.MIN_ACCURACY_METERS} 米: '{self.accuracy_radius}'")
        return lat, lng, radius

    @staticmethod
    def _parse_decimal(raw: str, label: str) -> Decimal:
        if not raw: raise ConfigError(f"{label}不能为空")
        try:
            value = Decimal(raw)
        except InvalidOperation:
            raise ConfigError(f"{label}必须是有效数字: '{raw}'") from None
        if not value.is_finite(): raise ConfigError(f"{label}必须是有限数字: '{raw}'")
        return value


class Task(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = ""
    name: str = ""
    time: str = "08:00"
    class_id: str = ""
    credential: str = Field(default="", validation_alias=AliasChoices("credential", "cookie"))
    location: Location = Field(default_factory=Location)
    enabled: bool = Field(default=True, validation_alias=AliasChoices("enabled", "enable"))
    last_fired_date: Optional[date] = None

    @field_validator("id", "name", "class_id", "credential", mode="before")
    @classmethod
    def coerce_strings(cls, v: Any) -> Any:
        return _coerce_to_str(v)

    @field_validator("time")
    @classmethod
    def validate_time_format(cls, v: str) -> str:
        try:
            return datetime.strptime(v.strip(), "%H:%M").strftime("%H:%M")
        except ValueError: raise ValueError("时间格式必须为 HH:MM") from None

    def time_of_day(self) -> dt_time:
        return datetime.strptime(self.time, "%H:%M").time()


# --- Main Config Model ---
class AppConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    global_settings: GlobalSettings = Field(default_factory=GlobalSettings, alias="global")
    tasks: List[Task] = Field(default_factory=list)

    @field_validator("tasks")
    @classmethod
    def validate_unique_ids(cls, v: List[Task]) -> List[Task]:
        ids = [t.id for t in v if t.id]
        if len(set(ids)) != len(ids): raise ValueError("任务列表中不能包含重复的ID")
        return v

    def find_task(self, task_id: str) -> Optional[Task]:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)
