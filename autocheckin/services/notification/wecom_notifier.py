# autocheckin/services/notification/wecom_notifier.py
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

import requests
from pydantic import BaseModel

from autocheckin.constants import AppConstants
from autocheckin.config.models import NotificationSettings
from autocheckin.exceptions import UpstreamError
from autocheckin.logger_setup import LoggerInterface, LogLevel, mask_secret
from .interface import NotifierInterface


class AccessToken(BaseModel):
    value: str
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class WeComNotifier(NotifierInterface):
    """
    企业微信应用消息通知器。

    access_token 按 (corp_id, secret) 缓存在内存中，不落盘。刷新在锁内进行并二次检查缓存，
    并发发送时只会有一个请求去获取令牌。令牌被接口拒绝时作废缓存并重试一次。
    """

    def __init__(self,
                 logger: LoggerInterface,
                 session_factory: Callable[[], requests.Session] = requests.Session,
                 clock: Callable[[], float] = time.time,
                 timeout: float = AppConstants.WECOM_TIMEOUT_SECONDS):
        self.logger = logger
        self.session_factory = session_factory
        self.clock = clock
        self.timeout = timeout
        self._token_cache: Dict[Tuple[str, str], AccessToken] = {}
        self._token_lock = threading.Lock()

    def send(self, title: str, content: str, **kwargs: Any) -> bool:
        settings: Optional[NotificationSettings] = kwargs.get("settings")
        if settings is None:
            self.logger.log("WeComNotifier: 未提供通知配置，无法发送。", LogLevel.ERROR)
            return False
        missing = settings.missing_fields()
        if missing:
            self.logger.log(f"WeComNotifier: 企业微信通知已启用但缺少配置项: {', '.join(missing)}", LogLevel.WARNING)
            return False

        try:
            with self.session_factory() as session:
                token = self._get_token(session, settings)
                errcode, errmsg = self._post_message(session, token.value, settings, content)
                if errcode in AppConstants.WECOM_TOKEN_REJECTED_CODES:
                    self.logger.log(f"WeComNotifier: access_token 被拒绝 (errcode={errcode})，刷新后重试一次。", LogLevel.WARNING)
                    self._invalidate(settings, token.value)
                    token = self._get_token(session, settings)
                    errcode, errmsg = self._post_message(session, token.value, settings, content)
        except UpstreamError as e:
            self.logger.log(f"WeComNotifier: 发送通知 '{title}' 失败: {e}", LogLevel.ERROR)
            return False

        if errcode == 0:
            self.logger.log(f"WeComNotifier: 通知 '{title}' 发送成功。", LogLevel.INFO)
            return True
        self.logger.log(f"WeComNotifier: 通知 '{title}' 发送失败。errcode={errcode}, errmsg='{errmsg}'", LogLevel.ERROR)
        return False

    def _get_token(self, session: requests.Session, settings: NotificationSettings) -> AccessToken:
        key = (settings.corp_id, settings.secret)
        cached = self._token_cache.get(key)
        if cached and not cached.is_expired(self.clock()):
            return cached
        with self._token_lock:
            # 等锁期间可能已有其他线程刷新完成
            cached = self._token_cache.get(key)
            if cached and not cached.is_expired(self.clock()):
                return cached
            token = self._fetch_token(session, settings)
            self._token_cache[key] = token
            return token

    def _invalidate(self, settings: NotificationSettings, rejected_value: str) -> None:
        key = (settings.corp_id, settings.secret)
        with self._token_lock:
            cached = self._token_cache.get(key)
            if cached and cached.value == rejected_value:
                del self._token_cache[key]

    def _fetch_token(self, session: requests.Session, settings: NotificationSettings) -> AccessToken:
        self.logger.log(f"WeComNotifier: 获取 access_token (corpid={settings.corp_id}, secret={mask_secret(settings.secret)})", LogLevel.DEBUG)
        data = self._request_json(
            session, "GET", AppConstants.WECOM_TOKEN_URL,
            params={"corpid": settings.corp_id, "corpsecret": settings.secret},
        )
        if data.get("errcode", 0) != 0 or not data.get("access_token"):
            raise UpstreamError(f"获取 access_token 失败: errcode={data.get('errcode')}, errmsg='{data.get('errmsg', '')}'")
        expires_in = int(data.get("expires_in", 7200))
        expires_at = self.clock() + max(expires_in - AppConstants.WECOM_TOKEN_EXPIRY_MARGIN_SECONDS, 0)
        return AccessToken(value=data["access_token"], expires_at=expires_at)

    def _post_message(self, session: requests.Session, token: str,
                      settings: NotificationSettings, content: str) -> Tuple[int, str]:
        payload = {
            "touser": settings.recipient,
            "msgtype": "text",
            "agentid": int(settings.agent_id) if settings.agent_id.isdigit() else settings.agent_id,
            "text": {"content": content},
            "safe": 0,
        }
        data = self._request_json(
            session, "POST", AppConstants.WECOM_SEND_URL, params={"access_token": token}, json=payload
        )
        return int(data.get("errcode", -1)), str(data.get("errmsg", ""))

    def _request_json(self, session: requests.Session, method: str, url: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = session.request(method, url, timeout=self.timeout, **kwargs)
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as e:
            raise UpstreamError(f"企业微信接口请求失败: {e}") from e
        except ValueError as e:
            raise UpstreamError(f"企业微信接口响应不是有效的JSON: {e}") from e
        if not isinstance(data, dict):
            raise UpstreamError("企业微信接口响应格式异常")
        return data
