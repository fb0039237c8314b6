# autocheckin/services/platform.py
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

import requests
from bs4 import BeautifulSoup

from autocheckin.constants import AppConstants
from autocheckin.exceptions import RejectedError, TransientFailureError
from autocheckin.logger_setup import LoggerInterface, LogLevel


class CheckinPlatform(ABC):
    """签到平台的传输接口。实现负责请求格式与响应分类，重试与伪装由执行器负责。"""

    @abstractmethod
    def build_headers(self, credential: str, class_id: str, user_agent: str) -> Dict[str, str]:
        pass

    @abstractmethod
    def list_active_sign_ids(self, session: requests.Session, class_id: str, headers: Dict[str, str]) -> List[str]:
        """返回当前进行中且尚未签到的签到ID。失败时抛出 RejectedError 或 TransientFailureError。"""
        pass

    @abstractmethod
    def submit_sign(self, session: requests.Session, class_id: str, sign_id: str,
                    coordinates: Dict[str, str], headers: Dict[str, str]) -> str:
        """提交一次签到并返回平台的成功消息。失败时抛出 RejectedError 或 TransientFailureError。"""
        pass


class K8nPlatform(CheckinPlatform):
    CREDENTIAL_REJECTED_MARKERS: Tuple[str, ...] = ("用户登录", "请先登录")
    DENIED_MARKERS: Tuple[str, ...] = (
        "密码错误", "请输入密码", "不在签到时间", "还未开始", "未开始", "已结束",
        "不在签到范围", "距离太远", "不存在", "未成功", "失败",
    )
    SUCCESS_MARKERS: Tuple[str, ...] = ("已签到过", "签过啦", "您已签到", "成功", "Success")

    def __init__(self, logger: LoggerInterface, base_url: str = AppConstants.BASE_K8N_URL,
                 timeout: float = AppConstants.HTTP_TIMEOUT_SECONDS):
        self.logger = logger
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._sign_id_patterns = [re.compile(p) for p in AppConstants.SIGN_ID_PATTERNS]

    def build_headers(self, credential: str, class_id: str, user_agent: str) -> Dict[str, str]:
        return {
            "User-Agent": user_agent,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/wxpic,image/tpg,image/webp,image/apng,*/*;q=0.8,application/signed-exchange;v=b3;q=0.7",
            "X-Requested-With": "com.tencent.mm",
            "Referer": f"{self.base_url}/student/course/{class_id}",
            "Accept-Encoding": "gzip, deflate",
            "Accept-Language": "zh-CN,zh;q=0.9,en;q=0.8",
            "Cookie": self.clean_credential(credential),
        }

    @staticmethod
    def clean_credential(credential: str) -> str:
        # 从浏览器复制的 Cookie 常带一个 username= 片段，平台不认
        parts = [p.strip() for p in credential.split(";")]
        return "; ".join(p for p in parts if p and not p.startswith("username="))

    def list_active_sign_ids(self, session: requests.Session, class_id: str, headers: Dict[str, str]) -> List[str]:
        url = f"{self.base_url}/student/course/{class_id}/punchs"
        self.logger.log(f"班级 {class_id}: 获取签到列表 URL: {url}", LogLevel.DEBUG)
        response = self._request(session, "GET", url, headers=headers)
        self._check_response(response, f"班级 {class_id}")
        sign_ids = self.parse_active_sign_ids(response.text)
        if sign_ids:
            self.logger.log(f"班级 {class_id}: 发现 {len(sign_ids)} 个进行中的签到: {', '.join(sign_ids)}", LogLevel.INFO)
        else:
            if "请先加入班级" in response.text:
                self.logger.log(f"班级 {class_id}: 页面提示未加入班级。", LogLevel.WARNING)
            self.logger.log(f"班级 {class_id}: 当前没有进行中的签到。", LogLevel.INFO)
        return sign_ids

    def parse_active_sign_ids(self, html: str) -> List[str]:
        soup = BeautifulSoup(html, "html.parser")
        sign_ids: List[str] = []
        for card_body in soup.find_all("div", class_="card-body"):
            if "已签" in card_body.get_text():
                continue
            # onclick="punch_gps(123)" 写在外层 div.card 上
            candidates = [str(card_body)]
            if card_body.parent is not None:
                candidates.append(str(card_body.parent))
            sign_id = self._match_sign_id(candidates)
            if sign_id and sign_id not in sign_ids:
                sign_ids.append(sign_id)
        return sign_ids

    def _match_sign_id(self, fragments: List[str]) -> Optional[str]:
        for fragment in fragments:
            for pattern in self._sign_id_patterns:
                match = pattern.search(fragment)
                if match:
                    return match.group(1)
        return None

    def submit_sign(self, session: requests.Session, class_id: str, sign_id: str,
                    coordinates: Dict[str, str], headers: Dict[str, str]) -> str:
        url = f"{self.base_url}/student/punchs/course/{class_id}/{sign_id}"
        payload = {
            "id": sign_id,
            "lat": coordinates["lat"],
            "lng": coordinates["lng"],
            "acc": coordinates.get("acc", AppConstants.DEFAULT_ACCURACY),
            "res": "",
            "gps_addr": "",
            "pwd": "",
        }
        context = f"班级 {class_id} - 签到ID {sign_id}"
        response = self._request(session, "POST", url, headers=headers, data=payload)
        self._check_response(response, context)
        if not response.text.strip():
            raise TransientFailureError(f"{context}: 服务器响应为空")
        message = self.extract_result_message(response.text)
        self.logger.log(f"{context} 响应原文: '{message}'", LogLevel.INFO)
        return self.classify_result_message(message, context)

    def classify_result_message(self, message: str, context: str) -> str:
        for marker in self.CREDENTIAL_REJECTED_MARKERS:
            if marker in message:
                raise RejectedError(f"{context}: Cookie 已失效，请重新扫码登录")
        for marker in self.DENIED_MARKERS:
            if marker in message:
                raise RejectedError(f"{context}: {message[:50]}")
        for marker in self.SUCCESS_MARKERS:
            if marker in message:
                return message
        raise RejectedError(f"{context}: 无法识别的响应: {message[:50]}")

    @staticmethod
    def extract_result_message(html_response: str) -> str:
        soup = BeautifulSoup(html_response, "html.parser")
        title_tag = soup.find("div", id="title") or soup.find("div", class_="weui-msg__title")
        desc_tag = soup.find("div", id="text") or soup.find("div", class_="weui-msg__desc")
        parts = [tag.get_text(strip=True) for tag in (title_tag, desc_tag) if tag is not None]
        message = " ".join(p for p in parts if p)
        if not message:
            message = soup.get_text(" ", strip=True)
        return message or html_response.strip()

    def _request(self, session: requests.Session, method: str, url: str, **kwargs: Any) -> requests.Response:
        try:
            return session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.Timeout as e:
            raise TransientFailureError(f"请求超时: {url}") from e
        except requests.exceptions.RequestException as e:
            raise TransientFailureError(f"网络请求错误: {e}") from e

    def _check_response(self, response: requests.Response, context: str) -> None:
        status = response.status_code
        if status in (401, 403):
            raise RejectedError(f"{context}: 认证错误 (HTTP {status})，Cookie 可能无效或已过期")
        if status == 404:
            raise RejectedError(f"{context}: 页面或签到任务不存在 (HTTP 404)")
        if status >= 500:
            raise TransientFailureError(f"{context}: 服务器错误 (HTTP {status})")
        if status >= 400:
            raise RejectedError(f"{context}: 请求被拒绝 (HTTP {status})")
        if "/student/login" in (response.url or "") or "用户登录" in response.text:
            raise RejectedError(f"{context}: 被重定向到登录页，Cookie 已失效，请重新扫码登录")
