# autocheckin/services/qr_login_service.py
import base64
import binascii
import re
import time
from io import BytesIO
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urljoin

import requests
from bs4 import BeautifulSoup
from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel, Field, ValidationError

from autocheckin.constants import AppConstants
from autocheckin.exceptions import LoginExpiredError, UpstreamError
from autocheckin.logger_setup import LoggerInterface, LogLevel, mask_secret


class LoginSession(BaseModel):
    """扫码会话。整体编码进 poll_token，服务端与本地都不保存状态。"""
    cookies: Dict[str, str]
    created_at: float

    def encode(self) -> str:
        return base64.urlsafe_b64encode(self.model_dump_json().encode("utf-8")).decode("ascii")

    @classmethod
    def decode(cls, token: str) -> "LoginSession":
        try:
            raw = base64.urlsafe_b64decode(token.encode("ascii"))
            return cls.model_validate_json(raw)
        except (binascii.Error, UnicodeError, ValueError, ValidationError):
            raise LoginExpiredError("登录令牌无效，请重新获取二维码") from None


class LoginChallenge(BaseModel):
    qr_image: bytes
    poll_token: str


class LoginResult(BaseModel):
    credential: str
    class_id: str
    classes: List[Dict[str, str]] = Field(default_factory=list)
    user_info: Dict[str, Optional[str]] = Field(default_factory=dict)


class QRLoginService:
    """
    微信扫码登录。

    begin_login() 获取二维码和 poll_token；调用方按固定间隔调用 poll()，
    直到返回 LoginResult 或抛出 LoginExpiredError。本类不持有后台循环，
    调用方停止轮询即视为取消。
    """

    def __init__(self,
                 logger: LoggerInterface,
                 session_factory: Callable[[], requests.Session] = requests.Session,
                 clock: Callable[[], float] = time.time,
                 max_session_age_seconds: int = AppConstants.LOGIN_SESSION_MAX_AGE_SECONDS):
        self.logger = logger
        self.session_factory = session_factory
        self.clock = clock
        self.max_session_age_seconds = max_session_age_seconds
        self.base_headers = {
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,image/apng,*/*;q=0.8,application/signed-exchange;v=b3;q=0.7",
            "Accept-Encoding": "gzip, deflate",
            "Accept-Language": "zh-CN,zh;q=0.9",
            "Referer": f"{AppConstants.BASE_K8N_URL}/student/login?ref=%2Fstudent",
            "Upgrade-Insecure-Requests": "1",
            "User-Agent": AppConstants.DESKTOP_USER_AGENT,
        }

    def begin_login(self) -> LoginChallenge:
        self.logger.log("正在获取二维码链接...", LogLevel.DEBUG)
        with self.session_factory() as session:
            session.headers.update(self.base_headers)
            try:
                response = session.get(AppConstants.QR_LOGIN_PAGE_URL, timeout=AppConstants.HTTP_TIMEOUT_SECONDS)
                response.raise_for_status()
            except requests.RequestException as e:
                raise UpstreamError(f"获取二维码页面失败: {e}") from e

            match = re.search(AppConstants.QR_IMAGE_URL_PATTERN, response.text)
            if not match:
                self.logger.log(f"响应体(部分): {response.text[:1000]}", LogLevel.DEBUG)
                raise UpstreamError("未在页面响应中找到二维码链接")
            qr_code_url = match.group(0)
            self.logger.log(f"成功获取二维码链接: {qr_code_url[:70]}...", LogLevel.INFO)

            try:
                image_response = session.get(
                    qr_code_url,
                    headers={
                        "Accept": "image/avif,image/webp,image/apng,image/svg+xml,image/*,*/*;q=0.8",
                        "Referer": "https://mp.weixin.qq.com/",
                    },
                    timeout=AppConstants.HTTP_TIMEOUT_SECONDS,
                )
                image_response.raise_for_status()
            except requests.RequestException as e:
                raise UpstreamError(f"获取二维码图片失败: {e}") from e

            qr_image = self._normalize_qr_image(image_response.content)
            login_session = LoginSession(cookies=requests.utils.dict_from_cookiejar(session.cookies),
                                         created_at=self.clock())

        self.logger.log(f"k8n.cn 为扫码会话设置的 Cookie 已捕获: {list(login_session.cookies)}", LogLevel.DEBUG)
        return LoginChallenge(qr_image=qr_image, poll_token=login_session.encode())

    def _normalize_qr_image(self, content: bytes) -> bytes:
        try:
            with Image.open(BytesIO(content)) as img:
                resized = img.convert("RGB").resize(AppConstants.QR_IMAGE_SIZE, Image.LANCZOS)
            buffer = BytesIO()
            resized.save(buffer, format="PNG")
            return buffer.getvalue()
        except (UnidentifiedImageError, OSError) as e:
            raise UpstreamError(f"二维码图片无法解析: {e}") from e

    def poll(self, poll_token: str) -> Optional[LoginResult]:
        login_session = LoginSession.decode(poll_token)
        age = self.clock() - login_session.created_at
        if age > self.max_session_age_seconds:
            raise LoginExpiredError(f"二维码已过期 ({int(age)} 秒)，请重新获取")

        with self.session_factory() as session:
            session.headers.update(self.base_headers)
            session.cookies.update(login_session.cookies)
            try:
                response = session.get(f"{AppConstants.QR_LOGIN_PAGE_URL}?op=checklogin",
                                       timeout=AppConstants.LOGIN_POLL_TIMEOUT_SECONDS)
                response.raise_for_status()
                data = response.json()
            except requests.RequestException as e:
                raise UpstreamError(f"登录状态检查失败: {e}") from e
            except ValueError as e:
                raise UpstreamError(f"登录状态响应不是有效的JSON: {e}") from e

            if not isinstance(data, dict) or not data.get("status"):
                wait_msg = data.get("msg", "等待扫码") if isinstance(data, dict) else "等待扫码"
                self.logger.log(f"扫码登录: {wait_msg}", LogLevel.DEBUG)
                return None

            self.logger.log("微信扫码登录成功!", LogLevel.INFO)
            return self._complete_login(session, data)

    def _complete_login(self, session: requests.Session, data: Dict[str, Any]) -> LoginResult:
        redirect_url_path = data.get("url")
        if not redirect_url_path:
            raise UpstreamError("登录成功但未找到跳转URL路径")
        final_redirect_url = urljoin(AppConstants.BASE_K8N_URL + "/", str(redirect_url_path))
        try:
            redirect_response = session.get(final_redirect_url, allow_redirects=True,
                                            timeout=AppConstants.HTTP_TIMEOUT_SECONDS)
            redirect_response.raise_for_status()
            dashboard = session.get(AppConstants.STUDENT_DASHBOARD_URL, timeout=AppConstants.HTTP_TIMEOUT_SECONDS)
            dashboard.raise_for_status()
        except requests.RequestException as e:
            raise UpstreamError(f"登录后跳转请求失败: {e}") from e

        if "/student/login" in (dashboard.url or "") or "用户登录" in dashboard.text:
            raise UpstreamError("登录后仍被重定向到登录页，请重试")

        extracted = self._extract_user_and_class_info_from_html(dashboard.text)
        credential = self._serialize_cookies(session.cookies)
        if not credential:
            raise UpstreamError("登录后未获得任何 Cookie")

        classes = extracted["classes"]
        class_id = classes[0]["id"] if classes else ""
        if not classes:
            self.logger.log("登录成功，但未找到任何班级信息。", LogLevel.WARNING)
        self.logger.log(
            f"登录完成: Cookie {mask_secret(credential)}, 班级ID '{class_id}' (共 {len(classes)} 个班级)", LogLevel.INFO
        )
        return LoginResult(credential=credential, class_id=class_id,
                           classes=classes, user_info=extracted["user_info"])

    @staticmethod
    def _serialize_cookies(jar: Any) -> str:
        parts = []
        for cookie in jar:
            if not cookie.domain or "k8n.cn" in cookie.domain:
                parts.append(f"{cookie.name}={cookie.value}")
        return "; ".join(parts)

    def _extract_user_and_class_info_from_html(self, html_content: str) -> Dict[str, Any]:
        soup = BeautifulSoup(html_content, "html.parser")
        user_info: Dict[str, Optional[str]] = {"uid": None, "uname": ""}

        gconfig_script_tag = soup.find("script", string=re.compile(r"var\s+gconfig\s*=\s*{"))
        if gconfig_script_tag and gconfig_script_tag.string:
            script_content = gconfig_script_tag.string
            uid_match = re.search(r"uid\s*:\s*(\d+)", script_content)
            uname_match = re.search(r"uname\s*:\s*['\"](.*?)['\"]", script_content)
            if uid_match:
                user_info["uid"] = uid_match.group(1)
            if uname_match:
                user_info["uname"] = uname_match.group(1)
        else:
            self.logger.log("未找到包含 'var gconfig' 的script标签。", LogLevel.DEBUG)

        classes: List[Dict[str, str]] = []
        seen_ids = set()
        for div_tag in soup.find_all("div", class_="course", attrs={"course_id": True}):
            course_id = str(div_tag.get("course_id", ""))
            if not course_id.isdigit() or course_id in seen_ids:
                continue
            name_tag = div_tag.find("h5", class_="course_name")
            course_name = name_tag.get_text(strip=True) if name_tag else "未知名称"
            classes.append({"id": course_id, "name": course_name or "未知名称"})
            seen_ids.add(course_id)

        self.logger.log(f"HTML解析完成: uid='{user_info['uid']}', uname='{user_info['uname']}', 班级数={len(classes)}", LogLevel.DEBUG)
        return {"user_info": user_info, "classes": sorted(classes, key=lambda c: c["name"])}
