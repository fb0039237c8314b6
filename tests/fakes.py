# tests/fakes.py

from __future__ import annotations

import json
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import requests
from requests.cookies import RequestsCookieJar

from autocheckin.config.storage import ConfigStorageInterface
from autocheckin.exceptions import StorageError
from autocheckin.logger_setup import LoggerInterface, LogLevel
from autocheckin.services.checkin_executor import CheckinOutcome, OutcomeKind
from autocheckin.services.notification.interface import NotifierInterface
from autocheckin.services.platform import CheckinPlatform
from autocheckin.services.qr_login_service import LoginChallenge


class RecordingLogger(LoggerInterface):
    """Collects log lines instead of printing them."""

    def __init__(self) -> None:
        self.records: List[Tuple[str, LogLevel]] = []
        self._lock = threading.Lock()

    def log(self, message: str, level: LogLevel = LogLevel.INFO, exc_info: bool = False) -> None:
        with self._lock:
            self.records.append((message, level))

    def messages(self, level: Optional[LogLevel] = None) -> List[str]:
        with self._lock:
            return [m for m, lvl in self.records if level is None or lvl == level]


class FakeClock:
    """Mutable `datetime.now` replacement."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class FakeTimer:
    """Mutable `time.time` replacement."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeResponse:
    def __init__(self,
                 status_code: int = 200,
                 text: str = "",
                 json_data: Any = None,
                 content: Optional[bytes] = None,
                 url: str = "",
                 set_cookies: Optional[Dict[str, str]] = None) -> None:
        self.status_code = status_code
        if json_data is not None and not text:
            text = json.dumps(json_data)
        self.text = text
        self.content = content if content is not None else text.encode("utf-8")
        self.url = url
        self.set_cookies = set_cookies or {}
        self._json_data = json_data

    def json(self) -> Any:
        if self._json_data is not None:
            return self._json_data
        return json.loads(self.text)

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error for url: {self.url}")


Handler = Callable[[str, str, Dict[str, Any]], Union[FakeResponse, Exception]]


class RecordedRequest:
    def __init__(self, method: str, url: str, kwargs: Dict[str, Any], cookies: Dict[str, str]) -> None:
        self.method = method
        self.url = url
        self.kwargs = kwargs
        self.cookies = cookies


class FakeSession:
    """
    Stand-in for requests.Session.

    The handler receives (method, url, kwargs) and returns a FakeResponse, or an
    exception instance to be raised. Cookies listed in a response's
    `set_cookies` are stored on the k8n.cn domain, like a real Set-Cookie.
    """

    def __init__(self, handler: Handler, log: Optional[List[RecordedRequest]] = None) -> None:
        self.handler = handler
        self.requests: List[RecordedRequest] = log if log is not None else []
        self.headers: Dict[str, str] = {}
        self.cookies = RequestsCookieJar()
        self.closed = False

    def request(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        self.requests.append(RecordedRequest(method, url, kwargs, requests.utils.dict_from_cookiejar(self.cookies)))
        result = self.handler(method, url, kwargs)
        if isinstance(result, Exception):
            raise result
        for name, value in result.set_cookies.items():
            self.cookies.set(name, value, domain="k8n.cn", path="/")
        if not result.url:
            result.url = url
        return result

    def get(self, url: str, **kwargs: Any) -> FakeResponse:
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs: Any) -> FakeResponse:
        return self.request("POST", url, **kwargs)

    def close(self) -> None:
        self.closed = True

    def __enter__(self) -> "FakeSession":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class SessionFactory:
    """Creates FakeSessions sharing one handler and one request log."""

    def __init__(self, handler: Handler) -> None:
        self.handler = handler
        self.requests: List[RecordedRequest] = []
        self.created = 0
        self._lock = threading.Lock()

    def __call__(self) -> FakeSession:
        with self._lock:
            self.created += 1
        return FakeSession(self.handler, self.requests)


def unexpected_network(method: str, url: str, kwargs: Dict[str, Any]) -> FakeResponse:
    raise AssertionError(f"unexpected network call: {method} {url}")


class InMemoryStorage(ConfigStorageInterface):
    def __init__(self, document: Optional[Dict[str, Any]] = None) -> None:
        self.document: Dict[str, Any] = json.loads(json.dumps(document or {}))
        self.saves = 0
        self.fail_saves = False

    def load(self) -> Dict[str, Any]:
        return json.loads(json.dumps(self.document))

    def save(self, config: Dict[str, Any]) -> None:
        if self.fail_saves:
            raise StorageError("disk full")
        self.document = json.loads(json.dumps(config))
        self.saves += 1


class FakePlatform(CheckinPlatform):
    """
    Scripted platform. Each entry in `listings`/`submissions` is consumed per
    call; an exception instance is raised, anything else is returned. The last
    entry repeats once the script runs out.
    """

    def __init__(self, listings: Optional[List[Any]] = None, submissions: Optional[List[Any]] = None) -> None:
        self.listings = list(listings if listings is not None else [["101"]])
        self.submissions = list(submissions if submissions is not None else ["签到成功"])
        self.list_calls = 0
        self.submit_calls: List[Tuple[str, Dict[str, str]]] = []
        self.headers_seen: List[Dict[str, str]] = []

    def build_headers(self, credential: str, class_id: str, user_agent: str) -> Dict[str, str]:
        headers = {"User-Agent": user_agent, "Cookie": credential}
        self.headers_seen.append(headers)
        return headers

    @staticmethod
    def _next(script: List[Any], index: int) -> Any:
        item = script[min(index, len(script) - 1)]
        if isinstance(item, Exception):
            raise item
        return item

    def list_active_sign_ids(self, session: Any, class_id: str, headers: Dict[str, str]) -> List[str]:
        self.list_calls += 1
        return list(self._next(self.listings, self.list_calls - 1))

    def submit_sign(self, session: Any, class_id: str, sign_id: str,
                    coordinates: Dict[str, str], headers: Dict[str, str]) -> str:
        self.submit_calls.append((sign_id, dict(coordinates)))
        return self._next(self.submissions, len(self.submit_calls) - 1)


class FakeExecutor:
    """Returns scripted outcomes; can block until released to simulate a slow check-in."""

    def __init__(self, outcome: Optional[CheckinOutcome] = None, error: Optional[Exception] = None) -> None:
        self.outcome = outcome or CheckinOutcome(kind=OutcomeKind.SUCCESS, reason="签到成功", attempts=1)
        self.error = error
        self.calls: List[str] = []
        self.release = threading.Event()
        self.release.set()
        self.started = threading.Event()
        self._lock = threading.Lock()

    def execute(self, task: Any, settings: Any = None) -> CheckinOutcome:
        with self._lock:
            self.calls.append(task.id)
        self.started.set()
        self.release.wait(timeout=5)
        if self.error is not None:
            raise self.error
        return self.outcome


class FakeNotifier(NotifierInterface):
    def __init__(self, result: bool = True, error: Optional[Exception] = None) -> None:
        self.result = result
        self.error = error
        self.sent: List[Tuple[str, str]] = []

    def send(self, title: str, content: str, **kwargs: Any) -> bool:
        self.sent.append((title, content))
        if self.error is not None:
            raise self.error
        return self.result


class FakeLoginService:
    """Replaces QRLoginService for command-layer tests."""

    def __init__(self, results: Optional[List[Any]] = None) -> None:
        self.results = list(results or [])
        self.polled: List[str] = []

    def begin_login(self) -> LoginChallenge:
        return LoginChallenge(qr_image=b"\x89PNG-fake", poll_token="token-1")

    def poll(self, poll_token: str) -> Any:
        self.polled.append(poll_token)
        item = self.results.pop(0) if self.results else None
        if isinstance(item, Exception):
            raise item
        return item


def make_task_dict(**overrides: Any) -> Dict[str, Any]:
    task: Dict[str, Any] = {
        "id": "task-a",
        "name": "高数",
        "time": "08:00",
        "class_id": "123456",
        "credential": "remember_student_59ba36addc2b2f9401580f014c7f58ea4e30989d=abc123",
        "location": {"lat": "39.904200", "lng": "116.407400", "accuracy_radius": "20"},
        "enabled": True,
        "last_fired_date": None,
    }
    task.update(overrides)
    return task
