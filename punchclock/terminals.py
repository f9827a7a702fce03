import threading
from concurrent.futures import Future, TimeoutError as FutureTimeout
from typing import Any, Callable, Optional, Protocol, TypeVar

import requests
from pydantic import BaseModel

from punchclock.config import DeviceConfig

T = TypeVar("T")


class TerminalUnavailable(Exception):
    pass


class TerminalEvent(BaseModel):
    employee_code: Optional[str] = None
    timestamp: Any = None
    raw_state: Optional[int] = None


class TerminalUser(BaseModel):
    code: str
    name: Optional[str] = None


class Terminal(Protocol):
    def fetch_all_events(self) -> list[TerminalEvent]:
        ...

    def fetch_all_users(self) -> list[TerminalUser]:
        ...


TerminalFactory = Callable[[DeviceConfig], Terminal]


def _first(row: dict, *keys: str) -> Any:
    for key in keys:
        if row.get(key) not in (None, ""):
            return row[key]
    return None


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _as_str(value: Any) -> Optional[str]:
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        return None
    text = str(value).strip()
    return text or None


class HttpTerminal:
    """Terminal reached through an HTTP bridge in front of the vendor SDK.

    Rows are mapped leniently: numeric user ids become strings and values of
    the wrong shape become ``None`` so ingestion counts the row as invalid
    instead of failing the whole log.
    """

    def __init__(self, address: str, timeout: float = 10.0, session: Optional[requests.Session] = None):
        self.address = address.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _get(self, path: str) -> list[dict]:
        url = f"{self.address}{path}"
        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
            body = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise TerminalUnavailable(f"{url}: {exc}") from exc
        if isinstance(body, dict):
            body = body.get("data", [])
        if not isinstance(body, list):
            raise TerminalUnavailable(f"{url}: unexpected payload")
        return [row for row in body if isinstance(row, dict)]

    def fetch_all_events(self) -> list[TerminalEvent]:
        return [
            TerminalEvent(
                employee_code=_as_str(_first(row, "user_id", "userId", "employee_code")),
                timestamp=_first(row, "record_time", "recordTime", "timestamp"),
                raw_state=_as_int(_first(row, "state", "raw_state")),
            )
            for row in self._get("/attendances")
        ]

    def fetch_all_users(self) -> list[TerminalUser]:
        users = []
        for row in self._get("/users"):
            code = _as_str(_first(row, "userId", "user_id", "code"))
            if code is None:
                continue
            users.append(TerminalUser(code=code, name=_as_str(_first(row, "name"))))
        return users


def http_terminal_factory(timeout: float) -> TerminalFactory:
    def factory(device: DeviceConfig) -> Terminal:
        return HttpTerminal(device.address, timeout=timeout)

    return factory


def call_with_timeout(fn: Callable[[], T], timeout: float, label: str) -> T:
    """Run ``fn`` on a daemon thread and give up after ``timeout`` seconds.

    A binding that hangs past the timeout is abandoned; the daemon thread does
    not keep the interpreter alive at exit.
    """
    future: Future = Future()

    def run() -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            future.set_result(fn())
        except Exception as exc:
            future.set_exception(exc)

    threading.Thread(target=run, name=f"terminal-{label}", daemon=True).start()
    try:
        return future.result(timeout=timeout)
    except FutureTimeout as exc:
        raise TerminalUnavailable(f"{label}: timed out after {timeout}s") from exc
