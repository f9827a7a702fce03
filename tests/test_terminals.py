import threading

import pytest
import requests

from conftest import FakeTerminal, local, utc
from punchclock.config import DeviceConfig
from punchclock.cursors import CursorStore
from punchclock.ingestion import sync_all_devices
from punchclock.models import ScanEvent
from punchclock.terminals import (
    HttpTerminal,
    TerminalUnavailable,
    call_with_timeout,
    http_terminal_factory,
)

ADDRESS = "http://10.0.0.11:8080"


class StubResponse:
    def __init__(self, body=None, status_code: int = 200, text: str = None):
        self.body = body
        self.status_code = status_code
        self.text = text

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Server Error")

    def json(self):
        if self.text is not None:
            raise ValueError(f"Expecting value: {self.text!r}")
        return self.body


class StubSession:
    def __init__(self, responses=None, error: Exception = None):
        self.responses = responses or {}
        self.error = error
        self.calls = []

    def get(self, url: str, timeout=None) -> StubResponse:
        self.calls.append((url, timeout))
        if self.error is not None:
            raise self.error
        path = url[len(ADDRESS):]
        return self.responses.get(path, StubResponse([]))


def _terminal(**responses) -> HttpTerminal:
    session = StubSession({f"/{path}": response for path, response in responses.items()})
    return HttpTerminal(ADDRESS, timeout=3.0, session=session)


def test_numeric_user_ids_become_strings() -> None:
    terminal = _terminal(
        attendances=StubResponse([{"user_id": 123, "record_time": "2026-02-07 08:05:00", "state": 0}])
    )
    [event] = terminal.fetch_all_events()
    assert event.employee_code == "123"
    assert event.timestamp == "2026-02-07 08:05:00"
    assert event.raw_state == 0
    assert terminal.session.calls == [(f"{ADDRESS}/attendances", 3.0)]


def test_event_field_name_fallbacks() -> None:
    terminal = _terminal(
        attendances=StubResponse(
            [
                {"userId": " 00123 ", "recordTime": "2026-02-07T08:05:00", "state": "1"},
                {"employee_code": "00124", "timestamp": "2026-02-07T09:00:00Z", "raw_state": 2},
                {"user_id": "", "userId": "00125", "record_time": "2026-02-07T10:00:00"},
            ]
        )
    )
    events = terminal.fetch_all_events()
    assert [event.employee_code for event in events] == ["00123", "00124", "00125"]
    assert [event.timestamp for event in events] == [
        "2026-02-07T08:05:00",
        "2026-02-07T09:00:00Z",
        "2026-02-07T10:00:00",
    ]
    assert [event.raw_state for event in events] == [1, 2, None]


@pytest.mark.parametrize("user_id", [{"id": 1}, True, 1.5, ["00123"], "   "])
def test_malformed_user_id_maps_to_none(user_id) -> None:
    terminal = _terminal(attendances=StubResponse([{"user_id": user_id, "record_time": "2026-02-07 08:05:00"}]))
    [event] = terminal.fetch_all_events()
    assert event.employee_code is None


def test_data_envelope_is_unwrapped() -> None:
    terminal = _terminal(
        attendances=StubResponse({"data": [{"user_id": "00123", "record_time": "2026-02-07 08:05:00"}, "noise"]})
    )
    assert [event.employee_code for event in terminal.fetch_all_events()] == ["00123"]


def test_envelope_without_data_is_empty() -> None:
    assert _terminal(attendances=StubResponse({"status": "ok"})).fetch_all_events() == []


@pytest.mark.parametrize(
    "response",
    [
        StubResponse({"message": "boom"}, status_code=500),
        StubResponse(text="<html>gateway</html>"),
        StubResponse({"data": "not a list"}),
        StubResponse("plain text"),
    ],
)
def test_bad_responses_raise_terminal_unavailable(response) -> None:
    with pytest.raises(TerminalUnavailable):
        _terminal(attendances=response).fetch_all_events()


def test_connection_error_raises_terminal_unavailable() -> None:
    session = StubSession(error=requests.ConnectionError("connection refused"))
    terminal = HttpTerminal(ADDRESS, session=session)
    with pytest.raises(TerminalUnavailable, match="connection refused"):
        terminal.fetch_all_users()


def test_users_without_code_are_skipped() -> None:
    terminal = _terminal(
        users=StubResponse(
            [
                {"userId": 42, "name": "Somchai"},
                {"user_id": "00124", "name": None},
                {"code": "00125", "name": {"th": "Malee"}},
                {"name": "No code"},
                {"userId": {"nested": 1}, "name": "Bad code"},
            ]
        )
    )
    users = terminal.fetch_all_users()
    assert [(user.code, user.name) for user in users] == [
        ("42", "Somchai"),
        ("00124", None),
        ("00125", None),
    ]


def test_http_terminal_factory() -> None:
    factory = http_terminal_factory(3.0)
    terminal = factory(DeviceConfig(device_id="gate-1", name="Main gate", address=f"{ADDRESS}/"))
    assert isinstance(terminal, HttpTerminal)
    assert terminal.address == ADDRESS
    assert terminal.timeout == 3.0


def test_numeric_user_id_does_not_abort_sync_run(db, settings) -> None:
    now = utc(local(2026, 2, 7, 12, 0))
    terminals = {
        "gate-1": _terminal(
            attendances=StubResponse(
                [
                    {"user_id": 123, "record_time": "2026-02-07 08:05:00", "state": 0},
                    {"user_id": {"id": 9}, "record_time": "2026-02-07 08:10:00", "state": 0},
                ]
            ),
            users=StubResponse([{"userId": 123, "name": "Somchai"}]),
        ),
        "gate-2": FakeTerminal(events=[("00124", local(2026, 2, 7, 9, 0))]),
    }
    cursors = CursorStore(settings.sync_state_path)
    run = sync_all_devices(
        db, settings.devices, lambda device: terminals[device.device_id], cursors, settings, now
    )
    assert run.errors == []
    assert run.new_events == 2
    gate_1 = run.devices[0]
    assert gate_1.reachable is True
    assert gate_1.fetched == 2
    assert gate_1.invalid == 1
    assert gate_1.valid == 1
    assert {scan.employee_code for scan in db.query(ScanEvent).all()} == {"123", "00124"}


def test_call_with_timeout_returns_result() -> None:
    assert call_with_timeout(lambda: [1, 2], 1.0, "gate-1") == [1, 2]


def test_call_with_timeout_propagates_errors() -> None:
    def broken():
        raise TerminalUnavailable("connection refused")

    with pytest.raises(TerminalUnavailable, match="connection refused"):
        call_with_timeout(broken, 1.0, "gate-1")


def test_hung_call_times_out_on_daemon_thread() -> None:
    release = threading.Event()
    try:
        with pytest.raises(TerminalUnavailable, match="timed out"):
            call_with_timeout(release.wait, 0.05, "gate-hung")
        workers = [thread for thread in threading.enumerate() if thread.name == "terminal-gate-hung"]
        assert workers
        assert all(thread.daemon for thread in workers)
    finally:
        release.set()
