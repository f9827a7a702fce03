from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from punchclock.config import DeviceConfig, Settings
from punchclock.db import init_db
from punchclock.terminals import TerminalEvent, TerminalUnavailable, TerminalUser

BKK = ZoneInfo("Asia/Bangkok")


def local(year: int, month: int, day: int, hour: int = 0, minute: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=BKK)


def utc(value: datetime) -> datetime:
    return value.astimezone(timezone.utc)


class FakeTerminal:
    def __init__(self, events=None, users=None, down: bool = False):
        self.events = list(events or [])
        self.users = list(users or [])
        self.down = down
        self.fetches = 0

    def fetch_all_events(self) -> list[TerminalEvent]:
        self.fetches += 1
        if self.down:
            raise TerminalUnavailable("connection refused")
        return [
            event if isinstance(event, TerminalEvent) else TerminalEvent(employee_code=event[0], timestamp=event[1])
            for event in self.events
        ]

    def fetch_all_users(self) -> list[TerminalUser]:
        if self.down:
            raise TerminalUnavailable("connection refused")
        return [TerminalUser(code=code, name=name) for code, name in self.users]


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite://",
        timezone="Asia/Bangkok",
        sync_state_path=tmp_path / "sync-state.json",
        devices=[
            DeviceConfig(device_id="gate-1", name="Main gate", address="http://10.0.0.11:8080"),
            DeviceConfig(device_id="gate-2", name="Canteen", address="http://10.0.0.12:8080"),
        ],
        terminal_timeout_seconds=2.0,
    )
