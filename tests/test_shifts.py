from datetime import date, timedelta

import pytest

from conftest import BKK, local, utc
from punchclock.models import Shift
from punchclock.shifts import (
    DAY,
    EVENING,
    NIGHT,
    classify,
    ensure_default_shifts,
    local_day_bounds,
    resolve_work_date,
)


@pytest.mark.parametrize(
    "hour,minute,expected",
    [
        (7, 30, DAY),
        (9, 59, DAY),
        (10, 0, DAY),
        (15, 0, EVENING),
        (17, 30, EVENING),
        (18, 0, NIGHT),
        (22, 0, NIGHT),
        (22, 59, NIGHT),
        (23, 0, DAY),
        (2, 0, DAY),
    ],
)
def test_classify_hour_bands(hour: int, minute: int, expected: str) -> None:
    assert classify(local(2026, 2, 7, hour, minute), BKK) == expected


def test_classify_uses_local_hour_for_utc_input() -> None:
    assert classify(utc(local(2026, 2, 7, 15, 0)), BKK) == EVENING


def test_overnight_scan_belongs_to_previous_work_date() -> None:
    scan = local(2026, 2, 7, 2, 0)
    assert resolve_work_date(scan, NIGHT, BKK) == date(2026, 2, 6)
    assert resolve_work_date(scan, EVENING, BKK) == date(2026, 2, 6)


def test_day_and_late_scans_keep_calendar_date() -> None:
    assert resolve_work_date(local(2026, 2, 7, 2, 0), DAY, BKK) == date(2026, 2, 7)
    assert resolve_work_date(local(2026, 2, 7, 8, 0), NIGHT, BKK) == date(2026, 2, 7)
    assert resolve_work_date(local(2026, 2, 7, 21, 0), NIGHT, BKK) == date(2026, 2, 7)


def test_local_day_bounds_are_utc_instants() -> None:
    starts_at, ends_at = local_day_bounds(date(2026, 2, 7), BKK)
    assert starts_at == utc(local(2026, 2, 7))
    assert ends_at - starts_at == timedelta(days=1)
    assert starts_at.utcoffset() == timedelta(0)


def test_default_shifts_are_seeded_once(db) -> None:
    assert db.query(Shift).count() == 3
    assert ensure_default_shifts(db) == 0
    shifts = {shift.name: shift for shift in db.query(Shift).all()}
    assert set(shifts) == {DAY, EVENING, NIGHT}
    assert shifts[DAY].crosses_midnight is False
    assert shifts[NIGHT].crosses_midnight is True
