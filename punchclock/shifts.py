"""Shift classification and work-date resolution.

Classification looks only at the local hour of a single scan. The bands are
fixed and are not derived from ``Shift.start_time``/``end_time``; those columns
only feed the OT window in ``punchclock.work_records``.
"""
import logging
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from punchclock.config import settings
from punchclock.models import Shift
from punchclock.store import query, upsert

logger = logging.getLogger(__name__)

DAY = "Day"
EVENING = "Evening"
NIGHT = "Night"

OVERNIGHT_SPILL_HOUR = 8

DEFAULT_SHIFTS = [
    {
        "name": DAY,
        "start_time": time(8, 0),
        "end_time": time(17, 0),
        "ot_start_time": time(17, 30),
        "crosses_midnight": False,
        "break_minutes": 60,
    },
    {
        "name": EVENING,
        "start_time": time(16, 0),
        "end_time": time(1, 0),
        "ot_start_time": time(1, 30),
        "crosses_midnight": True,
        "break_minutes": 60,
    },
    {
        "name": NIGHT,
        "start_time": time(20, 0),
        "end_time": time(5, 0),
        "ot_start_time": time(5, 30),
        "crosses_midnight": True,
        "break_minutes": 60,
    },
]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_local(value: datetime, tz: ZoneInfo | None = None) -> datetime:
    return as_utc(value).astimezone(tz or settings.tz)


def local_day_bounds(target_date: date, tz: ZoneInfo | None = None) -> tuple[datetime, datetime]:
    """UTC instants for ``[target_date 00:00, target_date+1 00:00)`` in local time."""
    zone = tz or settings.tz
    starts_at = datetime.combine(target_date, time(0, 0), tzinfo=zone)
    ends_at = datetime.combine(target_date + timedelta(days=1), time(0, 0), tzinfo=zone)
    return starts_at.astimezone(timezone.utc), ends_at.astimezone(timezone.utc)


def local_today(tz: ZoneInfo | None = None) -> date:
    return utc_now().astimezone(tz or settings.tz).date()


def classify(scan_time: datetime, tz: ZoneInfo | None = None) -> str:
    hour = to_local(scan_time, tz).hour
    if 6 <= hour < 10:
        return DAY
    if 14 <= hour < 18:
        return EVENING
    if 18 <= hour <= 22:
        return NIGHT
    return DAY


def resolve_work_date(scan_time: datetime, shift_name: str, tz: ZoneInfo | None = None) -> date:
    local = to_local(scan_time, tz)
    if shift_name in (EVENING, NIGHT) and local.hour < OVERNIGHT_SPILL_HOUR:
        return local.date() - timedelta(days=1)
    return local.date()


def load_shift_map(db: Session) -> dict[str, Shift]:
    return {shift.name: shift for shift in query(db, Shift)}


def ensure_default_shifts(db: Session) -> int:
    created = upsert(db, Shift, [dict(row) for row in DEFAULT_SHIFTS], ["name"])
    db.commit()
    if created:
        logger.info("seeded %d default shifts", created)
    return created
