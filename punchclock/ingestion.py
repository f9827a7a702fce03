import logging
from datetime import datetime, time, timedelta, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from punchclock.config import DeviceConfig, Settings, settings as default_settings
from punchclock.cursors import CursorStore
from punchclock.directory import EmployeeDirectory
from punchclock.models import ScanEvent
from punchclock.shifts import to_local, utc_now
from punchclock.store import chunked, upsert
from punchclock.terminals import (
    Terminal,
    TerminalEvent,
    TerminalFactory,
    TerminalUnavailable,
    call_with_timeout,
)

logger = logging.getLogger(__name__)

SAFETY_DAYS = 1
SCAN_CONFLICT_KEYS = ["employee_code", "check_time", "device_id"]


class DeviceSyncResult(BaseModel):
    device_id: str
    reachable: bool = True
    fetched: int = 0
    valid: int = 0
    invalid: int = 0
    out_of_window: int = 0
    new_events: int = 0
    duplicates: int = 0
    failed: int = 0
    provisioned: int = 0
    cutoff: Optional[datetime] = None
    previous_cursor: Optional[datetime] = None
    updated_cursor: Optional[datetime] = None
    errors: list[str] = []


class SyncRunResult(BaseModel):
    devices: list[DeviceSyncResult] = []
    fetched: int = 0
    new_events: int = 0
    devices_synced: int = 0
    errors: list[str] = []
    last_run: Optional[datetime] = None


def _start_of_local_day(value: datetime, tz: ZoneInfo, days_back: int = 0) -> datetime:
    day = to_local(value, tz).date() - timedelta(days=days_back)
    return datetime.combine(day, time(0, 0), tzinfo=tz)


def compute_cutoff(
    cursor: Optional[datetime],
    now: datetime,
    settings: Settings = default_settings,
) -> datetime:
    """Earliest ``check_time`` accepted for a device in this run.

    The stored cursor is pulled back to at least the start of yesterday so
    overnight shifts are always rescanned, and never before the epoch floor.
    """
    tz = settings.tz
    start_of_yesterday = _start_of_local_day(now, tz, days_back=1)
    base = start_of_yesterday
    if cursor is not None:
        base = min(_start_of_local_day(cursor, tz, days_back=SAFETY_DAYS), start_of_yesterday)
    return max(base, settings.epoch_floor_utc()).astimezone(timezone.utc)


def compute_upper_bound(now: datetime, settings: Settings = default_settings) -> datetime:
    tz = settings.tz
    return (_start_of_local_day(now, tz) + timedelta(days=1)).astimezone(timezone.utc)


def parse_timestamp(value: Any, tz: ZoneInfo) -> Optional[datetime]:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return parsed.astimezone(timezone.utc)


def _employee_code(event: TerminalEvent) -> str:
    if event.employee_code is None:
        return ""
    return str(event.employee_code).strip()


def _terminal_names(terminal: Terminal, device: DeviceConfig, settings: Settings) -> dict[str, str]:
    try:
        users = call_with_timeout(
            terminal.fetch_all_users, settings.terminal_timeout_seconds, device.device_id
        )
    except (TerminalUnavailable, OSError) as exc:
        logger.warning("%s: could not fetch users, using placeholder names: %s", device.name, exc)
        return {}
    return {user.code: user.name for user in users if user.name}


def sync_device(
    db: Session,
    device: DeviceConfig,
    terminal: Terminal,
    cursors: CursorStore,
    directory: EmployeeDirectory,
    settings: Settings = default_settings,
    now: Optional[datetime] = None,
) -> DeviceSyncResult:
    now = now or utc_now()
    tz = settings.tz
    previous = cursors.get(device.device_id)
    result = DeviceSyncResult(device_id=device.device_id, previous_cursor=previous)

    try:
        events = call_with_timeout(
            terminal.fetch_all_events, settings.terminal_timeout_seconds, device.device_id
        )
    except (TerminalUnavailable, OSError) as exc:
        logger.warning("%s (%s) skipped: %s", device.name, device.address, exc)
        result.reachable = False
        result.updated_cursor = previous
        result.errors.append(f"{device.device_id}: {exc}")
        return result

    result.fetched = len(events)
    cutoff = compute_cutoff(previous, now, settings)
    upper = compute_upper_bound(now, settings)
    result.cutoff = cutoff

    rows: dict[tuple[str, datetime], dict] = {}
    for event in events:
        code = _employee_code(event)
        check_time = parse_timestamp(event.timestamp, tz)
        if not code or check_time is None:
            result.invalid += 1
            continue
        if check_time < cutoff or check_time >= upper:
            result.out_of_window += 1
            continue
        rows.setdefault(
            (code, check_time),
            {
                "employee_code": code,
                "check_time": check_time,
                "device_id": device.device_id,
                "raw_state": event.raw_state,
                "ingested_at": now,
            },
        )
    result.valid = len(rows)
    logger.info(
        "%s: fetched %d, %d in window since %s",
        device.name,
        result.fetched,
        result.valid,
        cutoff.isoformat(),
    )

    unknown = directory.unknown(code for code, _ in rows)
    if unknown:
        names = _terminal_names(terminal, device, settings)
        result.provisioned = directory.provision(unknown, names)

    batch = sorted(rows.values(), key=lambda row: row["check_time"])
    for offset, chunk in chunked(batch, settings.scan_batch_size):
        try:
            inserted = upsert(db, ScanEvent, chunk, SCAN_CONFLICT_KEYS)
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("%s: scan chunk at %d failed: %s", device.name, offset, exc)
            result.failed += len(chunk)
            result.errors.append(f"{device.device_id}: chunk {offset} failed: {exc}")
            continue
        result.new_events += inserted
        result.duplicates += len(chunk) - inserted

    result.updated_cursor = previous
    if result.failed == 0 and result.new_events > 0:
        result.updated_cursor = cursors.advance(device.device_id, batch[-1]["check_time"])
        try:
            cursors.save()
        except OSError as exc:
            logger.error("could not persist sync cursor for %s: %s", device.device_id, exc)
            result.errors.append(f"{device.device_id}: cursor not saved: {exc}")

    logger.info(
        "%s: %d new, %d already synced, %d failed, cursor %s",
        device.name,
        result.new_events,
        result.duplicates,
        result.failed,
        result.updated_cursor.isoformat() if result.updated_cursor else None,
    )
    return result


def sync_all_devices(
    db: Session,
    devices: list[DeviceConfig],
    terminal_factory: TerminalFactory,
    cursors: CursorStore,
    settings: Settings = default_settings,
    now: Optional[datetime] = None,
) -> SyncRunResult:
    now = now or utc_now()
    cursors.load()
    run = SyncRunResult()
    if cursors.state.last_run is None:
        logger.info("first sync, %d devices", len(devices))
    else:
        logger.info("incremental sync since %s, %d devices", cursors.state.last_run.isoformat(), len(devices))

    directory = EmployeeDirectory(db, settings)
    directory.refresh()

    for device in devices:
        device_result = sync_device(
            db, device, terminal_factory(device), cursors, directory, settings, now
        )
        run.devices.append(device_result)
        run.fetched += device_result.fetched
        run.new_events += device_result.new_events
        if device_result.new_events > 0:
            run.devices_synced += 1
        run.errors.extend(device_result.errors)

    cursors.mark_run(now)
    run.last_run = cursors.state.last_run
    try:
        cursors.save()
    except OSError as exc:
        logger.error("could not persist sync state: %s", exc)
        run.errors.append(f"sync state not saved: {exc}")
    return run
