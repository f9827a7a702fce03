import logging
from collections import defaultdict
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from punchclock.config import Settings, settings as default_settings
from punchclock.models import ScanEvent, Shift, WorkRecord
from punchclock.shifts import (
    DAY,
    as_utc,
    classify,
    load_shift_map,
    local_day_bounds,
    resolve_work_date,
    to_local,
    utc_now,
)
from punchclock.store import chunked, query, upsert

logger = logging.getLogger(__name__)

COMPLETE = "complete"
INCOMPLETE = "incomplete"
OT_BLOCK_MINUTES = 30
OT_GRACE_MINUTES = 30


class WorkRecordResult(BaseModel):
    employee_code: str
    work_date: date
    shift_name: str
    scan_in_id: Optional[int] = None
    scan_out_id: Optional[int] = None
    scan_in: Optional[datetime] = None
    scan_out: Optional[datetime] = None
    working_minutes: int = 0
    ot_minutes: int = 0
    status: str = INCOMPLETE


class ReconcileResult(BaseModel):
    start_date: date
    end_date: date
    processed: int = 0
    failed: int = 0
    complete: int = 0
    incomplete: int = 0
    errors: list[str] = []


def _whole_minutes(delta: timedelta) -> int:
    return int(delta.total_seconds() // 60)


def calculate_working_minutes(
    scan_in: datetime,
    scan_out: datetime,
    break_minutes: int = 60,
    skip_lunch_break: bool = False,
) -> int:
    worked = _whole_minutes(as_utc(scan_out) - as_utc(scan_in))
    deducted = 0 if skip_lunch_break else break_minutes
    return max(0, worked - deducted)


def calculate_ot_minutes(
    scan_out: datetime,
    shift: Shift,
    skip_break_ot: bool = False,
    tz: ZoneInfo | None = None,
) -> int:
    local_out = to_local(scan_out, tz)
    ot_start = datetime.combine(local_out.date(), shift.ot_start_time, tzinfo=local_out.tzinfo)
    if shift.crosses_midnight and local_out.hour >= 12:
        ot_start += timedelta(days=1)
    if skip_break_ot:
        ot_start -= timedelta(minutes=OT_GRACE_MINUTES)
    raw = _whole_minutes(local_out - ot_start)
    if raw <= 0:
        return 0
    return (raw // OT_BLOCK_MINUTES) * OT_BLOCK_MINUTES


def aggregate(
    scans: list[ScanEvent],
    shift: Shift,
    work_date: date,
    employee_code: str = "",
    skip_lunch_break: bool = False,
    skip_break_ot: bool = False,
    tz: ZoneInfo | None = None,
) -> WorkRecordResult:
    if not scans:
        return WorkRecordResult(
            employee_code=employee_code,
            work_date=work_date,
            shift_name=shift.name,
        )

    ordered = sorted(scans, key=lambda scan: as_utc(scan.check_time))
    first = ordered[0]
    last = ordered[-1]
    code = employee_code or first.employee_code
    scan_in = as_utc(first.check_time)
    scan_out = as_utc(last.check_time)

    if len(ordered) == 1:
        return WorkRecordResult(
            employee_code=code,
            work_date=work_date,
            shift_name=shift.name,
            scan_in_id=first.id,
            scan_in=scan_in,
        )

    if scan_out <= scan_in:
        return WorkRecordResult(
            employee_code=code,
            work_date=work_date,
            shift_name=shift.name,
            scan_in_id=first.id,
            scan_out_id=last.id,
            scan_in=scan_in,
            scan_out=scan_out,
        )

    ot_minutes = 0
    if shift.name == DAY:
        ot_minutes = calculate_ot_minutes(scan_out, shift, skip_break_ot, tz)

    return WorkRecordResult(
        employee_code=code,
        work_date=work_date,
        shift_name=shift.name,
        scan_in_id=first.id,
        scan_out_id=last.id,
        scan_in=scan_in,
        scan_out=scan_out,
        working_minutes=calculate_working_minutes(
            scan_in, scan_out, shift.break_minutes, skip_lunch_break
        ),
        ot_minutes=ot_minutes,
        status=COMPLETE,
    )


def group_scans(
    scans: list[ScanEvent], tz: ZoneInfo | None = None
) -> dict[tuple[str, date], list[ScanEvent]]:
    groups: dict[tuple[str, date], list[ScanEvent]] = defaultdict(list)
    for scan in scans:
        work_date = resolve_work_date(scan.check_time, classify(scan.check_time, tz), tz)
        groups[(scan.employee_code, work_date)].append(scan)
    return groups


def _scans_between(db: Session, start_date: date, end_date: date, tz: ZoneInfo, *criteria) -> list[ScanEvent]:
    window_start, _ = local_day_bounds(start_date, tz)
    _, window_end = local_day_bounds(end_date, tz)
    return query(
        db,
        ScanEvent,
        ScanEvent.check_time >= window_start,
        ScanEvent.check_time < window_end,
        *criteria,
        order_by=ScanEvent.check_time,
    )


def _record_row(result: WorkRecordResult, calculated_at: datetime) -> dict:
    row = result.model_dump()
    row["calculated_at"] = calculated_at
    return row


def _overwrite(excluded) -> dict:
    return {
        "shift_name": excluded.shift_name,
        "scan_in_id": excluded.scan_in_id,
        "scan_out_id": excluded.scan_out_id,
        "scan_in": excluded.scan_in,
        "scan_out": excluded.scan_out,
        "working_minutes": excluded.working_minutes,
        "ot_minutes": excluded.ot_minutes,
        "status": excluded.status,
        "calculated_at": excluded.calculated_at,
    }


def reconcile_work_records(
    db: Session,
    start_date: date,
    end_date: date,
    settings: Settings = default_settings,
) -> ReconcileResult:
    result = ReconcileResult(start_date=start_date, end_date=end_date)
    tz = settings.tz
    shift_map = load_shift_map(db)
    scans = _scans_between(db, start_date, end_date, tz)
    logger.info(
        "reconciling %d scans between %s and %s", len(scans), start_date, end_date
    )

    records: list[WorkRecordResult] = []
    for (employee_code, work_date), group in sorted(group_scans(scans, tz).items()):
        if not start_date <= work_date <= end_date:
            continue
        shift_name = classify(group[0].check_time, tz)
        shift = shift_map.get(shift_name)
        if not shift:
            result.errors.append(f"Shift not found: {shift_name} for {employee_code} on {work_date}")
            continue
        records.append(
            aggregate(
                group,
                shift,
                work_date,
                employee_code=employee_code,
                skip_lunch_break=settings.skip_lunch_break,
                skip_break_ot=settings.skip_break_ot,
                tz=tz,
            )
        )

    calculated_at = utc_now()
    for offset, chunk in chunked(records, settings.scan_batch_size):
        try:
            upsert(
                db,
                WorkRecord,
                [_record_row(record, calculated_at) for record in chunk],
                ["employee_code", "work_date"],
                update=_overwrite,
            )
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception("work record chunk at %d failed", offset)
            result.failed += len(chunk)
            result.errors.append(f"Failed to save work records (chunk {offset}): {exc}")
            continue
        result.processed += len(chunk)
        result.complete += sum(1 for record in chunk if record.status == COMPLETE)
        result.incomplete += sum(1 for record in chunk if record.status != COMPLETE)

    logger.info(
        "reconciled %d work records (%d complete), %d errors",
        result.processed,
        result.complete,
        len(result.errors),
    )
    return result


def preview_work_record(
    db: Session,
    employee_code: str,
    work_date: date,
    settings: Settings = default_settings,
) -> Optional[WorkRecordResult]:
    tz = settings.tz
    candidates = _scans_between(
        db,
        work_date,
        work_date + timedelta(days=1),
        tz,
        ScanEvent.employee_code == employee_code,
    )
    group = group_scans(candidates, tz).get((employee_code, work_date), [])
    shift_name = classify(group[0].check_time, tz) if group else DAY
    shift = load_shift_map(db).get(shift_name)
    if not shift:
        return None
    return aggregate(
        group,
        shift,
        work_date,
        employee_code=employee_code,
        skip_lunch_break=settings.skip_lunch_break,
        skip_break_ot=settings.skip_break_ot,
        tz=tz,
    )
