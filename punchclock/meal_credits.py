import logging
from datetime import date
from typing import Iterable, Optional

from pydantic import BaseModel
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from punchclock.config import Settings, settings as default_settings
from punchclock.directory import EmployeeDirectory
from punchclock.models import Employee, MealCredit, ScanEvent
from punchclock.shifts import local_day_bounds, local_today, utc_now
from punchclock.store import chunked, count, query, upsert

logger = logging.getLogger(__name__)

MAX_LISTED_CODES = 5


class GrantResult(BaseModel):
    date: date
    grant_ot: bool = False
    employees_with_attendance: int = 0
    lunch_granted: int = 0
    ot_granted: int = 0
    failed: int = 0
    not_found_codes: list[str] = []
    errors: list[str] = []


class MarkOtResult(BaseModel):
    date: date
    granted: int = 0
    failed: int = 0
    not_found_codes: list[str] = []
    errors: list[str] = []


def _merge_availability(excluded) -> dict:
    return {
        "lunch_available": or_(MealCredit.lunch_available, excluded.lunch_available),
        "ot_meal_available": or_(MealCredit.ot_meal_available, excluded.ot_meal_available),
        "updated_at": excluded.granted_at,
    }


def _not_found_errors(codes: list[str]) -> list[str]:
    errors = [f"Employee code not found: {code}" for code in codes[:MAX_LISTED_CODES]]
    if len(codes) > MAX_LISTED_CODES:
        errors.append(f"...and {len(codes) - MAX_LISTED_CODES} more")
    return errors


def _scans_on(db: Session, target_date: date, settings: Settings) -> list[ScanEvent]:
    starts_at, ends_at = local_day_bounds(target_date, settings.tz)
    return query(
        db,
        ScanEvent,
        ScanEvent.check_time >= starts_at,
        ScanEvent.check_time < ends_at,
    )


def attendance_codes(db: Session, target_date: date, settings: Settings = default_settings) -> list[str]:
    return sorted({scan.employee_code for scan in _scans_on(db, target_date, settings)})


def _grant(
    db: Session,
    employees: list[Employee],
    target_date: date,
    ot_meal: bool,
    chunk_size: int,
) -> tuple[int, int, list[str]]:
    now = utc_now()
    granted = 0
    failed = 0
    errors: list[str] = []
    for offset, chunk in chunked(employees, chunk_size):
        rows = [
            {
                "employee_id": employee.id,
                "date": target_date,
                "lunch_available": True,
                "ot_meal_available": ot_meal,
                "lunch_used": False,
                "ot_meal_used": False,
                "granted_at": now,
                "updated_at": None,
            }
            for employee in chunk
        ]
        try:
            upsert(db, MealCredit, rows, ["employee_id", "date"], update=_merge_availability)
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("meal credit chunk at %d for %s failed: %s", offset, target_date, exc)
            failed += len(chunk)
            errors.append(f"Failed to grant credits (chunk {offset}): {exc}")
            continue
        granted += len(chunk)
    return granted, failed, errors


def grant_credits_for_date(
    db: Session,
    target_date: Optional[date] = None,
    grant_ot: bool = False,
    settings: Settings = default_settings,
) -> GrantResult:
    """Grant lunch (and optionally OT meal) credit to everyone who scanned on a date.

    Presence is enough: any scan inside the local day counts, whether or not
    the work record is complete. Existing credits are only ever widened, so
    the ``*_used`` flags survive a re-grant.
    """
    target_date = target_date or local_today(settings.tz)
    result = GrantResult(date=target_date, grant_ot=grant_ot)

    codes = attendance_codes(db, target_date, settings)
    result.employees_with_attendance = len(codes)
    if not codes:
        logger.info("no attendance on %s, nothing to grant", target_date)
        return result

    found, not_found = EmployeeDirectory(db, settings).resolve(codes)
    result.not_found_codes = not_found
    if not_found:
        logger.warning("%d attendance codes on %s have no employee", len(not_found), target_date)
        result.errors.extend(_not_found_errors(not_found))

    employees = [found[code] for code in sorted(found)]
    granted, result.failed, errors = _grant(
        db, employees, target_date, grant_ot, settings.credit_chunk_size
    )
    result.lunch_granted = granted
    result.ot_granted = granted if grant_ot else 0
    result.errors.extend(errors)

    logger.info(
        "meal credits for %s: %d with attendance, %d matched, %d granted%s",
        target_date,
        len(codes),
        len(employees),
        granted,
        " (with OT meal)" if grant_ot else "",
    )
    return result


def mark_ot_meals(
    db: Session,
    target_date: date,
    employee_codes: Iterable[str],
    settings: Settings = default_settings,
) -> MarkOtResult:
    result = MarkOtResult(date=target_date)
    codes = [code.strip() for code in employee_codes if code and code.strip()]
    found, not_found = EmployeeDirectory(db, settings).resolve(codes)
    result.not_found_codes = not_found
    result.errors.extend(_not_found_errors(not_found))

    employees = [found[code] for code in sorted(found)]
    result.granted, result.failed, errors = _grant(
        db, employees, target_date, True, settings.credit_chunk_size
    )
    result.errors.extend(errors)
    logger.info("marked OT meals for %d employees on %s", result.granted, target_date)
    return result


def credit_status_for_date(
    db: Session,
    target_date: Optional[date] = None,
    settings: Settings = default_settings,
) -> dict:
    target_date = target_date or local_today(settings.tz)
    scans = _scans_on(db, target_date, settings)
    on_date = MealCredit.date == target_date
    return {
        "date": target_date,
        "attendance": {
            "total_scans": len(scans),
            "unique_employees": len({scan.employee_code for scan in scans}),
        },
        "meal_credits": {
            "total": count(db, MealCredit, on_date),
            "lunch_available": count(db, MealCredit, on_date, MealCredit.lunch_available.is_(True)),
            "ot_meal_available": count(db, MealCredit, on_date, MealCredit.ot_meal_available.is_(True)),
        },
    }
