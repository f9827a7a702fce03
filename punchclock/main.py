from __future__ import annotations

from datetime import date, datetime, time
from typing import Any, Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.orm import Session

from punchclock.config import Settings, settings
from punchclock.cursors import CursorStore
from punchclock.db import SessionLocal
from punchclock.ingestion import sync_all_devices
from punchclock.meal_credits import credit_status_for_date, grant_credits_for_date, mark_ot_meals
from punchclock.models import Employee, Shift, WorkRecord
from punchclock.shifts import as_utc, local_today
from punchclock.store import StoreUnavailable
from punchclock.terminals import TerminalFactory, http_terminal_factory
from punchclock.work_records import COMPLETE, INCOMPLETE, preview_work_record, reconcile_work_records

app = FastAPI(title="Punchclock")


def _meta(request_id: Optional[str] = None, warnings: Optional[list[str]] = None) -> dict:
    return {
        "request_id": request_id or f"req_{uuid4().hex}",
        "warnings": warnings or [],
    }


def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_settings() -> Settings:
    return settings


def get_terminal_factory(config: Settings = Depends(get_settings)) -> TerminalFactory:
    return http_terminal_factory(config.terminal_timeout_seconds)


def get_cursor_store(config: Settings = Depends(get_settings)) -> CursorStore:
    return CursorStore(config.sync_state_path)


@app.exception_handler(StoreUnavailable)
async def store_unavailable_handler(request: Request, exc: StoreUnavailable) -> JSONResponse:
    return JSONResponse(
        status_code=503,
        content={"detail": "store unavailable", "meta": _meta(warnings=[str(exc)])},
    )


@app.exception_handler(OperationalError)
@app.exception_handler(InterfaceError)
async def store_error_handler(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=503,
        content={"detail": "store unavailable", "meta": _meta(warnings=[str(exc)])},
    )


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return as_utc(value).isoformat()


def _parse_time(value: str) -> time:
    try:
        return time.fromisoformat(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"invalid time: {value}") from exc


def _paginate_by_id(query, model, limit: int, cursor: Optional[int]) -> tuple[list[Any], Optional[int]]:
    if cursor is not None:
        query = query.filter(model.id > cursor)
    rows = query.order_by(model.id).limit(limit + 1).all()
    next_cursor = None
    if len(rows) > limit:
        next_cursor = rows[limit - 1].id
        rows = rows[:limit]
    return rows, next_cursor


def _paginate_by_offset(query, limit: int, cursor: Optional[int]) -> tuple[list[Any], Optional[int]]:
    offset = cursor or 0
    rows = query.offset(offset).limit(limit + 1).all()
    next_cursor = None
    if len(rows) > limit:
        next_cursor = offset + limit
        rows = rows[:limit]
    return rows, next_cursor


def _list_meta(limit: int, cursor: Optional[int], next_cursor: Optional[int]) -> dict:
    meta = _meta()
    if next_cursor is not None:
        meta["page"] = {"limit": limit, "cursor": str(next_cursor)}
    elif cursor is not None:
        meta["page"] = {"limit": limit, "cursor": str(cursor)}
    else:
        meta["page"] = {"limit": limit, "cursor": None}
    return meta


def _work_record_data(record: WorkRecord) -> dict:
    return {
        "work_record_id": record.id,
        "employee_code": record.employee_code,
        "work_date": record.work_date.isoformat(),
        "shift_name": record.shift_name,
        "scan_in_id": record.scan_in_id,
        "scan_out_id": record.scan_out_id,
        "scan_in": _iso(record.scan_in),
        "scan_out": _iso(record.scan_out),
        "working_minutes": record.working_minutes,
        "ot_minutes": record.ot_minutes,
        "status": record.status,
        "calculated_at": _iso(record.calculated_at),
    }


def _employee_data(employee: Employee) -> dict:
    return {
        "employee_id": employee.id,
        "code": employee.code,
        "display_name": employee.display_name,
        "external_id": employee.external_id,
        "is_provisional": employee.is_provisional,
        "is_active": employee.is_active,
        "created_at": _iso(employee.created_at),
    }


def _shift_data(shift: Shift) -> dict:
    return {
        "shift_id": shift.id,
        "name": shift.name,
        "start_time": shift.start_time.strftime("%H:%M"),
        "end_time": shift.end_time.strftime("%H:%M"),
        "ot_start_time": shift.ot_start_time.strftime("%H:%M"),
        "crosses_midnight": shift.crosses_midnight,
        "break_minutes": shift.break_minutes,
    }


@app.get("/", tags=["root"])
def read_root() -> dict:
    return {"status": "ok"}


@app.get("/health", tags=["health"])
def health_check() -> dict:
    return {"status": "healthy"}


class DeviceSyncRequest(BaseModel):
    model_config = {"json_schema_extra": {"example": {"device_ids": ["gate-1"]}}}
    device_ids: Optional[list[str]] = None


@app.post("/api/v1/devices:sync", tags=["Devices"])
def sync_devices(
    payload: Optional[DeviceSyncRequest] = None,
    db: Session = Depends(get_db),
    config: Settings = Depends(get_settings),
    terminal_factory: TerminalFactory = Depends(get_terminal_factory),
    cursors: CursorStore = Depends(get_cursor_store),
) -> dict:
    devices = config.devices
    if payload and payload.device_ids:
        known = {device.device_id for device in devices}
        missing = [device_id for device_id in payload.device_ids if device_id not in known]
        if missing:
            raise HTTPException(status_code=404, detail=f"device not found: {', '.join(missing)}")
        devices = [device for device in devices if device.device_id in payload.device_ids]
    run = sync_all_devices(db, devices, terminal_factory, cursors, config)
    return {"data": run.model_dump(mode="json"), "meta": _meta()}


@app.get("/api/v1/devices/cursors", tags=["Devices"])
def list_device_cursors(
    config: Settings = Depends(get_settings),
    cursors: CursorStore = Depends(get_cursor_store),
) -> dict:
    state = cursors.load()
    names = {device.device_id: device.name for device in config.devices}
    data = [
        {
            "device_id": device_id,
            "name": names.get(device_id),
            "last_synced_at": _iso(cursors.get(device_id)),
        }
        for device_id in sorted(set(names) | set(state.devices))
    ]
    return {
        "data": {
            "devices": data,
            "last_run": _iso(state.last_run),
            "loaded_from": cursors.loaded_from,
        },
        "meta": _meta(),
    }


class ReconcileRequest(BaseModel):
    model_config = {"json_schema_extra": {"example": {"start_date": "2026-02-06", "end_date": "2026-02-07"}}}
    start_date: date
    end_date: Optional[date] = None


@app.post("/api/v1/work-records:reconcile", tags=["Work Records"])
def reconcile(
    payload: ReconcileRequest,
    db: Session = Depends(get_db),
    config: Settings = Depends(get_settings),
) -> dict:
    end_date = payload.end_date or payload.start_date
    if end_date < payload.start_date:
        raise HTTPException(status_code=400, detail="end_date must not be before start_date")
    result = reconcile_work_records(db, payload.start_date, end_date, config)
    return {"data": result.model_dump(mode="json"), "meta": _meta()}


@app.get("/api/v1/work-records", tags=["Work Records"])
def list_work_records(
    employee_code: Optional[str] = Query(default=None),
    work_date: Optional[date] = Query(default=None),
    start_date: Optional[date] = Query(default=None),
    end_date: Optional[date] = Query(default=None),
    status: Optional[str] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    cursor: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    if status is not None and status not in (COMPLETE, INCOMPLETE):
        raise HTTPException(status_code=400, detail="status must be complete or incomplete")
    query = db.query(WorkRecord)
    if employee_code is not None:
        query = query.filter(WorkRecord.employee_code == employee_code)
    if work_date is not None:
        query = query.filter(WorkRecord.work_date == work_date)
    if start_date is not None:
        query = query.filter(WorkRecord.work_date >= start_date)
    if end_date is not None:
        query = query.filter(WorkRecord.work_date <= end_date)
    if status is not None:
        query = query.filter(WorkRecord.status == status)
    query = query.order_by(WorkRecord.work_date.desc(), WorkRecord.employee_code)
    records, next_cursor = _paginate_by_offset(query, limit, cursor)
    data = [_work_record_data(record) for record in records]
    return {"data": data, "meta": _list_meta(limit, cursor, next_cursor)}


@app.get("/api/v1/work-records:preview", tags=["Work Records"])
def preview(
    employee_code: str = Query(...),
    work_date: date = Query(...),
    db: Session = Depends(get_db),
    config: Settings = Depends(get_settings),
) -> dict:
    result = preview_work_record(db, employee_code, work_date, config)
    if result is None:
        raise HTTPException(status_code=404, detail="shift not found")
    return {"data": result.model_dump(mode="json"), "meta": _meta()}


class GrantCreditsRequest(BaseModel):
    model_config = {
        "populate_by_name": True,
        "json_schema_extra": {"example": {"date": "2026-02-07", "grant_ot": False}},
    }
    credit_date: Optional[date] = Field(default=None, alias="date")
    grant_ot: bool = False


@app.post("/api/v1/meal-credits:grant", tags=["Meal Credits"])
def grant_credits(
    payload: GrantCreditsRequest,
    db: Session = Depends(get_db),
    config: Settings = Depends(get_settings),
) -> dict:
    result = grant_credits_for_date(db, payload.credit_date, payload.grant_ot, config)
    return {"data": result.model_dump(mode="json"), "meta": _meta()}


@app.get("/api/v1/meal-credits/status", tags=["Meal Credits"])
def meal_credit_status(
    credit_date: Optional[date] = Query(default=None, alias="date"),
    db: Session = Depends(get_db),
    config: Settings = Depends(get_settings),
) -> dict:
    status = credit_status_for_date(db, credit_date or local_today(config.tz), config)
    status["date"] = status["date"].isoformat()
    return {"data": status, "meta": _meta()}


class MarkOtRequest(BaseModel):
    model_config = {
        "populate_by_name": True,
        "json_schema_extra": {"example": {"date": "2026-02-07", "employee_codes": ["00123", "00124"]}},
    }
    credit_date: date = Field(alias="date")
    employee_codes: list[str]


@app.post("/api/v1/meal-credits:mark-ot", tags=["Meal Credits"])
def mark_ot(
    payload: MarkOtRequest,
    db: Session = Depends(get_db),
    config: Settings = Depends(get_settings),
) -> dict:
    if not payload.employee_codes:
        raise HTTPException(status_code=400, detail="employee_codes must not be empty")
    result = mark_ot_meals(db, payload.credit_date, payload.employee_codes, config)
    return {"data": result.model_dump(mode="json"), "meta": _meta()}


@app.get("/api/v1/employees", tags=["Employees"])
def list_employees(
    code: Optional[str] = Query(default=None),
    is_provisional: Optional[bool] = Query(default=None),
    is_active: Optional[bool] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    query = db.query(Employee)
    if code is not None:
        query = query.filter(Employee.code == code)
    if is_provisional is not None:
        query = query.filter(Employee.is_provisional == is_provisional)
    if is_active is not None:
        query = query.filter(Employee.is_active == is_active)
    employees, next_cursor = _paginate_by_id(query, Employee, limit, cursor)
    data = [_employee_data(employee) for employee in employees]
    return {"data": data, "meta": _list_meta(limit, cursor, next_cursor)}


@app.get("/api/v1/shifts", tags=["Shifts"])
def list_shifts(db: Session = Depends(get_db)) -> dict:
    shifts = db.query(Shift).order_by(Shift.id).all()
    return {"data": [_shift_data(shift) for shift in shifts], "meta": _meta()}


class ShiftUpdate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'start_time': '08:00', 'end_time': '17:00', 'ot_start_time': '17:30', 'crosses_midnight': False, 'break_minutes': 60}}}
    start_time: str
    end_time: str
    ot_start_time: str
    crosses_midnight: bool = False
    break_minutes: int = Field(default=60, ge=0)


@app.put("/api/v1/shifts/{name}", tags=["Shifts"])
def update_shift(name: str, payload: ShiftUpdate, db: Session = Depends(get_db)) -> dict:
    shift = db.query(Shift).filter(Shift.name == name).first()
    if not shift:
        raise HTTPException(status_code=404, detail="shift not found")
    shift.start_time = _parse_time(payload.start_time)
    shift.end_time = _parse_time(payload.end_time)
    shift.ot_start_time = _parse_time(payload.ot_start_time)
    shift.crosses_midnight = payload.crosses_midnight
    shift.break_minutes = payload.break_minutes
    db.commit()
    db.refresh(shift)
    return {"data": _shift_data(shift), "meta": _meta()}
