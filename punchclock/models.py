from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Text,
    Time,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from punchclock.db import Base

ID_TYPE = BigInteger().with_variant(Integer, "sqlite")


class Employee(Base):
    __tablename__ = "employee"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    display_name: Mapped[str] = mapped_column(Text, nullable=False)
    external_id: Mapped[str | None] = mapped_column(Text)
    is_provisional: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class ScanEvent(Base):
    __tablename__ = "scan_event"
    __table_args__ = (
        UniqueConstraint(
            "employee_code",
            "check_time",
            "device_id",
            name="uq_scan_event_code_time_device",
        ),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    employee_code: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    check_time: Mapped[DateTime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
    device_id: Mapped[str] = mapped_column(Text, nullable=False)
    raw_state: Mapped[int | None] = mapped_column(Integer)
    ingested_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class Shift(Base):
    __tablename__ = "shift"
    __table_args__ = (
        CheckConstraint("break_minutes >= 0", name="shift_break_non_negative"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    start_time: Mapped[Time] = mapped_column(Time, nullable=False)
    end_time: Mapped[Time] = mapped_column(Time, nullable=False)
    ot_start_time: Mapped[Time] = mapped_column(Time, nullable=False)
    crosses_midnight: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    break_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=60)


class WorkRecord(Base):
    __tablename__ = "work_record"
    __table_args__ = (
        UniqueConstraint("employee_code", "work_date", name="uq_work_record_code_date"),
        CheckConstraint(
            "status IN ('complete', 'incomplete')", name="work_record_status"
        ),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    employee_code: Mapped[str] = mapped_column(Text, nullable=False)
    work_date: Mapped[Date] = mapped_column(Date, nullable=False, index=True)
    shift_name: Mapped[str] = mapped_column(Text, nullable=False)
    scan_in_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("scan_event.id"))
    scan_out_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("scan_event.id"))
    scan_in: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    scan_out: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    working_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    ot_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(Text, nullable=False)
    calculated_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class MealCredit(Base):
    __tablename__ = "meal_credit"
    __table_args__ = (
        UniqueConstraint("employee_id", "date", name="uq_meal_credit_employee_date"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    employee_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("employee.id"), nullable=False
    )
    date: Mapped[Date] = mapped_column(Date, nullable=False, index=True)
    lunch_available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    ot_meal_available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    lunch_used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    ot_meal_used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    granted_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
