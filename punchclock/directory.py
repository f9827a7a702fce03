import logging
from typing import Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from punchclock.config import Settings, settings as default_settings
from punchclock.models import Employee
from punchclock.shifts import utc_now
from punchclock.store import query, upsert

logger = logging.getLogger(__name__)


class EmployeeDirectory:
    """Employee lookups keyed by terminal code, with a per-run cache of known codes.

    The cache is filled by ``refresh`` once per run. Concurrent runs can both
    decide to provision the same code; the insert is conflict-safe on ``code``
    so the second one is a no-op.
    """

    def __init__(self, db: Session, settings: Settings = default_settings):
        self.db = db
        self.settings = settings
        self.known_codes: set[str] = set()

    def refresh(self) -> set[str]:
        self.known_codes = {employee.code for employee in query(self.db, Employee)}
        return self.known_codes

    def unknown(self, codes: Iterable[str]) -> list[str]:
        return sorted(set(codes) - self.known_codes)

    def placeholder_name(self, code: str) -> str:
        return f"{self.settings.placeholder_name_prefix} {code}"

    def provision(self, codes: Iterable[str], names: Optional[dict[str, str]] = None) -> int:
        missing = self.unknown(codes)
        if not missing:
            return 0
        names = names or {}
        now = utc_now()
        rows = [
            {
                "code": code,
                "display_name": (names.get(code) or "").strip() or self.placeholder_name(code),
                "external_id": None,
                "is_provisional": True,
                "is_active": True,
                "created_at": now,
            }
            for code in missing
        ]
        try:
            created = upsert(self.db, Employee, rows, ["code"])
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.warning("could not provision %d employee codes: %s", len(missing), exc)
            return 0
        self.known_codes.update(missing)
        if created:
            logger.info("provisioned %d new employees: %s", created, ", ".join(missing[:5]))
        return created

    def resolve(self, codes: Iterable[str]) -> tuple[dict[str, Employee], list[str]]:
        wanted = sorted(set(codes))
        if not wanted:
            return {}, []
        found = {
            employee.code: employee
            for employee in query(self.db, Employee, Employee.code.in_(wanted))
        }
        return found, [code for code in wanted if code not in found]
