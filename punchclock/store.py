import logging
from typing import Any, Callable, Iterable, Optional

from sqlalchemy import func, text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


class StoreUnavailable(Exception):
    pass


def _insert(db: Session, model):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"upsert is not supported on {dialect}")


def chunked(rows: list, size: int) -> Iterable[tuple[int, list]]:
    for start in range(0, len(rows), size):
        yield start, rows[start : start + size]


def upsert(
    db: Session,
    model,
    rows: list[dict],
    conflict_keys: list[str],
    update: Optional[Callable[[Any], dict]] = None,
) -> int:
    """Insert ``rows`` keyed by ``conflict_keys``.

    Without ``update`` conflicting rows are left untouched and the return value
    is the number of rows actually inserted. With ``update`` the callable gets
    the ``excluded`` pseudo-table and returns the ``SET`` clause; the return
    value is then the number of rows inserted or updated.
    """
    if not rows:
        return 0
    stmt = _insert(db, model).values(rows)
    if update is None:
        stmt = stmt.on_conflict_do_nothing(index_elements=conflict_keys)
    else:
        stmt = stmt.on_conflict_do_update(index_elements=conflict_keys, set_=update(stmt.excluded))
    result = db.execute(stmt.returning(model.id))
    return len(result.all())


def query(db: Session, model, *criteria, order_by=None) -> list:
    try:
        q = db.query(model).filter(*criteria)
        if order_by is not None:
            q = q.order_by(order_by)
        return q.all()
    except (OperationalError, InterfaceError) as exc:
        db.rollback()
        raise StoreUnavailable(str(exc)) from exc


def count(db: Session, model, *criteria) -> int:
    try:
        return db.query(func.count(model.id)).filter(*criteria).scalar() or 0
    except (OperationalError, InterfaceError) as exc:
        db.rollback()
        raise StoreUnavailable(str(exc)) from exc


def ping(db: Session) -> None:
    try:
        db.execute(text("SELECT 1"))
    except (OperationalError, InterfaceError) as exc:
        logger.error("store unreachable: %s", exc)
        raise StoreUnavailable(str(exc)) from exc
