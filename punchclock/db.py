from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from punchclock.config import settings


class Base(DeclarativeBase):
    pass


def _connect_args(database_url: str, timeout: int) -> dict:
    if database_url.startswith("sqlite"):
        return {"check_same_thread": False, "timeout": timeout}
    if database_url.startswith("postgresql"):
        return {
            "connect_timeout": timeout,
            "options": f"-c statement_timeout={timeout * 1000}",
        }
    return {}


def make_engine(database_url: str | None = None, timeout: int | None = None) -> Engine:
    url = database_url or settings.database_url
    return create_engine(
        url,
        pool_pre_ping=True,
        connect_args=_connect_args(url, timeout or settings.store_timeout_seconds),
    )


engine = make_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


def init_db(bind: Engine | None = None) -> None:
    import punchclock.models  # noqa: F401
    from punchclock.shifts import ensure_default_shifts

    target = bind or engine
    Base.metadata.create_all(bind=target)
    session = sessionmaker(bind=target, autoflush=False, autocommit=False)()
    try:
        ensure_default_shifts(session)
    finally:
        session.close()
