from contextlib import contextmanager
from typing import Any, Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import get_settings


# Milliseconds a writer waits on a locked SQLite file before failing.
SQLITE_BUSY_TIMEOUT_MS = 5000


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _is_sqlite_file(url: str) -> bool:
    return _is_sqlite(url) and url not in ("sqlite://", "sqlite:///:memory:")


def build_engine(database_url: str, **kwargs: Any) -> Engine:
    """Engine for ``database_url``.

    SQLite connections get foreign keys and a busy timeout; file databases
    also switch to WAL so the scheduler thread can write while requests read.
    """
    if _is_sqlite(database_url):
        connect_args = kwargs.setdefault("connect_args", {})
        connect_args.setdefault("check_same_thread", False)
    eng = create_engine(database_url, **kwargs)
    if _is_sqlite(database_url):
        wal = _is_sqlite_file(database_url)

        @event.listens_for(eng, "connect")
        def _sqlite_pragmas(dbapi_conn, _record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON;")
            cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS};")
            if wal:
                cursor.execute("PRAGMA journal_mode=WAL;")
            cursor.close()

    return eng


engine = build_engine(get_settings().database_url)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


@contextmanager
def session_scope() -> Iterator[Session]:
    """Commit on success, roll back and re-raise on any error."""
    session: Session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
