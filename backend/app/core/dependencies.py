from collections.abc import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import get_settings


def build_engine(database_url: str, **kwargs) -> Engine:
    """Create an engine for the queue store.

    SQLite gets cross-thread connections and a long busy timeout: dispatch workers
    claim jobs from several threads at once and must wait on each other's writes
    instead of failing with "database is locked".
    """
    connect_args: dict[str, object] = dict(kwargs.pop("connect_args", {}) or {})
    is_sqlite = database_url.startswith("sqlite")
    if is_sqlite:
        connect_args.setdefault("check_same_thread", False)
        connect_args.setdefault("timeout", 30)

    kwargs.setdefault("pool_pre_ping", True)
    eng = create_engine(database_url, connect_args=connect_args, **kwargs)

    if is_sqlite:
        @event.listens_for(eng, "connect")
        def _set_sqlite_pragmas(dbapi_connection, _connection_record) -> None:  # type: ignore[no-untyped-def]
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA busy_timeout=30000")
            cursor.close()

    return eng


def build_session_factory(eng: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=eng)


settings = get_settings()

engine = build_engine(settings.database_url) if settings.database_url else None
SessionLocal = build_session_factory(engine) if engine else None


def get_db() -> Generator[Session, None, None]:
    if SessionLocal is None:
        raise RuntimeError("DATABASE_URL is not configured")
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
