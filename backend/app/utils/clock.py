from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from app.core.config import get_settings


def _is_sqlite(db: Optional[Session]) -> bool:
    if db is not None:
        bind = db.get_bind()
        return bind is not None and bind.dialect.name == "sqlite"
    return (get_settings().database_url or "").startswith("sqlite")


def utc_now(db: Optional[Session] = None) -> datetime:
    # SQLite (used in CI/tests) stores timezone-aware datetimes as naive values.
    # Use a naive UTC "now" for SQLite to avoid naive/aware comparison crashes.
    if _is_sqlite(db):
        return datetime.now(timezone.utc).replace(tzinfo=None)
    return datetime.now(timezone.utc)


def align_to(reference: datetime, value: Optional[datetime]) -> Optional[datetime]:
    """Return ``value`` with the same naive/aware flavour as ``reference``."""
    if value is None:
        return None
    if reference.tzinfo is None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    if reference.tzinfo is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
