"""
Attempt log store: one row per delivery attempt, append-only.

The single permitted mutation is the set-once receipt enrichment of a row written
while the provider had only accepted the message (``response_at IS NULL``).
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from app.models.notification import NotificationAttemptLog
from app.schemas.notification import AttemptOutcome, NotificationChannel, NotificationStatus


def append_attempt(
    db: Session,
    *,
    job_id: uuid.UUID,
    attempt_number: int,
    channel: NotificationChannel,
    status: NotificationStatus,
    outcome: AttemptOutcome,
    sent_at: datetime,
    response_at: Optional[datetime] = None,
    request_data: Optional[dict[str, Any]] = None,
    response_data: Optional[dict[str, Any]] = None,
    error_message: Optional[str] = None,
) -> NotificationAttemptLog:
    row = NotificationAttemptLog(
        id=uuid.uuid4(),
        queue_id=job_id,
        attempt_number=int(attempt_number),
        channel=NotificationChannel(channel).value,
        status=NotificationStatus(status).value,
        outcome=AttemptOutcome(outcome).value,
        request_data=request_data,
        response_data=response_data,
        error_message=error_message,
        sent_at=sent_at,
        response_at=response_at,
    )
    db.add(row)
    db.flush()
    return row


def list_attempts(db: Session, job_id: uuid.UUID) -> list[NotificationAttemptLog]:
    return list(
        db.execute(
            select(NotificationAttemptLog)
            .where(NotificationAttemptLog.queue_id == job_id)
            .order_by(NotificationAttemptLog.attempt_number.asc())
        )
        .scalars()
        .all()
    )


def get_attempt(db: Session, job_id: uuid.UUID, attempt_number: int) -> Optional[NotificationAttemptLog]:
    return (
        db.execute(
            select(NotificationAttemptLog).where(
                NotificationAttemptLog.queue_id == job_id,
                NotificationAttemptLog.attempt_number == int(attempt_number),
            )
        )
        .scalars()
        .first()
    )


def count_attempts(db: Session, job_id: uuid.UUID) -> int:
    return int(
        db.execute(
            select(func.count()).select_from(NotificationAttemptLog).where(NotificationAttemptLog.queue_id == job_id)
        ).scalar_one()
    )


def enrich_attempt(
    db: Session,
    *,
    job_id: uuid.UUID,
    attempt_number: int,
    status: NotificationStatus,
    outcome: AttemptOutcome,
    response_at: datetime,
    response_data: Optional[dict[str, Any]] = None,
    error_message: Optional[str] = None,
) -> bool:
    """Fills the receipt fields of an accepted attempt. False if already enriched or missing."""
    values: dict[str, Any] = {
        "status": NotificationStatus(status).value,
        "outcome": AttemptOutcome(outcome).value,
        "response_at": response_at,
    }
    if response_data is not None:
        values["response_data"] = response_data
    if error_message is not None:
        values["error_message"] = error_message

    result = db.execute(
        update(NotificationAttemptLog)
        .where(
            NotificationAttemptLog.queue_id == job_id,
            NotificationAttemptLog.attempt_number == int(attempt_number),
            NotificationAttemptLog.response_at.is_(None),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
