from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.models.notification import NotificationJob
from app.schemas.notification import NotificationChannel, NotificationStatus, NotificationType
from app.utils.clock import align_to, utc_now

logger = logging.getLogger(__name__)


class NotificationError(Exception):
    pass


class NotificationNotFound(NotificationError):
    pass


@dataclass(frozen=True)
class Lease:
    job_id: uuid.UUID
    owner: str
    token: str
    expires_at: datetime
    # True when the previous holder's lease expired without releasing the job.
    reclaimed: bool = False


def _frozen_copy(data: Any) -> dict[str, Any]:
    # Stored as a value: later mutation of the caller's dict must not leak in.
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise NotificationError("template_data must be an object")
    try:
        return json.loads(json.dumps(data, sort_keys=True, default=str))
    except (TypeError, ValueError) as exc:
        raise NotificationError(f"template_data is not serialisable: {exc}") from exc


def _parse_job_id(job_id: Any) -> Optional[uuid.UUID]:
    if isinstance(job_id, uuid.UUID):
        return job_id
    try:
        return uuid.UUID(str(job_id))
    except (TypeError, ValueError):
        return None


def enqueue_notification(
    db: Session,
    *,
    ticket_id: str,
    type: str,
    recipient_name: str,
    recipient_phone: Optional[str] = None,
    recipient_email: Optional[str] = None,
    template_data: Optional[dict[str, Any]] = None,
    preferred_channel: str = NotificationChannel.KAKAO.value,
    max_attempts: Optional[int] = None,
    scheduled_at: Optional[datetime] = None,
) -> NotificationJob:
    """
    Creates a PENDING notification job. This is the only way jobs come into existence.
    Flushes but does not commit: the caller owns the transaction.
    """
    try:
        ntype = NotificationType(type)
        channel = NotificationChannel(preferred_channel)
    except ValueError as exc:
        raise NotificationError(str(exc)) from exc

    if not str(ticket_id or "").strip():
        raise NotificationError("ticket_id is required")

    settings = get_settings()
    limit = int(max_attempts if max_attempts is not None else settings.notification_default_max_attempts)
    if limit < 1:
        raise NotificationError("max_attempts must be at least 1")

    now = utc_now(db)
    job = NotificationJob(
        id=uuid.uuid4(),
        ticket_id=str(ticket_id).strip(),
        type=ntype.value,
        recipient_name=(recipient_name or "").strip(),
        recipient_phone=(recipient_phone or "").strip() or None,
        recipient_email=(recipient_email or "").strip() or None,
        template_data=_frozen_copy(template_data),
        preferred_channel=channel.value,
        current_channel=None,
        status=NotificationStatus.PENDING.value,
        attempts=0,
        max_attempts=limit,
        scheduled_at=align_to(now, scheduled_at) or now,
        meta={},
    )
    db.add(job)
    db.flush()
    logger.info(
        "Notification enqueued id=%s ticket=%s type=%s preferred=%s",
        job.id,
        job.ticket_id,
        job.type,
        job.preferred_channel,
    )
    return job


def get_job(db: Session, job_id: Any) -> Optional[NotificationJob]:
    parsed = _parse_job_id(job_id)
    if parsed is None:
        return None
    return db.get(NotificationJob, parsed)


def get_status(db: Session, job_id: Any) -> NotificationJob:
    job = get_job(db, job_id)
    if job is None:
        raise NotificationNotFound(f"Notification {job_id} not found")
    return job


def _eligible(now: datetime):
    return and_(
        NotificationJob.status.in_([NotificationStatus.PENDING.value, NotificationStatus.FAILED.value]),
        NotificationJob.failed_at.is_(None),
        NotificationJob.attempts < NotificationJob.max_attempts,
        NotificationJob.scheduled_at <= now,
    )


def find_due_job_ids(db: Session, *, now: datetime, limit: int = 20) -> list[uuid.UUID]:
    return list(
        db.execute(
            select(NotificationJob.id)
            .where(
                _eligible(now),
                or_(NotificationJob.lease_token.is_(None), NotificationJob.lease_expires_at <= now),
            )
            .order_by(NotificationJob.scheduled_at.asc())
            .limit(int(max(1, limit)))
        )
        .scalars()
        .all()
    )


def claim_job(
    db: Session,
    job_id: uuid.UUID,
    *,
    worker_id: str,
    now: datetime,
    lease_seconds: int,
) -> Optional[Lease]:
    """
    Atomically takes the lease on a due job. Returns None when another worker got it first.
    The UPDATE is conditional on the lease token we observed, so only one claimant can win.
    """
    previous = db.execute(
        select(NotificationJob.lease_token, NotificationJob.lease_expires_at).where(NotificationJob.id == job_id)
    ).first()
    if previous is None:
        return None
    prev_token, prev_expires = previous

    if prev_token is None:
        lease_free = NotificationJob.lease_token.is_(None)
    else:
        if prev_expires is not None and prev_expires > now:
            return None
        lease_free = and_(NotificationJob.lease_token == prev_token, NotificationJob.lease_expires_at <= now)

    token = str(uuid.uuid4())
    expires_at = now + timedelta(seconds=int(lease_seconds))
    result = db.execute(
        update(NotificationJob)
        .where(NotificationJob.id == job_id, _eligible(now), lease_free)
        .values(lease_owner=worker_id, lease_token=token, lease_expires_at=expires_at)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount != 1:
        return None
    if prev_token is not None:
        logger.warning("Reclaimed stale lease on notification id=%s by worker=%s", job_id, worker_id)
    return Lease(job_id=job_id, owner=worker_id, token=token, expires_at=expires_at, reclaimed=prev_token is not None)


def claim_next_due_job(
    db: Session,
    *,
    worker_id: str,
    lease_seconds: int,
    batch_size: int = 20,
) -> Optional[Lease]:
    now = utc_now(db)
    for job_id in find_due_job_ids(db, now=now, limit=batch_size):
        lease = claim_job(db, job_id, worker_id=worker_id, now=now, lease_seconds=lease_seconds)
        if lease is not None:
            return lease
    return None


def complete_lease(db: Session, lease: Lease, values: dict[str, Any]) -> bool:
    """
    Writes the job update and drops the lease in one statement, only if we still hold it.
    Does not commit.
    """
    result = db.execute(
        update(NotificationJob)
        .where(NotificationJob.id == lease.job_id, NotificationJob.lease_token == lease.token)
        .values(**values, lease_owner=None, lease_token=None, lease_expires_at=None)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def release_lease(db: Session, lease: Lease) -> bool:
    released = complete_lease(db, lease, {})
    db.commit()
    return released
