from __future__ import annotations

import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.core.dependencies import get_db
from app.models.notification import NotificationAttemptLog, NotificationJob
from app.schemas.notification import (
    AttemptLogResponse,
    EnqueueNotificationRequest,
    NotificationDetailResponse,
    NotificationJobResponse,
)
from app.services.notification_log import list_attempts
from app.services.notification_queue import NotificationError, NotificationNotFound, enqueue_notification, get_status
from app.services.retry_policy import job_phase

router = APIRouter()
logger = logging.getLogger(__name__)


def require_internal_token(x_internal_token: Optional[str] = Header(default=None)) -> None:
    expected = get_settings().notification_api_token
    if not expected:
        return
    if not x_internal_token or not hmac.compare_digest(x_internal_token, expected):
        raise HTTPException(401, "Invalid internal token")


def _job_to_out(job: NotificationJob) -> NotificationJobResponse:
    return NotificationJobResponse(
        id=str(job.id),
        ticket_id=job.ticket_id,
        type=job.type,
        recipient_name=job.recipient_name,
        recipient_phone=job.recipient_phone,
        recipient_email=job.recipient_email,
        preferred_channel=job.preferred_channel,
        current_channel=job.current_channel,
        status=job.status,
        phase=job_phase(job).value,
        attempts=int(job.attempts or 0),
        max_attempts=int(job.max_attempts),
        scheduled_at=job.scheduled_at,
        sent_at=job.sent_at,
        delivered_at=job.delivered_at,
        failed_at=job.failed_at,
        error_message=job.error_message,
        created_at=job.created_at,
    )


def _attempt_to_out(row: NotificationAttemptLog) -> AttemptLogResponse:
    return AttemptLogResponse(
        id=str(row.id),
        attempt_number=int(row.attempt_number),
        channel=row.channel,
        status=row.status,
        outcome=row.outcome,
        error_message=row.error_message,
        sent_at=row.sent_at,
        response_at=row.response_at,
        response_data=row.response_data if isinstance(row.response_data, dict) else None,
    )


def _get_job_or_404(db: Session, notification_id: str) -> NotificationJob:
    try:
        return get_status(db, notification_id)
    except NotificationNotFound as exc:
        raise HTTPException(404, "Notification not found") from exc


@router.post(
    "/notifications",
    response_model=NotificationJobResponse,
    status_code=201,
    dependencies=[Depends(require_internal_token)],
)
def create_notification(payload: EnqueueNotificationRequest, db: Session = Depends(get_db)):
    try:
        job = enqueue_notification(
            db,
            ticket_id=payload.ticket_id,
            type=payload.type.value,
            recipient_name=payload.recipient_name,
            recipient_phone=payload.recipient_phone,
            recipient_email=payload.recipient_email,
            template_data=payload.template_data,
            preferred_channel=payload.preferred_channel.value,
            max_attempts=payload.max_attempts,
            scheduled_at=payload.scheduled_at,
        )
    except NotificationError as exc:
        db.rollback()
        raise HTTPException(400, str(exc)) from exc
    db.commit()
    db.refresh(job)
    return _job_to_out(job)


@router.get(
    "/notifications/{notification_id}",
    response_model=NotificationDetailResponse,
    dependencies=[Depends(require_internal_token)],
)
def get_notification(notification_id: str, db: Session = Depends(get_db)):
    job = _get_job_or_404(db, notification_id)
    out = _job_to_out(job)
    return NotificationDetailResponse(
        **out.model_dump(),
        attempt_log=[_attempt_to_out(row) for row in list_attempts(db, job.id)],
    )


@router.get(
    "/notifications/{notification_id}/attempts",
    response_model=list[AttemptLogResponse],
    dependencies=[Depends(require_internal_token)],
)
def get_notification_attempts(notification_id: str, db: Session = Depends(get_db)):
    job = _get_job_or_404(db, notification_id)
    return [_attempt_to_out(row) for row in list_attempts(db, job.id)]
