from __future__ import annotations

import logging
import random
from datetime import timedelta
from enum import Enum
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.models.notification import NotificationJob
from app.schemas.notification import AttemptOutcome, NotificationChannel, NotificationStatus, ReceiptOutcome
from app.services.notification_events import emit_terminal_event, event_from_job, terminal_callback_values
from app.services.notification_log import enrich_attempt
from app.services.notification_queue import get_job
from app.services.retry_policy import RetryPolicy, on_attempt_result
from app.utils.alerting import alert_tracker
from app.utils.clock import utc_now

logger = logging.getLogger(__name__)

CONFIRMATION_TIMEOUT_ERROR = "CONFIRMATION_TIMEOUT: no delivery receipt received"


class ReceiptResult(str, Enum):
    APPLIED = "APPLIED"
    IGNORED = "IGNORED"
    DUPLICATE = "DUPLICATE"


def receipt_attempt_outcome(outcome: ReceiptOutcome | AttemptOutcome | str, *, permanent: bool = False) -> AttemptOutcome:
    value = outcome.value if isinstance(outcome, Enum) else str(outcome)
    if value == ReceiptOutcome.DELIVERED.value:
        return AttemptOutcome.DELIVERED
    if value in (ReceiptOutcome.BOUNCED.value, AttemptOutcome.PERMANENT_FAILURE.value) or permanent:
        return AttemptOutcome.PERMANENT_FAILURE
    if value in (ReceiptOutcome.FAILED.value, AttemptOutcome.TRANSIENT_FAILURE.value):
        return AttemptOutcome.TRANSIENT_FAILURE
    raise ValueError(f"Unsupported receipt outcome: {value}")


def find_job_by_provider_message_id(db: Session, message_id: str) -> Optional[NotificationJob]:
    if not message_id:
        return None
    return (
        db.execute(select(NotificationJob).where(NotificationJob.provider_message_id == message_id))
        .scalars()
        .first()
    )


def on_provider_receipt(
    db: Session,
    *,
    job_id: Any,
    channel: NotificationChannel | str,
    outcome: ReceiptOutcome | AttemptOutcome | str,
    response_payload: Optional[dict[str, Any]] = None,
    reason: Optional[str] = None,
    permanent: bool = False,
    policy: Optional[RetryPolicy] = None,
    rng: Optional[random.Random] = None,
) -> ReceiptResult:
    """
    Applies a provider delivery receipt to a SENT job.

    The in-flight attempt's log row is enriched and the job is moved on in one
    transaction; the job update is conditional on (status=SENT, attempts=n), so a
    racing receipt or confirmation timeout can only apply once.
    """
    job = get_job(db, job_id)
    if job is None:
        logger.warning("Receipt for unknown notification id=%s discarded", job_id)
        return ReceiptResult.IGNORED
    db.refresh(job)

    channel_value = NotificationChannel(channel).value
    if job.status != NotificationStatus.SENT.value or job.current_channel != channel_value:
        logger.info(
            "Receipt discarded id=%s status=%s current_channel=%s receipt_channel=%s",
            job.id,
            job.status,
            job.current_channel,
            channel_value,
        )
        return ReceiptResult.IGNORED

    attempt_outcome = receipt_attempt_outcome(outcome, permanent=permanent)
    now = utc_now(db)
    attempt_number = int(job.attempts)
    error = None
    if attempt_outcome.is_failure:
        error = reason or f"{channel_value} receipt reported {attempt_outcome.value}"

    transition = on_attempt_result(
        attempts=attempt_number,
        max_attempts=int(job.max_attempts),
        outcome=attempt_outcome,
        now=now,
        sent_at=job.sent_at,
        error_message=error,
        policy=policy or RetryPolicy.from_settings(),
        rng=rng,
    )

    enriched = enrich_attempt(
        db,
        job_id=job.id,
        attempt_number=attempt_number,
        status=NotificationStatus.DELIVERED if attempt_outcome == AttemptOutcome.DELIVERED else NotificationStatus.FAILED,
        outcome=attempt_outcome,
        response_at=now,
        response_data=response_payload,
        error_message=error,
    )
    if not enriched:
        db.rollback()
        logger.info("Duplicate receipt for notification id=%s attempt=%s", job.id, attempt_number)
        return ReceiptResult.DUPLICATE

    values: dict[str, Any] = {"status": transition.status.value}
    if transition.delivered_at is not None:
        values["delivered_at"] = transition.delivered_at
    if transition.failed_at is not None:
        values["failed_at"] = transition.failed_at
    if transition.next_scheduled_at is not None:
        values["scheduled_at"] = transition.next_scheduled_at
    if transition.error_message is not None:
        values["error_message"] = transition.error_message
    if transition.terminal:
        values.update(terminal_callback_values(now))

    result = db.execute(
        update(NotificationJob)
        .where(
            NotificationJob.id == job.id,
            NotificationJob.status == NotificationStatus.SENT.value,
            NotificationJob.attempts == attempt_number,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        logger.info("Receipt lost race for notification id=%s", job.id)
        return ReceiptResult.IGNORED
    db.commit()
    db.refresh(job)

    logger.info("Receipt applied id=%s channel=%s status=%s", job.id, channel_value, job.status)
    if transition.terminal:
        if transition.status == NotificationStatus.FAILED:
            alert_tracker.record("NOTIFICATION_TERMINAL_FAILED", channel=channel_value, detail={"job_id": str(job.id)})
        emit_terminal_event(event_from_job(job))
    return ReceiptResult.APPLIED


def expire_unconfirmed_jobs(
    db: Session,
    *,
    limit: int = 100,
    policy: Optional[RetryPolicy] = None,
) -> int:
    """SENT jobs whose confirmation deadline (scheduled_at) passed fail transiently."""
    policy = policy or RetryPolicy.from_settings()
    if policy.confirmation_timeout_seconds <= 0:
        return 0
    now = utc_now(db)
    stale = (
        db.execute(
            select(NotificationJob.id, NotificationJob.current_channel)
            .where(
                NotificationJob.status == NotificationStatus.SENT.value,
                NotificationJob.scheduled_at <= now,
            )
            .order_by(NotificationJob.scheduled_at.asc())
            .limit(int(max(1, limit)))
        )
        .all()
    )

    expired = 0
    for job_id, channel in stale:
        result = on_provider_receipt(
            db,
            job_id=job_id,
            channel=channel,
            outcome=AttemptOutcome.TRANSIENT_FAILURE,
            response_payload={"expired": True},
            reason=CONFIRMATION_TIMEOUT_ERROR,
            policy=policy,
        )
        if result == ReceiptResult.APPLIED:
            expired += 1
    if expired:
        logger.info("Expired unconfirmed notifications: %s", expired)
    return expired
