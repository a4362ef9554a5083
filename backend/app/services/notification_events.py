"""
Terminal outcome events for the ticket workflow.

The engine only talks back to ticket state through these events. In-process listeners
run inline. When NOTIFICATION_TERMINAL_WEBHOOK_URL is set the event is also queued on
the job row together with the terminal transition and posted later by
``process_terminal_callbacks_once``, retried with backoff like any outbox.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import httpx
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.models.notification import NotificationJob
from app.services.retry_policy import RetryPolicy, compute_backoff
from app.utils.alerting import alert_tracker
from app.utils.clock import utc_now

logger = logging.getLogger(__name__)

CALLBACK_PENDING = "PENDING"
CALLBACK_RETRY = "RETRY"
CALLBACK_SENT = "SENT"
CALLBACK_FAILED = "FAILED"

# A claimed callback stays out of the due window this long while it is posted.
CALLBACK_CLAIM_SECONDS = 300


@dataclass(frozen=True)
class TerminalEvent:
    job_id: str
    ticket_id: str
    type: str
    status: str  # DELIVERED / FAILED
    channel: Optional[str]
    attempts: int
    error_message: Optional[str] = None
    occurred_at: Optional[datetime] = None

    def as_payload(self) -> dict:
        payload = asdict(self)
        payload["occurred_at"] = self.occurred_at.isoformat() if self.occurred_at else None
        return payload


TerminalListener = Callable[[TerminalEvent], None]

_listeners: list[TerminalListener] = []
_lock = threading.Lock()


def register_terminal_listener(listener: TerminalListener) -> None:
    with _lock:
        if listener not in _listeners:
            _listeners.append(listener)


def unregister_terminal_listener(listener: TerminalListener) -> None:
    with _lock:
        if listener in _listeners:
            _listeners.remove(listener)


def event_from_job(job, *, occurred_at: Optional[datetime] = None) -> TerminalEvent:
    return TerminalEvent(
        job_id=str(job.id),
        ticket_id=str(job.ticket_id),
        type=str(job.type),
        status=str(job.status),
        channel=job.current_channel,
        attempts=int(job.attempts or 0),
        error_message=job.error_message,
        occurred_at=occurred_at or job.delivered_at or job.failed_at,
    )


def post_terminal_webhook(event: TerminalEvent) -> None:
    settings = get_settings()
    url = settings.notification_terminal_webhook_url
    if not url:
        return
    headers = {"Content-Type": "application/json"}
    if settings.notification_api_token:
        headers["X-Internal-Token"] = settings.notification_api_token
    with httpx.Client(timeout=settings.notification_provider_timeout_seconds) as client:
        resp = client.post(url, json=event.as_payload(), headers=headers)
        resp.raise_for_status()


def terminal_callback_values(now: datetime) -> dict[str, Any]:
    """Columns that queue the terminal webhook; written in the same UPDATE as the transition."""
    if not get_settings().notification_terminal_webhook_url:
        return {}
    return {
        "callback_status": CALLBACK_PENDING,
        "callback_attempts": 0,
        "callback_next_attempt_at": now,
        "callback_last_error": None,
    }


def emit_terminal_event(event: TerminalEvent) -> None:
    """Listener failures are logged; they never undo or block the job transition."""
    logger.info(
        "Notification terminal id=%s ticket=%s status=%s attempts=%s",
        event.job_id,
        event.ticket_id,
        event.status,
        event.attempts,
    )
    with _lock:
        listeners = list(_listeners)
    for listener in listeners:
        try:
            listener(event)
        except Exception:
            logger.exception("Terminal notification listener failed id=%s", event.job_id)


def process_terminal_callbacks_once(
    db: Session,
    *,
    batch_size: int = 50,
    max_attempts: Optional[int] = None,
    policy: Optional[RetryPolicy] = None,
) -> int:
    """
    Post due terminal callbacks to the ticket workflow.

    Returns the number delivered. A failed POST is rescheduled with the delivery
    backoff; after ``max_attempts`` the callback is marked FAILED and alerted.
    """
    settings = get_settings()
    if not settings.notification_terminal_webhook_url:
        return 0
    max_attempts = int(max_attempts or settings.notification_terminal_webhook_max_attempts)
    policy = policy or RetryPolicy.from_settings()
    now = utc_now(db)
    due_filter = (
        NotificationJob.callback_status.in_([CALLBACK_PENDING, CALLBACK_RETRY]),
        NotificationJob.callback_next_attempt_at <= now,
    )

    job_ids = (
        db.execute(
            select(NotificationJob.id)
            .where(*due_filter)
            .order_by(NotificationJob.callback_next_attempt_at.asc())
            .limit(int(max(1, batch_size)))
        )
        .scalars()
        .all()
    )

    sent = 0
    for job_id in job_ids:
        claimed = db.execute(
            update(NotificationJob)
            .where(NotificationJob.id == job_id, *due_filter)
            .values(callback_next_attempt_at=now + timedelta(seconds=CALLBACK_CLAIM_SECONDS))
            .execution_options(synchronize_session=False)
        ).rowcount
        db.commit()
        if claimed != 1:
            continue

        job = db.get(NotificationJob, job_id, populate_existing=True)
        attempt = int(job.callback_attempts or 0) + 1
        values: dict[str, Any] = {"callback_attempts": attempt}
        try:
            post_terminal_webhook(event_from_job(job))
        except Exception as exc:
            values["callback_last_error"] = f"{type(exc).__name__}: {exc}"[:1000]
            if attempt >= max_attempts:
                values["callback_status"] = CALLBACK_FAILED
                values["callback_next_attempt_at"] = None
                alert_tracker.record("NOTIFICATION_CALLBACK_FAILED")
                logger.error("Terminal callback gave up id=%s attempts=%s err=%s", job_id, attempt, exc)
            else:
                values["callback_status"] = CALLBACK_RETRY
                values["callback_next_attempt_at"] = now + compute_backoff(attempt, policy)
                logger.warning("Terminal callback failed id=%s attempt=%s err=%s", job_id, attempt, exc)
        else:
            values["callback_status"] = CALLBACK_SENT
            values["callback_next_attempt_at"] = None
            values["callback_last_error"] = None
            sent += 1

        db.execute(
            update(NotificationJob)
            .where(NotificationJob.id == job_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        db.commit()

    if job_ids:
        logger.info("Terminal callbacks processed due=%s sent=%s", len(job_ids), sent)
    return sent
