"""
Notification dispatch: one full attempt cycle per claimed job.

Order of writes per cycle:
  1. claim (lease), committed
  2. attempt log row, committed
  3. job update + lease release, conditional on the lease token, committed

A crash between 2 and 3 leaves a log row for ``attempts + 1``; the next claimant
applies that logged outcome instead of sending again.
"""

from __future__ import annotations

import logging
import math
import random
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Mapping, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.models.notification import NotificationJob
from app.schemas.notification import AttemptOutcome, NotificationChannel, NotificationStatus
from app.services.channel_selector import NoChannelAvailable, select_channel
from app.services.channels import (
    BaseChannelProvider,
    ChannelProviderError,
    PermanentProviderError,
    ProviderResult,
    ProviderTimeout,
)
from app.services.notification_events import emit_terminal_event, event_from_job, terminal_callback_values
from app.services.notification_log import append_attempt, get_attempt, list_attempts
from app.services.notification_queue import Lease, claim_next_due_job, complete_lease, release_lease
from app.services.notification_templates import build_request_payload
from app.services.retry_policy import RetryPolicy, Transition, on_attempt_result
from app.utils.alerting import alert_tracker
from app.utils.clock import utc_now

logger = logging.getLogger(__name__)

LEASE_EXPIRED_ERROR = "LEASE_EXPIRED: previous worker did not finish the attempt"

_ROW_STATUS = {
    AttemptOutcome.DELIVERED: NotificationStatus.DELIVERED,
    AttemptOutcome.ACCEPTED: NotificationStatus.SENT,
    AttemptOutcome.TRANSIENT_FAILURE: NotificationStatus.FAILED,
    AttemptOutcome.PERMANENT_FAILURE: NotificationStatus.FAILED,
}

# Provider calls run here so the worker can stop waiting after the deadline.
# Overrun calls keep their thread until the provider's own timeout fires.
_provider_executor: Optional[ThreadPoolExecutor] = None
_executor_lock = threading.Lock()

# Seconds of lease kept on top of the worst-case provider wait for the store writes.
LEASE_MARGIN_SECONDS = 30


def min_lease_seconds(provider_timeout_seconds: float) -> int:
    """A call may wait up to one deadline to start and one more to finish."""
    return int(math.ceil(2 * float(provider_timeout_seconds))) + LEASE_MARGIN_SECONDS


def _executor() -> ThreadPoolExecutor:
    global _provider_executor
    with _executor_lock:
        if _provider_executor is None:
            size = max(32, 2 * int(get_settings().notification_worker_count))
            _provider_executor = ThreadPoolExecutor(max_workers=size, thread_name_prefix="notify-provider")
        return _provider_executor


def call_with_deadline(
    provider: BaseChannelProvider,
    request: dict[str, Any],
    timeout_seconds: float,
) -> ProviderResult:
    """
    Runs ``provider.send`` on the provider executor.

    The deadline starts when the call starts running, so time spent queued for a
    thread is not charged to the provider. A call that never started is cancelled
    and reported as not sent. A call that started and overran may still reach the
    citizen; its ``ProviderTimeout`` carries ``in_flight`` so the attempt log says so.
    """
    started = threading.Event()

    def _run() -> ProviderResult:
        started.set()
        return provider.send(request, timeout_seconds=timeout_seconds)

    future = _executor().submit(_run)
    if not started.wait(timeout_seconds) and future.cancel():
        raise ProviderTimeout(
            f"PROVIDER_TIMEOUT: no free provider thread within {timeout_seconds}s",
            response={"sent": False},
        )
    try:
        return future.result(timeout=timeout_seconds)
    except FutureTimeoutError as exc:
        # The call itself cannot be interrupted; its late result is ignored.
        logger.warning(
            "Provider %s still running after %ss; the message may already be out",
            provider.name,
            timeout_seconds,
        )
        raise ProviderTimeout(
            f"PROVIDER_TIMEOUT: no response within {timeout_seconds}s, delivery unknown",
            response={"sent": "unknown", "in_flight": True},
        ) from exc


def _send(
    provider: BaseChannelProvider,
    request: dict[str, Any],
    timeout_seconds: float,
) -> tuple[AttemptOutcome, Optional[str], Optional[dict[str, Any]], Optional[str]]:
    """Returns (outcome, message_id, response, error). Never raises for provider failures."""
    try:
        result = call_with_deadline(provider, request, timeout_seconds)
    except PermanentProviderError as exc:
        return AttemptOutcome.PERMANENT_FAILURE, None, exc.response, str(exc)
    except ProviderTimeout as exc:
        alert_tracker.record("NOTIFICATION_PROVIDER_TIMEOUT", channel=provider.channel.value)
        return AttemptOutcome.TRANSIENT_FAILURE, None, exc.response, str(exc)
    except ChannelProviderError as exc:
        alert_tracker.record("NOTIFICATION_PROVIDER_TRANSIENT", channel=provider.channel.value)
        return AttemptOutcome.TRANSIENT_FAILURE, None, exc.response, str(exc)
    except Exception as exc:
        # Network errors, malformed responses, SDK bugs: all retryable.
        logger.warning("Provider %s raised %s", provider.name, type(exc).__name__, exc_info=True)
        alert_tracker.record("NOTIFICATION_PROVIDER_TRANSIENT", channel=provider.channel.value)
        return AttemptOutcome.TRANSIENT_FAILURE, None, None, f"{type(exc).__name__}: {exc}"

    outcome = AttemptOutcome(result.outcome)
    if outcome.is_failure:
        return outcome, result.message_id, result.response, result.error or f"{provider.name} reported {outcome.value}"
    return outcome, result.message_id, result.response, None


def _finish(
    db: Session,
    lease: Lease,
    job: NotificationJob,
    transition: Transition,
    *,
    attempt_number: int,
    channel: str,
    message_id: Optional[str] = None,
    response: Optional[dict[str, Any]] = None,
) -> bool:
    values: dict[str, Any] = {
        "attempts": attempt_number,
        "current_channel": channel,
        "status": transition.status.value,
    }
    if transition.next_scheduled_at is not None:
        values["scheduled_at"] = transition.next_scheduled_at
    if transition.sent_at is not None and job.sent_at is None:
        values["sent_at"] = transition.sent_at
    if transition.delivered_at is not None:
        values["delivered_at"] = transition.delivered_at
    if transition.failed_at is not None:
        values["failed_at"] = transition.failed_at
    if transition.error_message is not None:
        values["error_message"] = transition.error_message
    if message_id:
        values["provider_message_id"] = message_id
    if transition.terminal:
        values.update(terminal_callback_values(utc_now(db)))

    meta = dict(job.meta or {})
    meta["last_worker"] = lease.owner
    if response is not None:
        meta["last_response"] = response
    values["meta"] = meta

    if not complete_lease(db, lease, values):
        db.rollback()
        logger.warning("Lost lease before completing notification id=%s worker=%s", job.id, lease.owner)
        return False
    db.commit()
    db.refresh(job)

    logger.info(
        "Notification attempt done id=%s attempt=%s channel=%s status=%s",
        job.id,
        attempt_number,
        channel,
        job.status,
    )
    if transition.terminal:
        if transition.status == NotificationStatus.FAILED:
            alert_tracker.record("NOTIFICATION_TERMINAL_FAILED", channel=channel, detail={"job_id": str(job.id)})
        emit_terminal_event(event_from_job(job))
    return True


def _log_and_finish(
    db: Session,
    lease: Lease,
    job: NotificationJob,
    *,
    attempt_number: int,
    channel: str,
    outcome: AttemptOutcome,
    request: Optional[dict[str, Any]],
    response: Optional[dict[str, Any]],
    error: Optional[str],
    message_id: Optional[str],
    started_at,
    policy: Optional[RetryPolicy],
    rng: Optional[random.Random],
) -> bool:
    finished_at = utc_now(db)
    if message_id:
        # One key for every provider, so a resumed attempt can restore the correlation id.
        response = {**(response or {}), "message_id": message_id}
    try:
        append_attempt(
            db,
            job_id=job.id,
            attempt_number=attempt_number,
            channel=channel,
            status=_ROW_STATUS[outcome],
            outcome=outcome,
            sent_at=started_at,
            response_at=None if outcome == AttemptOutcome.ACCEPTED else finished_at,
            request_data=request,
            response_data=response,
            error_message=error,
        )
        db.commit()
    except IntegrityError:
        # Another worker already recorded this attempt number: our lease is gone.
        db.rollback()
        logger.warning("Attempt %s of notification id=%s already logged; dropping result", attempt_number, job.id)
        return False

    transition = on_attempt_result(
        attempts=attempt_number,
        max_attempts=int(job.max_attempts),
        outcome=outcome,
        now=finished_at,
        sent_at=job.sent_at,
        error_message=error,
        policy=policy,
        rng=rng,
    )
    return _finish(
        db,
        lease,
        job,
        transition,
        attempt_number=attempt_number,
        channel=channel,
        message_id=message_id,
        response=response,
    )


def process_claimed_job(
    db: Session,
    lease: Lease,
    *,
    providers: Mapping[NotificationChannel, BaseChannelProvider],
    provider_timeout_seconds: float,
    policy: Optional[RetryPolicy] = None,
    rng: Optional[random.Random] = None,
) -> bool:
    job = db.get(NotificationJob, lease.job_id, populate_existing=True)
    if job is None:
        return False

    attempt_number = int(job.attempts or 0) + 1
    now = utc_now(db)

    logged = get_attempt(db, job.id, attempt_number)
    if logged is not None:
        # Log row committed but job update lost: apply the logged outcome, do not resend.
        logger.warning("Resuming notification id=%s attempt=%s from attempt log", job.id, attempt_number)
        transition = on_attempt_result(
            attempts=attempt_number,
            max_attempts=int(job.max_attempts),
            outcome=AttemptOutcome(logged.outcome),
            now=now,
            sent_at=job.sent_at,
            error_message=logged.error_message,
            policy=policy,
            rng=rng,
        )
        response = logged.response_data if isinstance(logged.response_data, dict) else None
        return _finish(
            db,
            lease,
            job,
            transition,
            attempt_number=attempt_number,
            channel=logged.channel,
            message_id=(response or {}).get("message_id"),
            response=response,
        )

    prior = [row.channel for row in list_attempts(db, job.id)]
    common = {
        "attempt_number": attempt_number,
        "started_at": now,
        "policy": policy,
        "rng": rng,
    }

    try:
        channel = select_channel(job, prior, enabled_channels=list(providers.keys()))
    except NoChannelAvailable as exc:
        logger.warning("No channel for notification id=%s: %s", job.id, exc)
        return _log_and_finish(
            db,
            lease,
            job,
            channel=job.current_channel or job.preferred_channel,
            outcome=AttemptOutcome.PERMANENT_FAILURE,
            request=None,
            response=None,
            error=f"NO_CHANNEL_AVAILABLE: {exc}",
            message_id=None,
            **common,
        )

    if lease.reclaimed:
        # Previous holder may or may not have reached the provider; count it as a transient failure.
        alert_tracker.record("NOTIFICATION_LEASE_EXPIRED", channel=channel.value)
        return _log_and_finish(
            db,
            lease,
            job,
            channel=channel.value,
            outcome=AttemptOutcome.TRANSIENT_FAILURE,
            request=None,
            response=None,
            error=LEASE_EXPIRED_ERROR,
            message_id=None,
            **common,
        )

    request = build_request_payload(job, channel)
    outcome, message_id, response, error = _send(providers[channel], request, provider_timeout_seconds)
    return _log_and_finish(
        db,
        lease,
        job,
        channel=channel.value,
        outcome=outcome,
        request=request,
        response=response,
        error=error,
        message_id=message_id,
        **common,
    )


def dispatch_once(
    session_factory: Callable[[], Session],
    *,
    worker_id: Optional[str] = None,
    providers: Mapping[NotificationChannel, BaseChannelProvider],
    lease_seconds: Optional[int] = None,
    provider_timeout_seconds: Optional[float] = None,
    policy: Optional[RetryPolicy] = None,
    rng: Optional[random.Random] = None,
) -> Optional[uuid.UUID]:
    """
    Claims one due job and runs its attempt cycle. Returns the job id, or None when
    nothing was due. Store errors propagate after the lease is released; they never
    consume an attempt.
    """
    settings = get_settings()
    worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
    timeout = float(provider_timeout_seconds or settings.notification_provider_timeout_seconds)
    # The lease must outlive the slowest provider call or a live attempt gets reclaimed.
    lease_seconds = max(int(lease_seconds or settings.notification_lease_seconds), min_lease_seconds(timeout))
    policy = policy or RetryPolicy.from_settings()

    db = session_factory()
    try:
        lease = claim_next_due_job(db, worker_id=worker_id, lease_seconds=lease_seconds)
        if lease is None:
            return None
        try:
            process_claimed_job(
                db,
                lease,
                providers=providers,
                provider_timeout_seconds=timeout,
                policy=policy,
                rng=rng,
            )
        except Exception:
            db.rollback()
            try:
                release_lease(db, lease)
            except Exception:
                db.rollback()
                logger.exception("Failed to release lease on notification id=%s", lease.job_id)
            raise
        return lease.job_id
    finally:
        db.close()
