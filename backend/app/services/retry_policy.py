"""
Retry scheduling for notification jobs.

The stored status column only has four values (PENDING, SENT, FAILED, DELIVERED).
A FAILED row is either waiting for another attempt or terminal; ``JobPhase`` is the
richer internal state and ``phase_of`` / ``project`` translate between the two.

Everything here is pure: callers pass ``now`` and the random source explicitly.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterable, Optional

from app.core.config import get_settings
from app.schemas.notification import AttemptOutcome, NotificationStatus


class JobPhase(str, Enum):
    PENDING = "PENDING"
    AWAITING_CONFIRMATION = "AWAITING_CONFIRMATION"
    RETRY_SCHEDULED = "RETRY_SCHEDULED"
    DELIVERED = "DELIVERED"
    FAILED_TERMINAL = "FAILED_TERMINAL"

    @property
    def is_terminal(self) -> bool:
        return self in (JobPhase.DELIVERED, JobPhase.FAILED_TERMINAL)


_PROJECTION = {
    JobPhase.PENDING: NotificationStatus.PENDING,
    JobPhase.AWAITING_CONFIRMATION: NotificationStatus.SENT,
    JobPhase.RETRY_SCHEDULED: NotificationStatus.FAILED,
    JobPhase.DELIVERED: NotificationStatus.DELIVERED,
    JobPhase.FAILED_TERMINAL: NotificationStatus.FAILED,
}


def project(phase: JobPhase) -> NotificationStatus:
    return _PROJECTION[phase]


def phase_of(
    status: str,
    *,
    attempts: int,
    max_attempts: int,
    failed_at: Optional[datetime] = None,
) -> JobPhase:
    status = NotificationStatus(status)
    if status == NotificationStatus.PENDING:
        return JobPhase.PENDING
    if status == NotificationStatus.SENT:
        return JobPhase.AWAITING_CONFIRMATION
    if status == NotificationStatus.DELIVERED:
        return JobPhase.DELIVERED
    # FAILED: permanent failures carry failed_at before the budget is spent.
    if failed_at is not None or int(attempts) >= int(max_attempts):
        return JobPhase.FAILED_TERMINAL
    return JobPhase.RETRY_SCHEDULED


def job_phase(job) -> JobPhase:
    return phase_of(
        job.status,
        attempts=int(job.attempts or 0),
        max_attempts=int(job.max_attempts or 0),
        failed_at=job.failed_at,
    )


@dataclass(frozen=True)
class RetryPolicy:
    base_seconds: int = 60
    max_seconds: int = 3600
    jitter_ratio: float = 0.2
    # How long a SENT job waits for its receipt; 0 waits forever.
    confirmation_timeout_seconds: int = 0

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        settings = get_settings()
        base = max(1, int(settings.notification_backoff_base_seconds))
        return cls(
            base_seconds=base,
            max_seconds=max(base, int(settings.notification_backoff_max_seconds)),
            jitter_ratio=settings.backoff_jitter_ratio,
            confirmation_timeout_seconds=max(0, int(settings.notification_confirmation_timeout_seconds)),
        )


def compute_backoff(
    attempts: int,
    policy: Optional[RetryPolicy] = None,
    *,
    jitter: float = 0.0,
) -> timedelta:
    """
    Delay before the next attempt after ``attempts`` failed tries.

    base * 2^(attempts-1), stretched by up to ``jitter_ratio`` and capped at
    ``max_seconds``. ``jitter`` is a sample from [0, 1). With jitter_ratio <= 1 the
    result never decreases as ``attempts`` grows, whatever the samples are.
    """
    policy = policy or RetryPolicy()
    ratio = max(0.0, min(1.0, float(policy.jitter_ratio)))
    sample = max(0.0, min(1.0, float(jitter)))
    exponent = max(0, int(attempts) - 1)
    # Clamp the exponent first so huge attempt counts cannot overflow.
    if policy.base_seconds * (2 ** min(exponent, 32)) >= policy.max_seconds:
        return timedelta(seconds=policy.max_seconds)
    seconds = policy.base_seconds * (2**exponent) * (1.0 + ratio * sample)
    seconds = max(policy.base_seconds, min(policy.max_seconds, seconds))
    return timedelta(seconds=seconds)


@dataclass(frozen=True)
class Transition:
    phase: JobPhase
    next_scheduled_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    error_message: Optional[str] = None

    @property
    def status(self) -> NotificationStatus:
        return project(self.phase)

    @property
    def terminal(self) -> bool:
        return self.phase.is_terminal


def on_attempt_result(
    *,
    attempts: int,
    max_attempts: int,
    outcome: AttemptOutcome,
    now: datetime,
    sent_at: Optional[datetime] = None,
    error_message: Optional[str] = None,
    policy: Optional[RetryPolicy] = None,
    rng: Optional[random.Random] = None,
) -> Transition:
    """
    Decide the job's next state after an attempt (or its receipt) resolved.

    ``attempts`` already counts the attempt being resolved. ``sent_at`` is the
    job's existing sent_at; it is kept so set-once timestamps stay set-once.
    """
    outcome = AttemptOutcome(outcome)

    if outcome == AttemptOutcome.DELIVERED:
        first_sent = sent_at or now
        return Transition(
            phase=JobPhase.DELIVERED,
            sent_at=first_sent,
            delivered_at=max(now, first_sent),
        )

    if outcome == AttemptOutcome.ACCEPTED:
        # scheduled_at of a SENT job is its confirmation deadline.
        timeout = int((policy or RetryPolicy()).confirmation_timeout_seconds)
        return Transition(
            phase=JobPhase.AWAITING_CONFIRMATION,
            next_scheduled_at=now + timedelta(seconds=timeout) if timeout > 0 else None,
            sent_at=sent_at or now,
        )

    if outcome == AttemptOutcome.PERMANENT_FAILURE or int(attempts) >= int(max_attempts):
        return Transition(
            phase=JobPhase.FAILED_TERMINAL,
            sent_at=sent_at,
            failed_at=now,
            error_message=error_message,
        )

    sample = (rng or random).random()
    return Transition(
        phase=JobPhase.RETRY_SCHEDULED,
        next_scheduled_at=now + compute_backoff(attempts, policy, jitter=sample),
        sent_at=sent_at,
        error_message=error_message,
    )


def replay_attempt_log(max_attempts: int, rows: Iterable) -> JobPhase:
    """
    Rebuild a job's phase from its attempt log.

    ``rows`` need ``attempt_number`` and ``outcome``. The result must match the
    phase derived from the stored job row.
    """
    phase = JobPhase.PENDING
    epoch = datetime(1970, 1, 1)
    for row in sorted(rows, key=lambda r: int(r.attempt_number)):
        if phase.is_terminal:
            break
        transition = on_attempt_result(
            attempts=int(row.attempt_number),
            max_attempts=max_attempts,
            outcome=AttemptOutcome(row.outcome),
            now=epoch,
            rng=random.Random(0),
        )
        phase = transition.phase
    return phase
