"""
Tests for provider receipts and confirmation expiry.
"""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import patch

import pytest

from app.core.config import get_settings
from app.models.notification import NotificationJob
from app.schemas.notification import AttemptOutcome, NotificationChannel, ReceiptOutcome
from app.services.channels import MockChannelProvider
from app.services.delivery_confirmation import (
    CONFIRMATION_TIMEOUT_ERROR,
    ReceiptResult,
    expire_unconfirmed_jobs,
    find_job_by_provider_message_id,
    on_provider_receipt,
    receipt_attempt_outcome,
)
from app.services.notification_dispatcher import dispatch_once
from app.services.notification_events import register_terminal_listener, unregister_terminal_listener
from app.services.notification_log import list_attempts
from app.services.retry_policy import JobPhase, RetryPolicy, job_phase, replay_attempt_log
from app.utils.clock import utc_now

POLICY = RetryPolicy(base_seconds=60, max_seconds=3600, jitter_ratio=0.0, confirmation_timeout_seconds=600)


@pytest.fixture
def sent_job(db, session_factory, make_job):
    """A job whose SMS attempt was accepted by the provider and awaits its receipt."""
    job = make_job(preferred_channel="SMS", max_attempts=2)
    providers = {NotificationChannel.SMS: MockChannelProvider(NotificationChannel.SMS, supports_receipts=True)}
    assert dispatch_once(session_factory, providers=providers, policy=POLICY, worker_id="w1") == job.id
    stored = db.get(NotificationJob, job.id, populate_existing=True)
    assert stored.status == "SENT"
    return stored


def _reload(db, job_id):
    return db.get(NotificationJob, job_id, populate_existing=True)


def test_delivered_receipt_completes_job_and_enriches_one_row(db, sent_job):
    events = []
    register_terminal_listener(events.append)
    try:
        result = on_provider_receipt(
            db,
            job_id=sent_job.id,
            channel="SMS",
            outcome=ReceiptOutcome.DELIVERED,
            response_payload={"MessageStatus": "delivered"},
            policy=POLICY,
        )
    finally:
        unregister_terminal_listener(events.append)

    assert result == ReceiptResult.APPLIED
    stored = _reload(db, sent_job.id)
    assert stored.status == "DELIVERED"
    assert stored.attempts == 1
    assert stored.sent_at <= stored.delivered_at

    rows = list_attempts(db, sent_job.id)
    assert len(rows) == 1
    assert rows[0].status == "DELIVERED"
    assert rows[0].outcome == "DELIVERED"
    assert rows[0].response_at is not None
    assert rows[0].response_data == {"MessageStatus": "delivered"}
    assert replay_attempt_log(stored.max_attempts, rows) == job_phase(stored) == JobPhase.DELIVERED
    assert [event.status for event in events] == ["DELIVERED"]


def test_duplicate_receipt_is_ignored(db, sent_job):
    first = on_provider_receipt(db, job_id=sent_job.id, channel="SMS", outcome="DELIVERED", policy=POLICY)
    second = on_provider_receipt(db, job_id=sent_job.id, channel="SMS", outcome="FAILED", policy=POLICY)

    assert first == ReceiptResult.APPLIED
    assert second == ReceiptResult.IGNORED
    assert _reload(db, sent_job.id).status == "DELIVERED"


def test_receipt_for_other_channel_is_ignored(db, sent_job):
    result = on_provider_receipt(db, job_id=sent_job.id, channel="EMAIL", outcome="DELIVERED", policy=POLICY)

    assert result == ReceiptResult.IGNORED
    assert _reload(db, sent_job.id).status == "SENT"
    assert list_attempts(db, sent_job.id)[0].response_at is None


def test_receipt_for_unknown_job_is_ignored(db):
    assert on_provider_receipt(db, job_id="nope", channel="SMS", outcome="DELIVERED") == ReceiptResult.IGNORED


def test_failed_receipt_schedules_retry(db, sent_job):
    result = on_provider_receipt(
        db,
        job_id=sent_job.id,
        channel=NotificationChannel.SMS,
        outcome=ReceiptOutcome.FAILED,
        reason="carrier rejected",
        policy=POLICY,
    )

    assert result == ReceiptResult.APPLIED
    stored = _reload(db, sent_job.id)
    assert stored.status == "FAILED"
    assert stored.failed_at is None
    assert stored.error_message == "carrier rejected"
    assert stored.scheduled_at > utc_now(db)
    assert job_phase(stored) == JobPhase.RETRY_SCHEDULED
    assert list_attempts(db, sent_job.id)[0].outcome == "TRANSIENT_FAILURE"


def test_bounced_receipt_is_terminal(db, sent_job):
    on_provider_receipt(db, job_id=sent_job.id, channel="SMS", outcome=ReceiptOutcome.BOUNCED, policy=POLICY)

    stored = _reload(db, sent_job.id)
    assert stored.status == "FAILED"
    assert stored.failed_at is not None
    assert job_phase(stored) == JobPhase.FAILED_TERMINAL


def test_terminal_receipt_queues_ticket_callback(db, sent_job, monkeypatch):
    monkeypatch.setenv("NOTIFICATION_TERMINAL_WEBHOOK_URL", "https://tickets.example.com/hooks/notifications")
    get_settings.cache_clear()

    with patch("app.services.notification_events.post_terminal_webhook") as post:
        on_provider_receipt(db, job_id=sent_job.id, channel="SMS", outcome=ReceiptOutcome.DELIVERED, policy=POLICY)

    post.assert_not_called()
    stored = _reload(db, sent_job.id)
    assert stored.status == "DELIVERED"
    assert stored.callback_status == "PENDING"
    assert stored.callback_attempts == 0
    assert stored.callback_next_attempt_at is not None


def test_duplicate_enrichment_is_reported(db, sent_job, monkeypatch):
    # Row already enriched while the job is still SENT: the later receipt must not apply.
    from app.services.notification_log import enrich_attempt

    enrich_attempt(
        db,
        job_id=sent_job.id,
        attempt_number=1,
        status="DELIVERED",
        outcome=AttemptOutcome.DELIVERED,
        response_at=utc_now(db),
    )
    db.commit()

    result = on_provider_receipt(db, job_id=sent_job.id, channel="SMS", outcome="DELIVERED", policy=POLICY)
    assert result == ReceiptResult.DUPLICATE


@pytest.mark.parametrize(
    "outcome,permanent,expected",
    [
        ("DELIVERED", False, AttemptOutcome.DELIVERED),
        ("FAILED", False, AttemptOutcome.TRANSIENT_FAILURE),
        ("FAILED", True, AttemptOutcome.PERMANENT_FAILURE),
        ("BOUNCED", False, AttemptOutcome.PERMANENT_FAILURE),
    ],
)
def test_receipt_outcome_mapping(outcome, permanent, expected):
    assert receipt_attempt_outcome(outcome, permanent=permanent) == expected


def test_find_job_by_provider_message_id(db, sent_job):
    assert find_job_by_provider_message_id(db, sent_job.provider_message_id).id == sent_job.id
    assert find_job_by_provider_message_id(db, "SM-unknown") is None
    assert find_job_by_provider_message_id(db, "") is None


def test_expiry_fails_jobs_past_their_confirmation_deadline(db, sent_job, make_job):
    assert sent_job.scheduled_at > utc_now(db)
    assert expire_unconfirmed_jobs(db, policy=POLICY) == 0

    stored = _reload(db, sent_job.id)
    stored.scheduled_at = utc_now(db) - timedelta(seconds=1)
    db.commit()

    assert expire_unconfirmed_jobs(db, policy=POLICY) == 1
    stored = _reload(db, sent_job.id)
    assert stored.status == "FAILED"
    assert stored.error_message == CONFIRMATION_TIMEOUT_ERROR
    assert job_phase(stored) == JobPhase.RETRY_SCHEDULED
    row = list_attempts(db, sent_job.id)[0]
    assert row.outcome == "TRANSIENT_FAILURE"
    assert row.response_data == {"expired": True}

    # Late receipt after expiry is discarded.
    late = on_provider_receipt(db, job_id=sent_job.id, channel="SMS", outcome="DELIVERED", policy=POLICY)
    assert late == ReceiptResult.IGNORED


def test_expiry_disabled_with_zero_timeout(db, sent_job):
    stored = _reload(db, sent_job.id)
    stored.scheduled_at = utc_now(db) - timedelta(days=1)
    db.commit()

    assert expire_unconfirmed_jobs(db, policy=RetryPolicy(confirmation_timeout_seconds=0)) == 0
    assert _reload(db, sent_job.id).status == "SENT"
