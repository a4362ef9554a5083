"""
Tests for the dispatch cycle: claim, channel selection, provider call, attempt log,
retry scheduling and crash recovery.

Covers:
  - Email-only recipient with SMS preference: three transient failures -> terminal
  - KAKAO permanent failure -> terminal on attempt 1
  - Direct delivery and receipt-pending (SENT) outcomes
  - Provider timeouts and unexpected exceptions count as transient failures
  - Provider deadline starts when the call starts, not when it is queued
  - Resume from a committed attempt log row after a crash
  - Reclaimed lease records a LEASE_EXPIRED attempt
  - K workers against M jobs never duplicate an attempt number
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from app.models.notification import NotificationJob
from app.schemas.notification import AttemptOutcome, NotificationChannel, NotificationStatus
from app.services.channels import MockChannelProvider
from app.services.channels.base import ProviderResult, ProviderTimeout
from app.services.notification_dispatcher import (
    LEASE_EXPIRED_ERROR,
    call_with_deadline,
    dispatch_once,
    min_lease_seconds,
)
from app.services.notification_events import register_terminal_listener, unregister_terminal_listener
from app.services.notification_log import append_attempt, count_attempts, list_attempts
from app.services.notification_queue import claim_next_due_job
from app.services.retry_policy import JobPhase, RetryPolicy, job_phase, replay_attempt_log
from app.utils.clock import utc_now

POLICY = RetryPolicy(base_seconds=60, max_seconds=3600, jitter_ratio=0.2)

TRANSIENT = AttemptOutcome.TRANSIENT_FAILURE
PERMANENT = AttemptOutcome.PERMANENT_FAILURE


def _providers(**scripts):
    providers = {}
    for channel in NotificationChannel:
        providers[channel] = MockChannelProvider(channel, script=scripts.get(channel.value.lower()))
    return providers


def _dispatch(session_factory, providers, rng=None, **kwargs):
    kwargs.setdefault("worker_id", "worker-test")
    kwargs.setdefault("lease_seconds", 60)
    kwargs.setdefault("provider_timeout_seconds", 5)
    return dispatch_once(session_factory, providers=providers, policy=POLICY, rng=rng, **kwargs)


def _reload(db, job_id) -> NotificationJob:
    return db.get(NotificationJob, job_id, populate_existing=True)


def _assert_invariants(db, job):
    assert job.attempts <= job.max_attempts
    assert count_attempts(db, job.id) == job.attempts
    assert replay_attempt_log(job.max_attempts, list_attempts(db, job.id)) == job_phase(job)


def test_email_only_recipient_fails_terminally_after_three_transient_failures(
    db, session_factory, make_job, make_due, rng
):
    job = make_job(recipient_phone=None, preferred_channel="SMS", max_attempts=3)
    providers = _providers(email=[TRANSIENT, TRANSIENT, TRANSIENT])

    delays = []
    for attempt in range(1, 4):
        assert _dispatch(session_factory, providers, rng) == job.id
        stored = _reload(db, job.id)
        _assert_invariants(db, stored)
        assert stored.attempts == attempt
        assert stored.current_channel == "EMAIL"
        assert stored.status == NotificationStatus.FAILED.value
        if attempt < 3:
            row = list_attempts(db, job.id)[-1]
            delays.append(stored.scheduled_at - row.response_at)
            assert stored.failed_at is None
            assert stored.scheduled_at > utc_now(db)
            # Not due until the backoff has elapsed.
            assert _dispatch(session_factory, providers, rng) is None
            make_due(job.id)

    assert delays[0] <= delays[1]
    assert stored.failed_at is not None
    assert job_phase(stored) == JobPhase.FAILED_TERMINAL
    assert [row.channel for row in list_attempts(db, job.id)] == ["EMAIL", "EMAIL", "EMAIL"]
    assert providers[NotificationChannel.SMS].calls == []
    assert providers[NotificationChannel.KAKAO].calls == []

    # Terminal jobs never get another attempt.
    make_due(job.id)
    assert _dispatch(session_factory, providers, rng) is None
    assert count_attempts(db, job.id) == 3


def test_kakao_permanent_failure_is_terminal_on_first_attempt(db, session_factory, make_job, make_due):
    job = make_job(preferred_channel="KAKAO", max_attempts=3)
    providers = _providers(kakao=[PERMANENT])

    events = []
    register_terminal_listener(events.append)
    try:
        assert _dispatch(session_factory, providers) == job.id
    finally:
        unregister_terminal_listener(events.append)

    stored = _reload(db, job.id)
    _assert_invariants(db, stored)
    assert stored.status == "FAILED"
    assert stored.attempts == 1
    assert stored.failed_at is not None
    assert "INVALID_RECIPIENT" in stored.error_message
    assert job_phase(stored) == JobPhase.FAILED_TERMINAL
    assert providers[NotificationChannel.SMS].calls == []

    assert len(events) == 1
    assert events[0].status == "FAILED"
    assert events[0].ticket_id == "T-1001"

    make_due(job.id)
    assert _dispatch(session_factory, providers) is None


def test_delivery_without_receipt_support_is_final(db, session_factory, make_job):
    job = make_job(preferred_channel="SMS")
    providers = _providers()

    assert _dispatch(session_factory, providers) == job.id

    stored = _reload(db, job.id)
    _assert_invariants(db, stored)
    assert stored.status == "DELIVERED"
    assert stored.sent_at is not None
    assert stored.sent_at <= stored.delivered_at
    assert stored.lease_token is None
    assert stored.meta["last_worker"] == "worker-test"

    rows = list_attempts(db, job.id)
    assert len(rows) == 1
    assert rows[0].status == "DELIVERED"
    assert rows[0].request_data["to"] == "+821012345678"
    assert "민원" in rows[0].request_data["message"]


def test_accepted_send_waits_for_confirmation(db, session_factory, make_job, make_due):
    job = make_job(preferred_channel="SMS")
    providers = _providers()
    providers[NotificationChannel.SMS] = MockChannelProvider(NotificationChannel.SMS, supports_receipts=True)

    assert _dispatch(session_factory, providers) == job.id

    stored = _reload(db, job.id)
    _assert_invariants(db, stored)
    assert stored.status == "SENT"
    assert stored.provider_message_id.startswith("mock-")
    assert stored.delivered_at is None
    row = list_attempts(db, job.id)[0]
    assert row.outcome == "ACCEPTED"
    assert row.response_at is None

    # SENT jobs are not eligible for another dispatch.
    make_due(job.id)
    assert _dispatch(session_factory, providers) is None


def test_provider_timeout_is_a_transient_failure(db, session_factory, make_job):
    job = make_job(preferred_channel="EMAIL")
    release = threading.Event()
    providers = _providers()
    providers[NotificationChannel.EMAIL] = MockChannelProvider(
        NotificationChannel.EMAIL,
        on_send=lambda request: release.wait(2),
    )

    try:
        assert _dispatch(session_factory, providers, provider_timeout_seconds=0.1) == job.id
    finally:
        release.set()

    stored = _reload(db, job.id)
    _assert_invariants(db, stored)
    assert stored.status == "FAILED"
    assert stored.failed_at is None
    assert "PROVIDER_TIMEOUT" in stored.error_message
    row = list_attempts(db, job.id)[0]
    assert row.outcome == "TRANSIENT_FAILURE"
    assert row.response_data["in_flight"] is True


def test_unexpected_provider_exception_is_a_transient_failure(db, session_factory, make_job):
    job = make_job(preferred_channel="KAKAO")

    def _boom(request):
        raise ValueError("malformed gateway response")

    providers = _providers()
    providers[NotificationChannel.KAKAO] = MockChannelProvider(NotificationChannel.KAKAO, on_send=_boom)

    assert _dispatch(session_factory, providers) == job.id

    stored = _reload(db, job.id)
    assert stored.status == "FAILED"
    assert stored.attempts == 1
    assert "malformed gateway response" in stored.error_message
    assert job_phase(stored) == JobPhase.RETRY_SCHEDULED


def test_unconfigured_preferred_channel_is_skipped(db, session_factory, make_job):
    job = make_job(preferred_channel="KAKAO")
    sms = MockChannelProvider(NotificationChannel.SMS)

    assert _dispatch(session_factory, {NotificationChannel.SMS: sms}) == job.id

    assert _reload(db, job.id).current_channel == "SMS"
    assert len(sms.calls) == 1


def test_job_without_contact_data_fails_permanently(db, session_factory, make_job):
    job = make_job(recipient_phone=None, recipient_email=None, preferred_channel="SMS")
    providers = _providers()

    assert _dispatch(session_factory, providers) == job.id

    stored = _reload(db, job.id)
    _assert_invariants(db, stored)
    assert stored.status == "FAILED"
    assert stored.failed_at is not None
    assert stored.error_message.startswith("NO_CHANNEL_AVAILABLE")
    assert all(not provider.calls for provider in providers.values())


def test_crash_after_log_write_resumes_without_resending(db, session_factory, make_job):
    job = make_job(preferred_channel="SMS")
    providers = _providers()

    # Worker A claimed the job and logged a delivered attempt, then died.
    lease = claim_next_due_job(db, worker_id="worker-a", lease_seconds=60)
    now = utc_now(db)
    append_attempt(
        db,
        job_id=job.id,
        attempt_number=1,
        channel="SMS",
        status=NotificationStatus.DELIVERED,
        outcome=AttemptOutcome.DELIVERED,
        sent_at=now,
        response_at=now,
        response_data={"message_id": "SM123"},
    )
    db.commit()
    stored = _reload(db, lease.job_id)
    stored.lease_expires_at = now - timedelta(seconds=1)
    db.commit()

    assert _dispatch(session_factory, providers, worker_id="worker-b") == job.id

    stored = _reload(db, job.id)
    _assert_invariants(db, stored)
    assert stored.status == "DELIVERED"
    assert stored.attempts == 1
    assert stored.provider_message_id == "SM123"
    assert all(not provider.calls for provider in providers.values())


def test_reclaimed_lease_records_lost_attempt(db, session_factory, make_job):
    job = make_job(preferred_channel="SMS")
    providers = _providers()

    claim_next_due_job(db, worker_id="worker-a", lease_seconds=60)
    stored = _reload(db, job.id)
    stored.lease_expires_at = utc_now(db) - timedelta(seconds=1)
    db.commit()

    assert _dispatch(session_factory, providers, worker_id="worker-b") == job.id

    stored = _reload(db, job.id)
    _assert_invariants(db, stored)
    assert stored.attempts == 1
    assert stored.error_message == LEASE_EXPIRED_ERROR
    assert job_phase(stored) == JobPhase.RETRY_SCHEDULED
    assert providers[NotificationChannel.SMS].calls == []


def test_store_error_releases_lease_without_consuming_attempt(db, session_factory, make_job, monkeypatch):
    job = make_job()

    def _broken(*args, **kwargs):
        raise RuntimeError("store unavailable")

    monkeypatch.setattr("app.services.notification_dispatcher.list_attempts", _broken)

    with pytest.raises(RuntimeError):
        _dispatch(session_factory, _providers())

    stored = _reload(db, job.id)
    assert stored.attempts == 0
    assert stored.lease_token is None
    assert stored.status == "PENDING"


def test_concurrent_workers_never_duplicate_attempts(db, session_factory, make_job):
    jobs = [make_job(ticket_id=f"T-{i}", preferred_channel="SMS") for i in range(4)]
    providers = _providers()
    providers[NotificationChannel.SMS] = MockChannelProvider(
        NotificationChannel.SMS,
        on_send=lambda request: time.sleep(0.05),
    )
    worker_count = 10
    barrier = threading.Barrier(worker_count)

    def _worker(index):
        barrier.wait()
        return _dispatch(session_factory, providers, worker_id=f"worker-{index}")

    with ThreadPoolExecutor(max_workers=worker_count) as pool:
        results = list(pool.map(_worker, range(worker_count)))

    processed = [job_id for job_id in results if job_id is not None]
    assert sorted(processed) == sorted(job.id for job in jobs)
    assert len(providers[NotificationChannel.SMS].calls) == len(jobs)

    db.expire_all()
    for job in jobs:
        stored = _reload(db, job.id)
        _assert_invariants(db, stored)
        assert stored.status == "DELIVERED"
        assert [row.attempt_number for row in list_attempts(db, job.id)] == [1]


class _KakaoGateway(MockChannelProvider):
    """Answers the way the alimtalk gateway does: ids under its own keys."""

    def send(self, request, *, timeout_seconds):
        self.calls.append(dict(request))
        return self.accepted(message_id="K-1", response={"messageId": "K-1", "requestId": "R-9"})


def test_resumed_kakao_attempt_keeps_gateway_message_id(db, session_factory, make_job, monkeypatch):
    job = make_job(preferred_channel="KAKAO")
    providers = _providers()
    providers[NotificationChannel.KAKAO] = _KakaoGateway(NotificationChannel.KAKAO, supports_receipts=True)

    from app.services import notification_dispatcher

    real_complete = notification_dispatcher.complete_lease
    crashed = []

    def _crash_once(db, lease, values):
        # Worker dies between the attempt log commit and the job update.
        if not crashed:
            crashed.append(lease.job_id)
            return False
        return real_complete(db, lease, values)

    monkeypatch.setattr("app.services.notification_dispatcher.complete_lease", _crash_once)

    _dispatch(session_factory, providers, worker_id="worker-a")
    stored = _reload(db, job.id)
    assert stored.attempts == 0
    assert list_attempts(db, job.id)[0].response_data["message_id"] == "K-1"

    stored.lease_expires_at = utc_now(db) - timedelta(seconds=1)
    db.commit()
    assert _dispatch(session_factory, providers, worker_id="worker-b") == job.id

    stored = _reload(db, job.id)
    _assert_invariants(db, stored)
    assert stored.status == "SENT"
    assert stored.provider_message_id == "K-1"
    assert len(providers[NotificationChannel.KAKAO].calls) == 1


def test_queued_provider_calls_are_not_charged_against_the_deadline(monkeypatch):
    pool = ThreadPoolExecutor(max_workers=32, thread_name_prefix="notify-provider-test")
    monkeypatch.setattr("app.services.notification_dispatcher._executor", lambda: pool)
    provider = MockChannelProvider(NotificationChannel.SMS, on_send=lambda request: time.sleep(0.5))

    def _call(index):
        try:
            call_with_deadline(provider, {"to": f"+8210000{index:04d}"}, 0.8)
            return "sent"
        except ProviderTimeout:
            return "timeout"

    try:
        with ThreadPoolExecutor(max_workers=40) as callers:
            results = list(callers.map(_call, range(40)))
    finally:
        pool.shutdown(wait=True)

    assert results.count("timeout") == 0
    assert len(provider.calls) == 40


def test_call_that_never_started_is_reported_as_not_sent(monkeypatch):
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="notify-provider-test")
    monkeypatch.setattr("app.services.notification_dispatcher._executor", lambda: pool)
    busy = threading.Event()
    pool.submit(busy.wait, 5)
    provider = MockChannelProvider(NotificationChannel.EMAIL)

    try:
        with pytest.raises(ProviderTimeout) as excinfo:
            call_with_deadline(provider, {"to": "citizen@example.com"}, 0.1)
    finally:
        busy.set()
        pool.shutdown(wait=True)

    assert excinfo.value.response == {"sent": False}
    assert provider.calls == []


def test_provider_executor_grows_with_worker_count(monkeypatch):
    from app.core.config import get_settings
    from app.services import notification_dispatcher

    monkeypatch.setenv("NOTIFICATION_WORKER_COUNT", "64")
    get_settings.cache_clear()
    monkeypatch.setattr(notification_dispatcher, "_provider_executor", None)

    pool = notification_dispatcher._executor()
    try:
        assert pool._max_workers == 128
        assert notification_dispatcher._executor() is pool
    finally:
        pool.shutdown(wait=False)


def test_lease_never_shorter_than_provider_deadline_allows():
    assert min_lease_seconds(5) == 40
    assert min_lease_seconds(0.4) == 31


def test_short_lease_is_stretched_for_slow_providers(db, session_factory, make_job):
    job = make_job(preferred_channel="SMS")
    seen = {}

    def _peek(request):
        peek = session_factory()
        try:
            stored = peek.get(NotificationJob, job.id)
            seen["lease"] = stored.lease_expires_at - utc_now(peek)
        finally:
            peek.close()

    providers = _providers()
    providers[NotificationChannel.SMS] = MockChannelProvider(NotificationChannel.SMS, on_send=_peek)

    _dispatch(session_factory, providers, lease_seconds=5, provider_timeout_seconds=15)

    assert seen["lease"] > timedelta(seconds=min_lease_seconds(15) - 5)
