from datetime import datetime, timedelta
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import httpx
import pytest

from app.core.config import get_settings
from app.models.notification import NotificationJob
from app.services.notification_events import (
    TerminalEvent,
    emit_terminal_event,
    event_from_job,
    post_terminal_webhook,
    process_terminal_callbacks_once,
    register_terminal_listener,
    terminal_callback_values,
    unregister_terminal_listener,
)
from app.services.retry_policy import RetryPolicy
from app.utils.clock import utc_now

FAILED_AT = datetime(2026, 10, 18, 9, 30, 0)
WEBHOOK_URL = "https://tickets.example.com/hooks/notifications"


def _event(**overrides):
    values = {
        "job_id": "job-1",
        "ticket_id": "T-1001",
        "type": "TICKET_RECEIVED",
        "status": "FAILED",
        "channel": "EMAIL",
        "attempts": 3,
        "error_message": "SMTP_UNAVAILABLE",
        "occurred_at": FAILED_AT,
    }
    values.update(overrides)
    return TerminalEvent(**values)


@pytest.fixture
def listeners():
    registered = []

    def _register(listener):
        register_terminal_listener(listener)
        registered.append(listener)
        return listener

    yield _register
    for listener in registered:
        unregister_terminal_listener(listener)


def test_event_from_failed_job():
    job = SimpleNamespace(
        id="job-1",
        ticket_id="T-1001",
        type="TICKET_RECEIVED",
        status="FAILED",
        current_channel="EMAIL",
        attempts=3,
        error_message="SMTP_UNAVAILABLE",
        delivered_at=None,
        failed_at=FAILED_AT,
    )
    event = event_from_job(job)
    assert event == _event()
    assert event.as_payload()["occurred_at"] == "2026-10-18T09:30:00"


def test_failing_listener_does_not_stop_the_others(listeners, monkeypatch):
    monkeypatch.delenv("NOTIFICATION_TERMINAL_WEBHOOK_URL", raising=False)
    get_settings.cache_clear()
    seen = []

    def _broken(event):
        raise RuntimeError("ticket service down")

    listeners(_broken)
    listeners(seen.append)

    emit_terminal_event(_event())

    assert seen == [_event()]


def test_register_is_idempotent(listeners):
    seen = []
    listeners(seen.append)
    register_terminal_listener(seen.append)

    emit_terminal_event(_event())
    assert len(seen) == 1


def test_post_terminal_webhook_skipped_without_url(monkeypatch):
    monkeypatch.delenv("NOTIFICATION_TERMINAL_WEBHOOK_URL", raising=False)
    get_settings.cache_clear()

    with patch("app.services.notification_events.httpx.Client") as client_cls:
        post_terminal_webhook(_event())
    client_cls.assert_not_called()


def test_post_terminal_webhook_sends_payload(monkeypatch):
    monkeypatch.setenv("NOTIFICATION_TERMINAL_WEBHOOK_URL", WEBHOOK_URL)
    monkeypatch.setenv("NOTIFICATION_API_TOKEN", "internal-token")
    get_settings.cache_clear()

    with patch("app.services.notification_events.httpx.Client") as client_cls:
        client = client_cls.return_value.__enter__.return_value
        client.post.return_value = MagicMock()
        post_terminal_webhook(_event())

    args, kwargs = client.post.call_args
    assert args[0] == WEBHOOK_URL
    assert kwargs["json"]["ticket_id"] == "T-1001"
    assert kwargs["json"]["status"] == "FAILED"
    assert kwargs["headers"]["X-Internal-Token"] == "internal-token"
    client.post.return_value.raise_for_status.assert_called_once()


@pytest.fixture
def webhook_url(monkeypatch):
    monkeypatch.setenv("NOTIFICATION_TERMINAL_WEBHOOK_URL", WEBHOOK_URL)
    get_settings.cache_clear()
    return WEBHOOK_URL


@pytest.fixture
def failed_job(db, make_job):
    """A terminally failed job with its ticket callback queued and due."""
    job = make_job(preferred_channel="EMAIL")
    now = utc_now(db)
    job.status = "FAILED"
    job.attempts = 3
    job.current_channel = "EMAIL"
    job.error_message = "SMTP_UNAVAILABLE"
    job.failed_at = now
    job.callback_status = "PENDING"
    job.callback_attempts = 0
    job.callback_next_attempt_at = now - timedelta(seconds=1)
    db.commit()
    return job


def _reload(db, job_id) -> NotificationJob:
    return db.get(NotificationJob, job_id, populate_existing=True)


def test_emit_terminal_event_leaves_the_webhook_to_the_callback_queue(listeners, webhook_url):
    seen = []
    listeners(seen.append)

    with patch("app.services.notification_events.httpx.Client") as client_cls:
        emit_terminal_event(_event())

    client_cls.assert_not_called()
    assert seen == [_event()]


def test_no_callback_queued_without_webhook_url(db, failed_job, monkeypatch):
    monkeypatch.delenv("NOTIFICATION_TERMINAL_WEBHOOK_URL", raising=False)
    get_settings.cache_clear()

    assert terminal_callback_values(utc_now(db)) == {}
    with patch("app.services.notification_events.post_terminal_webhook") as post:
        assert process_terminal_callbacks_once(db) == 0
    post.assert_not_called()


def test_queued_callback_is_posted_once(db, failed_job, webhook_url):
    with patch("app.services.notification_events.post_terminal_webhook") as post:
        assert process_terminal_callbacks_once(db) == 1
        assert process_terminal_callbacks_once(db) == 0

    post.assert_called_once()
    event = post.call_args.args[0]
    assert event.job_id == str(failed_job.id)
    assert event.status == "FAILED"
    assert event.error_message == "SMTP_UNAVAILABLE"

    stored = _reload(db, failed_job.id)
    assert stored.callback_status == "SENT"
    assert stored.callback_attempts == 1
    assert stored.callback_next_attempt_at is None


def test_failed_callback_is_retried_with_backoff(db, failed_job, webhook_url):
    policy = RetryPolicy(base_seconds=60, max_seconds=3600, jitter_ratio=0.0)
    before = utc_now(db)

    with patch(
        "app.services.notification_events.post_terminal_webhook",
        side_effect=httpx.ConnectError("connection refused"),
    ) as post:
        assert process_terminal_callbacks_once(db, policy=policy) == 0
        # Not due again until the backoff passes.
        assert process_terminal_callbacks_once(db, policy=policy) == 0

    post.assert_called_once()
    stored = _reload(db, failed_job.id)
    assert stored.callback_status == "RETRY"
    assert stored.callback_attempts == 1
    assert stored.callback_next_attempt_at >= before + timedelta(seconds=60)
    assert "ConnectError" in stored.callback_last_error
    assert stored.status == "FAILED"


def test_callback_gives_up_after_max_attempts(db, failed_job, webhook_url):
    failed_job.callback_status = "RETRY"
    failed_job.callback_attempts = 1
    db.commit()

    with patch(
        "app.services.notification_events.post_terminal_webhook",
        side_effect=httpx.HTTPStatusError("503", request=MagicMock(), response=MagicMock()),
    ):
        assert process_terminal_callbacks_once(db, max_attempts=2) == 0

    stored = _reload(db, failed_job.id)
    assert stored.callback_status == "FAILED"
    assert stored.callback_attempts == 2
    assert stored.callback_next_attempt_at is None
    assert stored.callback_last_error.startswith("HTTPStatusError")
