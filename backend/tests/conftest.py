import random
from datetime import timedelta

import pytest

from app.core.config import get_settings
from app.core.dependencies import build_engine, build_session_factory
from app.models.notification import Base
from app.utils.alerting import alert_tracker
from app.utils.rate_limit import rate_limiter


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    # Some tests mutate env vars and clear the settings cache. Ensure we don't leak
    # a cached Settings instance across tests.
    get_settings.cache_clear()
    alert_tracker.reset()
    rate_limiter.reset()
    yield
    get_settings.cache_clear()


@pytest.fixture
def engine(tmp_path):
    # File-backed so worker threads each get their own connection to the same store.
    eng = build_engine(f"sqlite:///{tmp_path / 'notifications.db'}")
    Base.metadata.create_all(eng)
    yield eng
    Base.metadata.drop_all(eng)
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def rng():
    return random.Random(7)


@pytest.fixture
def make_job(db):
    from app.services.notification_queue import enqueue_notification
    from app.utils.clock import utc_now

    def _make(**overrides):
        values = {
            "ticket_id": "T-1001",
            "type": "TICKET_RECEIVED",
            "recipient_name": "홍길동",
            "recipient_phone": "+821012345678",
            "recipient_email": "citizen@example.com",
            "template_data": {"ticketNumber": "2026-0001"},
            "preferred_channel": "KAKAO",
            "max_attempts": 3,
            # Slightly in the past so the job is due immediately.
            "scheduled_at": utc_now(db) - timedelta(seconds=1),
        }
        values.update(overrides)
        job = enqueue_notification(db, **values)
        db.commit()
        return job

    return _make


@pytest.fixture
def make_due(db):
    """Pulls a job's scheduled_at into the past so the next dispatch picks it up."""

    from app.models.notification import NotificationJob
    from app.utils.clock import utc_now

    def _due(job_id):
        job = db.get(NotificationJob, job_id, populate_existing=True)
        job.scheduled_at = utc_now(db) - timedelta(seconds=1)
        db.commit()
        return job

    return _due
