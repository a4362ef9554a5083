from __future__ import annotations

import asyncio
import logging
import random
import uuid
from typing import Callable, Mapping, Optional

from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.core.dependencies import SessionLocal
from app.schemas.notification import NotificationChannel
from app.services.channels import BaseChannelProvider, build_channel_providers
from app.services.delivery_confirmation import expire_unconfirmed_jobs
from app.services.notification_dispatcher import dispatch_once, min_lease_seconds
from app.services.notification_events import process_terminal_callbacks_once
from app.services.retry_policy import RetryPolicy

logger = logging.getLogger(__name__)


def run_confirmation_expiry(session_factory: Callable[[], Session], *, policy: RetryPolicy, limit: int = 100) -> int:
    db = session_factory()
    try:
        return expire_unconfirmed_jobs(db, limit=limit, policy=policy)
    finally:
        db.close()


def run_terminal_callbacks(session_factory: Callable[[], Session], *, batch_size: int = 50) -> int:
    db = session_factory()
    try:
        return process_terminal_callbacks_once(db, batch_size=batch_size)
    finally:
        db.close()


class DispatchWorkerPool:
    """
    N asyncio tasks, each pulling one due job at a time through ``dispatch_once``.

    ``dispatch_once`` blocks on the store and the provider, so it runs in a thread;
    a slow provider only stalls the worker that called it. One extra task expires
    SENT jobs whose receipt never arrived and posts queued terminal callbacks.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        providers: Mapping[NotificationChannel, BaseChannelProvider],
        *,
        worker_count: int = 4,
        poll_interval_seconds: float = 5.0,
        lease_seconds: int = 120,
        provider_timeout_seconds: float = 15.0,
        policy: Optional[RetryPolicy] = None,
        maintenance_interval_seconds: float = 60.0,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.session_factory = session_factory
        self.providers = dict(providers)
        self.worker_count = int(max(1, worker_count))
        self.poll_interval_seconds = float(max(0.01, poll_interval_seconds))
        self.provider_timeout_seconds = float(provider_timeout_seconds)
        self.lease_seconds = max(int(lease_seconds), min_lease_seconds(self.provider_timeout_seconds))
        self.policy = policy or RetryPolicy.from_settings()
        self.maintenance_interval_seconds = float(max(0.01, maintenance_interval_seconds))
        self.rng = rng
        self.processed = 0
        self._prefix = uuid.uuid4().hex[:6]
        self._tasks: list[asyncio.Task] = []
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def worker_ids(self) -> list[str]:
        return [f"dispatch-{self._prefix}-{index}" for index in range(self.worker_count)]

    def start(self) -> list[asyncio.Task]:
        if self.running:
            return self._tasks
        self._stop_event = asyncio.Event()
        self._tasks = [
            asyncio.create_task(self._worker_loop(worker_id), name=worker_id) for worker_id in self.worker_ids()
        ]
        self._tasks.append(asyncio.create_task(self._maintenance_loop(), name=f"dispatch-{self._prefix}-maint"))
        logger.info(
            "Dispatch worker pool started workers=%s channels=%s",
            self.worker_count,
            sorted(c.value for c in self.providers),
        )
        return self._tasks

    async def stop(self, timeout_seconds: float = 30.0) -> None:
        """Lets in-flight cycles finish, then cancels whatever is still running after the timeout."""
        tasks, self._tasks = self._tasks, []
        if self._stop_event is not None:
            self._stop_event.set()
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=timeout_seconds)
            for task in pending:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Dispatch worker pool stopped processed=%s", self.processed)

    def _stopping(self) -> bool:
        return self._stop_event is not None and self._stop_event.is_set()

    async def _sleep(self, seconds: float) -> None:
        # Wakes up early when stop() is called.
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    def _dispatch(self, worker_id: str):
        return dispatch_once(
            self.session_factory,
            worker_id=worker_id,
            providers=self.providers,
            lease_seconds=self.lease_seconds,
            provider_timeout_seconds=self.provider_timeout_seconds,
            policy=self.policy,
            rng=self.rng,
        )

    async def _worker_loop(self, worker_id: str) -> None:
        # Backoff on errors to avoid tight loops.
        error_sleep = max(1.0, min(60.0, self.poll_interval_seconds * 2))
        while not self._stopping():
            try:
                job_id = await asyncio.to_thread(self._dispatch, worker_id)
                if job_id is None:
                    await self._sleep(self.poll_interval_seconds)
                    continue
                self.processed += 1
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Dispatch worker error worker=%s", worker_id)
                await self._sleep(error_sleep)

    async def _maintenance_loop(self) -> None:
        error_sleep = max(1.0, min(60.0, self.maintenance_interval_seconds))
        while not self._stopping():
            try:
                await asyncio.to_thread(run_confirmation_expiry, self.session_factory, policy=self.policy)
                await asyncio.to_thread(run_terminal_callbacks, self.session_factory)
                await self._sleep(self.maintenance_interval_seconds)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Notification maintenance worker error")
                await self._sleep(error_sleep)


def start_dispatch_worker_pool() -> DispatchWorkerPool | None:
    """
    Starts the in-process dispatch pool when ENABLE_NOTIFICATION_WORKER is set.
    Callers keep the returned pool to stop it on shutdown.
    """
    settings = get_settings()
    if not settings.enable_notification_worker:
        return None
    if SessionLocal is None:
        logger.warning("DATABASE_URL is not configured – dispatch worker pool not started")
        return None

    providers = build_channel_providers()
    if not providers:
        logger.warning("No notification channel is configured – dispatch worker pool not started")
        return None

    provider_timeout = float(max(1.0, settings.notification_provider_timeout_seconds))
    lease_seconds = int(settings.notification_lease_seconds)
    if lease_seconds < min_lease_seconds(provider_timeout):
        logger.warning(
            "NOTIFICATION_LEASE_SECONDS=%s is shorter than the provider deadline allows; using %s",
            lease_seconds,
            min_lease_seconds(provider_timeout),
        )

    pool = DispatchWorkerPool(
        SessionLocal,
        providers,
        worker_count=int(max(1, min(64, settings.notification_worker_count))),
        poll_interval_seconds=float(max(0.5, min(300.0, settings.notification_poll_interval_seconds))),
        lease_seconds=lease_seconds,
        provider_timeout_seconds=provider_timeout,
        policy=RetryPolicy.from_settings(),
    )
    pool.start()
    return pool
