import logging
import time
from collections import deque
from threading import Lock
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SECONDS = 3600
DEFAULT_THRESHOLDS = {
    "NOTIFICATION_TERMINAL_FAILED": 10,
    "NOTIFICATION_PROVIDER_TRANSIENT": 25,
    "NOTIFICATION_PROVIDER_TIMEOUT": 10,
    "NOTIFICATION_LEASE_EXPIRED": 3,
    "RECEIPT_SIGNATURE_INVALID": 5,
    "NOTIFICATION_CALLBACK_FAILED": 1,
}


class DeliveryAlertTracker:
    """
    Counts delivery problems per (event, channel) in a sliding window and logs an
    ALERT line each time a bucket reaches a multiple of its threshold.
    """

    def __init__(self, window_seconds: int, thresholds: dict[str, int]) -> None:
        self._window_seconds = window_seconds
        self._thresholds = thresholds
        self._events: dict[tuple[str, str], deque[float]] = {}
        self._lock = Lock()

    def record(self, event: str, *, channel: Optional[str] = None, detail: Optional[dict] = None) -> int:
        limit = self._thresholds.get(event)
        if not limit:
            return 0
        key = (event, channel or "-")
        now = time.monotonic()
        with self._lock:
            window = self._events.setdefault(key, deque())
            while window and window[0] <= now - self._window_seconds:
                window.popleft()
            window.append(now)
            count = len(window)
        if count % limit == 0:
            logger.warning(
                "ALERT notification_event=%s channel=%s count=%s window_seconds=%s detail=%s",
                event,
                key[1],
                count,
                self._window_seconds,
                detail or {},
            )
        return count

    def reset(self) -> None:
        with self._lock:
            self._events.clear()


alert_tracker = DeliveryAlertTracker(DEFAULT_WINDOW_SECONDS, DEFAULT_THRESHOLDS)
