import ipaddress
import time
from collections import deque
from threading import Lock
from typing import Optional

from fastapi import Request

from app.core.config import get_settings

WEBHOOK_PATH_PREFIX = "/api/v1/webhook/notifications"


class SlidingWindowRateLimiter:
    """Per-key request timestamps; keys with no hits inside the window are dropped."""

    def __init__(self, *, max_keys: int = 50_000, prune_every_seconds: int = 60) -> None:
        self._hits: dict[str, deque[float]] = {}
        self._lock = Lock()
        self._max_keys = max_keys
        self._prune_every_seconds = max(1, int(prune_every_seconds))
        self._pruned_at = 0.0

    def allow(self, key: str, limit: int, window_seconds: int) -> tuple[bool, int]:
        if limit <= 0 or window_seconds <= 0:
            return True, 0
        now = time.monotonic()
        cutoff = now - window_seconds
        with self._lock:
            if len(self._hits) > self._max_keys or now - self._pruned_at >= self._prune_every_seconds:
                self._prune(cutoff)
                self._pruned_at = now

            hits = self._hits.setdefault(key, deque())
            while hits and hits[0] <= cutoff:
                hits.popleft()
            if len(hits) >= limit:
                return False, len(hits)
            hits.append(now)
            return True, len(hits)

    def _prune(self, cutoff: float) -> None:
        for key in list(self._hits):
            hits = self._hits[key]
            while hits and hits[0] <= cutoff:
                hits.popleft()
            if not hits:
                del self._hits[key]

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()
            self._pruned_at = 0.0


rate_limiter = SlidingWindowRateLimiter()


def ip_in_networks(ip: str, networks: list[str]) -> bool:
    try:
        ip_obj = ipaddress.ip_address(ip)
    except ValueError:
        return ip in networks
    for entry in networks:
        try:
            if ip_obj in ipaddress.ip_network(entry, strict=False):
                return True
        except ValueError:
            if entry == ip:
                return True
    return False


def get_client_ip(request: Request, trusted_proxy_cidrs: Optional[list[str]] = None) -> Optional[str]:
    """Peer address, or the forwarded client address when the peer is a trusted proxy.

    Forwarded headers from untrusted peers are ignored so callers cannot spoof
    their rate-limit bucket.
    """
    peer_ip = request.client.host if request.client else None
    trusted = trusted_proxy_cidrs if trusted_proxy_cidrs is not None else get_settings().trusted_proxy_cidrs
    if not (peer_ip and trusted and ip_in_networks(peer_ip, trusted)):
        return peer_ip

    real_ip = (request.headers.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip
    forwarded = [part.strip() for part in (request.headers.get("x-forwarded-for") or "").split(",") if part.strip()]
    # Rightmost entry was added by the nearest trusted proxy.
    return forwarded[-1] if forwarded else peer_ip


def webhook_rate_limit_key(request: Request) -> Optional[str]:
    if request.method != "POST" or not request.url.path.startswith(WEBHOOK_PATH_PREFIX):
        return None
    source = request.url.path[len(WEBHOOK_PATH_PREFIX):].strip("/") or "receipt"
    return f"{source}:ip:{get_client_ip(request) or 'unknown'}"
