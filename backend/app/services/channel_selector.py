from __future__ import annotations

from typing import Collection, Optional, Sequence

from app.schemas.notification import NotificationChannel

# Fallback order. Product has not confirmed it; it mirrors the channel enum order.
CHANNEL_PRIORITY: tuple[NotificationChannel, ...] = (
    NotificationChannel.KAKAO,
    NotificationChannel.SMS,
    NotificationChannel.EMAIL,
)


class NoChannelAvailable(Exception):
    """No channel can reach the recipient. Fatal for the job, never retried."""


def _has_contact(job, channel: NotificationChannel) -> bool:
    if channel in (NotificationChannel.KAKAO, NotificationChannel.SMS):
        value = job.recipient_phone
    else:
        value = job.recipient_email
    return bool((value or "").strip())


def available_channels(
    job,
    enabled_channels: Optional[Collection[NotificationChannel]] = None,
) -> list[NotificationChannel]:
    channels = [c for c in CHANNEL_PRIORITY if _has_contact(job, c)]
    if enabled_channels is not None:
        enabled = {NotificationChannel(c) for c in enabled_channels}
        channels = [c for c in channels if c in enabled]
    return channels


def select_channel(
    job,
    prior_channels: Sequence[str] = (),
    enabled_channels: Optional[Collection[NotificationChannel]] = None,
) -> NotificationChannel:
    """
    Pick the channel for the next attempt of ``job``.

    ``prior_channels`` are the channels of earlier attempts, oldest first.
    """
    available = available_channels(job, enabled_channels)
    if not available:
        raise NoChannelAvailable("No contact data for any enabled channel")

    preferred = NotificationChannel(job.preferred_channel)
    tried = [NotificationChannel(c) for c in prior_channels]

    if not tried:
        return preferred if preferred in available else available[0]

    untried = [c for c in available if c not in tried]
    if untried:
        return untried[0]

    # Reached only by callers passing a spent budget; the dispatcher stops selecting
    # once attempts == max_attempts, so its jobs always get past this check.
    if int(job.max_attempts or 0) <= len(available):
        raise NoChannelAvailable("All channels exhausted")

    # Wrap around: round-robin over the available channels starting at the preferred one.
    start = available.index(preferred) if preferred in available else 0
    cycle = available[start:] + available[:start]
    last = tried[-1]
    if last not in cycle:
        return cycle[0]
    wraps_done = len(tried) - len(set(tried))
    if wraps_done == 0:
        return cycle[0]
    return cycle[(cycle.index(last) + 1) % len(cycle)]
