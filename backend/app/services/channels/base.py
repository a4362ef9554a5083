"""Abstract base for notification channel providers."""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from typing import Any, Optional

from app.schemas.notification import AttemptOutcome, NotificationChannel


class ChannelProviderError(RuntimeError):
    """A provider call failed. ``response`` holds whatever the provider returned."""

    permanent: bool = False

    def __init__(self, message: str, *, response: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.response = response


class TransientProviderError(ChannelProviderError):
    """Timeouts, 5xx, rate limits, network errors. Retried."""


class PermanentProviderError(ChannelProviderError):
    """Invalid recipient, hard bounce. Never retried."""

    permanent = True


class ProviderTimeout(TransientProviderError):
    pass


@dataclass(frozen=True)
class ProviderResult:
    """Immutable result returned by every provider."""

    outcome: AttemptOutcome
    provider: str
    message_id: Optional[str] = None
    response: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


class BaseChannelProvider(abc.ABC):
    """Contract that every channel provider must implement."""

    name: str = "base"
    channel: NotificationChannel

    # True when the provider reports final delivery later through a receipt.
    supports_receipts: bool = False

    def accepted(self, *, message_id: Optional[str], response: dict[str, Any]) -> ProviderResult:
        outcome = AttemptOutcome.ACCEPTED if self.supports_receipts else AttemptOutcome.DELIVERED
        return ProviderResult(outcome=outcome, provider=self.name, message_id=message_id, response=response)

    @abc.abstractmethod
    def send(self, request: dict[str, Any], *, timeout_seconds: float) -> ProviderResult:
        """Deliver ``request`` (see ``build_request_payload``) and return a ``ProviderResult``.

        Failures are raised as ``TransientProviderError`` / ``PermanentProviderError``.
        """
