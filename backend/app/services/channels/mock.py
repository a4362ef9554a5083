"""Mock provider with deterministic responses for tests and local development."""

from __future__ import annotations

import uuid
from typing import Any, Callable, Optional

from app.schemas.notification import AttemptOutcome, NotificationChannel

from .base import BaseChannelProvider, PermanentProviderError, ProviderResult, TransientProviderError


class MockChannelProvider(BaseChannelProvider):
    """
    Records every request. ``script`` lists outcomes to play back in order; once it is
    exhausted every call succeeds. ``on_send`` lets tests block or raise mid-call.
    """

    name = "mock"

    def __init__(
        self,
        channel: NotificationChannel,
        *,
        supports_receipts: bool = False,
        script: Optional[list[AttemptOutcome]] = None,
        on_send: Optional[Callable[[dict[str, Any]], None]] = None,
    ) -> None:
        self.channel = NotificationChannel(channel)
        self.supports_receipts = supports_receipts
        self.script = list(script or [])
        self.on_send = on_send
        self.calls: list[dict[str, Any]] = []

    def send(self, request: dict[str, Any], *, timeout_seconds: float) -> ProviderResult:
        self.calls.append(dict(request))
        if self.on_send is not None:
            self.on_send(request)

        outcome = AttemptOutcome(self.script.pop(0)) if self.script else None
        if outcome == AttemptOutcome.TRANSIENT_FAILURE:
            raise TransientProviderError(f"MOCK_{self.channel.value}_UNAVAILABLE", response={"mock": True})
        if outcome == AttemptOutcome.PERMANENT_FAILURE:
            raise PermanentProviderError(f"MOCK_{self.channel.value}_INVALID_RECIPIENT", response={"mock": True})

        message_id = f"mock-{uuid.uuid4().hex[:12]}"
        response = {"mock": True, "message_id": message_id}
        if outcome is None:
            return self.accepted(message_id=message_id, response=response)
        return ProviderResult(outcome=outcome, provider=self.name, message_id=message_id, response=response)
