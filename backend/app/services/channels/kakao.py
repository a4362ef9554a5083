"""KAKAO alimtalk provider (HTTP gateway)."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from app.schemas.notification import NotificationChannel

from .base import BaseChannelProvider, PermanentProviderError, ProviderResult, TransientProviderError

logger = logging.getLogger(__name__)

# Alimtalk template codes registered with Kakao, one per notification type.
TEMPLATE_CODES: dict[str, str] = {
    "TICKET_RECEIVED": "civic_ticket_received",
    "TICKET_ASSIGNED": "civic_ticket_assigned",
    "TICKET_REPLIED": "civic_ticket_replied",
    "TICKET_CLOSED": "civic_ticket_closed",
    "SLA_WARNING": "civic_sla_warning",
    "SATISFACTION_REQUEST": "civic_satisfaction",
}


class KakaoAlimtalkProvider(BaseChannelProvider):
    name = "kakao"
    channel = NotificationChannel.KAKAO

    def __init__(
        self,
        *,
        api_url: str,
        api_key: str,
        sender_key: str,
        callback_url: str = "",
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._api_url = api_url.rstrip("/")
        self._api_key = api_key
        self._sender_key = sender_key
        self._callback_url = callback_url
        self._transport = transport
        self.supports_receipts = bool(callback_url)

    def send(self, request: dict[str, Any], *, timeout_seconds: float) -> ProviderResult:
        to_phone = str(request.get("to") or "").strip()
        if not to_phone:
            raise PermanentProviderError("KAKAO_MISSING_RECIPIENT")

        body: dict[str, Any] = {
            "senderKey": self._sender_key,
            "templateCode": TEMPLATE_CODES.get(str(request.get("type")), "civic_generic"),
            "recipientNo": to_phone,
            "content": request.get("message") or "",
            "templateParameter": request.get("template_data") or {},
        }
        if self._callback_url:
            body["callbackUrl"] = self._callback_url

        try:
            with httpx.Client(timeout=timeout_seconds, transport=self._transport) as client:
                resp = client.post(
                    f"{self._api_url}/alimtalk/v2/messages",
                    headers={
                        "Authorization": f"Bearer {self._api_key}",
                        "Content-Type": "application/json",
                    },
                    json=body,
                )
        except httpx.TimeoutException as exc:
            raise TransientProviderError(f"KAKAO_TIMEOUT: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientProviderError(f"KAKAO_NETWORK: {exc}") from exc

        try:
            data = resp.json()
        except ValueError:
            data = {"raw": resp.text[:500]}
        if not isinstance(data, dict):
            data = {"raw": data}

        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientProviderError(f"KAKAO_HTTP_{resp.status_code}", response=data)
        if resp.status_code >= 400:
            raise PermanentProviderError(
                f"KAKAO_HTTP_{resp.status_code}: {data.get('message') or data.get('resultMessage') or ''}".rstrip(": "),
                response=data,
            )

        message_id = data.get("messageId") or data.get("requestId")
        logger.info("Kakao alimtalk accepted message_id=%s", message_id)
        return self.accepted(message_id=str(message_id) if message_id else None, response=data)
