"""SMS provider (Twilio Programmable Messaging)."""

from __future__ import annotations

import logging
from typing import Any

from twilio.base.exceptions import TwilioRestException
from twilio.http.http_client import TwilioHttpClient
from twilio.rest import Client

from app.schemas.notification import NotificationChannel

from .base import BaseChannelProvider, PermanentProviderError, ProviderResult, TransientProviderError

logger = logging.getLogger(__name__)

# Twilio error codes that will never succeed on retry for the same recipient.
PERMANENT_TWILIO_CODES = frozenset(
    {
        21211,  # invalid 'To' number
        21214,  # 'To' number cannot be reached
        21408,  # region not enabled
        21610,  # recipient unsubscribed (STOP)
        21612,  # cannot route to this number
        21614,  # 'To' is not a mobile number
    }
)


def redact_phone(value: str) -> str:
    if not value:
        return ""
    # Keep last 3 digits for operator traceability; mask the rest.
    tail = value[-3:] if len(value) >= 3 else value
    return f"***{tail}"


def classify_twilio_error(exc: TwilioRestException) -> type[TransientProviderError] | type[PermanentProviderError]:
    status = int(getattr(exc, "status", 0) or 0)
    code = int(getattr(exc, "code", 0) or 0)
    if code in PERMANENT_TWILIO_CODES:
        return PermanentProviderError
    if status == 429 or status >= 500 or status in (401, 403) or status == 0:
        return TransientProviderError
    return PermanentProviderError


class TwilioSmsProvider(BaseChannelProvider):
    name = "twilio"
    channel = NotificationChannel.SMS

    def __init__(
        self,
        *,
        account_sid: str,
        auth_token: str,
        from_number: str,
        status_callback_url: str = "",
        redact: bool = True,
    ) -> None:
        self._account_sid = account_sid
        self._auth_token = auth_token
        self._from_number = from_number
        self._status_callback_url = status_callback_url
        self._redact = redact
        self.supports_receipts = bool(status_callback_url)

    def _client(self, timeout_seconds: float) -> Client:
        return Client(
            self._account_sid,
            self._auth_token,
            http_client=TwilioHttpClient(timeout=timeout_seconds),
        )

    def send(self, request: dict[str, Any], *, timeout_seconds: float) -> ProviderResult:
        to_number = str(request.get("to") or "").strip()
        body = str(request.get("message") or "").strip()
        if not to_number:
            raise PermanentProviderError("SMS_MISSING_RECIPIENT")
        if not body:
            raise PermanentProviderError("SMS_EMPTY_MESSAGE")

        log_to = redact_phone(to_number) if self._redact else to_number
        params: dict[str, Any] = {"to": to_number, "from_": self._from_number, "body": body}
        if self._status_callback_url:
            params["status_callback"] = self._status_callback_url

        try:
            message = self._client(timeout_seconds).messages.create(**params)
        except TwilioRestException as exc:
            error_cls = classify_twilio_error(exc)
            logger.warning(
                "Twilio API error sending SMS to=%s status=%s code=%s",
                log_to,
                getattr(exc, "status", None),
                getattr(exc, "code", None),
            )
            raise error_cls(
                f"TWILIO_{getattr(exc, 'code', None) or getattr(exc, 'status', 'ERROR')}: {exc.msg}",
                response={"status": getattr(exc, "status", None), "code": getattr(exc, "code", None)},
            ) from exc

        logger.info("SMS sent to=%s sid=%s", log_to, message.sid)
        return self.accepted(
            message_id=message.sid,
            response={"sid": message.sid, "status": getattr(message, "status", None)},
        )
