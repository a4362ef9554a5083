"""Email provider (SMTP)."""

from __future__ import annotations

import logging
import smtplib
import ssl
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Any, Optional

from app.schemas.notification import NotificationChannel

from .base import BaseChannelProvider, PermanentProviderError, ProviderResult, TransientProviderError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SmtpConfig:
    host: str
    port: int
    user: Optional[str]
    password: Optional[str]
    use_tls: bool
    from_email: str
    from_name: str = "CivicAid"


def build_email_message(*, smtp: SmtpConfig, request: dict[str, Any]) -> EmailMessage:
    msg = EmailMessage()
    msg["From"] = f"{smtp.from_name} <{smtp.from_email}>"
    msg["To"] = request["to"]
    msg["Subject"] = request["subject"]
    msg["Message-ID"] = make_msgid(domain=smtp.from_email.split("@")[-1] or None)
    msg.set_content(request.get("body_text") or "")
    if request.get("body_html"):
        msg.add_alternative(request["body_html"], subtype="html")
    return msg


class SmtpEmailProvider(BaseChannelProvider):
    """SMTP has no delivery receipts: an accepted message counts as delivered."""

    name = "smtp"
    channel = NotificationChannel.EMAIL

    def __init__(self, smtp: SmtpConfig) -> None:
        self._smtp = smtp

    def _connect(self, timeout_seconds: float) -> smtplib.SMTP:
        context = ssl.create_default_context()
        # Port 465 uses implicit SSL (SMTP_SSL), port 587 uses STARTTLS
        if self._smtp.port == 465:
            return smtplib.SMTP_SSL(self._smtp.host, self._smtp.port, timeout=timeout_seconds, context=context)
        server = smtplib.SMTP(self._smtp.host, self._smtp.port, timeout=timeout_seconds)
        if self._smtp.use_tls:
            server.starttls(context=context)
        return server

    def send(self, request: dict[str, Any], *, timeout_seconds: float) -> ProviderResult:
        if not str(request.get("to") or "").strip():
            raise PermanentProviderError("EMAIL_MISSING_RECIPIENT")

        msg = build_email_message(smtp=self._smtp, request=request)
        try:
            server = self._connect(timeout_seconds)
            try:
                if self._smtp.user and self._smtp.password:
                    server.login(self._smtp.user, self._smtp.password)
                refused = server.send_message(msg)
            finally:
                try:
                    server.quit()
                except (smtplib.SMTPException, OSError):
                    logger.debug("SMTP quit failed", exc_info=True)
        except smtplib.SMTPRecipientsRefused as exc:
            raise PermanentProviderError(
                "EMAIL_RECIPIENT_REFUSED",
                response={"refused": {k: [v[0], str(v[1])] for k, v in exc.recipients.items()}},
            ) from exc
        except smtplib.SMTPResponseException as exc:
            # 5xx replies are hard failures, 4xx are temporary.
            error_cls = PermanentProviderError if 500 <= int(exc.smtp_code) < 600 else TransientProviderError
            raise error_cls(
                f"SMTP_{exc.smtp_code}: {exc.smtp_error!r}",
                response={"smtp_code": exc.smtp_code},
            ) from exc
        except (smtplib.SMTPException, OSError) as exc:
            raise TransientProviderError(f"SMTP_UNAVAILABLE: {exc}") from exc

        if refused:
            raise PermanentProviderError("EMAIL_RECIPIENT_REFUSED", response={"refused": list(refused)})

        message_id = str(msg["Message-ID"])
        logger.info("Email sent message_id=%s", message_id)
        return self.accepted(message_id=message_id, response={"message_id": message_id})
