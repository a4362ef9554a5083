"""Provider factory: builds the configured adapter for each channel."""

from __future__ import annotations

import logging

from app.core.config import get_settings
from app.schemas.notification import NotificationChannel

from .base import (
    BaseChannelProvider,
    ChannelProviderError,
    PermanentProviderError,
    ProviderResult,
    ProviderTimeout,
    TransientProviderError,
)
from .mock import MockChannelProvider

logger = logging.getLogger(__name__)

__all__ = [
    "build_channel_providers",
    "get_channel_provider",
    "BaseChannelProvider",
    "ChannelProviderError",
    "MockChannelProvider",
    "PermanentProviderError",
    "ProviderResult",
    "ProviderTimeout",
    "TransientProviderError",
]


def get_channel_provider(channel: NotificationChannel) -> BaseChannelProvider | None:
    """Return the provider for *channel*, or None when it is not configured.

    Unconfigured channels are left out of channel selection instead of failing
    every attempt. ``NOTIFICATION_USE_MOCK_PROVIDERS=true`` swaps in mocks.
    """
    settings = get_settings()
    channel = NotificationChannel(channel)

    if settings.notification_use_mock_providers:
        return MockChannelProvider(channel)

    if channel == NotificationChannel.SMS:
        if not (settings.twilio_account_sid and settings.twilio_auth_token and settings.twilio_from_number):
            logger.warning("Twilio is not configured – SMS channel disabled")
            return None
        from .sms import TwilioSmsProvider

        return TwilioSmsProvider(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            from_number=settings.twilio_from_number,
            status_callback_url=settings.twilio_status_callback_url,
            redact=settings.pii_redaction_enabled,
        )

    if channel == NotificationChannel.KAKAO:
        if not (settings.kakao_api_url and settings.kakao_api_key and settings.kakao_sender_key):
            logger.warning("Kakao gateway is not configured – KAKAO channel disabled")
            return None
        from .kakao import KakaoAlimtalkProvider

        return KakaoAlimtalkProvider(
            api_url=settings.kakao_api_url,
            api_key=settings.kakao_api_key,
            sender_key=settings.kakao_sender_key,
            callback_url=settings.kakao_callback_url,
        )

    if channel == NotificationChannel.EMAIL:
        if not (settings.smtp_host and settings.smtp_from_email):
            logger.warning("SMTP is not configured – EMAIL channel disabled")
            return None
        from .email import SmtpConfig, SmtpEmailProvider

        return SmtpEmailProvider(
            SmtpConfig(
                host=settings.smtp_host,
                port=int(settings.smtp_port),
                user=settings.smtp_user or None,
                password=settings.smtp_password or None,
                use_tls=settings.smtp_use_tls,
                from_email=settings.smtp_from_email,
            )
        )

    logger.warning("Unknown channel %r", channel)
    return None


def build_channel_providers() -> dict[NotificationChannel, BaseChannelProvider]:
    providers: dict[NotificationChannel, BaseChannelProvider] = {}
    for channel in NotificationChannel:
        provider = get_channel_provider(channel)
        if provider is not None:
            providers[channel] = provider
    return providers
