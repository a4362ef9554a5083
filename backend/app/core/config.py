from functools import lru_cache
import json
from typing import Annotated

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _parse_list_value(value: str) -> list[str]:
    raw = (value or "").strip()
    if raw == "":
        return []
    try:
        parsed = json.loads(raw)
        if isinstance(parsed, list):
            return [str(item).strip() for item in parsed if str(item).strip()]
    except ValueError:
        pass
    return [item.strip() for item in raw.split(",") if item.strip()]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        extra="ignore",
        validate_by_name=True,
        populate_by_name=True,
    )
    database_url: str = ""
    app_url: str = "https://civicaid.com"

    docs_enabled: bool = Field(default=True)
    openapi_enabled: bool = Field(default=True)
    expose_error_details: bool = False

    allow_insecure_webhooks: bool = Field(
        default=False,
        validation_alias=AliasChoices("ALLOW_INSECURE_WEBHOOKS"),
    )
    pii_redaction_enabled: bool = Field(
        default=True,
        validation_alias=AliasChoices("PII_REDACTION_ENABLED"),
    )

    # Dispatch worker pool
    enable_notification_worker: bool = Field(
        default=False,
        validation_alias=AliasChoices("ENABLE_NOTIFICATION_WORKER", "ENABLE_RECURRING_JOBS"),
    )
    notification_worker_count: int = 4
    notification_poll_interval_seconds: float = 5.0
    notification_lease_seconds: int = 120
    notification_default_max_attempts: int = 3
    notification_backoff_base_seconds: int = 60
    notification_backoff_max_seconds: int = 3600
    notification_backoff_jitter_ratio: float = 0.2
    notification_provider_timeout_seconds: float = 15.0
    notification_confirmation_timeout_seconds: int = 6 * 3600
    notification_use_mock_providers: bool = False

    notification_receipt_secret: str = ""
    notification_api_token: str = ""
    notification_terminal_webhook_url: str = ""
    notification_terminal_webhook_max_attempts: int = 8

    # SMS (Twilio)
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_from_number: str = ""
    twilio_status_callback_url: str = ""

    # KAKAO alimtalk gateway
    kakao_api_url: str = ""
    kakao_api_key: str = ""
    kakao_sender_key: str = ""
    kakao_callback_url: str = ""

    # EMAIL (SMTP)
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    smtp_from_email: str = Field(
        default="noreply@civicaid.com",
        validation_alias=AliasChoices("SMTP_FROM_EMAIL", "EMAIL_FROM"),
    )

    rate_limit_webhook_enabled: bool = True
    rate_limit_receipt_ip_per_min: int = 600
    trusted_proxy_cidrs_raw: str = Field(
        default="",
        validation_alias=AliasChoices("TRUSTED_PROXY_CIDRS"),
    )

    cors_allow_origins: Annotated[list[str], NoDecode] = Field(default_factory=list)
    cors_allow_methods: Annotated[list[str], NoDecode] = Field(default_factory=lambda: [
        "GET",
        "POST",
        "OPTIONS",
    ])
    cors_allow_headers: Annotated[list[str], NoDecode] = Field(default_factory=lambda: [
        "Content-Type",
        "Accept",
        "X-Internal-Token",
        "X-Notification-Signature",
    ])

    security_headers_enabled: bool = Field(
        default=True,
        validation_alias=AliasChoices("SECURITY_HEADERS_ENABLED", "SECURE_HEADERS_ENABLED"),
    )

    @field_validator(
        "cors_allow_origins",
        "cors_allow_methods",
        "cors_allow_headers",
        mode="before",
    )
    @classmethod
    def _split_csv(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            if value.strip() == "":
                return []
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @property
    def trusted_proxy_cidrs(self) -> list[str]:
        return _parse_list_value(self.trusted_proxy_cidrs_raw)

    @property
    def backoff_jitter_ratio(self) -> float:
        # Ratios above 1 would break monotonic backoff.
        return max(0.0, min(1.0, float(self.notification_backoff_jitter_ratio)))


@lru_cache

def get_settings() -> Settings:
    return Settings()
