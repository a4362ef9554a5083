from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class NotificationType(str, Enum):
    TICKET_RECEIVED = "TICKET_RECEIVED"
    TICKET_ASSIGNED = "TICKET_ASSIGNED"
    TICKET_REPLIED = "TICKET_REPLIED"
    TICKET_CLOSED = "TICKET_CLOSED"
    SLA_WARNING = "SLA_WARNING"
    SATISFACTION_REQUEST = "SATISFACTION_REQUEST"


class NotificationChannel(str, Enum):
    KAKAO = "KAKAO"
    SMS = "SMS"
    EMAIL = "EMAIL"


class NotificationStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"
    DELIVERED = "DELIVERED"


class AttemptOutcome(str, Enum):
    DELIVERED = "DELIVERED"
    ACCEPTED = "ACCEPTED"
    TRANSIENT_FAILURE = "TRANSIENT_FAILURE"
    PERMANENT_FAILURE = "PERMANENT_FAILURE"

    @property
    def is_failure(self) -> bool:
        return self in (AttemptOutcome.TRANSIENT_FAILURE, AttemptOutcome.PERMANENT_FAILURE)


class ReceiptOutcome(str, Enum):
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"
    BOUNCED = "BOUNCED"


# Ticket workflow events the producer maps to notification types.
# The engine never creates jobs from ticket state itself.
TICKET_EVENT_NOTIFICATION_TYPES: Dict[str, NotificationType] = {
    "TICKET_CREATED": NotificationType.TICKET_RECEIVED,
    "TICKET_ASSIGNED": NotificationType.TICKET_ASSIGNED,
    "REPLY_SENT": NotificationType.TICKET_REPLIED,
    "TICKET_CLOSED": NotificationType.TICKET_CLOSED,
    "SLA_AT_RISK": NotificationType.SLA_WARNING,
    "SATISFACTION_SCHEDULED": NotificationType.SATISFACTION_REQUEST,
}


class EnqueueNotificationRequest(BaseModel):
    ticket_id: str = Field(min_length=1, max_length=64)
    type: NotificationType
    recipient_name: str = Field(min_length=1, max_length=128)
    recipient_phone: Optional[str] = Field(default=None, max_length=32)
    recipient_email: Optional[str] = Field(default=None, max_length=255)
    template_data: Dict[str, Any] = Field(default_factory=dict)
    preferred_channel: NotificationChannel = NotificationChannel.KAKAO
    max_attempts: Optional[int] = Field(default=None, ge=1, le=20)
    scheduled_at: Optional[datetime] = None

    @field_validator("recipient_phone", "recipient_email", mode="before")
    @classmethod
    def _blank_to_none(cls, value):
        if isinstance(value, str) and value.strip() == "":
            return None
        return value.strip() if isinstance(value, str) else value

    @model_validator(mode="after")
    def validate_contact(self):
        if self.recipient_email is not None and "@" not in self.recipient_email:
            raise ValueError("recipient_email is not an email address")
        return self


class NotificationJobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    ticket_id: str
    type: NotificationType
    recipient_name: str
    recipient_phone: Optional[str] = None
    recipient_email: Optional[str] = None
    preferred_channel: NotificationChannel
    current_channel: Optional[NotificationChannel] = None
    status: NotificationStatus
    phase: str
    attempts: int
    max_attempts: int
    scheduled_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None


class AttemptLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    attempt_number: int
    channel: NotificationChannel
    status: NotificationStatus
    outcome: AttemptOutcome
    error_message: Optional[str] = None
    sent_at: datetime
    response_at: Optional[datetime] = None
    response_data: Optional[Dict[str, Any]] = None


class NotificationDetailResponse(NotificationJobResponse):
    attempt_log: List[AttemptLogResponse] = Field(default_factory=list)


class ProviderReceiptRequest(BaseModel):
    job_id: str
    channel: NotificationChannel
    outcome: ReceiptOutcome
    permanent: bool = False
    reason: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)


class ProviderReceiptResponse(BaseModel):
    job_id: str
    result: str
    status: Optional[NotificationStatus] = None
