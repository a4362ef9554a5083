import uuid

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func
from sqlalchemy.types import CHAR, TypeDecorator

Base = declarative_base()


class GUID(TypeDecorator):
    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PGUUID(as_uuid=True))
        return dialect.type_descriptor(CHAR(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, uuid.UUID):
            return value if dialect.name == "postgresql" else str(value)
        if isinstance(value, str):
            try:
                parsed = uuid.UUID(value)
            except ValueError:
                return value
            return parsed if dialect.name == "postgresql" else str(parsed)
        return value

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, uuid.UUID):
            return value
        try:
            return uuid.UUID(value)
        except ValueError:
            return value


UUID_TYPE = GUID()
JSON_TYPE = JSON().with_variant(JSONB, "postgresql")


class NotificationJob(Base):
    __tablename__ = "notification_queue"
    __table_args__ = (
        CheckConstraint("attempts >= 0 AND attempts <= max_attempts", name="chk_notification_queue_attempts"),
        CheckConstraint(
            "status IN ('PENDING', 'SENT', 'FAILED', 'DELIVERED')",
            name="chk_notification_queue_status",
        ),
        Index("idx_notification_queue_status_scheduled", "status", "scheduled_at"),
        Index("idx_notification_queue_ticket", "ticket_id"),
        Index("idx_notification_queue_provider_message", "provider_message_id"),
        Index("idx_notification_queue_callback", "callback_status", "callback_next_attempt_at"),
    )

    id = Column(
        UUID_TYPE,
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    ticket_id = Column(String(64), nullable=False)
    type = Column(String(32), nullable=False)

    recipient_phone = Column(String(32))
    recipient_email = Column(String(255))
    recipient_name = Column(String(128), nullable=False)
    template_data = Column(JSON_TYPE, nullable=False)

    preferred_channel = Column(String(16), nullable=False)  # KAKAO / SMS / EMAIL
    current_channel = Column(String(16))

    status = Column(String(16), nullable=False, default="PENDING", server_default=text("'PENDING'"))
    attempts = Column(Integer, nullable=False, default=0, server_default=text("0"))
    max_attempts = Column(Integer, nullable=False, default=3, server_default=text("3"))
    scheduled_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    sent_at = Column(DateTime(timezone=True))
    delivered_at = Column(DateTime(timezone=True))
    failed_at = Column(DateTime(timezone=True))
    error_message = Column(Text)
    # "metadata" is reserved on declarative classes.
    meta = Column("metadata", JSON_TYPE)
    provider_message_id = Column(String(128))

    lease_owner = Column(String(64))
    lease_token = Column(String(36))
    lease_expires_at = Column(DateTime(timezone=True))

    # Terminal callback to the ticket workflow: PENDING / RETRY / SENT / FAILED.
    callback_status = Column(String(16))
    callback_attempts = Column(Integer, nullable=False, default=0, server_default=text("0"))
    callback_next_attempt_at = Column(DateTime(timezone=True))
    callback_last_error = Column(Text)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    attempt_log = relationship(
        "NotificationAttemptLog",
        back_populates="job",
        order_by="NotificationAttemptLog.attempt_number",
        lazy="select",
    )


class NotificationAttemptLog(Base):
    __tablename__ = "notification_log"
    __table_args__ = (
        UniqueConstraint("queue_id", "attempt_number", name="uniq_notification_log_attempt"),
        CheckConstraint("attempt_number >= 1", name="chk_notification_log_attempt_number"),
    )

    id = Column(
        UUID_TYPE,
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    queue_id = Column(UUID_TYPE, ForeignKey("notification_queue.id", ondelete="CASCADE"), nullable=False)
    channel = Column(String(16), nullable=False)
    status = Column(String(16), nullable=False)
    outcome = Column(String(32), nullable=False)
    request_data = Column(JSON_TYPE)
    response_data = Column(JSON_TYPE)
    error_message = Column(Text)
    attempt_number = Column(Integer, nullable=False)
    sent_at = Column(DateTime(timezone=True), nullable=False)
    response_at = Column(DateTime(timezone=True))

    job = relationship("NotificationJob", back_populates="attempt_log")
