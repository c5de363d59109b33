"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

import enum
import uuid
from datetime import timezone

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.types import TypeDecorator

from guestcomms.storage import Base
from guestcomms.utils import utcnow


class ConversationStatus(str, enum.Enum):
    AUTOMATED = "automated"
    PAUSED_BY_HUMAN = "paused_by_human"


class MessageStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"


class Originator(str, enum.Enum):
    GUEST = "guest"
    HUMAN = "human"
    AI = "ai"
    SYSTEM = "system"


# Statuses a job can still be cancelled from
OPEN_STATUSES = (MessageStatus.PENDING.value, MessageStatus.PROCESSING.value)

# Fixed failure reasons, kept stable so reporting can tell them apart from provider errors
PAUSED_REASON = "Conversation paused by human agent"
RESERVATION_CANCELLED_REASON = "Reservation was cancelled"
OPERATOR_CANCELLED_REASON = "Cancelled by human operator"
POLICY_REASONS = frozenset(
    {PAUSED_REASON, RESERVATION_CANCELLED_REASON, OPERATOR_CANCELLED_REASON}
)


def _new_id() -> str:
    return str(uuid.uuid4())


class UTCDateTime(TypeDecorator):
    """
    Stores datetimes as naive UTC and returns them timezone-aware.

    SQLite drops tzinfo on write, so everything is normalized to UTC before it
    reaches the driver.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Conversation(Base):
    """
    Automation scope for one (tenant, booking) pair.

    Table: conversations
    Unique: (tenant_id, booking_id) - the unit of pause/resume control
    """
    __tablename__ = "conversations"
    __table_args__ = (
        UniqueConstraint("tenant_id", "booking_id", name="uq_conversations_tenant_booking"),
    )

    id = Column(String, primary_key=True, default=_new_id)
    tenant_id = Column(String, nullable=False, index=True)
    booking_id = Column(String, nullable=False)  # reservation external id
    external_thread_id = Column(String, nullable=True)  # PMS conversation thread
    status = Column(String, nullable=False, default=ConversationStatus.AUTOMATED.value)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow)


class MessageLogEntry(Base):
    """
    One inbound guest message, human reply, or scheduled/sent automated message.

    Table: message_log_entries
    Unique: (conversation_id, dedup_key) - NULL keys never conflict
    """
    __tablename__ = "message_log_entries"
    __table_args__ = (
        UniqueConstraint("conversation_id", "dedup_key", name="uq_message_log_dedup"),
        Index("ix_message_log_status_schedule", "status", "scheduled_send_at"),
    )

    id = Column(String, primary_key=True, default=_new_id)
    conversation_id = Column(String, ForeignKey("conversations.id"), nullable=False, index=True)
    tenant_id = Column(String, nullable=False, index=True)
    booking_id = Column(String, nullable=False)
    originator = Column(String, nullable=False)
    status = Column(String, nullable=False)
    body = Column(Text, nullable=False, default="")
    scheduled_send_at = Column(UTCDateTime, nullable=True)
    actual_sent_at = Column(UTCDateTime, nullable=True)
    claimed_at = Column(UTCDateTime, nullable=True)
    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSON, nullable=False, default=dict)
    dedup_key = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow)
