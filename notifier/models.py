"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

import enum
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, Text

from notifier.storage import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeliveryStatus(str, enum.Enum):
    """Delivery state machine: PENDING -> SENT | FAILED, once."""

    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"


class ConfirmationStatus(str, enum.Enum):
    """Recipient reply classified from a button payload."""

    CONFIRM = "CONFIRM"
    CANCEL = "CANCEL"
    RESCHEDULE = "RESCHEDULE"


class Batch(Base):
    """
    A set of notifications ingested together from one file.

    Table: batches
    total_records is fixed at ingestion time.
    """
    __tablename__ = "batches"

    id = Column(Integer, primary_key=True, autoincrement=True)
    source_name = Column(String(255), nullable=False)
    total_records = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class Message(Base):
    """
    One recipient's notification.

    Table: messages
    batch_id is a plain reference to the owning batch and is never reassigned.
    Delivery fields are written by the dispatcher, confirmation fields by the
    webhook correlator.
    """
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    batch_id = Column(Integer, ForeignKey("batches.id"), nullable=False, index=True)

    # Recipient
    name = Column(String(255), nullable=False)
    phone = Column(String(32), nullable=False)

    # Appointment payload (kept as text, validated at send time)
    kind = Column(String(50), nullable=False, default="")
    scheduled_date = Column(String(32), nullable=False, default="")
    scheduled_time = Column(String(16), nullable=False, default="")
    location = Column(String(255), nullable=False, default="")
    provider_name = Column(String(255), nullable=False, default="")
    note = Column(Text, nullable=False)

    # Delivery state
    status = Column(String(16), nullable=False, default=DeliveryStatus.PENDING.value, index=True)
    provider_message_id = Column(String(255), nullable=True, unique=True)
    error_detail = Column(Text, nullable=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)

    # Confirmation state
    confirmation_status = Column(String(16), nullable=True)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_messages_batch_status", "batch_id", "status"),
    )
