"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from sms_relay.storage import Base


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# Outbound statuses a message may hold while awaiting or after a decision
MESSAGE_STATUSES = ("received", "pending_approval", "approved", "sent", "rejected", "failed")
RULE_CATEGORIES = ("pricing", "tone", "service_details", "workflow", "language", "other")
REMINDER_STATUSES = ("pending", "calling", "completed", "failed", "cancelled")


class Conversation(Base):
    """
    One conversation per normalized phone number.

    Table: conversations
    Created on first inbound message, never deleted.
    """
    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    phone_number = Column(String, nullable=False, unique=True, index=True)
    client_name = Column(String, nullable=True)
    message_count = Column(Integer, nullable=False, default=0)
    last_message_at = Column(DateTime(timezone=True), nullable=True)
    status = Column(String, nullable=False, default="active")
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    messages = relationship("Message", back_populates="conversation")


class Message(Base):
    """
    One inbound or outbound SMS.

    Table: messages
    provider_sid is unique so an inbound retry can never be stored twice.
    """
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), nullable=False, index=True)
    direction = Column(String, nullable=False)  # inbound | outbound
    body = Column(Text, nullable=False, default="")
    draft_body = Column(Text, nullable=True)
    status = Column(String, nullable=False, index=True)
    provider_sid = Column(String, nullable=True, unique=True, index=True)
    media_urls = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)
    calendar_context = Column(Text, nullable=True)
    action_summary = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, index=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)

    conversation = relationship("Conversation", back_populates="messages")


class CorrectionRecord(Base):
    """
    Append-only audit of a human override (edit or reject) of a draft.

    Table: correction_records
    correction_rule, rule_category and promoted are filled by the learner.
    """
    __tablename__ = "correction_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    channel = Column(String, nullable=False, default="sms")
    action = Column(String, nullable=False)  # edit | reject
    incoming_context = Column(Text, nullable=True)
    incoming_from = Column(String, nullable=True)
    original_draft = Column(Text, nullable=True)
    corrected_text = Column(Text, nullable=True)
    source_message_id = Column(Integer, nullable=True, index=True)
    correction_rule = Column(Text, nullable=True)
    rule_category = Column(String, nullable=True)
    promoted = Column(Boolean, nullable=False, default=False)
    extra = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, index=True)


class Reminder(Base):
    """
    Scheduled phone-call reminder.

    Table: reminders
    status moves pending -> calling under an optimistic claim.
    """
    __tablename__ = "reminders"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    message = Column(Text, nullable=False)
    scheduled_for = Column(DateTime(timezone=True), nullable=False, index=True)
    status = Column(String, nullable=False, default="pending", index=True)
    retry_count = Column(Integer, nullable=False, default=0)
    call_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    completed_at = Column(DateTime(timezone=True), nullable=True)


class Setting(Base):
    """Key-value settings slot (e.g. voice routing mode)."""
    __tablename__ = "settings"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=True)


class Memory(Base):
    """
    Semantic memory entry with its embedding vector.

    Table: memories
    """
    __tablename__ = "memories"

    id = Column(Integer, primary_key=True, autoincrement=True)
    content = Column(Text, nullable=False)
    embedding = Column(JSON, nullable=False)
    category = Column(String, nullable=False, default="general", index=True)
    importance = Column(Float, nullable=False, default=5)
    source = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
