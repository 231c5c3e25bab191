"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, String, Text
from sqlalchemy.orm import relationship

from inbox_gateway.storage import Base


def _new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Conversation(Base):
    """
    A message thread keyed by the contact's phone number.

    Table: conversations
    Unique: phone (one thread per external identity)
    """
    __tablename__ = "conversations"

    id = Column(String, primary_key=True, default=_new_id)
    phone = Column(String, nullable=False, unique=True, index=True)
    display_name = Column(String, nullable=True)
    archived = Column(Boolean, nullable=False, default=False)
    last_activity_at = Column(DateTime(timezone=True), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    messages = relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class Message(Base):
    """
    A single inbound or outbound message.

    Table: messages
    reply_to_message_id must point at an inbound message of the same
    conversation (enforced in replies.validate_reply_target).
    """
    __tablename__ = "messages"

    id = Column(String, primary_key=True, default=_new_id)
    conversation_id = Column(
        String,
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    direction = Column(String, nullable=False)  # inbound | outbound
    body = Column(Text, nullable=True)
    media = Column(JSON, nullable=True)  # {url, filename, type, status}
    provider_message_id = Column(String, nullable=True)
    status = Column(String, nullable=False, default="received")
    reply_to_message_id = Column(
        String,
        ForeignKey("messages.id", ondelete="SET NULL"),
        nullable=True,
    )
    raw = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    conversation = relationship("Conversation", back_populates="messages")
    reply_target = relationship("Message", remote_side=[id], uselist=False)


class WebhookEvent(Base):
    """
    Append-only journal row for one webhook transaction.

    Table: webhook_events
    """
    __tablename__ = "webhook_events"

    id = Column(String, primary_key=True, default=_new_id)
    webhook_id = Column(String, nullable=True, index=True)
    headers = Column(JSON, nullable=True)
    query = Column(JSON, nullable=True)
    body = Column(JSON, nullable=True)
    response = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)


class AppSetting(Base):
    """
    Key to JSON value settings store.

    Table: app_settings
    """
    __tablename__ = "app_settings"

    key = Column(String, primary_key=True)
    value = Column(JSON, nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
