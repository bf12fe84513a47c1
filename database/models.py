"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, SQLite.

Only the columns the dispatch core reads or writes are mapped. The
conversation, message and assignment tables are owned by database-side
procedures in production; they are mapped here so the schema can be
created for development and so the scan queries can be expressed.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    Boolean, String, Integer, DateTime, Text, ForeignKey,
    Index, JSON, UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


# ──────────────────────────────────────────────────────────────
#  Sending configuration
# ──────────────────────────────────────────────────────────────

class ChannelRow(Base):
    __tablename__ = "channels"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    phone_number_id: Mapped[str] = mapped_column(String(64), default="")
    access_token: Mapped[str] = mapped_column(Text, default="")
    segment: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    rate_limited: Mapped[bool] = mapped_column(Boolean, default=False)
    rate_limited_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class TemplateRow(Base):
    __tablename__ = "templates"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    language: Mapped[str] = mapped_column(String(16), default="en_US")
    components: Mapped[Any] = mapped_column(JSON, default=list)


class SendBatchRow(Base):
    __tablename__ = "send_batches"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    template_id: Mapped[Optional[str]] = mapped_column(String(64), ForeignKey("templates.id"), nullable=True)
    channel_id: Mapped[Optional[str]] = mapped_column(String(64), ForeignKey("channels.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    template: Mapped[Optional["TemplateRow"]] = relationship(lazy="joined")
    channel: Mapped[Optional["ChannelRow"]] = relationship(lazy="joined")


# ──────────────────────────────────────────────────────────────
#  Outbound queue
# ──────────────────────────────────────────────────────────────

class QueueItemRow(Base):
    __tablename__ = "whatsapp_send_queue"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    batch_id: Mapped[str] = mapped_column(String(64), ForeignKey("send_batches.id"), nullable=False)
    recipient_phone: Mapped[str] = mapped_column(String(32), nullable=False)
    variables: Mapped[Any] = mapped_column(JSON, nullable=True)
    media_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)

    attempt_count: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(32), default="pending")
    next_attempt_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    batch: Mapped["SendBatchRow"] = relationship(lazy="joined")

    __table_args__ = (
        Index("ix_send_queue_status_next", "status", "next_attempt_at"),
        Index("ix_send_queue_created", "created_at"),
    )


class SendOutcomeRow(Base):
    __tablename__ = "send_outcomes"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    batch_id: Mapped[str] = mapped_column(String(64), ForeignKey("send_batches.id"), nullable=False)
    recipient_phone: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    provider_message_id: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    warning: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    conversation_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("batch_id", "recipient_phone", name="uq_send_outcomes_batch_recipient"),
    )


# ──────────────────────────────────────────────────────────────
#  Conversations & agents
# ──────────────────────────────────────────────────────────────

class ConversationRow(Base):
    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    status: Mapped[str] = mapped_column(String(16), default="open")
    assigned_agent_id: Mapped[Optional[str]] = mapped_column(String(64), ForeignKey("agent_profiles.id"), nullable=True)
    segment: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=0)
    recipient_phone: Mapped[str] = mapped_column(String(32), default="")
    channel_id: Mapped[Optional[str]] = mapped_column(String(64), ForeignKey("channels.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_conversations_unassigned", "status", "assigned_agent_id", "created_at"),
        Index("ix_conversations_recipient", "recipient_phone", "channel_id"),
    )


class AgentProfileRow(Base):
    __tablename__ = "agent_profiles"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    segment: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    present_today: Mapped[bool] = mapped_column(Boolean, default=True)
    last_chat_assigned_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_agent_profiles_segment", "segment", "is_active", "present_today"),
    )


class MessageRow(Base):
    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    conversation_id: Mapped[str] = mapped_column(String(64), ForeignKey("conversations.id"), nullable=False)
    content_type: Mapped[str] = mapped_column(String(32), nullable=False)
    sender_type: Mapped[str] = mapped_column(String(32), nullable=False)
    template_name: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    variables: Mapped[Any] = mapped_column(JSON, nullable=True)
    media_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    provider_message_id: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    sender_override: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_messages_conversation_ts", "conversation_id", "created_at"),
        Index("ix_messages_provider_id", "provider_message_id"),
    )


# ──────────────────────────────────────────────────────────────
#  Run leases (no advisory locks on this dialect)
# ──────────────────────────────────────────────────────────────

class RunLeaseRow(Base):
    __tablename__ = "run_leases"

    lock_key: Mapped[str] = mapped_column(String(128), primary_key=True)
    holder: Mapped[str] = mapped_column(String(64), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
