"""
Message model for synced mailbox messages.

Deduplication via the unique (account_id, provider_message_id) pair:
re-syncing the same Gmail message updates the existing row.
"""

import enum

from sqlalchemy import (
    Column, Integer, String, Text, DateTime, JSON,
    ForeignKey, Index, UniqueConstraint
)
from sqlalchemy.sql import func
from mailsync.database import Base


class MessageStatus(str, enum.Enum):
    """Lifecycle status of a message."""
    INBOX = "inbox"
    ARCHIVED = "archived"
    DELETED = "deleted"
    PINNED = "pinned"


class Message(Base):
    """
    A normalized provider message.

    Provider fields are overwritten on re-sync; labels and status
    belong to us and survive it.
    """
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False)

    # Gmail identifiers
    provider_message_id = Column(String(64), nullable=False)
    thread_id = Column(String(64))

    # Email metadata
    subject = Column(String(998))
    sender = Column(String(512), index=True)
    snippet = Column(Text)
    body = Column(Text)
    received_at = Column(DateTime)

    # Classifier output, appended best-effort
    labels = Column(JSON, nullable=False, default=list)
    status = Column(String(20), nullable=False, default=MessageStatus.INBOX.value)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("account_id", "provider_message_id", name="uq_messages_account_provider_id"),
        Index("ix_messages_account_status_received", "account_id", "status", "received_at"),
    )

    def __repr__(self):
        return f"<Message(id={self.id}, provider_id={self.provider_message_id}, subject={self.subject[:30] if self.subject else ''})>"
