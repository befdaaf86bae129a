"""
Failed fetch attempts per provider message.

A message that keeps failing is given up on after SYNC_MAX_MESSAGE_ATTEMPTS
so it stops holding the account cursor back. Rows are removed once the
message is stored.
"""

from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.sql import func
from mailsync.database import Base


class MessageFailure(Base):
    __tablename__ = "message_failures"

    id = Column(Integer, primary_key=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False)
    provider_message_id = Column(String(64), nullable=False)

    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("account_id", "provider_message_id", name="uq_message_failures_account_provider_id"),
    )

    def __repr__(self):
        return f"<MessageFailure(provider_id={self.provider_message_id}, attempts={self.attempts})>"
