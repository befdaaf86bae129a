"""
Account model: one connected mailbox and its watch state.

Stores:
- last_cursor: last processed Gmail historyId for incremental sync
- watch_expiry: when the current users.watch registration lapses
- auth_error: set when the provider rejects our credentials

Persists across server restarts, unlike in-memory variables.
"""

from sqlalchemy import Column, Integer, String, Text, DateTime, UniqueConstraint
from sqlalchemy.sql import func
from mailsync.database import Base


class Account(Base):
    """
    A mailbox connection owned by one user for one provider.

    Only the Sync Engine writes last_cursor and watch_expiry.
    """
    __tablename__ = "accounts"

    id = Column(Integer, primary_key=True)

    provider = Column(String(20), nullable=False, default="gmail")
    email_address = Column(String(255), nullable=False, index=True)  # stored lower-case
    owner_id = Column(String(64))  # opaque user reference from the auth service

    # Opaque to the core; the default loader treats it as a token file path
    credential_ref = Column(String(512))

    # ============ WATCH STATE ============
    last_cursor = Column(String(64))  # provider historyId, never moves backward
    watch_expiry = Column(DateTime)  # naive UTC
    auth_error = Column(Text)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("provider", "email_address", name="uq_accounts_provider_address"),
        UniqueConstraint("owner_id", "provider", name="uq_accounts_owner_provider"),
    )

    def __repr__(self):
        return f"<Account(id={self.id}, email={self.email_address}, cursor={self.last_cursor})>"
