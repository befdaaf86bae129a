"""
SQLAlchemy models for the mailbox sync service.

This package contains:
- Account: mailbox connection with cursor and watch state
- Message: synced messages, unique per (account, provider message id)
- MessageFailure: failed fetch attempts per provider message
"""

from mailsync.models.account import Account
from mailsync.models.message import Message, MessageStatus
from mailsync.models.message_failure import MessageFailure

__all__ = ["Account", "Message", "MessageFailure", "MessageStatus"]
