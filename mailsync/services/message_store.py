"""
Message Store: idempotent storage of synced messages.

- upsert_message: insert or overwrite by (account_id, provider_message_id)
- add_labels: append classifier labels without touching anything else
- list_messages / set_status: mailbox views and lifecycle changes
- record_failure / clear_failure: per-message retry budget
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mailsync.models.message import Message, MessageStatus
from mailsync.models.message_failure import MessageFailure


@dataclass(frozen=True)
class MessageRecord:
    """A provider message normalized into our columns."""
    provider_message_id: str
    thread_id: str
    subject: str
    sender: str
    snippet: str
    body: str
    received_at: datetime


def _apply_record(message: Message, record: MessageRecord) -> None:
    # Provider-owned columns only; labels and status are ours
    message.thread_id = record.thread_id
    message.subject = record.subject
    message.sender = record.sender
    message.snippet = record.snippet
    message.body = record.body
    message.received_at = record.received_at


def get_message(db: Session, message_id: int) -> Optional[Message]:
    return db.get(Message, message_id)


def get_by_provider_id(
    db: Session,
    account_id: int,
    provider_message_id: str
) -> Optional[Message]:
    """Look up a message by its composite key."""
    return db.query(Message).filter(
        Message.account_id == account_id,
        Message.provider_message_id == provider_message_id
    ).first()


def upsert_message(
    db: Session,
    account_id: int,
    record: MessageRecord
) -> tuple[Message, bool]:
    """
    Save a message with upsert logic.

    If a row with the same (account_id, provider_message_id) exists,
    its provider fields are overwritten. Otherwise a new row is created.

    Args:
        db: Database session
        account_id: Owning account
        record: Normalized provider message

    Returns:
        (message, created): the stored row and whether this call inserted it
    """
    existing = get_by_provider_id(db, account_id, record.provider_message_id)

    if existing:
        _apply_record(existing, record)
        db.commit()
        return existing, False

    message = Message(
        account_id=account_id,
        provider_message_id=record.provider_message_id,
        labels=[],
        status=MessageStatus.INBOX.value
    )
    _apply_record(message, record)
    db.add(message)

    try:
        db.commit()
        db.refresh(message)
        return message, True
    except IntegrityError:
        # Race condition - a concurrent sync inserted it first
        db.rollback()
        existing = get_by_provider_id(db, account_id, record.provider_message_id)
        _apply_record(existing, record)
        db.commit()
        return existing, False


def add_labels(db: Session, message_id: int, labels: Iterable[str]) -> Optional[Message]:
    """
    Append labels to a message, keeping existing ones and their order.

    Returns None if the message no longer exists.
    """
    message = db.get(Message, message_id)
    if message is None:
        return None

    current = list(message.labels or [])
    for label in labels:
        if label not in current:
            current.append(label)

    # Reassign so the JSON column is flagged dirty
    message.labels = current
    db.commit()
    return message


# ============ MAILBOX VIEWS ============

def list_messages(
    db: Session,
    account_id: int,
    status: str = MessageStatus.INBOX.value,
    limit: int = 50,
    offset: int = 0
) -> list[Message]:
    """Messages for an account in one status, newest first."""
    return db.query(Message).filter(
        Message.account_id == account_id,
        Message.status == status
    ).order_by(
        Message.received_at.desc(), Message.id.desc()
    ).offset(offset).limit(limit).all()


def count_messages(db: Session, account_id: int) -> int:
    return db.query(Message).filter(Message.account_id == account_id).count()


def set_status(db: Session, message_id: int, status: MessageStatus) -> Optional[Message]:
    """Move a message to another lifecycle status. None if not found."""
    message = db.get(Message, message_id)
    if message is None:
        return None
    message.status = MessageStatus(status).value
    db.commit()
    return message


# ============ FAILED ATTEMPTS ============

def _get_failure(db: Session, account_id: int, provider_message_id: str) -> Optional[MessageFailure]:
    return db.query(MessageFailure).filter(
        MessageFailure.account_id == account_id,
        MessageFailure.provider_message_id == provider_message_id
    ).first()


def record_failure(
    db: Session,
    account_id: int,
    provider_message_id: str,
    error: str
) -> int:
    """
    Count one more failed sync attempt for a provider message.

    Returns:
        Total failed attempts recorded for the message
    """
    failure = _get_failure(db, account_id, provider_message_id)
    if failure is None:
        failure = MessageFailure(
            account_id=account_id,
            provider_message_id=provider_message_id,
            attempts=0
        )
        db.add(failure)

    failure.attempts = (failure.attempts or 0) + 1
    failure.last_error = error[:1000]

    try:
        db.commit()
    except IntegrityError:
        # A concurrent sync recorded the first failure
        db.rollback()
        failure = _get_failure(db, account_id, provider_message_id)
        failure.attempts += 1
        failure.last_error = error[:1000]
        db.commit()

    return failure.attempts


def clear_failure(db: Session, account_id: int, provider_message_id: str) -> None:
    """Forget failed attempts once the message is stored."""
    db.query(MessageFailure).filter(
        MessageFailure.account_id == account_id,
        MessageFailure.provider_message_id == provider_message_id
    ).delete(synchronize_session=False)
    db.commit()
