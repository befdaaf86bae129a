"""
Mailbox API endpoints for synced messages.

List view: per-account messages in one lifecycle status, newest first
Actions: archive, delete, pin
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from mailsync.database import get_db
from mailsync.models.message import MessageStatus
from mailsync.services import message_store


router = APIRouter(prefix="/messages", tags=["Messages"])


# ============ Response Schemas ============

class MessageResponse(BaseModel):
    """Message fields for list and detail views."""
    id: int
    account_id: int
    provider_message_id: str
    thread_id: Optional[str]
    subject: Optional[str]
    sender: Optional[str]
    snippet: Optional[str]
    received_at: Optional[datetime]
    labels: list[str]
    status: str

    class Config:
        from_attributes = True


class MessagesListResponse(BaseModel):
    """Paginated list of messages."""
    account_id: int
    status: str
    skip: int
    limit: int
    messages: list[MessageResponse]


# ============ LIST ENDPOINT ============

@router.get("", response_model=MessagesListResponse)
def list_messages(
    account_id: int = Query(..., description="Account to list"),
    status: MessageStatus = Query(MessageStatus.INBOX, description="inbox, archived, deleted or pinned"),
    skip: int = Query(0, ge=0, description="Offset for pagination"),
    limit: int = Query(50, ge=1, le=100, description="Max results"),
    db: Session = Depends(get_db)
):
    """
    List an account's messages in one status.

    **Example:**
    ```
    GET /api/v1/messages?account_id=1&status=inbox
    ```
    """
    messages = message_store.list_messages(
        db=db,
        account_id=account_id,
        status=status.value,
        limit=limit,
        offset=skip
    )

    return MessagesListResponse(
        account_id=account_id,
        status=status.value,
        skip=skip,
        limit=limit,
        messages=messages
    )


# ============ STATUS CHANGES ============

def _move(db: Session, message_id: int, status: MessageStatus):
    message = message_store.set_status(db, message_id, status)
    if not message:
        raise HTTPException(
            status_code=404,
            detail=f"Message with ID {message_id} not found"
        )
    return message


@router.post("/{message_id}/archive", response_model=MessageResponse)
def archive_message(message_id: int, db: Session = Depends(get_db)):
    return _move(db, message_id, MessageStatus.ARCHIVED)


@router.post("/{message_id}/delete", response_model=MessageResponse)
def delete_message(message_id: int, db: Session = Depends(get_db)):
    """Soft delete: the row stays so re-syncs do not resurrect it in the inbox."""
    return _move(db, message_id, MessageStatus.DELETED)


@router.post("/{message_id}/pin", response_model=MessageResponse)
def pin_message(message_id: int, db: Session = Depends(get_db)):
    return _move(db, message_id, MessageStatus.PINNED)
