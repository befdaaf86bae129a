"""
Mailbox account registration.

OAuth happens elsewhere; this only records which mailbox to sync and
where its token lives (credential_ref).
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mailsync.database import get_db
from mailsync.services import cursor_store, message_store


router = APIRouter(prefix="/accounts", tags=["Accounts"])


class AccountCreateRequest(BaseModel):
    email_address: str
    credential_ref: Optional[str] = None
    owner_id: Optional[str] = None


class AccountResponse(BaseModel):
    """Account with its sync state."""
    id: int
    provider: str
    email_address: str
    owner_id: Optional[str]
    last_cursor: Optional[str]
    watch_expiry: Optional[datetime]
    auth_error: Optional[str]
    message_count: int = 0


def _to_response(db: Session, account) -> AccountResponse:
    return AccountResponse(
        id=account.id,
        provider=account.provider,
        email_address=account.email_address,
        owner_id=account.owner_id,
        last_cursor=account.last_cursor,
        watch_expiry=account.watch_expiry,
        auth_error=account.auth_error,
        message_count=message_store.count_messages(db, account.id)
    )


@router.post("", response_model=AccountResponse, status_code=201)
def create_account(request: AccountCreateRequest, db: Session = Depends(get_db)):
    """Register a Gmail mailbox. Start its watch with /gmail/accounts/{id}/watch/start."""
    if "@" not in request.email_address:
        raise HTTPException(status_code=422, detail="email_address must be an email address")

    try:
        account = cursor_store.create_account(
            db,
            email_address=request.email_address,
            credential_ref=request.credential_ref,
            owner_id=request.owner_id
        )
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Mailbox already registered")

    return _to_response(db, account)


@router.get("", response_model=list[AccountResponse])
def list_accounts(db: Session = Depends(get_db)):
    return [_to_response(db, account) for account in cursor_store.list_accounts(db)]


@router.get("/{account_id}", response_model=AccountResponse)
def get_account(account_id: int, db: Session = Depends(get_db)):
    account = cursor_store.get_account(db, account_id)
    if not account:
        raise HTTPException(status_code=404, detail=f"Account with ID {account_id} not found")
    return _to_response(db, account)
