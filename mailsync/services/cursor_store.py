"""
Cursor Store: persisted per-account watch state.

- get_account / get_account_by_address: resolve accounts
- set_cursor: atomic compare-and-set of last_cursor
- set_watch: record watch expiry
- auth error bookkeeping for accounts whose credentials were rejected

Every write touches a single row; no cross-row transactions.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, or_, update
from sqlalchemy.orm import Session

from mailsync.exceptions import StaleWriteError
from mailsync.models.account import Account


def utcnow() -> datetime:
    """Naive UTC timestamp, the format all DateTime columns use."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def cursor_precedes(candidate: Optional[str], reference: Optional[str]) -> bool:
    """
    True when `candidate` is an older position than `reference`.

    Cursors are opaque strings. Gmail historyIds are decimal integers,
    so numeric cursors are compared numerically; anything else is
    treated as incomparable and never reported as older.
    """
    if candidate is None or reference is None:
        return False
    if candidate.isdigit() and reference.isdigit():
        return int(candidate) < int(reference)
    return False


# ============ ACCOUNT LOOKUP ============

def get_account(db: Session, account_id: int) -> Optional[Account]:
    """Get an account by primary key."""
    return db.get(Account, account_id)


def get_account_by_address(
    db: Session,
    email_address: str,
    provider: str = "gmail"
) -> Optional[Account]:
    """Get an account by mailbox address (case-insensitive)."""
    return db.query(Account).filter(
        Account.provider == provider,
        func.lower(Account.email_address) == email_address.strip().lower()
    ).first()


def list_accounts(db: Session, provider: str = "gmail") -> list[Account]:
    return db.query(Account).filter(Account.provider == provider).order_by(Account.id).all()


def list_accounts_needing_watch(db: Session, before: datetime) -> list[Account]:
    """
    Accounts whose watch is missing or expires before `before`.

    Accounts with an outstanding auth error are left out; renewing
    them cannot succeed until someone re-authorizes.
    """
    return db.query(Account).filter(
        Account.auth_error.is_(None),
        or_(Account.watch_expiry.is_(None), Account.watch_expiry < before)
    ).order_by(Account.id).all()


def create_account(
    db: Session,
    email_address: str,
    credential_ref: Optional[str] = None,
    owner_id: Optional[str] = None,
    provider: str = "gmail"
) -> Account:
    """Register a mailbox. Cursor and watch are set later by the Sync Engine."""
    account = Account(
        provider=provider,
        email_address=email_address.strip().lower(),
        credential_ref=credential_ref,
        owner_id=owner_id
    )
    db.add(account)
    db.commit()
    db.refresh(account)
    return account


# ============ CURSOR / WATCH WRITES ============

def set_cursor(
    db: Session,
    account_id: int,
    expected: Optional[str],
    new_cursor: str
) -> None:
    """
    Compare-and-set the account cursor.

    The write only happens if the stored cursor still equals `expected`
    (NULL included). A cursor that would move backward is rejected too.

    Args:
        db: Database session
        account_id: Account to update
        expected: Cursor the caller observed before syncing
        new_cursor: Provider-returned position to store

    Raises:
        StaleWriteError: another writer moved the cursor, or the write
            would regress it
    """
    if cursor_precedes(new_cursor, expected):
        raise StaleWriteError(account_id, expected, new_cursor)
    if new_cursor == expected:
        return

    stmt = update(Account).where(Account.id == account_id)
    if expected is None:
        stmt = stmt.where(Account.last_cursor.is_(None))
    else:
        stmt = stmt.where(Account.last_cursor == expected)
    stmt = stmt.values(last_cursor=new_cursor, updated_at=utcnow())

    result = db.execute(stmt.execution_options(synchronize_session=False))
    db.commit()

    if result.rowcount != 1:
        raise StaleWriteError(account_id, expected, new_cursor)


def set_watch(db: Session, account_id: int, expiry: Optional[datetime]) -> None:
    """Record the watch expiry (None when the watch was stopped)."""
    db.execute(
        update(Account)
        .where(Account.id == account_id)
        .values(watch_expiry=expiry, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    db.commit()


def mark_auth_error(db: Session, account_id: int, reason: str) -> None:
    """Flag an account whose credentials the provider rejected."""
    db.execute(
        update(Account)
        .where(Account.id == account_id)
        .values(auth_error=reason[:1000], updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    db.commit()


def clear_auth_error(db: Session, account_id: int) -> None:
    db.execute(
        update(Account)
        .where(Account.id == account_id, Account.auth_error.is_not(None))
        .values(auth_error=None, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    db.commit()
