"""Test conftest: environment, database and fake provider fixtures."""

import base64
import os
import threading

# Set minimal environment before importing any mailsync modules
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["GOOGLE_API_KEY"] = ""
os.environ.setdefault("LOG_LEVEL", "DEBUG")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from mailsync.config import Settings
from mailsync.database import Base
from mailsync.models import Account, Message  # noqa: F401
from mailsync.services import cursor_store
from mailsync.services.gmail_service import (
    AddedMessage,
    ChangeRecord,
    HistoryDelta,
    WatchRegistration,
)


# ============ BUILDERS ============

def encode_body(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii").rstrip("=")


def raw_message(message_id: str, subject: str = "Hello", sender: str = "bob@example.com",
                body: str = "<p>Hi there</p>", internal_date: str = "1700000000000") -> dict:
    """A users.messages.get(format=full) shaped response."""
    return {
        "id": message_id,
        "threadId": f"t-{message_id}",
        "snippet": f"snippet {message_id}",
        "internalDate": internal_date,
        "payload": {
            "mimeType": "multipart/alternative",
            "headers": [
                {"name": "Subject", "value": subject},
                {"name": "From", "value": sender},
            ],
            "parts": [
                {"mimeType": "text/plain", "body": {"data": encode_body("Hi there")}},
                {"mimeType": "text/html", "body": {"data": encode_body(body)}},
            ],
        },
    }


def record(cursor: str, *message_ids: str, labels=("INBOX",)) -> ChangeRecord:
    return ChangeRecord(
        cursor=cursor,
        added=tuple(AddedMessage(message_id=mid, label_ids=tuple(labels)) for mid in message_ids),
    )


def delta(start: str, latest: str, *records: ChangeRecord) -> HistoryDelta:
    return HistoryDelta(start_cursor=start, latest_cursor=latest, records=list(records))


class FakeGateway:
    """In-memory stand-in for GmailGateway."""

    def __init__(self):
        self.history = {}  # start cursor -> HistoryDelta or Exception
        self.messages = {}  # message id -> raw dict
        self.message_errors = {}  # message id -> Exception
        self.watch = WatchRegistration(cursor="500", expiry=None)
        self.watch_error = None
        self.current = "500"
        self.recent_ids = []
        self.history_calls = []
        self.message_calls = []
        self.stopped = []
        self._lock = threading.Lock()

    def add_messages(self, *message_ids: str) -> None:
        for message_id in message_ids:
            self.messages[message_id] = raw_message(message_id, subject=f"Subject {message_id}")

    def list_history_since(self, account, cursor):
        with self._lock:
            self.history_calls.append(cursor)
        response = self.history.get(cursor)
        if isinstance(response, Exception):
            raise response
        if response is None:
            return delta(cursor, cursor)
        return response

    def get_message(self, account, message_id):
        with self._lock:
            self.message_calls.append(message_id)
        if message_id in self.message_errors:
            raise self.message_errors[message_id]
        return self.messages[message_id]

    def create_watch(self, account):
        if self.watch_error:
            raise self.watch_error
        return self.watch

    def stop_watch(self, account):
        self.stopped.append(account.id)

    def current_cursor(self, account):
        return self.current

    def list_recent_message_ids(self, account, max_results):
        return self.recent_ids[:max_results]


# ============ FIXTURES ============

@pytest.fixture
def session_factory(tmp_path):
    """Session factory bound to a fresh SQLite file (shared across threads)."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'mailsync.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    with session_factory() as session:
        yield session


@pytest.fixture
def settings():
    """Settings with instant retries."""
    return Settings(
        database_url="sqlite://",
        gcp_project_id="test-project",
        provider_max_attempts=3,
        provider_backoff_seconds=0,
        provider_backoff_max_seconds=0,
        sync_max_workers=4,
    )


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def account(session_factory):
    """Account a@x.com with lastCursor "90"."""
    with session_factory() as session:
        created = cursor_store.create_account(session, "a@x.com", credential_ref="token.json")
        cursor_store.set_cursor(session, created.id, None, "90")
        session.refresh(created)
        return created
