from datetime import datetime

import pytest
from langchain_core.language_models.fake_chat_models import FakeListChatModel
from langchain_core.runnables import RunnableLambda

from mailsync.config import Settings
from mailsync.exceptions import ClassificationError
from mailsync.models.message import Message
from mailsync.services import cursor_store, message_store
from mailsync.services.classifier import ClassificationDispatcher, build_dispatcher, parse_labels
from mailsync.services.message_store import MessageRecord


@pytest.mark.parametrize("text,expected", [
    ('["job", "response"]', ["job", "response"]),
    ('Sure! Here you go:\n```json\n["finance"]\n```', ["finance"]),
    ('{"labels": ["travel", " personal ", "travel"]}', ["travel", "personal"]),
    ('[1, 2] then ["social"]', ["social"]),
    ('["a", "b", "c", "d", "e", "f", "g"]', ["a", "b", "c", "d", "e"]),
    ("[]", []),
])
def test_parse_labels(text, expected):
    assert parse_labels(text, max_labels=5) == expected


@pytest.mark.parametrize("text", ["no labels here", "", "[not json]", '{"labels": "job"}'])
def test_parse_labels_without_list_raises(text):
    with pytest.raises(ClassificationError):
        parse_labels(text, max_labels=5)


@pytest.fixture
def stored_message(session_factory):
    with session_factory() as db:
        account = cursor_store.create_account(db, "a@x.com")
        message, _ = message_store.upsert_message(db, account.id, MessageRecord(
            provider_message_id="m1",
            thread_id="t1",
            subject="Interview invitation",
            sender="hr@company.com",
            snippet="We would like to invite you",
            body="<p>We would like to invite you</p>",
            received_at=datetime(2024, 1, 1),
        ))
        return message


def _labels(session_factory, message_id):
    with session_factory() as db:
        return db.get(Message, message_id).labels


def test_classify_returns_labels(session_factory, stored_message):
    dispatcher = ClassificationDispatcher(FakeListChatModel(responses=['["job", "response"]']), session_factory)

    result = dispatcher.classify(stored_message)
    dispatcher.shutdown()

    assert result.labels == ["job", "response"]
    assert result.error is None


def test_classify_never_raises(session_factory, stored_message):
    def fail(prompt):
        raise TimeoutError("deadline exceeded")

    dispatcher = ClassificationDispatcher(RunnableLambda(fail), session_factory)

    result = dispatcher.classify(stored_message)
    dispatcher.shutdown()

    assert result.labels == []
    assert "deadline exceeded" in result.error


def test_dispatch_stores_labels(session_factory, stored_message):
    dispatcher = ClassificationDispatcher(
        FakeListChatModel(responses=['["job", "job", "response"]']),
        session_factory,
        max_labels=1,
    )

    futures = dispatcher.dispatch([stored_message.id])
    results = [future.result() for future in futures]
    dispatcher.shutdown()

    assert results[0].labels == ["job"]
    assert _labels(session_factory, stored_message.id) == ["job"]


def test_dispatch_unparseable_output_leaves_labels_empty(session_factory, stored_message):
    dispatcher = ClassificationDispatcher(FakeListChatModel(responses=["I think this is a job email"]), session_factory)

    result = dispatcher.dispatch([stored_message.id])[0].result()
    dispatcher.shutdown()

    assert result.labels == []
    assert result.error
    assert _labels(session_factory, stored_message.id) == []


def test_dispatch_missing_message(session_factory):
    dispatcher = ClassificationDispatcher(FakeListChatModel(responses=['["job"]']), session_factory)

    result = dispatcher.dispatch([12345])[0].result()
    dispatcher.shutdown()

    assert result.error == "message not found"


def test_build_dispatcher_requires_api_key(session_factory):
    assert build_dispatcher(Settings(google_api_key=None), session_factory) is None
