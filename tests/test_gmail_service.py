from datetime import datetime
from unittest.mock import MagicMock

import httplib2
import pytest
from googleapiclient.errors import HttpError

from conftest import encode_body, raw_message
from mailsync.exceptions import (
    FatalProviderError,
    InvalidCursorError,
    MessageNotFoundError,
    ProviderError,
    TransientProviderError,
    UnprocessableMessageError,
)
from mailsync.models.account import Account
from mailsync.services import gmail_service
from mailsync.services.gmail_service import (
    GmailGateway,
    extract_body,
    load_credentials,
    normalize_message,
    text_snippet,
    translate_http_error,
)


def http_error(status: int, content: bytes = b'{"error": {"message": "boom"}}') -> HttpError:
    return HttpError(httplib2.Response({"status": str(status)}), content)


# ============ ERROR TRANSLATION ============

@pytest.mark.parametrize("operation,status,content,expected", [
    ("history", 404, b"Requested entity was not found.", InvalidCursorError),
    ("history", 400, b"Invalid startHistoryId", InvalidCursorError),
    ("message", 404, b"Not Found", MessageNotFoundError),
    ("history", 429, b"Too many requests", TransientProviderError),
    ("message", 503, b"Backend unavailable", TransientProviderError),
    ("history", 403, b'{"error": {"errors": [{"reason": "userRateLimitExceeded"}]}}', TransientProviderError),
    ("history", 401, b"Invalid Credentials", FatalProviderError),
    ("watch", 403, b"Insufficient Permission", FatalProviderError),
    ("watch", 404, b"Topic not found", ProviderError),
    ("history", 400, b"Bad Request", ProviderError),
    ("message", 400, b'{"error": {"message": "Invalid id value"}}', UnprocessableMessageError),
    ("message", 410, b"Gone", UnprocessableMessageError),
])
def test_translate_http_error(operation, status, content, expected):
    error = translate_http_error(http_error(status, content), operation)

    assert type(error) is expected
    assert error.status == status


# ============ NORMALIZATION ============

def test_normalize_message_prefers_html_body():
    record = normalize_message(raw_message("m1", subject="Interview", body="<b>Hello</b>"))

    assert record.provider_message_id == "m1"
    assert record.thread_id == "t-m1"
    assert record.subject == "Interview"
    assert record.sender == "bob@example.com"
    assert record.body == "<b>Hello</b>"
    assert record.snippet == "snippet m1"
    assert record.received_at == datetime(2023, 11, 14, 22, 13, 20)


def test_normalize_message_without_headers_or_snippet():
    raw = {
        "id": "m2",
        "internalDate": "0",
        "payload": {"mimeType": "text/plain", "body": {"data": encode_body("plain   text\nbody")}},
    }

    record = normalize_message(raw)

    assert record.subject == ""
    assert record.sender == ""
    assert record.thread_id == ""
    assert record.body == "plain   text\nbody"
    assert record.snippet == "plain text body"


def test_extract_body_nested_multipart():
    payload = {
        "mimeType": "multipart/mixed",
        "parts": [
            {
                "mimeType": "multipart/alternative",
                "parts": [{"mimeType": "text/plain", "body": {"data": encode_body("only plain")}}],
            },
            {"mimeType": "application/pdf", "body": {"attachmentId": "a1"}},
        ],
    }

    assert extract_body(payload) == "only plain"
    assert extract_body(None) == ""


def test_normalize_message_with_bad_internal_date_is_unprocessable():
    with pytest.raises(UnprocessableMessageError):
        normalize_message(raw_message("bad", internal_date="not-a-number"))


def test_normalize_message_without_id_is_unprocessable():
    raw = raw_message("m1")
    del raw["id"]

    with pytest.raises(UnprocessableMessageError):
        normalize_message(raw)


def test_text_snippet_strips_markup():
    html = "<html><style>p {color: red}</style><p>Hello</p>\n<p>World</p></html>"

    assert text_snippet(html) == "Hello World"
    assert len(text_snippet("x" * 500)) == 200


# ============ CREDENTIALS ============

def test_load_credentials_missing_token_is_fatal(tmp_path):
    account = Account(email_address="a@x.com", credential_ref=str(tmp_path / "missing.json"))

    with pytest.raises(FatalProviderError):
        load_credentials(account)


@pytest.mark.parametrize("content", ["not json", "{}"])
def test_load_credentials_corrupt_token_is_fatal(tmp_path, content):
    token = tmp_path / "token.json"
    token.write_text(content)
    account = Account(email_address="a@x.com", credential_ref=str(token))

    with pytest.raises(FatalProviderError):
        load_credentials(account)


# ============ GATEWAY ============

@pytest.fixture
def service():
    return MagicMock()


@pytest.fixture
def gmail(settings, service):
    gateway = GmailGateway(settings, credentials_loader=lambda account: None)
    gateway._service = lambda account: service
    return gateway


@pytest.fixture
def gmail_account():
    return Account(id=1, email_address="a@x.com", credential_ref="token.json")


def test_list_history_paginates_and_flattens(gmail, service, gmail_account):
    history = service.users.return_value.history.return_value.list.return_value
    history.execute.side_effect = [
        {
            "history": [
                {"id": "95", "messagesAdded": [
                    {"message": {"id": "m1", "threadId": "t1", "labelIds": ["INBOX", "UNREAD"]}}
                ]},
                {"id": "97", "messages": [{"id": "m0"}]},
            ],
            "historyId": "100",
            "nextPageToken": "page-2",
        },
        {
            "history": [
                {"id": "99", "messagesAdded": [{"message": {"id": "m2", "labelIds": ["DRAFT"]}}]},
            ],
            "historyId": "105",
        },
    ]

    delta = gmail.list_history_since(gmail_account, "90")

    assert delta.start_cursor == "90"
    assert delta.latest_cursor == "105"
    assert [r.cursor for r in delta.records] == ["95", "97", "99"]
    assert delta.records[0].added[0].message_id == "m1"
    assert delta.records[0].added[0].label_ids == ("INBOX", "UNREAD")
    assert delta.records[1].added == ()
    assert delta.records[2].added[0].label_ids == ("DRAFT",)

    list_calls = service.users.return_value.history.return_value.list.call_args_list
    assert list_calls[-1].kwargs["pageToken"] == "page-2"
    assert list_calls[-1].kwargs["startHistoryId"] == "90"


def test_list_history_empty_keeps_cursor(gmail, service, gmail_account):
    service.users.return_value.history.return_value.list.return_value.execute.return_value = {}

    delta = gmail.list_history_since(gmail_account, "90")

    assert delta.latest_cursor == "90"
    assert delta.records == []


def test_transient_errors_are_retried(gmail, service, gmail_account):
    execute = service.users.return_value.history.return_value.list.return_value.execute
    execute.side_effect = [http_error(503), http_error(429), {"historyId": "100"}]

    delta = gmail.list_history_since(gmail_account, "90")

    assert delta.latest_cursor == "100"
    assert execute.call_count == 3


def test_transient_errors_give_up_after_max_attempts(gmail, service, gmail_account):
    execute = service.users.return_value.history.return_value.list.return_value.execute
    execute.side_effect = http_error(500)

    with pytest.raises(TransientProviderError):
        gmail.list_history_since(gmail_account, "90")

    assert execute.call_count == 3


def test_socket_errors_are_transient(gmail, service, gmail_account):
    execute = service.users.return_value.messages.return_value.get.return_value.execute
    execute.side_effect = [TimeoutError("timed out"), raw_message("m1")]

    assert gmail.get_message(gmail_account, "m1")["id"] == "m1"


def test_invalid_cursor_is_not_retried(gmail, service, gmail_account):
    execute = service.users.return_value.history.return_value.list.return_value.execute
    execute.side_effect = http_error(404, b"Requested entity was not found.")

    with pytest.raises(InvalidCursorError):
        gmail.list_history_since(gmail_account, "1")

    assert execute.call_count == 1


def test_create_watch(gmail, service, gmail_account, settings):
    watch = service.users.return_value.watch
    watch.return_value.execute.return_value = {"historyId": 500, "expiration": "1700000000000"}

    registration = gmail.create_watch(gmail_account)

    assert registration.cursor == "500"
    assert registration.expiry == datetime(2023, 11, 14, 22, 13, 20)
    assert watch.call_args.kwargs["body"] == {
        "topicName": "projects/test-project/topics/gmail-notifications",
        "labelIds": ["INBOX"],
    }


def test_create_watch_without_project_is_fatal(settings, gmail_account):
    gateway = GmailGateway(settings.model_copy(update={"gcp_project_id": None}))

    with pytest.raises(FatalProviderError):
        gateway.create_watch(gmail_account)


def test_current_cursor_and_recent_ids(gmail, service, gmail_account):
    service.users.return_value.getProfile.return_value.execute.return_value = {"historyId": "777"}
    service.users.return_value.messages.return_value.list.return_value.execute.side_effect = [
        {"messages": [{"id": "m3"}, {"id": "m2"}], "nextPageToken": "next"},
        {"messages": [{"id": "m1"}, {"id": "m0"}]},
    ]

    assert gmail.current_cursor(gmail_account) == "777"
    assert gmail.list_recent_message_ids(gmail_account, 3) == ["m3", "m2", "m1"]


def test_credential_refresh_transport_error_is_retried(settings, gmail_account, monkeypatch):
    service = MagicMock()
    service.users.return_value.getProfile.return_value.execute.return_value = {"historyId": "777"}
    monkeypatch.setattr(gmail_service, "AuthorizedHttp", lambda creds, http: None)
    monkeypatch.setattr(gmail_service, "build", lambda *args, **kwargs: service)
    loader = MagicMock(side_effect=[TransientProviderError("Token refresh transport error"), object()])

    gateway = GmailGateway(settings, credentials_loader=loader)

    assert gateway.current_cursor(gmail_account) == "777"
    assert loader.call_count == 2


def test_rejected_message_fetch_is_not_retried(gmail, service, gmail_account):
    execute = service.users.return_value.messages.return_value.get.return_value.execute
    execute.side_effect = http_error(400, b'{"error": {"message": "Invalid id value"}}')

    with pytest.raises(UnprocessableMessageError):
        gmail.get_message(gmail_account, "bad-id")

    assert execute.call_count == 1
