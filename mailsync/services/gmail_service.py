"""
Gmail Provider Gateway.

Thin wrapper over the Gmail API for the sync pipeline:
- list_history_since: history diff from a cursor (historyId)
- get_message: full message fetch
- create_watch / stop_watch: push notification registration
- current_cursor / list_recent_message_ids: baselines and full resyncs

Every call translates Gmail/transport errors into the mailsync error
taxonomy and retries transient failures with exponential backoff.
Credential refresh happens here; acquiring credentials does not.
"""

import base64
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import httplib2
from bs4 import BeautifulSoup
from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from mailsync.config import Settings
from mailsync.exceptions import (
    FatalProviderError,
    InvalidCursorError,
    MessageNotFoundError,
    ProviderError,
    TransientProviderError,
    UnprocessableMessageError,
)
from mailsync.models.account import Account
from mailsync.services.message_store import MessageRecord

logger = logging.getLogger(__name__)

SCOPES = [
    "https://www.googleapis.com/auth/gmail.readonly",
    "https://www.googleapis.com/auth/gmail.modify"
]

TRANSIENT_STATUSES = {408, 429, 500, 502, 503, 504}
RATE_LIMIT_REASONS = ("rateLimitExceeded", "userRateLimitExceeded", "backendError")


@dataclass(frozen=True)
class AddedMessage:
    """A message addition inside a history record."""
    message_id: str
    thread_id: str = ""
    label_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class ChangeRecord:
    """One history record: its own cursor plus the messages it added."""
    cursor: str
    added: tuple[AddedMessage, ...] = ()


@dataclass
class HistoryDelta:
    """Changes between start_cursor and the provider's current position."""
    start_cursor: str
    latest_cursor: str
    records: list[ChangeRecord] = field(default_factory=list)


@dataclass(frozen=True)
class WatchRegistration:
    cursor: str
    expiry: Optional[datetime]  # naive UTC


# ============ CREDENTIALS ============

def load_credentials(account: Account) -> Credentials:
    """
    Load the account's authorized-user token, refreshing it if expired.

    credential_ref points at a token file written by the OAuth flow
    (outside this service). Refreshed tokens are written back.

    Raises:
        FatalProviderError: missing or unreadable token, no refresh token,
            or refresh rejected
    """
    token_file = account.credential_ref
    if not token_file or not os.path.exists(token_file):
        raise FatalProviderError(f"No token found for {account.email_address}. Please sign in.")

    try:
        creds = Credentials.from_authorized_user_file(token_file, SCOPES)
    except (ValueError, OSError) as e:
        raise FatalProviderError(f"Token file for {account.email_address} is unreadable: {e}") from e

    if creds.valid:
        return creds

    if not (creds.expired and creds.refresh_token):
        raise FatalProviderError(
            f"Token for {account.email_address} expired and has no refresh token."
        )

    try:
        creds.refresh(Request())
    except RefreshError as e:
        raise FatalProviderError(f"Token refresh failed: {e}") from e
    except TransportError as e:
        raise TransientProviderError(f"Token refresh transport error: {e}") from e

    # Save refreshed token
    with open(token_file, "w") as f:
        f.write(creds.to_json())

    return creds


# ============ ERROR TRANSLATION ============

def _error_detail(error: HttpError) -> str:
    content = error.content
    if isinstance(content, bytes):
        return content.decode("utf-8", errors="ignore")
    return str(content or "")


def translate_http_error(error: HttpError, operation: str) -> Exception:
    """
    Map a Gmail HttpError onto the error taxonomy.

    Args:
        error: The googleapiclient error
        operation: "history", "message", "watch" or another call name;
            decides what a 404 means

    Returns:
        The exception to raise in its place. Only 401 and non rate-limit
        403 are Fatal; other unmapped statuses are a plain ProviderError.
    """
    status = int(getattr(error.resp, "status", 0) or 0)
    detail = _error_detail(error)

    if operation == "history":
        if status == 404 or (status == 400 and "startHistoryId" in detail):
            return InvalidCursorError(f"History cursor no longer valid: {detail}", status)
    if operation == "message" and status == 404:
        return MessageNotFoundError(f"Message not found: {detail}", status)

    if status in TRANSIENT_STATUSES:
        return TransientProviderError(f"Gmail {operation} failed ({status}): {detail}", status)
    if status == 403 and any(reason in detail for reason in RATE_LIMIT_REASONS):
        return TransientProviderError(f"Gmail {operation} rate limited: {detail}", status)
    if status in (401, 403):
        return FatalProviderError(f"Gmail {operation} failed ({status}): {detail}", status)

    if operation == "message" and 400 <= status < 500:
        return UnprocessableMessageError(f"Gmail rejected message fetch ({status}): {detail}", status)

    return ProviderError(f"Gmail {operation} failed ({status}): {detail}", status)


# ============ MESSAGE NORMALIZATION ============

def _decode_base64url(data: str) -> str:
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded).decode("utf-8", errors="ignore")


def extract_body(payload: Optional[dict]) -> str:
    """
    Extract the body from a Gmail message payload.

    Handles simple and (nested) multipart messages, preferring
    text/html over text/plain.
    """
    if not payload:
        return ""

    found: dict[str, str] = {}

    def walk(part: dict) -> None:
        mime_type = part.get("mimeType", "")
        data = part.get("body", {}).get("data")
        if data and mime_type in ("text/html", "text/plain") and mime_type not in found:
            found[mime_type] = _decode_base64url(data)
        for child in part.get("parts", []) or []:
            walk(child)

    walk(payload)

    if "text/html" in found:
        return found["text/html"]
    if "text/plain" in found:
        return found["text/plain"]

    # Simple message without a text mime type
    data = payload.get("body", {}).get("data")
    return _decode_base64url(data) if data else ""


def text_snippet(body: str, limit: int = 200) -> str:
    """Plain-text preview of an HTML or text body."""
    soup = BeautifulSoup(body, "html.parser")
    for tag in soup(["script", "style"]):
        tag.decompose()
    text = re.sub(r"\s+", " ", soup.get_text(separator=" ")).strip()
    return text[:limit]


def normalize_message(raw: dict) -> MessageRecord:
    """
    Convert a users.messages.get (format=full) response into a MessageRecord.

    Missing headers become empty strings; a missing internalDate falls
    back to the current time.

    Raises:
        UnprocessableMessageError: the response is not a parseable message
    """
    try:
        return _build_record(raw)
    except (KeyError, ValueError, TypeError, AttributeError) as e:
        raise UnprocessableMessageError(f"Cannot parse Gmail message: {e!r}") from e


def _build_record(raw: dict) -> MessageRecord:
    payload = raw.get("payload") or {}
    headers = {
        h.get("name", "").lower(): h.get("value", "")
        for h in payload.get("headers", []) or []
    }

    body = extract_body(payload)
    snippet = raw.get("snippet") or (text_snippet(body) if body else "")

    internal_date = raw.get("internalDate")
    if internal_date:
        received_at = datetime.fromtimestamp(int(internal_date) / 1000, tz=timezone.utc)
    else:
        received_at = datetime.now(timezone.utc)

    return MessageRecord(
        provider_message_id=raw["id"],
        thread_id=raw.get("threadId") or "",
        subject=headers.get("subject", ""),
        sender=headers.get("from", ""),
        snippet=snippet,
        body=body,
        received_at=received_at.replace(tzinfo=None)
    )


# ============ GATEWAY ============

class GmailGateway:
    """
    Provider Gateway backed by the Gmail REST API.

    A fresh API client is built per request attempt, so the gateway can be
    shared across sync threads (httplib2 connections are not thread-safe).
    """

    def __init__(
        self,
        settings: Settings,
        credentials_loader: Callable[[Account], Credentials] = load_credentials,
    ) -> None:
        self.settings = settings
        self._credentials_loader = credentials_loader

    def _service(self, account: Account):
        creds = self._credentials_loader(account)
        http = AuthorizedHttp(creds, http=httplib2.Http(timeout=self.settings.provider_timeout_seconds))
        return build("gmail", "v1", http=http, cache_discovery=False)

    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.settings.provider_max_attempts),
            wait=wait_exponential(
                multiplier=self.settings.provider_backoff_seconds,
                max=self.settings.provider_backoff_max_seconds,
            ),
            retry=retry_if_exception_type(TransientProviderError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    def _execute(self, account: Account, operation: str, request_factory: Callable[[Any], Any]) -> dict:
        """
        Execute a Gmail request with error translation and retries.

        Credentials are loaded inside each attempt, so a token refresh
        that fails in transport is retried like any other transient error.
        """

        def attempt() -> dict:
            try:
                service = self._service(account)
                return request_factory(service).execute()
            except HttpError as e:
                raise translate_http_error(e, operation) from e
            except (httplib2.HttpLib2Error, OSError) as e:
                # Timeouts and connection resets
                raise TransientProviderError(f"Gmail {operation} transport error: {e}") from e

        return self._retrying()(attempt)

    def list_history_since(self, account: Account, cursor: str) -> HistoryDelta:
        """
        Fetch message additions since `cursor` (Gmail History API).

        Follows nextPageToken until exhausted. latest_cursor is the
        mailbox historyId reported by the last page.

        Raises:
            InvalidCursorError: Gmail no longer has history for `cursor`
            TransientProviderError: retries exhausted
            FatalProviderError: credentials or permissions rejected
        """
        records: list[ChangeRecord] = []
        latest = cursor
        page_token = None

        while True:
            response = self._execute(account, "history", lambda service: service.users().history().list(
                userId="me",
                startHistoryId=cursor,
                historyTypes=["messageAdded"],
                pageToken=page_token
            ))

            for record in response.get("history", []):
                added = []
                for item in record.get("messagesAdded", []):
                    message = item.get("message", {})
                    if not message.get("id"):
                        continue
                    added.append(AddedMessage(
                        message_id=message["id"],
                        thread_id=message.get("threadId", ""),
                        label_ids=tuple(message.get("labelIds", []))
                    ))
                records.append(ChangeRecord(cursor=str(record["id"]), added=tuple(added)))

            if response.get("historyId"):
                latest = str(response["historyId"])

            page_token = response.get("nextPageToken")
            if not page_token:
                break

        return HistoryDelta(start_cursor=cursor, latest_cursor=latest, records=records)

    def get_message(self, account: Account, message_id: str) -> dict:
        """Fetch a full message. Raises MessageNotFoundError if it was deleted."""
        return self._execute(account, "message", lambda service: service.users().messages().get(
            userId="me",
            id=message_id,
            format="full"
        ))

    def create_watch(self, account: Account) -> WatchRegistration:
        """
        Register (or renew) Gmail push notifications via Cloud Pub/Sub.

        Watch expires after ~7 days and must be renewed. Calling this on
        an active watch simply renews it.
        """
        topic_name = self.settings.topic_name
        if not topic_name:
            raise FatalProviderError("GCP_PROJECT_ID not configured")

        response = self._execute(account, "watch", lambda service: service.users().watch(
            userId="me",
            body={
                "topicName": topic_name,
                "labelIds": self.settings.watch_label_ids
            }
        ))

        expiration = response.get("expiration")
        expiry = None
        if expiration:
            expiry = datetime.fromtimestamp(int(expiration) / 1000, tz=timezone.utc).replace(tzinfo=None)

        return WatchRegistration(cursor=str(response["historyId"]), expiry=expiry)

    def stop_watch(self, account: Account) -> None:
        self._execute(account, "stop", lambda service: service.users().stop(userId="me"))

    def current_cursor(self, account: Account) -> str:
        """The mailbox's current historyId (users.getProfile)."""
        profile = self._execute(account, "profile", lambda service: service.users().getProfile(userId="me"))
        return str(profile["historyId"])

    def list_recent_message_ids(self, account: Account, max_results: int) -> list[str]:
        """Most recent message ids in the watched labels, newest first."""
        ids: list[str] = []
        page_token = None

        while len(ids) < max_results:
            response = self._execute(account, "list", lambda service: service.users().messages().list(
                userId="me",
                maxResults=min(max_results - len(ids), 500),
                labelIds=self.settings.watch_label_ids,
                pageToken=page_token
            ))
            ids.extend(m["id"] for m in response.get("messages", []))
            page_token = response.get("nextPageToken")
            if not page_token:
                break

        return ids[:max_results]
