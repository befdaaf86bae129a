"""
Error taxonomy for the notification and sync pipeline.

- MalformedNotificationError: push payload could not be decoded
- InvalidCursorError: provider no longer knows the start cursor
- TransientProviderError: network / rate-limit, retryable
- FatalProviderError: auth / permission, needs re-authorization
- MessageNotFoundError: message vanished between change record and fetch
- UnprocessableMessageError: one message the provider rejects or we cannot parse
- StaleWriteError: cursor compare-and-set lost against another writer
- ClassificationError: classifier failed (never leaves the dispatcher)
"""


class MailSyncError(Exception):
    """Base class for all pipeline errors."""


class MalformedNotificationError(MailSyncError):
    """Inbound notification is missing required fields or is not decodable."""


class ProviderError(MailSyncError):
    """Base class for failures talking to the mailbox provider."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class InvalidCursorError(ProviderError):
    """The provider expired or forgot the requested history cursor."""


class TransientProviderError(ProviderError):
    """Network or rate-limit failure; safe to retry with backoff."""


class FatalProviderError(ProviderError):
    """Authentication or permission failure; not retried."""


class MessageNotFoundError(ProviderError):
    """The requested message no longer exists at the provider."""


class UnprocessableMessageError(ProviderError):
    """A single message was rejected by the provider or could not be parsed; retrying will not help."""


class StaleWriteError(MailSyncError):
    """Cursor compare-and-set rejected: the stored cursor moved on."""

    def __init__(self, account_id: int, expected: str | None, new_cursor: str | None):
        super().__init__(
            f"Stale cursor write for account {account_id}: "
            f"expected {expected!r}, attempted {new_cursor!r}"
        )
        self.account_id = account_id
        self.expected = expected
        self.new_cursor = new_cursor


class ClassificationError(MailSyncError):
    """Classifier call or response parsing failed."""
