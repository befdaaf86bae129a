"""
Sync Engine: turns push notifications into stored messages.

Pipeline for one notification:
1. Resolve the mailbox address to an Account (unknown -> no-op)
2. Start from the stored cursor (or the hint for a fresh account)
3. Diff provider history since that cursor
   - InvalidCursor -> reset baseline to the hint (or full resync, by policy)
   - Transient / Fatal -> propagate, cursor untouched
4. Collect deduplicated message additions, skipping excluded labels (drafts)
5. Fetch + normalize + upsert each message with bounded parallelism
   - vanished or unparseable messages are skipped
   - other failures count against a per-message retry budget
6. Compare-and-set the cursor; losing the race is fine, the winner is ahead
7. Hand newly created messages to the classifier, fire-and-forget

Correctness under duplicate and concurrent deliveries rests on the
idempotent upsert and the cursor compare-and-set, not on locking.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Callable, Optional

from sqlalchemy.orm import Session

from mailsync.config import Settings
from mailsync.exceptions import (
    FatalProviderError,
    InvalidCursorError,
    MailSyncError,
    MessageNotFoundError,
    ProviderError,
    StaleWriteError,
    TransientProviderError,
    UnprocessableMessageError,
)
from mailsync.models.account import Account
from mailsync.services import cursor_store, message_store
from mailsync.services.classifier import ClassificationDispatcher, build_dispatcher
from mailsync.services.gmail_service import (
    GmailGateway,
    HistoryDelta,
    WatchRegistration,
    normalize_message,
)
from mailsync.services.notification_decoder import NotificationEvent

logger = logging.getLogger(__name__)


class SyncStatus(str, Enum):
    """Outcome of one sync invocation."""
    SYNCED = "synced"
    BASELINE_RESET = "baseline_reset"  # stale cursor, gap skipped
    RESYNCED = "resynced"  # stale cursor, recent mail re-listed
    UNKNOWN_ACCOUNT = "unknown_account"
    SKIPPED = "skipped"  # account needs re-authorization


@dataclass
class SyncResult:
    account_id: Optional[int]
    status: SyncStatus
    start_cursor: Optional[str] = None
    cursor: Optional[str] = None  # value we tried to store
    cursor_advanced: bool = False
    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped_messages: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "account_id": self.account_id,
            "status": self.status.value,
            "start_cursor": self.start_cursor,
            "cursor": self.cursor,
            "cursor_advanced": self.cursor_advanced,
            "created": self.created,
            "updated": self.updated,
            "failed": self.failed,
            "skipped_messages": self.skipped_messages,
        }


@dataclass
class _IngestOutcome:
    created: dict[str, int] = field(default_factory=dict)  # provider id -> row id
    updated: list[str] = field(default_factory=list)
    failed: dict[str, Exception] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)  # gone, unparseable or out of retries


class SyncEngine:
    """
    Orchestrates history diffing, dedup, persistence and cursor advance.

    Args:
        session_factory: Creates DB sessions (one per unit of work/thread)
        gateway: Provider Gateway
        settings: Sync policies and limits
        dispatcher: Optional classifier; None disables classification
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        gateway: GmailGateway,
        settings: Settings,
        dispatcher: Optional[ClassificationDispatcher] = None,
    ) -> None:
        self.session_factory = session_factory
        self.gateway = gateway
        self.settings = settings
        self.dispatcher = dispatcher

    # ============ ENTRY POINTS ============

    def process_notification(self, event: NotificationEvent) -> SyncResult:
        """
        Process one (possibly duplicate, possibly out-of-order) push notification.

        Raises:
            TransientProviderError: history diff kept failing; cursor untouched
            FatalProviderError: credentials rejected; account flagged
            ProviderError: any other unexpected provider response
        """
        with self.session_factory() as db:
            account = cursor_store.get_account_by_address(db, event.email_address)

        if account is None:
            logger.info("Notification for unknown mailbox %s discarded", event.email_address)
            return SyncResult(account_id=None, status=SyncStatus.UNKNOWN_ACCOUNT)

        logger.info(
            "📧 Notification for account %s (historyId %s, delivery %s)",
            account.id, event.cursor_hint, event.delivery_id
        )
        return self._sync(account, event.cursor_hint)

    def sync_account(self, account_id: int) -> SyncResult:
        """
        Manual, initial or reconciliation sync for one account.

        With a stored cursor this is an incremental diff towards the
        provider's current position. Without one, recent mail is
        backfilled and the current position becomes the baseline.
        """
        account = self._load_account(account_id)
        if account.auth_error:
            logger.warning("Skipping account %s until re-authorized: %s", account.id, account.auth_error)
            return SyncResult(account_id=account.id, status=SyncStatus.SKIPPED)

        hint = self._provider_call(account, lambda: self.gateway.current_cursor(account))

        if account.last_cursor is not None:
            return self._sync(account, hint)

        logger.info("🆕 Initial sync for account %s - fetching recent messages", account.id)
        result = self._resync(account, expected=None, baseline=hint)
        result.status = SyncStatus.SYNCED
        return result

    def establish_watch(self, account_id: int) -> WatchRegistration:
        """
        Create or renew the provider watch for an account.

        Safe to call redundantly. The returned cursor becomes the
        baseline only for accounts that have never synced; an existing
        cursor is kept so unsynced history is not skipped.
        """
        account = self._load_account(account_id)
        registration = self._provider_call(account, lambda: self.gateway.create_watch(account))

        with self.session_factory() as db:
            cursor_store.set_watch(db, account.id, registration.expiry)
            cursor_store.clear_auth_error(db, account.id)
            if account.last_cursor is None:
                try:
                    cursor_store.set_cursor(db, account.id, None, registration.cursor)
                except StaleWriteError:
                    logger.info("Account %s got a cursor concurrently; keeping it", account.id)

        logger.info(
            "👀 Watch active for account %s until %s (historyId %s)",
            account.id, registration.expiry, registration.cursor
        )
        return registration

    def stop_watch(self, account_id: int) -> None:
        account = self._load_account(account_id)
        self._provider_call(account, lambda: self.gateway.stop_watch(account))
        with self.session_factory() as db:
            cursor_store.set_watch(db, account.id, None)
        logger.info("Watch stopped for account %s", account.id)

    def renew_expiring_watches(self, within: Optional[timedelta] = None) -> dict[int, str]:
        """
        Renew every watch that is missing or expires within `within`.

        Failures are logged per account and do not stop the others.

        Returns:
            account id -> "renewed" or the error message
        """
        if within is None:
            within = timedelta(hours=self.settings.watch_renew_before_hours)

        with self.session_factory() as db:
            accounts = cursor_store.list_accounts_needing_watch(db, cursor_store.utcnow() + within)

        outcome: dict[int, str] = {}
        for account in accounts:
            try:
                self.establish_watch(account.id)
                outcome[account.id] = "renewed"
            except ProviderError as e:
                logger.error("Watch renewal failed for account %s: %s", account.id, e)
                outcome[account.id] = str(e)
        return outcome

    # ============ CORE ============

    def _sync(self, account: Account, hint: str) -> SyncResult:
        if account.auth_error:
            logger.warning("Skipping account %s until re-authorized: %s", account.id, account.auth_error)
            return SyncResult(account_id=account.id, status=SyncStatus.SKIPPED)

        expected = account.last_cursor
        start = expected if expected is not None else hint

        try:
            delta = self._provider_call(account, lambda: self.gateway.list_history_since(account, start))
        except InvalidCursorError as e:
            logger.warning("Cursor %s for account %s is no longer valid: %s", start, account.id, e)
            return self._recover_invalid_cursor(account, expected, hint)

        candidates = self._collect_candidates(delta)
        outcome = self._ingest(account, list(candidates))
        self._raise_if_fatal(account, outcome)

        new_cursor = self._next_cursor(delta, candidates, outcome, expected, start)
        result = SyncResult(
            account_id=account.id,
            status=SyncStatus.SYNCED,
            start_cursor=start,
            cursor=new_cursor,
            created=list(outcome.created),
            updated=outcome.updated,
            failed=list(outcome.failed),
            skipped_messages=outcome.skipped,
        )
        result.cursor_advanced = self._advance_cursor(account, expected, new_cursor)
        self._dispatch(outcome)

        logger.info(
            "✅ Account %s synced %s -> %s: %d new, %d updated, %d failed",
            account.id, start, new_cursor, len(outcome.created), len(outcome.updated), len(outcome.failed)
        )
        return result

    def _recover_invalid_cursor(
        self,
        account: Account,
        expected: Optional[str],
        hint: str
    ) -> SyncResult:
        """Resume from the hint; the gap can only be refilled by a full resync."""
        if self.settings.invalid_cursor_policy == "full_resync":
            result = self._resync(account, expected=expected, baseline=hint)
            result.status = SyncStatus.RESYNCED
            return result

        result = SyncResult(
            account_id=account.id,
            status=SyncStatus.BASELINE_RESET,
            start_cursor=expected,
            cursor=hint,
        )
        result.cursor_advanced = self._advance_cursor(account, expected, hint)
        logger.warning("🔁 Account %s baseline reset to historyId %s", account.id, hint)
        return result

    def _resync(self, account: Account, expected: Optional[str], baseline: str) -> SyncResult:
        """Ingest the most recent mailbox messages, then move the cursor to `baseline`."""
        message_ids = self._provider_call(
            account,
            lambda: self.gateway.list_recent_message_ids(account, self.settings.resync_max_messages)
        )
        outcome = self._ingest(account, message_ids)
        self._raise_if_fatal(account, outcome)

        result = SyncResult(
            account_id=account.id,
            status=SyncStatus.RESYNCED,
            start_cursor=expected,
            cursor=baseline,
            created=list(outcome.created),
            updated=outcome.updated,
            failed=list(outcome.failed),
            skipped_messages=outcome.skipped,
        )
        result.cursor_advanced = self._advance_cursor(account, expected, baseline)
        self._dispatch(outcome)
        logger.info(
            "Account %s resynced %d recent messages, baseline %s",
            account.id, len(message_ids), baseline
        )
        return result

    def _collect_candidates(self, delta: HistoryDelta) -> dict[str, int]:
        """
        Deduplicated message ids added in the delta.

        Returns:
            provider message id -> index of the first record that added it
        """
        excluded = set(self.settings.sync_excluded_labels)
        candidates: dict[str, int] = {}
        for index, record in enumerate(delta.records):
            for added in record.added:
                if excluded.intersection(added.label_ids):
                    continue
                candidates.setdefault(added.message_id, index)
        return candidates

    def _ingest(self, account: Account, message_ids: list[str]) -> _IngestOutcome:
        """Fetch and upsert messages with bounded parallelism; failures are per message."""
        outcome = _IngestOutcome()
        if not message_ids:
            return outcome

        workers = max(1, min(self.settings.sync_max_workers, len(message_ids)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="sync") as pool:
            futures = {
                pool.submit(self._ingest_one, account, message_id): message_id
                for message_id in message_ids
            }
            for future, message_id in futures.items():
                try:
                    row_id, created = future.result()
                except MessageNotFoundError:
                    logger.info("Message %s vanished before fetch; skipping", message_id)
                    outcome.skipped.append(message_id)
                    continue
                except UnprocessableMessageError as e:
                    logger.warning("Skipping message %s for account %s: %s", message_id, account.id, e)
                    outcome.skipped.append(message_id)
                    continue
                except FatalProviderError as e:
                    outcome.failed[message_id] = e
                    continue
                except Exception as e:  # isolated per message; cursor policy decides
                    if self._retry_budget_spent(account, message_id, e):
                        outcome.skipped.append(message_id)
                    else:
                        outcome.failed[message_id] = e
                    continue

                if created:
                    outcome.created[message_id] = row_id
                else:
                    outcome.updated.append(message_id)

        return outcome

    def _ingest_one(self, account: Account, message_id: str) -> tuple[int, bool]:
        raw = self.gateway.get_message(account, message_id)
        record = normalize_message(raw)
        with self.session_factory() as db:
            message, created = message_store.upsert_message(db, account.id, record)
            message_store.clear_failure(db, account.id, message_id)
            return message.id, created

    def _retry_budget_spent(self, account: Account, message_id: str, error: Exception) -> bool:
        """Count a failed attempt; True once the message should be given up on."""
        with self.session_factory() as db:
            attempts = message_store.record_failure(db, account.id, message_id, str(error))

        limit = self.settings.sync_max_message_attempts
        if attempts >= limit:
            logger.error(
                "❌ Giving up on message %s for account %s after %d attempts: %s",
                message_id, account.id, attempts, error
            )
            return True

        logger.error(
            "❌ Failed to sync message %s for account %s (attempt %d/%d): %s",
            message_id, account.id, attempts, limit, error
        )
        return False

    def _next_cursor(
        self,
        delta: HistoryDelta,
        candidates: dict[str, int],
        outcome: _IngestOutcome,
        expected: Optional[str],
        start: str
    ) -> Optional[str]:
        """
        Position to store after this delta.

        "full" always takes the provider's latest cursor. "watermark"
        stops before the first record holding a failed message, so the
        next diff retries it.
        """
        if not outcome.failed or self.settings.cursor_advance_policy == "full":
            return delta.latest_cursor

        first_failed = min(candidates[message_id] for message_id in outcome.failed)
        if first_failed > 0:
            return delta.records[first_failed - 1].cursor

        # Nothing fully processed; a fresh account still keeps its starting point
        return expected if expected is not None else start

    def _advance_cursor(self, account: Account, expected: Optional[str], new_cursor: Optional[str]) -> bool:
        """Compare-and-set; a lost race is dropped, never retried."""
        if new_cursor is None or new_cursor == expected:
            return False
        try:
            with self.session_factory() as db:
                cursor_store.set_cursor(db, account.id, expected, new_cursor)
        except StaleWriteError as e:
            logger.info("Cursor advance dropped for account %s: %s", account.id, e)
            return False
        logger.debug("📝 Account %s cursor %s -> %s", account.id, expected, new_cursor)
        return True

    def _dispatch(self, outcome: _IngestOutcome) -> None:
        if self.dispatcher is None or not outcome.created:
            return
        self.dispatcher.dispatch(list(outcome.created.values()))

    # ============ HELPERS ============

    def _load_account(self, account_id: int) -> Account:
        with self.session_factory() as db:
            account = cursor_store.get_account(db, account_id)
        if account is None:
            raise LookupError(f"Account {account_id} not found")
        return account

    def _provider_call(self, account: Account, call):
        """Run a gateway call, flagging the account when credentials are rejected."""
        try:
            return call()
        except FatalProviderError as e:
            self._mark_fatal(account, e)
            raise

    def _raise_if_fatal(self, account: Account, outcome: _IngestOutcome) -> None:
        for error in outcome.failed.values():
            if isinstance(error, FatalProviderError):
                self._mark_fatal(account, error)
                raise error

    def _mark_fatal(self, account: Account, error: FatalProviderError) -> None:
        logger.error("🔒 Account %s needs re-authorization: %s", account.id, error)
        with self.session_factory() as db:
            cursor_store.mark_auth_error(db, account.id, str(error))


def run_notification_sync(engine: SyncEngine, event: NotificationEvent) -> Optional[SyncResult]:
    """
    Background-task entry point for a decoded notification.

    Every failure is logged and dropped here; the next notification or
    reconciliation sync catches up.
    """
    try:
        return engine.process_notification(event)
    except TransientProviderError as e:
        logger.error("Sync for %s dropped after retries: %s", event.email_address, e)
    except FatalProviderError as e:
        logger.error("Sync for %s skipped, credentials rejected: %s", event.email_address, e)
    except MailSyncError as e:
        logger.error("Sync for %s failed: %s", event.email_address, e)
    except Exception:  # nothing above the background task would log it
        logger.exception("Unexpected error syncing %s", event.email_address)
    return None


def create_sync_engine(settings: Settings, session_factory: Callable[[], Session]) -> SyncEngine:
    """Wire the Gmail gateway and Gemini dispatcher into a SyncEngine."""
    return SyncEngine(
        session_factory=session_factory,
        gateway=GmailGateway(settings),
        settings=settings,
        dispatcher=build_dispatcher(settings, session_factory),
    )
