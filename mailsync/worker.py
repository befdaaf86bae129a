"""
Maintenance worker - keeps Gmail watches alive and reconciles cursors.

Each cycle:
1. Renew watches that are missing or expire within WATCH_RENEW_BEFORE_HOURS
2. Run a reconciliation sync for every account with a cursor, catching
   up on notifications that were dropped or never delivered

Run with `mailsync-worker` (or `python -m mailsync.worker --once`).
"""

import argparse
import logging
import signal
import sys
import time
from dataclasses import dataclass
from datetime import datetime

from mailsync.config import Settings, get_settings
from mailsync.database import Base, SessionLocal, engine
from mailsync.exceptions import ProviderError
from mailsync.services import cursor_store
from mailsync.services.sync_engine import SyncEngine, create_sync_engine

logger = logging.getLogger(__name__)


@dataclass
class WorkerStats:
    """Track worker statistics."""
    cycles_completed: int = 0
    watches_renewed: int = 0
    messages_synced: int = 0
    total_errors: int = 0
    last_cycle: datetime | None = None


class SyncWorker:
    """
    Periodic watch renewal and reconciliation loop.

    Notifications do the real-time work; this only covers the gaps.
    """

    def __init__(self, sync_engine: SyncEngine, settings: Settings):
        self.sync_engine = sync_engine
        self.interval = settings.worker_interval_minutes * 60  # Convert to seconds
        self.running = False
        self.stats = WorkerStats()

    def _renew_watches(self) -> None:
        outcome = self.sync_engine.renew_expiring_watches()
        for account_id, result in outcome.items():
            if result == "renewed":
                self.stats.watches_renewed += 1
            else:
                self.stats.total_errors += 1

    def _reconcile(self) -> None:
        with self.sync_engine.session_factory() as db:
            accounts = [
                account for account in cursor_store.list_accounts(db)
                if account.last_cursor is not None and not account.auth_error
            ]

        for account in accounts:
            try:
                result = self.sync_engine.sync_account(account.id)
            except ProviderError as e:
                self.stats.total_errors += 1
                logger.error("Reconciliation failed for account %s: %s", account.id, e)
                continue
            self.stats.messages_synced += len(result.created)

    def run_cycle(self) -> None:
        """Run one renewal + reconciliation pass."""
        self.stats.last_cycle = datetime.now()
        logger.info("Starting cycle #%d", self.stats.cycles_completed + 1)

        self._renew_watches()
        self._reconcile()

        self.stats.cycles_completed += 1
        self._log_stats()

    def _log_stats(self) -> None:
        """Log current worker statistics."""
        logger.info(
            "Worker stats: cycles=%d, renewed=%d, synced=%d, errors=%d",
            self.stats.cycles_completed,
            self.stats.watches_renewed,
            self.stats.messages_synced,
            self.stats.total_errors,
        )

    def _handle_shutdown(self, signum, frame) -> None:
        """Handle graceful shutdown."""
        logger.info("Received signal %s, shutting down...", signum)
        self.running = False

    def run(self) -> int:
        """Run the worker loop."""
        signal.signal(signal.SIGTERM, self._handle_shutdown)
        signal.signal(signal.SIGINT, self._handle_shutdown)

        logger.info("Sync worker starting, interval %d minutes", self.interval // 60)
        self.running = True

        self.run_cycle()

        while self.running:
            # Sleep in small increments to respond to signals quickly
            sleep_remaining = self.interval
            while sleep_remaining > 0 and self.running:
                sleep_time = min(sleep_remaining, 10)
                time.sleep(sleep_time)
                sleep_remaining -= sleep_time

            if self.running:
                self.run_cycle()

        logger.info("Worker shutdown complete")
        return 0


def main(argv: list[str] | None = None) -> int:
    """Entry point for the sync worker."""
    parser = argparse.ArgumentParser(description="Renew Gmail watches and reconcile mailbox cursors")
    parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    args = parser.parse_args(argv)

    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
    )

    Base.metadata.create_all(bind=engine)

    sync_engine = create_sync_engine(settings, SessionLocal)
    worker = SyncWorker(sync_engine, settings)

    try:
        if args.once:
            worker.run_cycle()
            return 0
        return worker.run()
    finally:
        if sync_engine.dispatcher is not None:
            sync_engine.dispatcher.shutdown(wait=True)


if __name__ == "__main__":
    sys.exit(main())
