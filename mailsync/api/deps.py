"""Shared FastAPI dependencies."""

from functools import lru_cache

from mailsync.config import get_settings
from mailsync.database import SessionLocal
from mailsync.services.sync_engine import SyncEngine, create_sync_engine


@lru_cache
def get_sync_engine() -> SyncEngine:
    """Process-wide SyncEngine (gateway + classifier pool)."""
    return create_sync_engine(get_settings(), SessionLocal)
