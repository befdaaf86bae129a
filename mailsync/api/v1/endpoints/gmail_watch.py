"""
Gmail Watch Management

Endpoints to register, renew and stop Gmail push notification watches.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException

from mailsync.api.deps import get_sync_engine
from mailsync.exceptions import FatalProviderError, ProviderError
from mailsync.services.sync_engine import SyncEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/gmail", tags=["Gmail Watch"])


@router.post("/accounts/{account_id}/watch/start")
def start_gmail_watch(account_id: int, engine: SyncEngine = Depends(get_sync_engine)):
    """
    Register (or renew) Gmail push notifications for an account.

    This tells Gmail to publish to the Pub/Sub topic whenever the
    mailbox changes.

    Prerequisites:
    1. Pub/Sub topic created (GMAIL_PUBSUB_TOPIC)
    2. Gmail publisher permission granted on the topic
    3. Push subscription pointing at /api/v1/gmail/events
    4. GCP_PROJECT_ID set in .env

    Important:
    - Watch expires in ~7 days; POST /gmail/watch/renew (or the worker) renews it
    - The returned historyId becomes the baseline only for a never-synced account
    """
    try:
        registration = engine.establish_watch(account_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except FatalProviderError as e:
        raise HTTPException(status_code=409, detail=f"Failed to register Gmail watch: {e}")
    except ProviderError as e:
        raise HTTPException(status_code=502, detail=f"Failed to register Gmail watch: {e}")

    return {
        "status": "success",
        "message": "Gmail watch registered successfully",
        "historyId": registration.cursor,
        "expiration_date": registration.expiry.isoformat() if registration.expiry else None
    }


@router.post("/accounts/{account_id}/watch/stop")
def stop_gmail_watch(account_id: int, engine: SyncEngine = Depends(get_sync_engine)):
    """
    Stop Gmail push notifications.

    This cancels the active watch and stops receiving notifications.
    """
    try:
        engine.stop_watch(account_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ProviderError as e:
        raise HTTPException(status_code=502, detail=f"Failed to stop Gmail watch: {e}")

    return {
        "status": "success",
        "message": "Gmail watch stopped successfully"
    }


@router.post("/watch/renew")
def renew_gmail_watches(engine: SyncEngine = Depends(get_sync_engine)):
    """Renew every watch that is missing or close to expiry."""
    outcome = engine.renew_expiring_watches()
    renewed = [account_id for account_id, result in outcome.items() if result == "renewed"]
    failed = {account_id: result for account_id, result in outcome.items() if result != "renewed"}

    return {
        "status": "success" if not failed else "partial",
        "renewed": renewed,
        "failed": failed
    }
