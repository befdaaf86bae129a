"""
Gmail Push Notification Webhook

This endpoint receives real-time notifications from Google Cloud Pub/Sub
whenever Gmail detects changes in the mailbox.

Pipeline:
1. Decode the push payload into {emailAddress, historyId}
2. Acknowledge immediately (Pub/Sub redelivers slow or failed pushes)
3. Sync in the background: history diff -> dedup -> upsert -> cursor
"""

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse

from mailsync.api.deps import get_sync_engine
from mailsync.config import Settings, get_settings
from mailsync.exceptions import (
    FatalProviderError,
    MalformedNotificationError,
    ProviderError,
    TransientProviderError,
)
from mailsync.services.notification_decoder import decode_notification
from mailsync.services.sync_engine import SyncEngine, run_notification_sync

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/gmail", tags=["Gmail Push"])


@router.post("/events", status_code=status.HTTP_202_ACCEPTED)
async def gmail_events(
    request: Request,
    background_tasks: BackgroundTasks,
    engine: SyncEngine = Depends(get_sync_engine),
    settings: Settings = Depends(get_settings),
):
    """
    Webhook endpoint for Gmail push notifications via Pub/Sub.

    Accepts both the Pub/Sub envelope and a flattened
    {"emailAddress", "historyId"} body. The response goes out before
    the sync runs; sync failures never turn into a non-2xx here.
    """
    body = await request.body()

    try:
        event = decode_notification(body)
    except MalformedNotificationError as e:
        logger.warning("Malformed Gmail notification: %s", e)
        if settings.ack_malformed_notifications:
            # Acknowledge so Pub/Sub does not keep redelivering it
            return JSONResponse(
                status_code=status.HTTP_200_OK,
                content={"status": "ignored", "reason": str(e)}
            )
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Bad Pub/Sub message: {e}")

    logger.info("📧 Gmail notification received: %s historyId=%s", event.email_address, event.cursor_hint)
    background_tasks.add_task(run_notification_sync, engine, event)

    return {
        "status": "accepted",
        "email": event.email_address,
        "historyId": event.cursor_hint
    }


@router.post("/accounts/{account_id}/sync")
def sync_now(account_id: int, engine: SyncEngine = Depends(get_sync_engine)):
    """
    Manually trigger a sync for one account.

    Useful for:
    - Initial data load
    - Catching up after downtime
    - Reconciling after missed notifications
    """
    logger.info("🔄 Manual sync triggered for account %s", account_id)

    try:
        result = engine.sync_account(account_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except TransientProviderError as e:
        raise HTTPException(status_code=502, detail=f"Provider unavailable: {e}")
    except FatalProviderError as e:
        raise HTTPException(status_code=409, detail=f"Re-authorization required: {e}")
    except ProviderError as e:
        raise HTTPException(status_code=502, detail=f"Sync failed: {e}")

    return result.to_dict()
