from fastapi import APIRouter
from mailsync.api.v1.endpoints import accounts, gmail_events, gmail_watch, messages

api_router = APIRouter(prefix="/api/v1")

# Include all endpoint routers
api_router.include_router(accounts.router)
api_router.include_router(gmail_events.router)
api_router.include_router(gmail_watch.router)
api_router.include_router(messages.router)
