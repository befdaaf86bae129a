import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from mailsync.api.v1.api import api_router
from mailsync.api.deps import get_sync_engine
from mailsync.config import get_settings
from mailsync.database import engine, Base
from mailsync.models import Account, Message  # noqa: F401  (register tables)

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
)
logger = logging.getLogger("mailsync")

app = FastAPI(
    title="Mailsync",
    description="Incremental Gmail sync driven by push notifications",
    version="1.0.0"
)

origins = [
    "http://localhost:3000",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def on_startup():
    """Create database tables on startup."""
    Base.metadata.create_all(bind=engine)
    logger.info("✅ Database tables created/verified")


@app.on_event("shutdown")
def on_shutdown():
    """Let queued classifications finish."""
    if not get_sync_engine.cache_info().currsize:
        return
    sync_engine = get_sync_engine()
    if sync_engine.dispatcher is not None:
        sync_engine.dispatcher.shutdown(wait=True)


app.include_router(api_router)


@app.get("/")
def health_check():
    return {"status": "ok"}
