import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app import config
from app.api.deps import get_sync_driver
from app.api.v1.api import api_router
from app.database import engine, Base
from app.logging_config import setup_logging
from app.models import Connection, Thread, Message  # noqa: F401 (register tables)

setup_logging(config.LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Mail Sync",
    description="Mailbox synchronization and threading for the portal",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def on_startup():
    """Create database tables and start the in-process sync timer."""
    Base.metadata.create_all(bind=engine)
    logger.info("✅ Database tables created/verified")

    if config.SCHEDULER_ENABLED:
        get_sync_driver().start(config.SYNC_INTERVAL_MINUTES)


@app.on_event("shutdown")
def on_shutdown():
    if config.SCHEDULER_ENABLED:
        get_sync_driver().shutdown(wait=True)


app.include_router(api_router)


@app.get("/")
def health_check():
    return {"status": "ok"}
