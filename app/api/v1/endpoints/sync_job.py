"""
Scheduled sync trigger.

Called by an external cron with the CRON_SECRET bearer token. Runs one
pass for every ACTIVE connection and reports per-connection results.
"""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from app.api.deps import get_sync_driver, require_cron_secret
from app.services.scheduler import SyncDriver

router = APIRouter(tags=["Sync Job"])


class SyncJobResult(BaseModel):
    """Outcome for one connection."""
    userId: str
    synced: int
    skipped: int
    labelsUpdated: int
    syncType: Optional[str] = None
    error: Optional[str] = None


class SyncJobResponse(BaseModel):
    processed: int
    results: list[SyncJobResult]


@router.get("/sync-job", response_model=SyncJobResponse, response_model_exclude_none=True)
def run_sync_job(
    _: None = Depends(require_cron_secret),
    driver: SyncDriver = Depends(get_sync_driver)
):
    """Sync all active connections (bounded concurrency)."""
    return driver.run_all()
