"""
On-demand mailbox sync for the signed-in user.

POST /sync runs one pass synchronously for the caller's default
connection; force_full clears the checkpoint first.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.api.deps import get_current_user_id, get_sync_driver
from app.database import get_db
from app.models.sync_state import load_sync_state
from app.services import db_service
from app.services.scheduler import SyncDriver
from app.services.sync_engine import LOCK_HELD_ERROR

router = APIRouter(prefix="/sync", tags=["Sync"])

REAUTH_MESSAGE = "Your mailbox connection has expired. Reconnect your account to resume syncing."


class SyncRequest(BaseModel):
    force_full: bool = False


class SyncStatusResponse(BaseModel):
    connected: bool
    status: Optional[str] = None
    providerEmail: Optional[str] = None
    lastSyncAt: Optional[str] = None
    lastError: Optional[str] = None
    needsReauth: bool = False
    fullSyncCompleted: bool = False
    totalMessages: int = 0


def _reauth_error() -> HTTPException:
    return HTTPException(
        status_code=409,
        detail={"error": "reauth_required", "message": REAUTH_MESSAGE}
    )


@router.post("")
def sync_now(
    body: Optional[SyncRequest] = None,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    driver: SyncDriver = Depends(get_sync_driver)
):
    """
    Run one sync pass for the caller's mailbox.

    Returns the pass result; status "in_progress" if a pass for this
    connection is already running (this request then does nothing).
    """
    force_full = body.force_full if body else False

    connection = db_service.get_default_connection(db, user_id)
    if connection is None:
        raise HTTPException(status_code=404, detail="No mailbox connected")
    if connection.needs_reauth:
        raise _reauth_error()

    # The pass runs in the driver's own session; end our read transaction
    # so the refresh below sees what it committed.
    db.commit()
    result = driver.sync_connection(connection.id, force_full=force_full)

    if result.error == LOCK_HELD_ERROR:
        return {"status": "in_progress", **result.to_dict()}

    db.refresh(connection)
    if result.failed and connection.needs_reauth:
        raise _reauth_error()

    return {
        "status": "failed" if result.failed else "completed",
        "cursorAdvanced": result.cursor_advanced,
        "errors": result.errors,
        **result.to_dict()
    }


@router.get("/status", response_model=SyncStatusResponse)
def sync_status(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Connection health and the last sync outcome (for the inbox banner)."""
    connection = db_service.get_default_connection(db, user_id)
    if connection is None:
        return SyncStatusResponse(connected=False)

    state = load_sync_state(connection.provider, connection.sync_state)
    return SyncStatusResponse(
        connected=True,
        status=connection.status,
        providerEmail=connection.provider_email,
        lastSyncAt=connection.last_sync_at.isoformat() if connection.last_sync_at else None,
        lastError=state.last_error,
        needsReauth=connection.needs_reauth or state.needs_reauth,
        fullSyncCompleted=state.full_sync_completed,
        totalMessages=db_service.count_live_messages(db, user_id)
    )
