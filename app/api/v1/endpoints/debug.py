"""
Debug endpoints for checking sync integrity.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.api.deps import get_current_user_id
from app.database import get_db
from app.models.sync_state import load_sync_state
from app.services import db_service

router = APIRouter(prefix="/debug", tags=["Debug"])


@router.get("/sync-health")
def sync_health(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """
    Integrity report for the signed-in user's synced mail.

    Returns:
        dict: duplicate thread groups, threads whose cached message_count
        has drifted from their live rows, and the connection checkpoint
    """
    duplicates = db_service.find_duplicate_threads(db, user_id)
    drift = db_service.find_message_count_drift(db, user_id)

    connection = db_service.get_default_connection(db, user_id)
    sync = None
    if connection is not None:
        state = load_sync_state(connection.provider, connection.sync_state)
        sync = {
            "connectionId": connection.id,
            "status": connection.status,
            "cursor": state.cursor,
            "fullSyncCompleted": state.full_sync_completed,
            "lastSyncedAt": state.last_synced_at.isoformat() if state.last_synced_at else None,
            "lastSyncCount": state.last_sync_count,
            "lastError": state.last_error,
            "locked": connection.sync_locked_at is not None
        }

    return {
        "healthy": not duplicates and not drift,
        "duplicateThreads": duplicates,
        "messageCountDrift": drift,
        "totalMessages": db_service.count_live_messages(db, user_id),
        "sync": sync
    }
