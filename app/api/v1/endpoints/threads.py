"""
Thread read-state endpoints.

Marking read/unread updates local rows immediately and then mirrors the
change to the mailbox on a best-effort basis.
"""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.api.deps import get_current_user_id, get_mailbox, get_reconciler
from app.database import get_db
from app.services import db_service
from app.services.errors import ReauthRequired
from app.services.gmail_service import GmailClient
from app.services.reconciler import ReadStateReconciler

router = APIRouter(prefix="/threads", tags=["Threads"])


def _set_read_state(
    db: Session,
    user_id: str,
    thread_id: int,
    is_read: bool,
    mailbox: GmailClient,
    reconciler: ReadStateReconciler
) -> dict:
    connection = db_service.get_default_connection(db, user_id)

    try:
        result = reconciler.set_thread_read_state(
            db, user_id, thread_id, is_read,
            mailbox=mailbox, connection=connection
        )
    except LookupError:
        raise HTTPException(status_code=404, detail="Thread not found")
    except ReauthRequired:
        # Local state is already committed; only the mailbox mirror failed
        raise HTTPException(
            status_code=409,
            detail={
                "error": "reauth_required",
                "message": "Saved here, but your mailbox connection needs to be reconnected "
                           "before the change reaches it.",
                "localStateSaved": True
            }
        )

    return {
        "ok": True,
        "markedCount": result.marked_count,
        "mirrored": result.mirrored,
        "failed": result.failed
    }


@router.post("/{thread_id}/read")
def mark_thread_read(
    thread_id: int,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    mailbox: GmailClient = Depends(get_mailbox),
    reconciler: ReadStateReconciler = Depends(get_reconciler)
):
    """Mark all messages in a thread as read (locally, then in the mailbox)."""
    return _set_read_state(db, user_id, thread_id, True, mailbox, reconciler)


@router.post("/{thread_id}/unread")
def mark_thread_unread(
    thread_id: int,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    mailbox: GmailClient = Depends(get_mailbox),
    reconciler: ReadStateReconciler = Depends(get_reconciler)
):
    """Mark all messages in a thread as unread (locally, then in the mailbox)."""
    return _set_read_state(db, user_id, thread_id, False, mailbox, reconciler)
