"""
Database service layer for synchronized mail.

This module provides the query helpers shared by sync, reconciliation
and the API:
- Connection lookups (active connections, a user's default identity)
- Thread/message lookups used by deduplication and thread resolution
- Cached thread statistics recomputed from live rows
- Soft deletion (user action) and integrity diagnostics
"""

from sqlalchemy.orm import Session
from sqlalchemy import func, or_
from typing import Iterable, Optional

from app.database import utcnow
from app.models.connection import Connection, ConnectionStatus, Provider
from app.models.message import Message
from app.models.thread import Thread


# ============ CONNECTION OPERATIONS ============

def list_active_connections(db: Session, provider: str = Provider.GOOGLE.value) -> list[Connection]:
    """All ACTIVE, non-deleted connections for a provider, oldest first."""
    return db.query(Connection).filter(
        Connection.provider == provider,
        Connection.status == ConnectionStatus.ACTIVE.value,
        Connection.deleted_at.is_(None)
    ).order_by(Connection.id).all()


def get_default_connection(
    db: Session,
    user_id: str,
    provider: str = Provider.GOOGLE.value
) -> Optional[Connection]:
    """
    The user's default send/receive identity for a provider.

    Prefers the first ACTIVE connection; falls back to the first
    non-deleted one so callers can report why it is unusable.
    """
    base = db.query(Connection).filter(
        Connection.user_id == user_id,
        Connection.provider == provider,
        Connection.deleted_at.is_(None)
    )
    active = base.filter(
        Connection.status == ConnectionStatus.ACTIVE.value
    ).order_by(Connection.id).first()
    return active or base.order_by(Connection.id).first()


def get_connection_by_account(
    db: Session,
    user_id: str,
    provider_account_id: str,
    provider: str = Provider.GOOGLE.value
) -> Optional[Connection]:
    return db.query(Connection).filter(
        Connection.user_id == user_id,
        Connection.provider == provider,
        Connection.provider_account_id == provider_account_id,
        Connection.deleted_at.is_(None)
    ).first()


def soft_delete_connection(db: Session, connection: Connection) -> None:
    """Disconnect: keep the row (and its synced mail) but drop the credentials."""
    connection.deleted_at = utcnow()
    connection.status = ConnectionStatus.REVOKED.value
    connection.access_token = ""
    connection.refresh_token = None
    connection.access_token_expires_at = None
    db.commit()


# ============ THREAD / MESSAGE LOOKUPS ============

def get_message_by_external_id(
    db: Session,
    user_id: str,
    external_message_id: str
) -> Optional[Message]:
    """Live message for the dedup key (user_id, external_message_id)."""
    return db.query(Message).filter(
        Message.user_id == user_id,
        Message.external_message_id == external_message_id,
        Message.deleted_at.is_(None)
    ).first()


def get_thread_by_external_id(
    db: Session,
    user_id: str,
    external_thread_id: str
) -> Optional[Thread]:
    return db.query(Thread).filter(
        Thread.user_id == user_id,
        Thread.external_thread_id == external_thread_id,
        Thread.deleted_at.is_(None)
    ).first()


def find_thread_by_message_refs(
    db: Session,
    user_id: str,
    refs: Iterable[str]
) -> Optional[Thread]:
    """
    Thread of a known message referenced by In-Reply-To/References.

    Matches either the Message-ID header or the provider message id.
    The most recently sent match wins.
    """
    refs = [r for r in refs if r]
    if not refs:
        return None

    match = db.query(Message).join(Thread, Message.thread_id == Thread.id).filter(
        Message.user_id == user_id,
        Message.deleted_at.is_(None),
        Thread.deleted_at.is_(None),
        or_(
            Message.rfc822_message_id.in_(refs),
            Message.external_message_id.in_(refs)
        )
    ).order_by(Message.sent_at.desc()).first()

    return match.thread if match else None


def get_thread_for_user(db: Session, user_id: str, thread_id: int) -> Optional[Thread]:
    return db.query(Thread).filter(
        Thread.id == thread_id,
        Thread.user_id == user_id,
        Thread.deleted_at.is_(None)
    ).first()


def live_thread_messages(db: Session, thread_id: int) -> list[Message]:
    return db.query(Message).filter(
        Message.thread_id == thread_id,
        Message.deleted_at.is_(None)
    ).order_by(Message.sent_at).all()


def count_live_messages(db: Session, user_id: str) -> int:
    return db.query(func.count(Message.id)).filter(
        Message.user_id == user_id,
        Message.deleted_at.is_(None)
    ).scalar()


# ============ CACHED THREAD STATS ============

def refresh_thread_stats(db: Session, thread: Thread) -> Thread:
    """
    Recompute message_count, last_message_at and participants from rows.

    Never incremented in place, so a skipped duplicate or a soft delete
    cannot leave the cache off by one.
    """
    db.flush()
    messages = live_thread_messages(db, thread.id)

    thread.message_count = len(messages)
    thread.last_message_at = max((m.sent_at for m in messages), default=None)

    participants = set(thread.participant_emails or [])
    for m in messages:
        participants.add(m.from_email)
        participants.update(m.to_emails or [])
        participants.update(m.cc_emails or [])
    participants.discard("")
    thread.participant_emails = sorted(participants)
    return thread


# ============ DIAGNOSTICS ============

def find_duplicate_threads(db: Session, user_id: str = None) -> list[dict]:
    """Groups of live threads sharing (user_id, external_thread_id)."""
    query = db.query(
        Thread.user_id,
        Thread.external_thread_id,
        func.count(Thread.id)
    ).filter(
        Thread.deleted_at.is_(None),
        Thread.external_thread_id.isnot(None)
    )
    if user_id:
        query = query.filter(Thread.user_id == user_id)

    rows = query.group_by(
        Thread.user_id, Thread.external_thread_id
    ).having(func.count(Thread.id) > 1).all()

    return [
        {"user_id": r[0], "external_thread_id": r[1], "count": r[2]}
        for r in rows
    ]


def find_message_count_drift(db: Session, user_id: str = None) -> list[dict]:
    """Threads whose cached message_count differs from their live rows."""
    live = db.query(
        Message.thread_id.label("thread_id"),
        func.count(Message.id).label("live_count")
    ).filter(
        Message.deleted_at.is_(None)
    ).group_by(Message.thread_id).subquery()

    query = db.query(
        Thread.id,
        Thread.message_count,
        func.coalesce(live.c.live_count, 0)
    ).outerjoin(live, live.c.thread_id == Thread.id).filter(
        Thread.deleted_at.is_(None),
        Thread.message_count != func.coalesce(live.c.live_count, 0)
    )
    if user_id:
        query = query.filter(Thread.user_id == user_id)

    return [
        {"thread_id": r[0], "cached": r[1], "live": r[2]}
        for r in query.all()
    ]
