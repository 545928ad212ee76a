"""
Sync Cursor Store.

Reads and writes the per-connection checkpoint (Connection.sync_state)
through the provider's typed view, and provides the single-writer lease
lock that keeps two sync passes for the same connection from interleaving
cursor writes.

Writes here always commit: the checkpoint must never lag behind (or run
ahead of) the data it describes.
"""

import logging
import uuid
from datetime import timedelta
from typing import Optional

from sqlalchemy import update, or_
from sqlalchemy.orm import Session

from app import config
from app.database import utcnow
from app.models.connection import Connection, ConnectionStatus
from app.models.sync_state import load_sync_state

logger = logging.getLogger(__name__)


class SyncCursorStore:
    """Checkpoint persistence for connections."""

    def __init__(self, lock_ttl_seconds: int = None):
        self.lock_ttl = timedelta(
            seconds=lock_ttl_seconds if lock_ttl_seconds is not None else config.SYNC_LOCK_TTL_SECONDS
        )

    # ============ STATE ============

    def load(self, connection: Connection):
        return load_sync_state(connection.provider, connection.sync_state)

    def save(self, db: Session, connection: Connection, state) -> None:
        # Assign a fresh dict so the JSON column is flagged dirty
        connection.sync_state = state.to_document()
        db.commit()

    def advance(
        self,
        db: Session,
        connection: Connection,
        cursor: Optional[str],
        synced_count: int
    ):
        """
        Move the checkpoint forward after every batch has committed.

        A missing cursor from the provider keeps the previous one.
        """
        state = self.load(connection)
        now = utcnow()
        if cursor:
            state.cursor = str(cursor)
        state.full_sync_completed = True
        state.last_synced_at = now
        state.last_sync_count = synced_count
        state.last_error = None
        state.last_error_at = None
        state.needs_reauth = False
        connection.last_sync_at = now
        self.save(db, connection, state)
        return state

    def record_error(self, db: Session, connection: Connection, error: str):
        """Remember a failed pass; the cursor is left where it was."""
        state = self.load(connection)
        state.last_error = error
        state.last_error_at = utcnow()
        self.save(db, connection, state)
        return state

    def mark_needs_reauth(
        self,
        db: Session,
        connection: Connection,
        status: ConnectionStatus,
        reason: str
    ):
        state = self.load(connection)
        state.last_error = reason
        state.last_error_at = utcnow()
        state.needs_reauth = True
        connection.status = status.value
        self.save(db, connection, state)
        logger.warning(
            "Connection %s marked %s: %s", connection.id, status.value, reason
        )
        return state

    def mark_active(self, db: Session, connection: Connection):
        """Record a successful (re)connect: credentials usable again."""
        state = self.load(connection)
        state.needs_reauth = False
        state.last_error = None
        state.last_error_at = None
        connection.status = ConnectionStatus.ACTIVE.value
        self.save(db, connection, state)
        return state

    def reset(self, db: Session, connection: Connection):
        """Forget the checkpoint so the next pass is a full sync."""
        state = self.load(connection)
        fresh = type(state)(extra=state.extra)
        self.save(db, connection, fresh)
        return fresh

    # ============ LEASE LOCK ============

    def acquire_lock(self, db: Session, connection: Connection) -> Optional[str]:
        """
        Claim the connection for one sync pass.

        Conditional UPDATE so only one claimant wins even across processes.
        A lease older than the TTL is treated as abandoned (crashed worker).

        Returns:
            Lock owner token, or None if another pass holds the lease
        """
        owner = uuid.uuid4().hex
        now = utcnow()
        stale_before = now - self.lock_ttl

        result = db.execute(
            update(Connection)
            .where(
                Connection.id == connection.id,
                or_(
                    Connection.sync_locked_at.is_(None),
                    Connection.sync_locked_at < stale_before
                )
            )
            .values(sync_locked_at=now, sync_lock_owner=owner)
            .execution_options(synchronize_session=False)
        )
        db.commit()

        if result.rowcount != 1:
            return None

        db.refresh(connection)
        return owner

    def release_lock(self, db: Session, connection: Connection, owner: str) -> None:
        db.execute(
            update(Connection)
            .where(Connection.id == connection.id, Connection.sync_lock_owner == owner)
            .values(sync_locked_at=None, sync_lock_owner=None)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        db.refresh(connection)
