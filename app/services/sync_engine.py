"""
Sync Engine - one sync pass for one connection.

    DECIDE_STRATEGY -> FETCH -> NORMALIZE_AND_COMMIT -> ADVANCE_CURSOR -> DONE
                     (FAILED reachable from every stage)

- Full sync when there is no usable checkpoint (first run, forced, or the
  provider rejected the cursor); incremental otherwise.
- Messages are fetched and committed in batches. A failed batch is rolled
  back and later batches still run, but the cursor is then held back so
  the next pass re-reads from the last safe point. Dedup makes that
  re-read harmless.
- The pass never raises: every failure ends up in the SyncResult.
"""

import enum
import logging
import threading
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app import config
from app.models.connection import Connection, ConnectionStatus
from app.services.errors import MailSyncError, NotFound, ReauthRequired
from app.services.normalizer import MessageNormalizer, NormalizeOutcome
from app.services.reconciler import ReadStateReconciler
from app.services.sync_cursor_store import SyncCursorStore

logger = logging.getLogger(__name__)

LOCK_HELD_ERROR = "sync already in progress"


class SyncType(str, enum.Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


class SyncStage(str, enum.Enum):
    DECIDE_STRATEGY = "DECIDE_STRATEGY"
    FETCH = "FETCH"
    NORMALIZE_AND_COMMIT = "NORMALIZE_AND_COMMIT"
    ADVANCE_CURSOR = "ADVANCE_CURSOR"
    DONE = "DONE"
    FAILED = "FAILED"


@dataclass
class SyncResult:
    """Outcome of one pass, returned to the driver or the API."""
    connection_id: int
    user_id: str
    synced: int = 0
    skipped: int = 0
    labels_updated: int = 0
    sync_type: Optional[SyncType] = None
    errors: List[str] = field(default_factory=list)
    error: Optional[str] = None
    stage: SyncStage = SyncStage.DECIDE_STRATEGY
    cursor_advanced: bool = False

    @property
    def failed(self) -> bool:
        return self.stage == SyncStage.FAILED

    def to_dict(self) -> dict:
        data = {
            "userId": self.user_id,
            "synced": self.synced,
            "skipped": self.skipped,
            "labelsUpdated": self.labels_updated,
            "syncType": self.sync_type.value if self.sync_type else None,
        }
        if self.error:
            data["error"] = self.error
        return data


class SyncEngine:
    """Runs sync passes; one instance can serve many connections."""

    def __init__(
        self,
        mailbox,
        normalizer: MessageNormalizer = None,
        reconciler: ReadStateReconciler = None,
        cursor_store: SyncCursorStore = None,
        batch_size: int = None,
        lookback_days: Optional[int] = config.FULL_SYNC_LOOKBACK_DAYS,
        max_messages: Optional[int] = config.FULL_SYNC_MAX_MESSAGES,
        stop_event: threading.Event = None
    ):
        self.mailbox = mailbox
        self.normalizer = normalizer or MessageNormalizer()
        self.reconciler = reconciler or ReadStateReconciler()
        self.cursor_store = cursor_store or SyncCursorStore()
        self.batch_size = batch_size or config.SYNC_BATCH_SIZE
        self.lookback_days = lookback_days
        self.max_messages = max_messages
        self.stop_event = stop_event or threading.Event()

    def run(self, db: Session, connection: Connection, force_full: bool = False) -> SyncResult:
        """
        One complete pass for a connection under its lease lock.

        Args:
            db: Session owned by the caller (one per worker)
            connection: Connection to sync
            force_full: Clear the checkpoint first and re-list everything
        """
        result = SyncResult(connection_id=connection.id, user_id=connection.user_id)

        owner = self.cursor_store.acquire_lock(db, connection)
        if owner is None:
            logger.info("Connection %s is already being synced; skipping", connection.id)
            result.stage = SyncStage.FAILED
            result.error = LOCK_HELD_ERROR
            return result

        try:
            self._run_pass(db, connection, force_full, result)
        except ReauthRequired as e:
            db.rollback()
            if connection.status == ConnectionStatus.ACTIVE.value:
                self.cursor_store.mark_needs_reauth(
                    db, connection, ConnectionStatus.EXPIRED, str(e)
                )
            self._fail(db, connection, result, f"Reauthorization required: {e}")
        except MailSyncError as e:
            db.rollback()
            self._fail(db, connection, result, str(e) or e.__class__.__name__)
        except SQLAlchemyError as e:
            db.rollback()
            self._fail(db, connection, result, f"Database error: {e.__class__.__name__}")
        finally:
            try:
                self.cursor_store.release_lock(db, connection, owner)
            except SQLAlchemyError:
                db.rollback()
                logger.exception("Could not release sync lock for connection %s", connection.id)

        logger.info(
            "Sync %s for connection %s: type=%s synced=%d skipped=%d labels=%d cursor_advanced=%s",
            "failed" if result.failed else "finished",
            connection.id,
            result.sync_type.value if result.sync_type else None,
            result.synced, result.skipped, result.labels_updated, result.cursor_advanced
        )
        return result

    # ============ STAGES ============

    def _run_pass(self, db: Session, connection: Connection, force_full: bool, result: SyncResult):
        # DECIDE_STRATEGY
        result.stage = SyncStage.DECIDE_STRATEGY
        state = self.cursor_store.load(connection)
        if force_full:
            state = self.cursor_store.reset(db, connection)

        changes = None
        remote_changed_at = None

        if state.full_sync_completed and state.cursor:
            result.stage = SyncStage.FETCH
            changes = self.mailbox.list_changes(db, connection, state.cursor)
            if changes.cursor_invalid:
                logger.info(
                    "Cursor for connection %s rejected by provider; falling back to full sync",
                    connection.id
                )
                changes = None
            else:
                result.sync_type = SyncType.INCREMENTAL
                # Remote deltas cannot predate the previous successful pass
                remote_changed_at = state.last_synced_at

        if changes is None:
            result.sync_type = SyncType.FULL
            result.stage = SyncStage.FETCH
            changes = self.mailbox.list_all(
                db, connection,
                lookback_days=self.lookback_days,
                max_messages=self.max_messages
            )

        logger.info(
            "Connection %s: %s sync, %d message ids, %d label changes",
            connection.id, result.sync_type.value,
            len(changes.message_ids), len(changes.label_changes)
        )

        # FETCH + NORMALIZE_AND_COMMIT, batch by batch
        held_back = False
        inserted_ids = set()
        ids = changes.message_ids

        for start in range(0, len(ids), self.batch_size):
            if self.stop_event.is_set():
                result.errors.append("Stopped before all batches were committed")
                held_back = True
                break

            result.stage = SyncStage.FETCH
            raws = self._fetch_batch(db, connection, ids[start:start + self.batch_size], result)

            result.stage = SyncStage.NORMALIZE_AND_COMMIT
            try:
                synced, skipped, labels_updated, new_ids, errors = self._commit_batch(
                    db, connection, raws, remote_changed_at
                )
            except SQLAlchemyError as e:
                db.rollback()
                held_back = True
                batch_no = start // self.batch_size + 1
                logger.error("Batch %d for connection %s failed: %s", batch_no, connection.id, e)
                result.errors.append(f"Batch {batch_no} failed: {e.__class__.__name__}")
                continue

            result.synced += synced
            result.skipped += skipped
            result.labels_updated += labels_updated
            result.errors.extend(errors)
            inserted_ids.update(new_ids)

        # Remote -> local label deltas
        if changes.label_changes and not held_back:
            try:
                result.labels_updated += self.reconciler.apply_remote_changes(
                    db, connection.user_id, changes.label_changes,
                    remote_changed_at, skip_ids=inserted_ids
                )
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                held_back = True
                result.errors.append(f"Label update failed: {e.__class__.__name__}")

        # ADVANCE_CURSOR
        result.stage = SyncStage.ADVANCE_CURSOR
        if held_back:
            self.cursor_store.record_error(
                db, connection, "; ".join(result.errors) or "Batch failed; cursor held back"
            )
        else:
            self.cursor_store.advance(db, connection, changes.next_cursor, result.synced)
            result.cursor_advanced = True

        result.stage = SyncStage.DONE

    def _fetch_batch(self, db: Session, connection: Connection, batch_ids, result: SyncResult) -> list:
        raws = []
        for external_id in batch_ids:
            try:
                raws.append(self.mailbox.get_message(db, connection, external_id))
            except NotFound:
                # Deleted remotely after it was listed
                result.skipped += 1
        return raws

    def _commit_batch(self, db: Session, connection: Connection, raws: list, remote_changed_at):
        synced = skipped = labels_updated = 0
        new_ids = []
        errors = []

        for raw in raws:
            try:
                outcome = self.normalizer.normalize(
                    db, raw, connection.user_id, remote_changed_at=remote_changed_at
                )
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                logger.warning("Skipping malformed message %s: %r", raw.get("id"), e)
                errors.append(f"Malformed message {raw.get('id')}: {e.__class__.__name__}")
                skipped += 1
                continue

            if outcome.outcome == NormalizeOutcome.INSERTED:
                synced += 1
                new_ids.append(outcome.message.external_message_id)
            else:
                skipped += 1
                if outcome.labels_updated:
                    labels_updated += 1

        db.commit()
        return synced, skipped, labels_updated, new_ids, errors

    def _fail(self, db: Session, connection: Connection, result: SyncResult, error: str):
        logger.warning("Sync pass for connection %s failed: %s", connection.id, error)
        result.stage = SyncStage.FAILED
        result.error = error
        result.errors.append(error)
        try:
            self.cursor_store.record_error(db, connection, error)
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Could not record sync error for connection %s", connection.id)
