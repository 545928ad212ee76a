"""
Read/Label Reconciler.

Two independent directions:

- Local -> remote: a user marks a thread read/unread. All of the thread's
  messages change locally and commit first; the change is then mirrored to
  the mailbox one message at a time. A message whose mirror fails keeps the
  local state and is flagged pending_remote_sync for push_pending().
- Remote -> local: label deltas seen by a sync pass are applied to local
  rows.

Conflicts are settled by wall clock, last write wins. A local write that
has not reached the mailbox yet (pending_remote_sync) beats any remote
state that could be older than it; once mirrored, later remote deltas
apply as they arrive. There is no causal ordering between the two
directions: both sides converge over passes.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from app.database import utcnow
from app.models.connection import Connection
from app.models.message import Message
from app.services import db_service
from app.services.errors import MailSyncError, ReauthRequired

logger = logging.getLogger(__name__)

UNREAD = "UNREAD"


@dataclass
class ReadStateResult:
    thread_id: int
    is_read: bool
    marked_count: int = 0
    mirrored: int = 0
    failed: List[str] = field(default_factory=list)


def _with_label(labels: Iterable[str], label: str, present: bool) -> List[str]:
    labels = [l for l in labels if l != label]
    if present:
        labels.append(label)
    return labels


def remote_read_state_wins(message: Message, remote_changed_at: Optional[datetime]) -> bool:
    """
    Whether a remote read/unread observation may overwrite local state.

    remote_changed_at is the earliest moment the remote change could have
    happened; None means unknown (full-sync snapshot).
    """
    if not message.pending_remote_sync or message.read_state_changed_at is None:
        return True
    if remote_changed_at is None:
        return False
    return remote_changed_at > message.read_state_changed_at


def apply_remote_labels(
    message: Message,
    labels: List[str],
    remote_changed_at: Optional[datetime]
) -> bool:
    """
    Bring a local message in line with its remote label set.

    Returns:
        True if anything changed
    """
    labels = list(dict.fromkeys(labels))
    remote_is_read = UNREAD not in labels

    if remote_read_state_wins(message, remote_changed_at):
        is_read = remote_is_read
        # Remote state is authoritative now; nothing left to mirror
        pending = False
    else:
        # Local write is newer; keep UNREAD consistent with it
        is_read = message.is_read
        labels = _with_label(labels, UNREAD, not is_read)
        pending = message.pending_remote_sync

    changed = (
        sorted(labels) != sorted(message.labels or [])
        or is_read != message.is_read
        or pending != message.pending_remote_sync
    )
    if changed:
        message.labels = labels
        message.is_read = is_read
        message.pending_remote_sync = pending
    return changed


class ReadStateReconciler:
    """Propagates read state and labels between local rows and the mailbox."""

    # ============ LOCAL -> REMOTE ============

    def set_thread_read_state(
        self,
        db: Session,
        user_id: str,
        thread_id: int,
        is_read: bool,
        mailbox=None,
        connection: Optional[Connection] = None
    ) -> ReadStateResult:
        """
        Mark every live message of a thread read/unread.

        The local change commits before any remote call. Remote mirroring
        is best-effort per message.

        Raises:
            LookupError: thread not found for this user
            ReauthRequired: after the local commit, if the credential is dead
        """
        thread = db_service.get_thread_for_user(db, user_id, thread_id)
        if thread is None:
            raise LookupError(f"Thread {thread_id} not found")

        now = utcnow()
        result = ReadStateResult(thread_id=thread_id, is_read=is_read)
        to_mirror = []

        for message in db_service.live_thread_messages(db, thread_id):
            if message.user_id != user_id:
                continue
            if message.is_read != is_read:
                result.marked_count += 1
                to_mirror.append(message)
            message.is_read = is_read
            message.labels = _with_label(message.labels or [], UNREAD, not is_read)
            message.read_state_changed_at = now

        for message in to_mirror:
            message.pending_remote_sync = True
        db.commit()

        if mailbox is None or connection is None or not to_mirror:
            return result

        logger.info(
            "Mirroring %s state of %d messages in thread %s",
            "read" if is_read else "unread", len(to_mirror), thread_id
        )
        reauth = None
        for message in to_mirror:
            try:
                self._mirror(db, mailbox, connection, message, is_read)
                message.pending_remote_sync = False
                result.mirrored += 1
            except ReauthRequired as e:
                reauth = e
                result.failed.append(message.external_message_id)
                break
            except MailSyncError as e:
                logger.warning(
                    "Failed to mirror read state of %s: %s", message.external_message_id, e
                )
                result.failed.append(message.external_message_id)
        db.commit()

        if reauth is not None:
            # Remaining messages stay pending
            result.failed.extend(
                m.external_message_id for m in to_mirror
                if m.pending_remote_sync and m.external_message_id not in result.failed
            )
            raise reauth
        return result

    def push_pending(self, db: Session, connection: Connection, mailbox) -> int:
        """
        Retry mirroring of local read-state writes that never reached
        the mailbox. Stops at the first credential failure.

        Returns:
            Number of messages mirrored
        """
        pending = db.query(Message).filter(
            Message.user_id == connection.user_id,
            Message.pending_remote_sync.is_(True),
            Message.deleted_at.is_(None)
        ).all()

        pushed = 0
        for message in pending:
            try:
                self._mirror(db, mailbox, connection, message, message.is_read)
            except ReauthRequired:
                break
            except MailSyncError as e:
                logger.info("Pending read state for %s still failing: %s", message.external_message_id, e)
                continue
            message.pending_remote_sync = False
            pushed += 1

        db.commit()
        if pushed:
            logger.info("Pushed %d pending read-state changes for connection %s", pushed, connection.id)
        return pushed

    def _mirror(self, db: Session, mailbox, connection: Connection, message: Message, is_read: bool):
        if is_read:
            mailbox.modify_labels(db, connection, message.external_message_id, remove=[UNREAD])
        else:
            mailbox.modify_labels(db, connection, message.external_message_id, add=[UNREAD])

    # ============ REMOTE -> LOCAL ============

    def apply_remote_changes(
        self,
        db: Session,
        user_id: str,
        label_changes,
        remote_changed_at: Optional[datetime],
        skip_ids: Iterable[str] = ()
    ) -> int:
        """
        Apply history label deltas (in order) to local messages.

        Messages unknown locally, or listed in skip_ids (inserted in this
        pass with their current labels), are ignored. Does not commit.

        Returns:
            Number of messages whose local state changed
        """
        skip = set(skip_ids)
        touched = {}
        cache = {}

        for change in label_changes:
            external_id = change.external_message_id
            if external_id in skip:
                continue
            if external_id not in cache:
                cache[external_id] = db_service.get_message_by_external_id(db, user_id, external_id)
            message = cache[external_id]
            if message is None:
                continue

            labels = [l for l in (message.labels or []) if l not in change.removed]
            labels.extend(l for l in change.added if l not in labels)

            if apply_remote_labels(message, labels, remote_changed_at):
                touched[external_id] = message

        return len(touched)
