"""Tests for sync passes: strategy, batching, cursor safety, idempotence."""

import threading
from datetime import timedelta

import pytest
from google.auth import exceptions as google_exceptions
from sqlalchemy.exc import OperationalError

from app.database import utcnow
from app.models.connection import ConnectionStatus
from app.models.message import Message
from app.models.sync_state import load_sync_state
from app.models.thread import Thread
from app.services import token_vault
from app.services.errors import ReauthRequired, TransientError
from app.services.normalizer import MessageNormalizer
from app.services.sync_cursor_store import SyncCursorStore
from app.services.sync_engine import (
    LOCK_HELD_ERROR, SyncEngine, SyncResult, SyncStage, SyncType
)
from conftest import BASE_TIME, make_raw


class FailingNormalizer(MessageNormalizer):
    """Raises a database error for chosen message ids."""

    def __init__(self, fail_ids=()):
        self.fail_ids = set(fail_ids)

    def normalize(self, db, raw, user_id, remote_changed_at=None):
        result = super().normalize(db, raw, user_id, remote_changed_at=remote_changed_at)
        if raw.get("id") in self.fail_ids:
            raise OperationalError("INSERT INTO messages", {}, Exception("disk I/O error"))
        return result


@pytest.fixture
def engine_factory(mailbox):
    def _make(**kwargs):
        kwargs.setdefault("batch_size", 2)
        kwargs.setdefault("lookback_days", None)
        kwargs.setdefault("max_messages", 500)
        return SyncEngine(mailbox, **kwargs)
    return _make


@pytest.fixture
def sync_engine(engine_factory):
    return engine_factory()


def _fill(box, count, thread_every=2, start=0):
    for i in range(start, start + count):
        box.add_message(make_raw(
            f"m{i}",
            thread_id=f"thread-{i // thread_every}",
            sent_at=BASE_TIME + timedelta(minutes=i),
        ))


def _state(connection):
    return load_sync_state(connection.provider, connection.sync_state)


def _live_counts(db):
    return db.query(Message).count(), db.query(Thread).count()


# ---------------------------------------------------------------------------
# Strategy
# ---------------------------------------------------------------------------


def test_first_pass_is_full_and_sets_cursor(db, sync_engine, mailbox, make_connection):
    connection = make_connection()
    box = mailbox.box()
    _fill(box, 5)

    result = sync_engine.run(db, connection)

    assert result.stage == SyncStage.DONE
    assert result.sync_type == SyncType.FULL
    assert result.synced == 5
    assert result.cursor_advanced is True
    assert _live_counts(db) == (5, 3)
    state = _state(connection)
    assert state.cursor == str(box.history_id)
    assert state.full_sync_completed is True
    assert state.last_sync_count == 5
    assert connection.last_sync_at is not None


def test_second_pass_is_incremental_and_idempotent(db, sync_engine, mailbox, make_connection):
    connection = make_connection()
    _fill(mailbox.box(), 4)
    sync_engine.run(db, connection)

    result = sync_engine.run(db, connection)

    assert result.sync_type == SyncType.INCREMENTAL
    assert result.synced == 0
    assert _live_counts(db) == (4, 2)
    assert [t.message_count for t in db.query(Thread).order_by(Thread.id)] == [2, 2]


def test_incremental_pass_picks_up_new_mail_and_label_changes(db, sync_engine, mailbox, make_connection):
    connection = make_connection()
    box = mailbox.box()
    _fill(box, 2)
    sync_engine.run(db, connection)

    box.add_message(make_raw("m2", thread_id="thread-0", sent_at=BASE_TIME + timedelta(hours=1)))
    box.change_labels("m0", removed=["UNREAD"])
    result = sync_engine.run(db, connection)

    assert result.sync_type == SyncType.INCREMENTAL
    assert result.synced == 1
    assert result.labels_updated == 1
    thread = db.query(Thread).filter(Thread.external_thread_id == "thread-0").one()
    assert thread.message_count == 3
    assert thread.last_message_at == BASE_TIME + timedelta(hours=1)
    m0 = db.query(Message).filter(Message.external_message_id == "m0").one()
    assert m0.is_read is True
    assert _state(connection).cursor == str(box.history_id)


def test_forced_full_resync_creates_no_duplicates(db, sync_engine, mailbox, make_connection):
    connection = make_connection()
    _fill(mailbox.box(), 3)
    sync_engine.run(db, connection)

    result = sync_engine.run(db, connection, force_full=True)

    assert result.sync_type == SyncType.FULL
    assert result.synced == 0
    assert result.skipped == 3
    assert _live_counts(db) == (3, 2)


def test_expired_cursor_falls_back_to_full_sync(db, sync_engine, mailbox, make_connection):
    connection = make_connection()
    box = mailbox.box()
    _fill(box, 2)
    sync_engine.run(db, connection)

    _fill(box, 1, start=2)
    box.expire_cursors()
    result = sync_engine.run(db, connection)

    assert result.sync_type == SyncType.FULL
    assert result.synced == 1
    assert result.skipped == 2
    assert _state(connection).cursor == str(box.history_id)


def test_full_sync_respects_message_cap(db, engine_factory, mailbox, make_connection):
    connection = make_connection()
    _fill(mailbox.box(), 5)

    result = engine_factory(max_messages=3).run(db, connection)

    assert result.synced == 3
    # Newest first
    ids = {m.external_message_id for m in db.query(Message)}
    assert ids == {"m4", "m3", "m2"}


def test_legacy_history_id_checkpoint_is_used(db, sync_engine, mailbox, make_connection):
    box = mailbox.box()
    _fill(box, 2)
    connection = make_connection(sync_state={"historyId": box.history_id, "fullSyncCompleted": True})
    _fill(box, 1, start=2)

    result = sync_engine.run(db, connection)

    assert result.sync_type == SyncType.INCREMENTAL
    assert result.synced == 1
    assert "historyId" not in connection.sync_state


# ---------------------------------------------------------------------------
# Batches and cursor safety
# ---------------------------------------------------------------------------


def test_failed_batch_is_rolled_back_and_holds_cursor(db, engine_factory, mailbox, make_connection):
    connection = make_connection()
    box = mailbox.box()
    _fill(box, 6, thread_every=1)
    # Newest first: batches are [m5, m4], [m3, m2], [m1, m0]
    engine = engine_factory(normalizer=FailingNormalizer(fail_ids=["m2"]))

    result = engine.run(db, connection)

    assert result.stage == SyncStage.DONE
    assert result.cursor_advanced is False
    assert result.synced == 4
    ids = {m.external_message_id for m in db.query(Message)}
    assert ids == {"m5", "m4", "m1", "m0"}
    state = _state(connection)
    assert state.cursor is None
    assert state.full_sync_completed is False
    assert "Batch 2 failed" in state.last_error


def test_rerun_after_failed_batch_completes_without_duplicates(db, engine_factory, mailbox, make_connection):
    connection = make_connection()
    _fill(mailbox.box(), 6, thread_every=1)
    engine_factory(normalizer=FailingNormalizer(fail_ids=["m2"])).run(db, connection)

    result = engine_factory().run(db, connection)

    assert result.sync_type == SyncType.FULL
    assert result.synced == 2
    assert result.skipped == 4
    assert result.cursor_advanced is True
    assert _live_counts(db) == (6, 6)
    assert _state(connection).last_error is None


def test_transient_failure_mid_pass_keeps_committed_batches(db, sync_engine, mailbox, make_connection):
    connection = make_connection()
    box = mailbox.box()
    _fill(box, 4, thread_every=1)
    box.get_failures["m1"] = TransientError("Gmail server error (503)")

    result = sync_engine.run(db, connection)

    assert result.failed
    assert "503" in result.error
    assert {m.external_message_id for m in db.query(Message)} == {"m3", "m2"}
    state = _state(connection)
    assert state.cursor is None
    assert state.last_error == result.error


def test_message_deleted_after_listing_is_skipped(db, sync_engine, mailbox, make_connection):
    connection = make_connection()
    box = mailbox.box()
    _fill(box, 3)
    original = mailbox.list_all

    def list_then_delete(*args, **kwargs):
        changes = original(*args, **kwargs)
        del box.messages["m1"]
        return changes

    mailbox.list_all = list_then_delete
    result = sync_engine.run(db, connection)

    assert result.synced == 2
    assert result.skipped == 1
    assert result.cursor_advanced is True


def test_malformed_message_is_skipped_and_reported(db, sync_engine, mailbox, make_connection):
    connection = make_connection()
    box = mailbox.box()
    _fill(box, 2)
    box.add_message({"id": "bad", "threadId": "thread-x", "payload": {"headers": "nope"}})

    result = sync_engine.run(db, connection)

    assert result.synced == 2
    assert result.skipped == 1
    assert any("bad" in e for e in result.errors)
    assert result.cursor_advanced is True


def test_stop_request_holds_cursor(db, engine_factory, mailbox, make_connection):
    connection = make_connection()
    _fill(mailbox.box(), 2)
    stop = threading.Event()
    stop.set()

    result = engine_factory(stop_event=stop).run(db, connection)

    assert result.synced == 0
    assert result.cursor_advanced is False
    assert _state(connection).cursor is None


# ---------------------------------------------------------------------------
# Credentials and locking
# ---------------------------------------------------------------------------


def test_revoked_credential_mid_pass(db, sync_engine, mailbox, make_connection):
    connection = make_connection()
    box = mailbox.box()
    _fill(box, 4, thread_every=1)
    box.get_failures["m1"] = ReauthRequired("Gmail rejected the access token", connection.id)

    result = sync_engine.run(db, connection)

    assert result.failed
    assert result.error.startswith("Reauthorization required")
    assert connection.status == ConnectionStatus.EXPIRED.value
    state = _state(connection)
    assert state.needs_reauth is True
    assert state.cursor is None
    # First batch had already committed
    assert {m.external_message_id for m in db.query(Message)} == {"m3", "m2"}
    assert connection.sync_locked_at is None


def test_refresh_token_revoked_mid_pass_marks_connection_revoked(
    db, sync_engine, mailbox, make_connection, vault, monkeypatch
):
    connection = make_connection(expires_in=0)
    _fill(mailbox.box(), 4, thread_every=1)
    mailbox.vault = vault
    refreshes = []

    def fake_refresh(refresh_token):
        refreshes.append(refresh_token)
        if len(refreshes) > 2:
            raise google_exceptions.RefreshError("invalid_grant: Token has been expired or revoked.")
        # Already stale, so the next fetch refreshes again
        return "fresh-token", utcnow() - timedelta(seconds=1)

    monkeypatch.setattr(token_vault, "refresh_access_token", fake_refresh)

    result = sync_engine.run(db, connection)

    assert result.failed
    assert connection.status == ConnectionStatus.REVOKED.value
    assert _state(connection).needs_reauth is True
    assert _state(connection).cursor is None
    assert {m.external_message_id for m in db.query(Message)} == {"m3", "m2"}


def test_pass_is_refused_while_lock_is_held(db, sync_engine, mailbox, make_connection):
    connection = make_connection()
    _fill(mailbox.box(), 2)
    owner = SyncCursorStore().acquire_lock(db, connection)
    assert owner is not None

    result = sync_engine.run(db, connection)

    assert result.failed
    assert result.error == LOCK_HELD_ERROR
    assert mailbox.calls == []
    assert connection.sync_lock_owner == owner


def test_abandoned_lock_is_taken_over(db, sync_engine, mailbox, make_connection):
    connection = make_connection()
    _fill(mailbox.box(), 2)
    connection.sync_locked_at = utcnow() - timedelta(hours=2)
    connection.sync_lock_owner = "crashed-worker"
    db.commit()

    result = sync_engine.run(db, connection)

    assert result.stage == SyncStage.DONE
    assert result.synced == 2
    assert connection.sync_locked_at is None


def test_result_shape():
    result = SyncResult(connection_id=1, user_id="user-1", synced=3, skipped=1, sync_type=SyncType.FULL)

    assert result.to_dict() == {
        "userId": "user-1",
        "synced": 3,
        "skipped": 1,
        "labelsUpdated": 0,
        "syncType": "full",
    }
