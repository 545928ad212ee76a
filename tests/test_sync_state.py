"""Tests for the typed sync_state view."""

from datetime import datetime

import pytest

from app.models.sync_state import GmailSyncState, load_sync_state


def test_empty_document_means_no_checkpoint():
    state = load_sync_state("GOOGLE", {})

    assert state.cursor is None
    assert state.full_sync_completed is False
    assert state.needs_reauth is False


def test_legacy_history_id_is_read_as_cursor():
    state = GmailSyncState.from_document({"historyId": 98765, "fullSyncCompleted": True})

    assert state.cursor == "98765"
    assert state.full_sync_completed is True


def test_unknown_keys_survive_a_write_and_legacy_key_is_dropped():
    state = GmailSyncState.from_document({
        "historyId": "555",
        "watchExpiration": "2024-06-01T00:00:00",
    })
    state.cursor = "600"
    state.last_synced_at = datetime(2024, 5, 1, 12, 30)

    document = state.to_document()

    assert document["cursor"] == "600"
    assert "historyId" not in document
    assert document["watchExpiration"] == "2024-06-01T00:00:00"
    assert document["lastSyncedAt"] == "2024-05-01T12:30:00"


def test_timestamps_with_offsets_are_normalized_to_naive():
    state = GmailSyncState.from_document({"lastSyncedAt": "2024-05-01T12:30:00Z"})

    assert state.last_synced_at == datetime(2024, 5, 1, 12, 30)


def test_malformed_values_are_ignored():
    state = GmailSyncState.from_document({
        "cursor": "",
        "fullSyncCompleted": "yes",
        "lastSyncCount": "12",
        "lastSyncedAt": "not a date",
    })

    assert state.cursor is None
    assert state.full_sync_completed is False
    assert state.last_sync_count is None
    assert state.last_synced_at is None


def test_unknown_provider_is_rejected():
    with pytest.raises(ValueError):
        load_sync_state("OUTLOOK", {})
