"""
Typed views over the per-connection sync_state JSON document.

The document is stored as-is on Connection.sync_state so each provider can
keep its own checkpoint fields without schema changes. At read time it is
materialized into a provider-specific dataclass; keys the view does not
know about are carried through untouched on write.

Documented keys:
- cursor: opaque provider checkpoint (Gmail historyId)
- fullSyncCompleted: whether a full listing has finished at least once
- lastSyncedAt / lastSyncCount: outcome of the last successful pass
- lastError / lastErrorAt: last failure, cleared on success
- needsReauth: set when the credential is dead
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

_KNOWN_KEYS = {
    "cursor", "fullSyncCompleted", "lastSyncedAt", "lastSyncCount",
    "lastError", "lastErrorAt", "needsReauth",
}


def _parse_timestamp(value) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    # Stored as UTC; compare against naive UTC columns
    return parsed.replace(tzinfo=None)


def _format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class GmailSyncState:
    """Checkpoint for a Gmail connection. cursor is a Gmail historyId."""
    cursor: Optional[str] = None
    full_sync_completed: bool = False
    last_synced_at: Optional[datetime] = None
    last_sync_count: Optional[int] = None
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None
    needs_reauth: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_document(cls, document: Optional[dict]) -> "GmailSyncState":
        document = document if isinstance(document, dict) else {}

        cursor = document.get("cursor")
        if cursor is None:
            # Older rows stored the Gmail checkpoint under its own name
            cursor = document.get("historyId")
        if isinstance(cursor, int) and not isinstance(cursor, bool):
            cursor = str(cursor)
        if not isinstance(cursor, str) or not cursor:
            cursor = None

        count = document.get("lastSyncCount")
        error = document.get("lastError")

        return cls(
            cursor=cursor,
            full_sync_completed=document.get("fullSyncCompleted") is True,
            last_synced_at=_parse_timestamp(document.get("lastSyncedAt")),
            last_sync_count=count if isinstance(count, int) and not isinstance(count, bool) else None,
            last_error=error if isinstance(error, str) else None,
            last_error_at=_parse_timestamp(document.get("lastErrorAt")),
            needs_reauth=document.get("needsReauth") is True,
            extra={k: v for k, v in document.items() if k not in _KNOWN_KEYS},
        )

    def to_document(self) -> dict:
        document = dict(self.extra)
        document.pop("historyId", None)
        document.update({
            "cursor": self.cursor,
            "fullSyncCompleted": self.full_sync_completed,
            "lastSyncedAt": _format_timestamp(self.last_synced_at),
            "lastSyncCount": self.last_sync_count,
            "lastError": self.last_error,
            "lastErrorAt": _format_timestamp(self.last_error_at),
            "needsReauth": self.needs_reauth,
        })
        return document


SYNC_STATE_TYPES = {
    "GOOGLE": GmailSyncState,
}


def load_sync_state(provider: str, document: Optional[dict]):
    """Materialize the typed view for a provider's sync_state document."""
    try:
        state_type = SYNC_STATE_TYPES[provider]
    except KeyError:
        raise ValueError(f"No sync state type registered for provider {provider!r}")
    return state_type.from_document(document)
