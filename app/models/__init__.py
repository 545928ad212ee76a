"""
SQLAlchemy models for the mailbox sync service.

This package contains:
- Connection: OAuth-linked external mailbox with its sync checkpoint
- Thread: Conversation grouping (linked to leads/projects/clients elsewhere)
- Message: One row per remote message, deduplicated by external id

GmailSyncState is not a table; it is the typed view over
Connection.sync_state.
"""

from app.models.connection import Connection, ConnectionStatus, Provider
from app.models.thread import Thread, ThreadStatus
from app.models.message import Message
from app.models.sync_state import GmailSyncState, load_sync_state

__all__ = [
    "Connection",
    "ConnectionStatus",
    "Provider",
    "Thread",
    "ThreadStatus",
    "Message",
    "GmailSyncState",
    "load_sync_state",
]
