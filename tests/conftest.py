"""Shared fixtures for mail sync tests.

Covers:
- Environment (secrets, encryption key) set before any app module loads
- A per-test SQLite database with working SAVEPOINTs
- FakeMailbox: an in-memory Gmail stand-in with a history log and
  failure injection, per user
- Factories for connections and raw Gmail message resources
"""

import base64
import copy
import os
from collections import defaultdict
from datetime import datetime, timedelta, timezone

from cryptography.fernet import Fernet

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["TOKEN_ENCRYPTION_KEY"] = Fernet.generate_key().decode()
os.environ["CRON_SECRET"] = "cron-secret"
os.environ["SESSION_SECRET"] = "session-secret"
os.environ["GOOGLE_CLIENT_ID"] = "client-id.apps.googleusercontent.com"
os.environ["GOOGLE_CLIENT_SECRET"] = "client-secret"
os.environ["SCHEDULER_ENABLED"] = "false"

import pytest  # noqa: E402
from sqlalchemy import create_engine, event  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from app import config  # noqa: E402
from app.database import Base, utcnow  # noqa: E402
from app.models.connection import Connection, ConnectionStatus, Provider  # noqa: E402
from app.services.errors import NotFound  # noqa: E402
from app.services.gmail_service import ChangeSet, LabelChange  # noqa: E402
from app.services.token_vault import TokenCipher, TokenVault  # noqa: E402


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite so worker threads get their own connections."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'mail_sync.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    # pysqlite's own transaction handling breaks SAVEPOINT; take it over
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


@pytest.fixture
def cipher():
    return TokenCipher(config.TOKEN_ENCRYPTION_KEY)


@pytest.fixture
def vault(cipher):
    return TokenVault(cipher=cipher)


@pytest.fixture
def make_connection(db, vault):
    """Persist an OAuth connection with encrypted tokens."""

    def _make(
        user_id="user-1",
        status=ConnectionStatus.ACTIVE,
        sync_state=None,
        refresh_token="refresh-token",
        expires_in=3600,
        account_id=None,
    ) -> Connection:
        connection = Connection(
            user_id=user_id,
            provider=Provider.GOOGLE.value,
            provider_account_id=account_id or f"sub-{user_id}",
            provider_email=f"{user_id}@portal.example",
            status=status.value,
            sync_state=sync_state or {},
            scopes=list(config.SCOPES),
        )
        vault.store_tokens(
            connection, "access-token", refresh_token,
            utcnow() + timedelta(seconds=expires_in)
        )
        db.add(connection)
        db.commit()
        return connection

    return _make


# ---------------------------------------------------------------------------
# Raw Gmail messages
# ---------------------------------------------------------------------------

BASE_TIME = datetime(2024, 5, 1, 12, 0, 0)


def _b64(value: str) -> str:
    return base64.urlsafe_b64encode(value.encode("utf-8")).decode("ascii").rstrip("=")


def make_raw(
    message_id,
    thread_id="thread-1",
    subject="Project kickoff",
    sender="Alice Client <alice@client.example>",
    to="owner@portal.example",
    cc=None,
    labels=("INBOX", "UNREAD"),
    sent_at=None,
    rfc822_id=None,
    in_reply_to=None,
    references=None,
    text="Hello there",
    html_body=None,
    snippet=None,
    attachment=False,
) -> dict:
    """Build a Gmail API message resource (format=full)."""
    sent_at = sent_at or BASE_TIME
    headers = [
        {"name": "From", "value": sender},
        {"name": "To", "value": to},
        {"name": "Subject", "value": subject},
        {"name": "Message-ID", "value": f"<{rfc822_id or message_id + '@mail.client.example'}>"},
        {"name": "Date", "value": sent_at.strftime("%a, %d %b %Y %H:%M:%S +0000")},
    ]
    if cc:
        headers.append({"name": "Cc", "value": cc})
    if in_reply_to:
        headers.append({"name": "In-Reply-To", "value": f"<{in_reply_to}>"})
    if references:
        headers.append({"name": "References", "value": " ".join(f"<{r}>" for r in references)})

    parts = []
    if text is not None:
        parts.append({"mimeType": "text/plain", "filename": "", "body": {"data": _b64(text)}})
    if html_body is not None:
        parts.append({"mimeType": "text/html", "filename": "", "body": {"data": _b64(html_body)}})
    if attachment:
        parts.append({
            "mimeType": "application/pdf",
            "filename": "brief.pdf",
            "body": {"attachmentId": "att-1", "size": 2048},
        })

    if len(parts) == 1 and not attachment:
        payload = dict(parts[0], headers=headers)
    else:
        payload = {"mimeType": "multipart/mixed", "filename": "", "headers": headers,
                   "body": {"size": 0}, "parts": parts}

    raw = {
        "id": message_id,
        "threadId": thread_id,
        "labelIds": list(labels),
        "internalDate": str(int(sent_at.replace(tzinfo=timezone.utc).timestamp() * 1000)),
        "payload": payload,
    }
    if snippet is not None:
        raw["snippet"] = snippet
    return raw


# ---------------------------------------------------------------------------
# Fake mailbox
# ---------------------------------------------------------------------------


class FakeBox:
    """One user's remote mailbox: messages plus an ordered history log."""

    def __init__(self):
        self.messages = {}
        self.history_id = 1000
        self.history = []
        # Cursors below this are reported expired
        self.history_floor = 0
        self.get_failures = {}
        self.list_error = None
        self.modify_error = None

    def add_message(self, raw):
        self.history_id += 1
        self.messages[raw["id"]] = copy.deepcopy(raw)
        self.history.append((self.history_id, "added", raw["id"], []))

    def change_labels(self, external_id, added=(), removed=()):
        raw = self.messages[external_id]
        labels = [l for l in raw.get("labelIds", []) if l not in removed]
        labels.extend(l for l in added if l not in labels)
        raw["labelIds"] = labels
        self.history_id += 1
        if added:
            self.history.append((self.history_id, "labelAdded", external_id, list(added)))
        if removed:
            self.history.append((self.history_id, "labelRemoved", external_id, list(removed)))

    def expire_cursors(self):
        self.history_floor = self.history_id + 1

    def labels_of(self, external_id):
        return list(self.messages[external_id].get("labelIds", []))


class FakeMailbox:
    """Stands in for GmailClient; same method signatures."""

    def __init__(self):
        self.boxes = defaultdict(FakeBox)
        self.calls = []
        # When set, message fetches ask the vault for a token like GmailClient does
        self.vault = None

    def box(self, user_id="user-1") -> FakeBox:
        return self.boxes[user_id]

    def list_changes(self, db, connection, cursor):
        self.calls.append(("list_changes", connection.user_id, cursor))
        box = self.box(connection.user_id)
        if box.list_error:
            raise box.list_error
        if int(cursor) < box.history_floor:
            return ChangeSet(cursor_invalid=True)

        changes = ChangeSet(next_cursor=str(box.history_id))
        for history_id, kind, external_id, labels in box.history:
            if history_id <= int(cursor):
                continue
            if kind == "added" and external_id not in changes.message_ids:
                changes.message_ids.append(external_id)
            elif kind == "labelAdded":
                changes.label_changes.append(LabelChange(external_id, added=labels))
            elif kind == "labelRemoved":
                changes.label_changes.append(LabelChange(external_id, removed=labels))
        return changes

    def list_all(self, db, connection, lookback_days=None, max_messages=None):
        self.calls.append(("list_all", connection.user_id, max_messages))
        box = self.box(connection.user_id)
        if box.list_error:
            raise box.list_error
        ids = sorted(
            box.messages,
            key=lambda mid: int(box.messages[mid].get("internalDate", 0)),
            reverse=True
        )
        if max_messages is not None:
            ids = ids[:max_messages]
        return ChangeSet(message_ids=ids, next_cursor=str(box.history_id))

    def get_message(self, db, connection, external_id):
        self.calls.append(("get_message", connection.user_id, external_id))
        if self.vault is not None:
            self.vault.get_valid_access_token(db, connection)
        box = self.box(connection.user_id)
        if external_id in box.get_failures:
            raise box.get_failures[external_id]
        if external_id not in box.messages:
            raise NotFound(f"message {external_id} not found")
        return copy.deepcopy(box.messages[external_id])

    def modify_labels(self, db, connection, external_id, add=None, remove=None):
        self.calls.append(("modify_labels", connection.user_id, external_id, list(add or []), list(remove or [])))
        box = self.box(connection.user_id)
        if box.modify_error:
            raise box.modify_error
        box.change_labels(external_id, added=add or [], removed=remove or [])
        return {"id": external_id, "labelIds": box.labels_of(external_id)}

    def calls_of(self, name):
        return [c for c in self.calls if c[0] == name]


@pytest.fixture
def mailbox():
    return FakeMailbox()
