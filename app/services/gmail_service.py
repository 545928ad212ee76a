"""
Mailbox Client for the Gmail API.

Issues list/get/modify calls for a connection and turns transport
failures into the sync error taxonomy. Pagination is drained inside each
listing call so the engine only ever sees complete change sets. Message
content is returned untouched; parsing belongs to the normalizer.
"""

import logging
import random
import socket
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

import google_auth_httplib2
import httplib2
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from sqlalchemy.orm import Session

from app import config
from app.database import utcnow
from app.models.connection import Connection
from app.services.errors import (
    MailSyncError, NotFound, RateLimited, ReauthRequired, TransientError
)
from app.services.token_vault import TokenVault

logger = logging.getLogger(__name__)

HISTORY_TYPES = ["messageAdded", "labelAdded", "labelRemoved"]
RATE_LIMIT_REASONS = (b"rateLimitExceeded", b"userRateLimitExceeded")

BACKOFF_BASE_SECONDS = 1.0
BACKOFF_CAP_SECONDS = 60.0


@dataclass
class LabelChange:
    """Remote label delta for one message, in history order."""
    external_message_id: str
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)


@dataclass
class ChangeSet:
    """Everything one listing call found, all pages included."""
    message_ids: List[str] = field(default_factory=list)
    label_changes: List[LabelChange] = field(default_factory=list)
    next_cursor: Optional[str] = None
    cursor_invalid: bool = False


def build_gmail_service(access_token: str):
    """Gmail API service bound to a bearer token with a per-call timeout."""
    creds = Credentials(token=access_token)
    http = google_auth_httplib2.AuthorizedHttp(
        creds, http=httplib2.Http(timeout=config.GMAIL_HTTP_TIMEOUT_SECONDS)
    )
    return build("gmail", "v1", http=http, cache_discovery=False)


def translate_error(exc: Exception) -> MailSyncError:
    """Map a googleapiclient/transport exception onto the sync taxonomy."""
    if isinstance(exc, HttpError):
        status = int(exc.resp.status)
        content = exc.content or b""

        if status == 429 or (status == 403 and any(r in content for r in RATE_LIMIT_REASONS)):
            retry_after = exc.resp.get("retry-after")
            try:
                retry_after = float(retry_after) if retry_after is not None else None
            except ValueError:
                retry_after = None
            return RateLimited(f"Gmail rate limit ({status})", retry_after=retry_after)
        if status == 401:
            return ReauthRequired("Gmail rejected the access token")
        if status == 404:
            return NotFound("Gmail resource not found")
        if status >= 500:
            return TransientError(f"Gmail server error ({status})")
        return MailSyncError(f"Gmail request failed ({status}): {content[:200]!r}")

    if isinstance(exc, (socket.timeout, TimeoutError, ConnectionError, httplib2.HttpLib2Error, OSError)):
        return TransientError(f"Gmail transport error: {exc}")

    return MailSyncError(str(exc))


def backoff_delay(attempt: int) -> float:
    """Exponential backoff with full jitter on top of the base delay."""
    delay = min(BACKOFF_CAP_SECONDS, BACKOFF_BASE_SECONDS * (2 ** (attempt - 1)))
    return delay + random.uniform(0, BACKOFF_BASE_SECONDS)


class GmailClient:
    """
    Thin Gmail wrapper used by the sync engine and the reconciler.

    Safe to share between worker threads: each thread keeps its own
    service object.
    """

    def __init__(
        self,
        vault: TokenVault,
        service_factory: Callable = build_gmail_service,
        max_retries: int = None,
        page_size: int = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.vault = vault
        self.service_factory = service_factory
        self.max_retries = max_retries if max_retries is not None else config.GMAIL_MAX_RETRIES
        self.page_size = page_size or config.GMAIL_PAGE_SIZE
        self.sleep = sleep
        self._local = threading.local()

    # ============ TRANSPORT ============

    def _service(self, db: Session, connection: Connection):
        token = self.vault.get_valid_access_token(db, connection)
        cached = getattr(self._local, "cached", None)
        if cached and cached[0] == connection.id and cached[1] == token:
            return cached[2]
        service = self.service_factory(token)
        self._local.cached = (connection.id, token, service)
        return service

    def _execute(self, db: Session, connection: Connection, call: Callable):
        """
        Run one API call with capped retries.

        RateLimited honours the provider's retry hint; TransientError
        backs off exponentially. A 401 forces one token refresh first.
        """
        attempt = 0
        refreshed = False

        while True:
            try:
                service = self._service(db, connection)
                try:
                    return call(service)
                except MailSyncError:
                    raise
                except Exception as e:
                    raise translate_error(e) from e
            except ReauthRequired:
                if refreshed or connection.needs_reauth or not connection.refresh_token:
                    raise
                # Token may have been invalidated early; refresh once
                refreshed = True
                connection.access_token_expires_at = utcnow()
                self._local.cached = None
            except TransientError as e:
                attempt += 1
                if attempt > self.max_retries:
                    logger.warning(
                        "Giving up on Gmail call for connection %s after %d attempts: %s",
                        connection.id, attempt, e
                    )
                    raise
                retry_after = getattr(e, "retry_after", None)
                if retry_after:
                    delay = min(retry_after, BACKOFF_CAP_SECONDS)
                else:
                    delay = backoff_delay(attempt)
                logger.info(
                    "Gmail call for connection %s failed (%s); retry %d in %.1fs",
                    connection.id, e, attempt, delay
                )
                self.sleep(delay)

    # ============ LISTING ============

    def list_changes(self, db: Session, connection: Connection, cursor: str) -> ChangeSet:
        """
        All mailbox changes since cursor (Gmail history.list), every page.

        An expired cursor is reported as cursor_invalid, not raised.
        """
        changes = ChangeSet(next_cursor=cursor)
        seen = set()
        page_token = None

        while True:
            try:
                response = self._execute(
                    db, connection,
                    lambda svc: svc.users().history().list(
                        userId="me",
                        startHistoryId=cursor,
                        historyTypes=HISTORY_TYPES,
                        pageToken=page_token,
                        maxResults=self.page_size
                    ).execute()
                )
            except NotFound:
                logger.info("History cursor %s expired for connection %s", cursor, connection.id)
                return ChangeSet(cursor_invalid=True)

            for record in response.get("history", []):
                for added in record.get("messagesAdded", []):
                    message_id = added.get("message", {}).get("id")
                    if message_id and message_id not in seen:
                        seen.add(message_id)
                        changes.message_ids.append(message_id)
                for change in record.get("labelsAdded", []):
                    changes.label_changes.append(LabelChange(
                        external_message_id=change["message"]["id"],
                        added=list(change.get("labelIds", []))
                    ))
                for change in record.get("labelsRemoved", []):
                    changes.label_changes.append(LabelChange(
                        external_message_id=change["message"]["id"],
                        removed=list(change.get("labelIds", []))
                    ))

            if response.get("historyId"):
                changes.next_cursor = str(response["historyId"])

            page_token = response.get("nextPageToken")
            if not page_token:
                return changes

    def list_all(
        self,
        db: Session,
        connection: Connection,
        lookback_days: Optional[int] = None,
        max_messages: Optional[int] = None
    ) -> ChangeSet:
        """
        Full listing of message ids, newest first.

        The cursor is taken from the profile before listing so anything
        that arrives meanwhile shows up in the next incremental pass.
        """
        profile = self._execute(
            db, connection,
            lambda svc: svc.users().getProfile(userId="me").execute()
        )
        changes = ChangeSet(next_cursor=str(profile["historyId"]) if profile.get("historyId") else None)
        query = f"newer_than:{lookback_days}d" if lookback_days else None
        page_token = None

        while True:
            remaining = None if max_messages is None else max_messages - len(changes.message_ids)
            if remaining is not None and remaining <= 0:
                return changes

            page_size = self.page_size if remaining is None else min(self.page_size, remaining)
            response = self._execute(
                db, connection,
                lambda svc: svc.users().messages().list(
                    userId="me",
                    q=query,
                    pageToken=page_token,
                    maxResults=page_size
                ).execute()
            )

            for ref in response.get("messages", []):
                changes.message_ids.append(ref["id"])

            page_token = response.get("nextPageToken")
            if not page_token:
                return changes

    # ============ MESSAGES ============

    def get_message(self, db: Session, connection: Connection, external_id: str) -> dict:
        """Full Gmail message resource (payload, labelIds, threadId, ...)."""
        return self._execute(
            db, connection,
            lambda svc: svc.users().messages().get(
                userId="me",
                id=external_id,
                format="full"
            ).execute()
        )

    def modify_labels(
        self,
        db: Session,
        connection: Connection,
        external_id: str,
        add: List[str] = None,
        remove: List[str] = None
    ) -> dict:
        body = {
            "addLabelIds": list(add or []),
            "removeLabelIds": list(remove or [])
        }
        return self._execute(
            db, connection,
            lambda svc: svc.users().messages().modify(
                userId="me",
                id=external_id,
                body=body
            ).execute()
        )
