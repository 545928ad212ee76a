"""
Message Normalizer & Deduper.

Maps a raw Gmail message resource onto Thread/Message rows:
1. Parse headers, bodies, flags
2. Dedup on (user_id, external_message_id) - a hit only refreshes labels
3. Resolve the thread: external thread id, then reply headers, then new
4. Insert and recompute the thread's cached stats from live rows

Nothing here commits; the sync engine commits per batch.
"""

import base64
import enum
import html
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import getaddresses, parseaddr, parsedate_to_datetime
from typing import List, Optional

from bs4 import BeautifulSoup
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.database import utcnow
from app.models.message import Message
from app.models.thread import Thread
from app.services import db_service
from app.services.reconciler import apply_remote_labels

logger = logging.getLogger(__name__)

SNIPPET_LENGTH = 200


class NormalizeOutcome(str, enum.Enum):
    INSERTED = "inserted"
    DUPLICATE_SKIPPED = "duplicate_skipped"


@dataclass
class ParsedMessage:
    """Provider-neutral view of one raw message."""
    external_message_id: str
    external_thread_id: Optional[str]
    subject: str
    from_email: str
    from_name: Optional[str]
    to_emails: List[str]
    cc_emails: List[str]
    sent_at: datetime
    rfc822_message_id: Optional[str]
    in_reply_to: Optional[str]
    reference_ids: List[str]
    body_text: str
    body_html: str
    snippet: str
    has_attachments: bool
    labels: List[str] = field(default_factory=list)

    @property
    def is_inbound(self) -> bool:
        return "SENT" not in self.labels

    @property
    def is_read(self) -> bool:
        return "UNREAD" not in self.labels

    @property
    def participants(self) -> List[str]:
        emails = [self.from_email, *self.to_emails, *self.cc_emails]
        return sorted({e for e in emails if e})


@dataclass
class NormalizeResult:
    outcome: NormalizeOutcome
    thread: Thread
    message: Message
    labels_updated: bool = False


# ============ PARSING ============

def _decode_part_data(data: str) -> str:
    """Decode Gmail's base64url body data (padding is optional)."""
    if not data:
        return ""
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded).decode("utf-8", errors="ignore")


def _collect_bodies(part: dict, text_parts: list, html_parts: list) -> None:
    """Recursively gather text/plain and text/html bodies."""
    if not part:
        return

    mime_type = part.get("mimeType", "")
    is_attachment = bool(part.get("filename"))

    if not is_attachment:
        data = part.get("body", {}).get("data", "")
        if mime_type.startswith("text/plain"):
            text_parts.append(_decode_part_data(data))
        elif mime_type.startswith("text/html"):
            html_parts.append(_decode_part_data(data))

    for child in part.get("parts", []) or []:
        _collect_bodies(child, text_parts, html_parts)


def _has_attachments(part: dict) -> bool:
    if not part:
        return False
    body = part.get("body", {})
    if part.get("filename") and (body.get("size") or body.get("attachmentId")):
        return True
    return any(_has_attachments(p) for p in part.get("parts", []) or [])


def _header_map(headers: list) -> dict:
    # First occurrence wins, names are case-insensitive
    result = {}
    for h in headers or []:
        name = h.get("name", "").lower()
        if name and name not in result:
            result[name] = h.get("value", "")
    return result


def _address_list(value: str) -> List[str]:
    return [addr.strip().lower() for _, addr in getaddresses([value or ""]) if addr.strip()]


def _sent_at(raw: dict, date_header: str) -> datetime:
    internal = raw.get("internalDate")
    if internal:
        try:
            return datetime.fromtimestamp(int(internal) / 1000, tz=timezone.utc).replace(tzinfo=None)
        except (TypeError, ValueError):
            pass
    if date_header:
        try:
            parsed = parsedate_to_datetime(date_header)
            if parsed.tzinfo is not None:
                parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
            return parsed
        except (TypeError, ValueError):
            pass
    return utcnow()


def html_to_text(raw_html: str) -> str:
    """Plain text of an HTML body with whitespace collapsed."""
    if not raw_html:
        return ""
    soup = BeautifulSoup(raw_html, "html.parser")
    for tag in soup(["script", "style", "head"]):
        tag.decompose()
    return " ".join(soup.get_text(separator=" ").split())


def _snippet(raw: dict, body_text: str, body_html: str) -> str:
    if raw.get("snippet"):
        # Gmail snippets arrive HTML-escaped
        return html.unescape(raw["snippet"])[:SNIPPET_LENGTH]
    text = " ".join(body_text.split()) if body_text else html_to_text(body_html)
    return text[:SNIPPET_LENGTH]


def _strip_angle(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    return value.strip().strip("<>").strip() or None


def parse_gmail_message(raw: dict) -> ParsedMessage:
    """
    Parse a Gmail API message resource (format=full).

    cid: references inside HTML bodies are left as-is.
    """
    payload = raw.get("payload", {}) or {}
    headers = _header_map(payload.get("headers", []))

    from_name, from_email = parseaddr(headers.get("from", ""))
    text_parts, html_parts = [], []
    _collect_bodies(payload, text_parts, html_parts)
    body_text = "\n".join(p for p in text_parts if p)
    body_html = "".join(html_parts)

    references = [
        _strip_angle(ref) for ref in (headers.get("references") or "").split()
    ]

    return ParsedMessage(
        external_message_id=raw["id"],
        external_thread_id=raw.get("threadId") or None,
        subject=headers.get("subject", ""),
        from_email=(from_email or "").strip().lower() or "unknown@unknown",
        from_name=from_name.strip() or None,
        to_emails=_address_list(headers.get("to")),
        cc_emails=_address_list(headers.get("cc")),
        sent_at=_sent_at(raw, headers.get("date")),
        rfc822_message_id=_strip_angle(headers.get("message-id")),
        in_reply_to=_strip_angle(headers.get("in-reply-to")),
        reference_ids=[r for r in references if r],
        body_text=body_text,
        body_html=body_html,
        snippet=_snippet(raw, body_text, body_html),
        has_attachments=_has_attachments(payload),
        labels=list(raw.get("labelIds", []) or []),
    )


# ============ NORMALIZER ============

class MessageNormalizer:
    """Turns raw messages into deduplicated Thread/Message rows."""

    def normalize(
        self,
        db: Session,
        raw: dict,
        user_id: str,
        remote_changed_at: Optional[datetime] = None
    ) -> NormalizeResult:
        """
        Persist (without committing) one raw message for a user.

        Args:
            db: Database session (caller owns the transaction)
            raw: Gmail message resource
            user_id: Owner of the connection
            remote_changed_at: Earliest time the message's remote label
                state could have changed; None for a full-sync snapshot

        Returns:
            NormalizeResult with INSERTED or DUPLICATE_SKIPPED
        """
        parsed = parse_gmail_message(raw)

        existing = db_service.get_message_by_external_id(db, user_id, parsed.external_message_id)
        if existing:
            return self._duplicate(existing, parsed, remote_changed_at)

        thread = self._resolve_thread(db, user_id, parsed)

        message = Message(
            thread_id=thread.id,
            user_id=user_id,
            external_message_id=parsed.external_message_id,
            rfc822_message_id=parsed.rfc822_message_id,
            in_reply_to=parsed.in_reply_to,
            reference_ids=parsed.reference_ids,
            subject=parsed.subject,
            from_email=parsed.from_email,
            from_name=parsed.from_name,
            to_emails=parsed.to_emails,
            cc_emails=parsed.cc_emails,
            sent_at=parsed.sent_at,
            snippet=parsed.snippet,
            body_text=parsed.body_text,
            body_html=parsed.body_html,
            has_attachments=parsed.has_attachments,
            is_inbound=parsed.is_inbound,
            is_read=parsed.is_read,
            labels=parsed.labels,
        )

        try:
            with db.begin_nested():
                db.add(message)
                db.flush()
        except IntegrityError:
            # Another writer inserted the same message first
            existing = db_service.get_message_by_external_id(db, user_id, parsed.external_message_id)
            if existing is None:
                raise
            return self._duplicate(existing, parsed, remote_changed_at)

        db_service.refresh_thread_stats(db, thread)
        return NormalizeResult(NormalizeOutcome.INSERTED, thread, message)

    def _duplicate(
        self,
        existing: Message,
        parsed: ParsedMessage,
        remote_changed_at: Optional[datetime]
    ) -> NormalizeResult:
        changed = apply_remote_labels(existing, parsed.labels, remote_changed_at)
        return NormalizeResult(
            NormalizeOutcome.DUPLICATE_SKIPPED, existing.thread, existing, labels_updated=changed
        )

    def _resolve_thread(self, db: Session, user_id: str, parsed: ParsedMessage) -> Thread:
        # 1. Remote grouping key
        if parsed.external_thread_id:
            thread = db_service.get_thread_by_external_id(db, user_id, parsed.external_thread_id)
            if thread:
                return thread

        # 2. Reply headers pointing at a message we already have
        refs = [parsed.in_reply_to, *reversed(parsed.reference_ids)]
        thread = db_service.find_thread_by_message_refs(db, user_id, refs)
        if thread:
            logger.debug(
                "Message %s attached to thread %s via reply headers",
                parsed.external_message_id, thread.id
            )
            return thread

        # 3. New conversation
        thread = Thread(
            user_id=user_id,
            source="EMAIL",
            external_thread_id=parsed.external_thread_id,
            subject=parsed.subject or None,
            participant_emails=parsed.participants,
            message_count=0,
        )
        try:
            with db.begin_nested():
                db.add(thread)
                db.flush()
        except IntegrityError:
            thread = db_service.get_thread_by_external_id(db, user_id, parsed.external_thread_id)
            if thread is None:
                raise
        return thread
