"""
Message model - one row per remote message.

Deduplication relies on the partial unique index over
(user_id, external_message_id) for non-deleted rows.
"""

from sqlalchemy import (
    Column, Integer, String, Text, DateTime, Boolean, JSON,
    ForeignKey, Index, text
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.database import Base


class Message(Base):
    """A single synchronized email message."""
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True)
    thread_id = Column(Integer, ForeignKey("threads.id"), nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)

    # ============ IDENTIFIERS ============
    external_message_id = Column(String(255), nullable=False)  # Gmail message id
    rfc822_message_id = Column(String(998), index=True)  # Message-ID header
    in_reply_to = Column(String(998))
    reference_ids = Column(JSON, nullable=False, default=list)

    # ============ ENVELOPE ============
    subject = Column(String(998))
    from_email = Column(String(320), nullable=False)
    from_name = Column(String(255))
    to_emails = Column(JSON, nullable=False, default=list)
    cc_emails = Column(JSON, nullable=False, default=list)
    sent_at = Column(DateTime, nullable=False)

    # ============ CONTENT ============
    snippet = Column(Text)
    body_text = Column(Text)
    body_html = Column(Text)  # cid: references left unresolved
    has_attachments = Column(Boolean, nullable=False, default=False)

    # ============ STATE ============
    is_inbound = Column(Boolean, nullable=False, default=True)
    is_read = Column(Boolean, nullable=False, default=False)
    labels = Column(JSON, nullable=False, default=list)
    read_state_changed_at = Column(DateTime)  # last local read/unread write
    pending_remote_sync = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
    deleted_at = Column(DateTime)

    thread = relationship("Thread", back_populates="messages")

    __table_args__ = (
        Index(
            "uq_messages_user_external",
            "user_id", "external_message_id",
            unique=True,
            postgresql_where=text("deleted_at IS NULL"),
            sqlite_where=text("deleted_at IS NULL"),
        ),
        Index("ix_messages_thread_sent", "thread_id", "sent_at"),
    )

    def __repr__(self):
        return f"<Message(id={self.id}, external={self.external_message_id}, from={self.from_email})>"
