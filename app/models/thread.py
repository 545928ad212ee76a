"""
Thread model - a conversation grouping synchronized messages.

Created only by the sync engine. Collaborating features (leads,
projects, clients) attach themselves via the *_id link columns.
"""

from sqlalchemy import Column, Integer, String, DateTime, JSON, Index, text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.database import Base
import enum


class ThreadStatus(str, enum.Enum):
    OPEN = "OPEN"
    RESOLVED = "RESOLVED"
    ARCHIVED = "ARCHIVED"


class Thread(Base):
    """
    One conversation. messageCount is a cache of live message rows.
    """
    __tablename__ = "threads"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    source = Column(String(20), nullable=False, default="EMAIL")

    # Remote grouping key (Gmail threadId); null for provider-less threads
    external_thread_id = Column(String(255))

    subject = Column(String(998))
    participant_emails = Column(JSON, nullable=False, default=list)
    message_count = Column(Integer, nullable=False, default=0)
    last_message_at = Column(DateTime, index=True)
    status = Column(String(20), nullable=False, default=ThreadStatus.OPEN.value)

    # ============ LINKS (owned by collaborating features) ============
    lead_id = Column(String(64), index=True)
    project_id = Column(String(64), index=True)
    client_id = Column(String(64), index=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
    deleted_at = Column(DateTime)

    messages = relationship("Message", back_populates="thread", lazy="select")

    __table_args__ = (
        Index(
            "uq_threads_user_external",
            "user_id", "external_thread_id",
            unique=True,
            postgresql_where=text("deleted_at IS NULL AND external_thread_id IS NOT NULL"),
            sqlite_where=text("deleted_at IS NULL AND external_thread_id IS NOT NULL"),
        ),
    )

    def __repr__(self):
        return f"<Thread(id={self.id}, external={self.external_thread_id}, messages={self.message_count})>"
