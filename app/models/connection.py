"""
Connection model - one linked external mailbox per (user, provider).

Holds the encrypted OAuth token pair, the connection status, and the
provider-specific sync checkpoint (sync_state JSON).
"""

from sqlalchemy import Column, Integer, String, Text, DateTime, JSON, Index, text
from sqlalchemy.sql import func
from app.database import Base
import enum


class ConnectionStatus(str, enum.Enum):
    """Credential health of a connection."""
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    REVOKED = "REVOKED"
    PENDING_REAUTH = "PENDING_REAUTH"


REAUTH_STATUSES = (
    ConnectionStatus.EXPIRED.value,
    ConnectionStatus.REVOKED.value,
    ConnectionStatus.PENDING_REAUTH.value,
)


class Provider(str, enum.Enum):
    GOOGLE = "GOOGLE"


class Connection(Base):
    """
    OAuth connection to a user's external mailbox.

    Tokens are stored encrypted (see TokenCipher). sync_state is an
    opaque JSON document owned by the sync engine.
    """
    __tablename__ = "connections"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    provider = Column(String(20), nullable=False, default=Provider.GOOGLE.value)
    provider_account_id = Column(String(255), nullable=False)
    provider_email = Column(String(255))

    # ============ CREDENTIALS (encrypted) ============
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text)
    access_token_expires_at = Column(DateTime)
    scopes = Column(JSON, nullable=False, default=list)

    # ============ STATUS & SYNC ============
    status = Column(String(20), nullable=False, default=ConnectionStatus.ACTIVE.value, index=True)
    sync_state = Column(JSON, nullable=False, default=dict)
    last_sync_at = Column(DateTime)

    # Lease lock: one sync pass per connection at a time
    sync_locked_at = Column(DateTime)
    sync_lock_owner = Column(String(64))

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
    deleted_at = Column(DateTime)

    __table_args__ = (
        Index(
            "uq_connections_user_provider_account",
            "user_id", "provider", "provider_account_id",
            unique=True,
            postgresql_where=text("deleted_at IS NULL"),
            sqlite_where=text("deleted_at IS NULL"),
        ),
    )

    @property
    def needs_reauth(self) -> bool:
        return self.status in REAUTH_STATUSES

    def __repr__(self):
        return f"<Connection(id={self.id}, user={self.user_id}, provider={self.provider}, status={self.status})>"
