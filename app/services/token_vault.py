"""
Token Vault - encrypted OAuth tokens and transparent refresh.

Tokens at rest are Fernet tokens (AES-CBC + HMAC, random IV per value).
The key is process configuration (TOKEN_ENCRYPTION_KEY), never derived
from anything a request carries.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional, Tuple

import requests
from cryptography.fernet import Fernet, InvalidToken
from google.auth import exceptions as google_exceptions
from google.auth.transport.requests import Request as GoogleRequest
from google.oauth2.credentials import Credentials
from sqlalchemy.orm import Session

from app import config
from app.database import utcnow
from app.models.connection import Connection, ConnectionStatus
from app.services.errors import ReauthRequired, TransientError
from app.services.sync_cursor_store import SyncCursorStore

logger = logging.getLogger(__name__)


class TokenCipher:
    """Symmetric authenticated encryption for token strings."""

    def __init__(self, key: str = None):
        key = key or config.TOKEN_ENCRYPTION_KEY
        if not key:
            raise ValueError("TOKEN_ENCRYPTION_KEY is not configured")
        self._fernet = Fernet(key.encode() if isinstance(key, str) else key)

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except InvalidToken:
            # Wrong key or tampered value: the stored credential is unusable
            raise ReauthRequired("Stored token could not be decrypted")


def refresh_access_token(refresh_token: str) -> Tuple[str, Optional[datetime]]:
    """
    Exchange a refresh token for a new access token at Google.

    Returns:
        (access_token, expiry) where expiry is naive UTC
    """
    creds = Credentials(
        token=None,
        refresh_token=refresh_token,
        token_uri=config.GOOGLE_TOKEN_URI,
        client_id=config.GOOGLE_CLIENT_ID,
        client_secret=config.GOOGLE_CLIENT_SECRET,
    )
    request = GoogleRequest()

    def timed_request(*args, **kwargs):
        kwargs.setdefault("timeout", config.GMAIL_HTTP_TIMEOUT_SECONDS)
        return request(*args, **kwargs)

    creds.refresh(timed_request)
    return creds.token, creds.expiry


def revoke_token(token: str) -> bool:
    """
    Revoke a token at Google (disconnect).

    Failures are logged, not raised; the caller soft-deletes regardless.
    """
    try:
        response = requests.post(
            config.GOOGLE_REVOKE_URI,
            params={"token": token},
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            timeout=config.GMAIL_HTTP_TIMEOUT_SECONDS,
        )
    except requests.RequestException as e:
        logger.warning("Token revocation request failed: %s", e)
        return False

    if response.status_code != 200:
        # Token may already be invalid or expired
        logger.warning("Token revocation failed with status %s", response.status_code)
        return False
    return True


def _is_revoked_grant(exc: google_exceptions.RefreshError) -> bool:
    return "invalid_grant" in str(exc)


class TokenVault:
    """
    Hands out valid access tokens for connections.

    Refreshes when the cached token expires within the safety margin
    and records credential death on the connection.
    """

    def __init__(
        self,
        cipher: TokenCipher = None,
        cursor_store: SyncCursorStore = None,
        refresh_margin_seconds: int = None
    ):
        self.cipher = cipher or TokenCipher()
        self.cursor_store = cursor_store or SyncCursorStore()
        self.refresh_margin = timedelta(
            seconds=refresh_margin_seconds
            if refresh_margin_seconds is not None
            else config.TOKEN_REFRESH_MARGIN_SECONDS
        )

    def store_tokens(
        self,
        connection: Connection,
        access_token: str,
        refresh_token: Optional[str],
        expires_at: Optional[datetime]
    ) -> None:
        """Encrypt a freshly issued token pair onto the connection (not committed)."""
        connection.access_token = self.cipher.encrypt(access_token)
        if refresh_token:
            # Google only returns a refresh token on consent; keep the old one otherwise
            connection.refresh_token = self.cipher.encrypt(refresh_token)
        connection.access_token_expires_at = expires_at

    def get_valid_access_token(self, db: Session, connection: Connection) -> str:
        """
        Return a currently valid access token, refreshing if needed.

        Raises:
            ReauthRequired: credential is dead (connection status updated)
            TransientError: refresh failed for a retryable reason
        """
        if connection.needs_reauth:
            raise ReauthRequired(
                "Mailbox connection needs to be reconnected", connection.id
            )

        expires_at = connection.access_token_expires_at
        if expires_at is None or expires_at - utcnow() > self.refresh_margin:
            return self.cipher.decrypt(connection.access_token)

        if not connection.refresh_token:
            self.cursor_store.mark_needs_reauth(
                db, connection, ConnectionStatus.PENDING_REAUTH,
                "No refresh token available"
            )
            raise ReauthRequired(
                "Mailbox connection expired and cannot be refreshed", connection.id
            )

        refresh_token = self.cipher.decrypt(connection.refresh_token)

        try:
            access_token, expiry = refresh_access_token(refresh_token)
        except google_exceptions.RefreshError as e:
            if _is_revoked_grant(e):
                self.cursor_store.mark_needs_reauth(
                    db, connection, ConnectionStatus.REVOKED,
                    f"Token refresh rejected: {e}"
                )
                raise ReauthRequired(
                    "Mailbox access was revoked; reconnect the account", connection.id
                )
            logger.error("Token refresh failed for connection %s: %s", connection.id, e)
            raise TransientError(f"Token refresh failed: {e}")
        except google_exceptions.TransportError as e:
            logger.warning("Token refresh transport error for connection %s: %s", connection.id, e)
            raise TransientError(f"Token refresh transport error: {e}")

        connection.access_token = self.cipher.encrypt(access_token)
        connection.access_token_expires_at = expiry
        db.commit()
        logger.info("Refreshed access token for connection %s", connection.id)
        return access_token
