"""
Shared FastAPI dependencies: service wiring and authentication.

- Users authenticate with the portal's HS256 session token (bearer).
- The scheduled trigger authenticates with CRON_SECRET (bearer).
"""

import hmac
import logging
from functools import lru_cache
from typing import Optional

import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app import config
from app.services.gmail_service import GmailClient
from app.services.reconciler import ReadStateReconciler
from app.services.scheduler import SyncDriver
from app.services.token_vault import TokenVault

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


# ============ SERVICES ============

@lru_cache
def get_token_vault() -> TokenVault:
    return TokenVault()


@lru_cache
def get_mailbox() -> GmailClient:
    return GmailClient(get_token_vault())


@lru_cache
def get_reconciler() -> ReadStateReconciler:
    return ReadStateReconciler()


@lru_cache
def get_sync_driver() -> SyncDriver:
    return SyncDriver(get_mailbox(), reconciler=get_reconciler())


# ============ AUTH ============

def verify_session_token(token: str) -> Optional[str]:
    """Return the user id carried by a portal session token, or None."""
    if not config.SESSION_SECRET:
        logger.error("SESSION_SECRET is not configured; rejecting user requests")
        return None
    try:
        payload = jwt.decode(token, config.SESSION_SECRET, algorithms=[config.SESSION_ALGORITHM])
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        return None
    # Purpose-bound tokens (the OAuth state) share the secret but are not sessions
    if "purpose" in payload:
        return None
    user_id = payload.get("user_id") or payload.get("sub")
    return str(user_id) if user_id else None


def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> str:
    """Require a valid user session and return the user id."""
    user_id = verify_session_token(credentials.credentials) if credentials else None
    if not user_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    return user_id


def require_cron_secret(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> None:
    """Reject the scheduled trigger unless it carries CRON_SECRET."""
    provided = credentials.credentials if credentials else ""
    expected = config.CRON_SECRET
    if not expected or not hmac.compare_digest(provided.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Unauthorized")
