"""
Google OAuth endpoints for linking a user's mailbox.

Flow:
1. GET /auth/google/login -> Redirects to Google OAuth consent screen
2. Google redirects back to /auth/google/callback with code + state
3. /auth/google/callback exchanges the code, encrypts the tokens and
   creates (or reactivates) the user's Connection
"""

import logging
from datetime import timedelta
from typing import Optional

import jwt
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import RedirectResponse, JSONResponse
from google.auth.transport.requests import Request as GoogleRequest
from google.oauth2 import id_token as google_id_token
from google_auth_oauthlib.flow import Flow
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app import config
from app.api.deps import get_current_user_id, get_token_vault
from app.database import get_db, utcnow
from app.models.connection import Connection, Provider
from app.services import db_service
from app.services.errors import ReauthRequired
from app.services.token_vault import TokenVault, revoke_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth/google", tags=["Authentication"])

STATE_TTL_MINUTES = 10


# Response Models
class AuthStatusResponse(BaseModel):
    """Connection status for the signed-in user."""
    connected: bool
    status: Optional[str] = None
    providerEmail: Optional[str] = None
    needsReauth: bool = False
    message: str


class AuthSuccessResponse(BaseModel):
    """Successful authentication response."""
    success: bool
    message: str
    providerEmail: Optional[str] = None
    hasRefreshToken: bool = False


def get_oauth_flow() -> Flow:
    """Create the OAuth flow from configured client credentials."""
    if not config.GOOGLE_CLIENT_ID or not config.GOOGLE_CLIENT_SECRET:
        raise HTTPException(
            status_code=500,
            detail="Google OAuth is not configured (GOOGLE_CLIENT_ID / GOOGLE_CLIENT_SECRET)."
        )

    client_config = {
        "web": {
            "client_id": config.GOOGLE_CLIENT_ID,
            "client_secret": config.GOOGLE_CLIENT_SECRET,
            "auth_uri": "https://accounts.google.com/o/oauth2/auth",
            "token_uri": config.GOOGLE_TOKEN_URI,
            "redirect_uris": [config.GOOGLE_REDIRECT_URI],
        }
    }
    # Login and callback build separate flows, so no PKCE verifier is carried
    return Flow.from_client_config(
        client_config,
        scopes=config.SCOPES,
        redirect_uri=config.GOOGLE_REDIRECT_URI,
        autogenerate_code_verifier=False
    )


def _encode_state(user_id: str) -> str:
    payload = {
        "user_id": user_id,
        "purpose": "google_oauth",
        "exp": utcnow() + timedelta(minutes=STATE_TTL_MINUTES),
    }
    return jwt.encode(payload, config.SESSION_SECRET, algorithm=config.SESSION_ALGORITHM)


def _decode_state(state: str) -> Optional[str]:
    try:
        payload = jwt.decode(state, config.SESSION_SECRET, algorithms=[config.SESSION_ALGORITHM])
    except jwt.InvalidTokenError:
        return None
    if payload.get("purpose") != "google_oauth":
        return None
    return payload.get("user_id")


@router.get("/login")
def login(user_id: str = Depends(get_current_user_id)):
    """
    Start OAuth flow - redirects to Google consent screen.

    The signed-in user id travels in a short-lived signed state value so
    the callback can attach the mailbox to the right account.
    """
    flow = get_oauth_flow()

    auth_url, _ = flow.authorization_url(
        access_type="offline",  # Get refresh token
        include_granted_scopes="true",
        prompt="consent",  # Force consent to get refresh token
        state=_encode_state(user_id)
    )

    return RedirectResponse(url=auth_url)


@router.get("/callback")
def callback(
    code: str = None,
    state: str = None,
    error: str = None,
    db: Session = Depends(get_db),
    vault: TokenVault = Depends(get_token_vault)
):
    """
    OAuth callback - exchanges authorization code for tokens.

    Google redirects here after user grants/denies permission.
    """
    if error:
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "error": error,
                "message": "Authentication was denied or failed."
            }
        )

    if not code:
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "error": "missing_code",
                "message": "No authorization code received."
            }
        )

    user_id = _decode_state(state) if state else None
    if not user_id:
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "error": "invalid_state",
                "message": "Sign-in session expired. Please start again."
            }
        )

    flow = get_oauth_flow()
    try:
        flow.fetch_token(code=code)
    except Exception as e:
        logger.warning("OAuth code exchange failed: %s", e)
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "error": "code_exchange_failed",
                "message": "Failed to exchange authorization code for tokens."
            }
        )

    credentials = flow.credentials
    try:
        claims = google_id_token.verify_oauth2_token(
            credentials.id_token, GoogleRequest(), audience=config.GOOGLE_CLIENT_ID
        )
    except ValueError as e:
        logger.warning("Rejected Google ID token: %s", e)
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "error": "invalid_id_token",
                "message": "Could not verify the Google account."
            }
        )

    account_id = claims["sub"]
    email = claims.get("email")

    connection = db_service.get_connection_by_account(db, user_id, account_id)
    if connection is None:
        connection = Connection(
            user_id=user_id,
            provider=Provider.GOOGLE.value,
            provider_account_id=account_id,
            sync_state={}
        )
        db.add(connection)

    connection.provider_email = email
    connection.scopes = list(credentials.scopes or config.SCOPES)
    vault.store_tokens(connection, credentials.token, credentials.refresh_token, credentials.expiry)
    vault.cursor_store.mark_active(db, connection)

    logger.info("✅ Connected mailbox %s for user %s (connection %s)", email, user_id, connection.id)

    return AuthSuccessResponse(
        success=True,
        message="✅ Mailbox connected. Your mail will start syncing shortly.",
        providerEmail=email,
        hasRefreshToken=bool(credentials.refresh_token)
    )


@router.get("/status", response_model=AuthStatusResponse)
def auth_status(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
) -> AuthStatusResponse:
    """Check whether the signed-in user has a usable mailbox connection."""
    connection = db_service.get_default_connection(db, user_id)

    if connection is None:
        return AuthStatusResponse(connected=False, message="No mailbox connected.")

    if connection.needs_reauth:
        return AuthStatusResponse(
            connected=True,
            status=connection.status,
            providerEmail=connection.provider_email,
            needsReauth=True,
            message="Mailbox connection expired. Please reconnect."
        )

    return AuthStatusResponse(
        connected=True,
        status=connection.status,
        providerEmail=connection.provider_email,
        message="Mailbox connected."
    )


@router.delete("/connection")
def disconnect(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    vault: TokenVault = Depends(get_token_vault)
):
    """
    Disconnect the mailbox (revoke at Google, then soft-delete).

    Synced threads and messages are kept.
    """
    connection = db_service.get_default_connection(db, user_id)
    if connection is None:
        return {"success": True, "message": "No mailbox connected."}

    token = connection.refresh_token or connection.access_token
    revoked = False
    if token:
        try:
            revoked = revoke_token(vault.cipher.decrypt(token))
        except ReauthRequired as e:
            logger.warning("Could not revoke token for connection %s: %s", connection.id, e)

    db_service.soft_delete_connection(db, connection)
    logger.info("Disconnected connection %s (revoked=%s)", connection.id, revoked)

    return {"success": True, "revoked": revoked, "message": "Mailbox disconnected."}
