"""
Failure taxonomy for mailbox sync.

Only conditions that callers must react to are exceptions. An expired
cursor (ChangeSet.cursor_invalid) and a duplicate message
(NormalizeOutcome.DUPLICATE_SKIPPED) are ordinary outcomes.
"""

from typing import Optional


class MailSyncError(Exception):
    """Base class for all mailbox sync failures."""


class ReauthRequired(MailSyncError):
    """The stored credential is dead; the user has to reconnect."""

    def __init__(self, message: str, connection_id: Optional[int] = None):
        super().__init__(message)
        self.connection_id = connection_id


class TransientError(MailSyncError):
    """Network or provider-side failure worth retrying later."""


class RateLimited(TransientError):
    """Provider asked us to slow down."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class NotFound(MailSyncError):
    """The remote object no longer exists."""
