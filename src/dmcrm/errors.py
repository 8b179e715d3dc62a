from __future__ import annotations


class CRMError(Exception):
    """Base class for errors surfaced by the session service."""


class AuthFailed(CRMError):
    """The backend rejected the account credential. Fatal for the session."""


class TransientNetwork(CRMError):
    """Network-level failure; the caller may retry."""


TransientSendFailure = TransientNetwork


class RateLimited(CRMError):
    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class SendRejected(CRMError):
    """The backend refused the message (4xx other than auth/rate limit)."""

    def __init__(self, message: str, *, status: int) -> None:
        super().__init__(message)
        self.status = status


class NotFound(CRMError):
    pass


class SessionNotReady(CRMError):
    pass


class DuplicateMessage(CRMError):
    """Unique index violation on (account_id, remote_message_id)."""


class DuplicateAccount(CRMError):
    pass


class MalformedPayload(CRMError):
    pass


class PeerNotFound(SendRejected):
    """The backend does not know the peer or channel (HTTP 404 upstream)."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status=404)
