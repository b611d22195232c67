"""Errors raised by the Jira integration layer."""

from __future__ import annotations

from typing import Any, Optional


class TrackerError(RuntimeError):
    """Base class for failures talking to the external issue tracker."""

    status_code: Optional[int] = None
    reconnect_required = False

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code


class NotConfigured(TrackerError):
    """OAuth client credentials are missing from the configuration."""

    status_code = 503


class InvalidState(TrackerError):
    """The OAuth callback state did not match a pending authorization."""

    status_code = 400
    reconnect_required = True


class TokenExchangeFailed(TrackerError):
    """The provider refused to exchange an authorization code."""

    status_code = 401
    reconnect_required = True


class RefreshFailed(TrackerError):
    """The provider rejected the refresh token; stored credentials were purged."""

    status_code = 401
    reconnect_required = True


class NoRefreshToken(RefreshFailed):
    """No refresh token is stored for the user."""


class NotAuthenticated(TrackerError):
    """No usable credential exists for the user."""

    status_code = 401
    reconnect_required = True


class RateLimited(TrackerError):
    status_code = 429

    def __init__(self, message: str, retry_after: Optional[int] = None):
        super().__init__(message)
        self.retry_after = retry_after


class ValidationFailed(TrackerError):
    """A query was rejected before any network call was made."""

    status_code = 400


class TransportError(TrackerError):
    """Network failure or provider-side 5xx after local retries."""

    status_code = 502


class ProviderRejected(TrackerError):
    """The provider answered with a 4xx other than an authorization failure."""

    def __init__(self, message: str, status_code: int, body: Any = None):
        super().__init__(message, status_code)
        self.body = body


class RequestCancelled(TrackerError):
    status_code = 499
