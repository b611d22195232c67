"""Jira OAuth 2.0 (3LO) authorization and token renewal.

``OAuthTokenManager`` drives the authorization-code handshake and keeps the
stored credential fresh. Refreshes are serialised per user: Atlassian rotates
refresh tokens on every use, so two concurrent refreshes with the same token
would leave one of the callers holding an invalidated grant.
"""

from __future__ import annotations

import logging
import secrets
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

from flask import current_app

from services.errors import (
    InvalidState,
    NoRefreshToken,
    NotAuthenticated,
    NotConfigured,
    RefreshFailed,
    TokenExchangeFailed,
    TransportError,
)
from services.token_store import (
    OAuthCredential,
    PendingAuthorization,
    TokenStoreAdapter,
    utcnow,
)
from utils.http import http_request

DEFAULT_AUTHORIZE_URL = "https://auth.atlassian.com/authorize"
DEFAULT_TOKEN_URL = "https://auth.atlassian.com/oauth/token"
DEFAULT_RESOURCES_URL = "https://api.atlassian.com/oauth/token/accessible-resources"
DEFAULT_AUDIENCE = "api.atlassian.com"
DEFAULT_SCOPES = "read:jira-work write:jira-work read:jira-user offline_access"
ROTATION_MEMORY_SECONDS = 120


@dataclass(frozen=True)
class OAuthConfig:
    client_id: str
    client_secret: str
    redirect_uri: str
    authorize_url: str = DEFAULT_AUTHORIZE_URL
    token_url: str = DEFAULT_TOKEN_URL
    resources_url: str = DEFAULT_RESOURCES_URL
    audience: str = DEFAULT_AUDIENCE
    scopes: str = DEFAULT_SCOPES


def get_oauth_config() -> OAuthConfig:
    """Build the OAuth configuration from the Flask config."""
    config = current_app.config
    client_id = (config.get("JIRA_CLIENT_ID") or "").strip()
    client_secret = (config.get("JIRA_CLIENT_SECRET") or "").strip()
    if not client_id or not client_secret:
        raise NotConfigured(
            "Jira OAuth is not configured. Set JIRA_CLIENT_ID and JIRA_CLIENT_SECRET."
        )
    redirect_uri = (config.get("JIRA_REDIRECT_URI") or "").strip()
    if not redirect_uri:
        base_url = (config.get("APP_BASE_URL") or "").rstrip("/")
        redirect_uri = f"{base_url}/api/jira/auth/callback"
    return OAuthConfig(
        client_id=client_id,
        client_secret=client_secret,
        redirect_uri=redirect_uri,
        authorize_url=config.get("JIRA_AUTHORIZE_URL") or DEFAULT_AUTHORIZE_URL,
        token_url=config.get("JIRA_TOKEN_URL") or DEFAULT_TOKEN_URL,
        resources_url=config.get("JIRA_RESOURCES_URL") or DEFAULT_RESOURCES_URL,
        audience=config.get("JIRA_AUDIENCE") or DEFAULT_AUDIENCE,
        scopes=config.get("JIRA_SCOPES") or DEFAULT_SCOPES,
    )


# Process-wide refresh coordination (shared across requests)
# ------------------------------
_locks_guard = threading.Lock()
# user key -> [lock, callers using it]; an entry is dropped when its count hits zero
_refresh_locks: Dict[str, list] = {}
_recent_rotations: Dict[Tuple[str, str], Tuple[OAuthCredential, float]] = {}


@contextmanager
def _refresh_lock(user_id):
    key = str(user_id)
    with _locks_guard:
        entry = _refresh_locks.get(key)
        if entry is None:
            entry = _refresh_locks[key] = [threading.Lock(), 0]
        entry[1] += 1
    try:
        with entry[0]:
            yield
    finally:
        with _locks_guard:
            entry[1] -= 1
            if entry[1] == 0:
                _refresh_locks.pop(key, None)


def _remember_rotation(user_id, old_access_token: str, credential: OAuthCredential) -> None:
    now = time.monotonic()
    with _locks_guard:
        for key, (_, stamp) in list(_recent_rotations.items()):
            if now - stamp > ROTATION_MEMORY_SECONDS:
                del _recent_rotations[key]
        _recent_rotations[(str(user_id), old_access_token)] = (credential, now)


def _recent_rotation(user_id, old_access_token: Optional[str]) -> Optional[OAuthCredential]:
    if not old_access_token:
        return None
    with _locks_guard:
        entry = _recent_rotations.get((str(user_id), old_access_token))
    if entry is None:
        return None
    credential, stamp = entry
    if time.monotonic() - stamp > ROTATION_MEMORY_SECONDS:
        return None
    return credential


def _forget_user(user_id) -> None:
    key = str(user_id)
    with _locks_guard:
        for rotation_key in [k for k in _recent_rotations if k[0] == key]:
            del _recent_rotations[rotation_key]


def reset_refresh_state() -> None:
    """Drop all lock and rotation bookkeeping."""
    with _locks_guard:
        _refresh_locks.clear()
        _recent_rotations.clear()


def _expires_at(token_data: Dict[str, Any]):
    expires_in = token_data.get("expires_in")
    try:
        seconds = int(expires_in)
    except (TypeError, ValueError):
        return None
    return utcnow() + timedelta(seconds=seconds)


class OAuthTokenManager:
    """Produces valid access tokens for a user and drives the OAuth handshake."""

    def __init__(self, store: TokenStoreAdapter, config: Optional[OAuthConfig], *, timeout: float = 20):
        self.store = store
        self.config = config
        self.timeout = timeout

    # Authorization handshake
    # ------------------------------
    def begin_authorization(self, user_id, return_to: Optional[str] = None) -> str:
        """Persist a fresh pending record and return the provider redirect URL."""
        pending = PendingAuthorization(state=secrets.token_urlsafe(32), return_to=return_to)
        self.store.save_pending(user_id, pending)
        params = {
            "audience": self.config.audience,
            "client_id": self.config.client_id,
            "scope": self.config.scopes,
            "redirect_uri": self.config.redirect_uri,
            "state": pending.state,
            "response_type": "code",
            "prompt": "consent",
        }
        return f"{self.config.authorize_url}?{urlencode(params)}"

    def complete_authorization(
        self, user_id, code: str, state: Optional[str]
    ) -> Tuple[OAuthCredential, Optional[str]]:
        """Exchange the callback code for tokens.

        Returns the stored credential and the ``return_to`` recorded when the
        handshake began. The pending record is consumed whatever the outcome.
        """
        pending = self.store.pop_pending(user_id)
        if pending is None or not state or pending.state != state:
            raise InvalidState("OAuth state did not match a pending authorization.")
        if pending.is_expired():
            raise InvalidState("OAuth authorization expired. Please try again.")

        token_data = self._token_request(
            {
                "grant_type": "authorization_code",
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
                "code": code,
                "redirect_uri": self.config.redirect_uri,
            },
            outage_is_transport=False,
        )
        if token_data is None:
            raise TokenExchangeFailed("Jira rejected the authorization code.")
        access_token = token_data.get("access_token")
        if not access_token:
            raise TokenExchangeFailed("Jira did not return an access token.")

        previous = self.store.load(user_id)
        resources = self.accessible_resources(access_token)
        resource = self._select_resource(resources, previous.tenant_id if previous else None)
        if resource is None:
            raise TokenExchangeFailed("No accessible Jira sites were found for this account.")

        credential = OAuthCredential(
            access_token=access_token,
            refresh_token=token_data.get("refresh_token"),
            tenant_id=str(resource.get("id")),
            site_url=resource.get("url"),
            expires_at=_expires_at(token_data),
        )
        self.store.save(user_id, credential)
        _forget_user(user_id)
        current_app.logger.info("Connected Jira site %s for user %s.", credential.tenant_id, user_id)
        return credential, pending.return_to

    @staticmethod
    def _select_resource(
        resources: List[Dict[str, Any]], preferred_id: Optional[str]
    ) -> Optional[Dict[str, Any]]:
        candidates = [resource for resource in resources if isinstance(resource, dict) and resource.get("id")]
        if not candidates:
            return None
        if preferred_id:
            for resource in candidates:
                if str(resource.get("id")) == preferred_id:
                    return resource
        return candidates[0]

    def accessible_resources(self, access_token: str) -> List[Dict[str, Any]]:
        """List the Jira sites the token can reach; empty on any rejection."""
        response = http_request(
            "GET", self.config.resources_url, token=access_token, timeout=self.timeout
        )
        if not response.ok or not isinstance(response.body, list):
            return []
        return response.body

    def _token_request(
        self, payload: Dict[str, str], *, outage_is_transport: bool = True
    ) -> Optional[Dict[str, Any]]:
        """POST to the token endpoint.

        Returns the decoded body, or None when the provider rejected the grant.
        With ``outage_is_transport`` a 5xx or 429 raises TransportError instead,
        so a refresh never mistakes an outage for a revoked grant. A code
        exchange treats every non-success status as a rejection.
        """
        response = http_request("POST", self.config.token_url, payload=payload, timeout=self.timeout)
        if response.ok and isinstance(response.body, dict):
            return response.body
        if outage_is_transport and (response.status >= 500 or response.status == 429):
            raise TransportError("Jira token endpoint is unavailable.", response.status)
        logging.warning(
            "Jira token endpoint rejected %s grant (status %s)",
            payload.get("grant_type"),
            response.status,
        )
        return None

    # Credential access
    # ------------------------------
    def get_credential(self, user_id) -> OAuthCredential:
        """Return a usable credential, refreshing one that is about to expire."""
        credential = self.store.load(user_id)
        if credential is None or not credential.is_usable:
            raise NotAuthenticated("Not authenticated with Jira. Please connect your account.")
        if credential.is_expired() and credential.can_refresh:
            return self.refresh(user_id, stale_access_token=credential.access_token)
        return credential

    def refresh(self, user_id, stale_access_token: Optional[str] = None) -> OAuthCredential:
        """Renew the access token.

        When ``stale_access_token`` is given and another caller has already
        replaced it, the newer credential is returned without contacting Jira.
        """
        with _refresh_lock(user_id):
            rotated = _recent_rotation(user_id, stale_access_token)
            if rotated is not None:
                self.store.save(user_id, rotated)
                return rotated

            credential = self.store.load(user_id)
            if (
                stale_access_token
                and credential is not None
                and credential.is_usable
                and credential.access_token != stale_access_token
            ):
                return credential

            if credential is None or not credential.refresh_token:
                raise NoRefreshToken("No Jira refresh token is available.")

            token_data = self._token_request(
                {
                    "grant_type": "refresh_token",
                    "client_id": self.config.client_id,
                    "client_secret": self.config.client_secret,
                    "refresh_token": credential.refresh_token,
                }
            )
            if token_data is None or not token_data.get("access_token"):
                self.store.clear(user_id)
                _forget_user(user_id)
                current_app.logger.warning(
                    "Jira refresh token rejected for user %s; credentials cleared.", user_id
                )
                raise RefreshFailed("Jira session expired. Please reconnect your account.")

            renewed = OAuthCredential(
                access_token=token_data["access_token"],
                refresh_token=token_data.get("refresh_token") or credential.refresh_token,
                tenant_id=credential.tenant_id,
                site_url=credential.site_url,
                expires_at=_expires_at(token_data),
            )
            self.store.save(user_id, renewed)
            _remember_rotation(user_id, credential.access_token, renewed)
            return renewed

    def invalidate(self, user_id) -> None:
        """Drop a credential that can no longer be used or renewed."""
        self.store.clear(user_id)
        _forget_user(user_id)

    def disconnect(self, user_id) -> None:
        self.store.clear(user_id)
        self.store.clear_pending(user_id)
        _forget_user(user_id)

    def status_for(self, user_id, *, verify: bool = False) -> Dict[str, Any]:
        credential = self.store.load(user_id)
        if credential is None or not credential.is_usable:
            return {"authenticated": False, "cloud_id": None, "site_url": None}

        status: Dict[str, Any] = {
            "authenticated": True,
            "cloud_id": credential.tenant_id,
            "site_url": credential.site_url,
            "expires_at": credential.expires_at.isoformat() if credential.expires_at else None,
            "can_refresh": credential.can_refresh,
        }
        if verify:
            try:
                status["resources"] = self.accessible_resources(credential.access_token)
            except TransportError as exc:
                logging.warning("Unable to verify Jira token for user %s: %s", user_id, exc)
        return status
