"""Storage adapters for per-user Jira OAuth credentials.

The token manager only talks to ``TokenStoreAdapter``; where the tokens end
up (encrypted cookies on the browser, or encrypted columns on the user row)
is decided by configuration.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple

from flask import current_app, g, has_request_context, request
from sqlalchemy.exc import SQLAlchemyError

from database import db
from models.pending_authorization import PendingAuthorizationRecord
from models.user import User
from services.errors import NotAuthenticated
from utils.token_crypto import decrypt_token, encrypt_token

PENDING_AUTHORIZATION_TTL = 10 * 60
CREDENTIAL_COOKIE_MAX_AGE = 7 * 24 * 60 * 60
EXPIRY_SKEW_SECONDS = 60

ACCESS_TOKEN_COOKIE = "jira_access_token"
REFRESH_TOKEN_COOKIE = "jira_refresh_token"
CLOUD_ID_COOKIE = "jira_cloud_id"
SITE_URL_COOKIE = "jira_site_url"
EXPIRES_AT_COOKIE = "jira_token_expires_at"
STATE_COOKIE = "jira_oauth_state"
RETURN_TO_COOKIE = "jira_oauth_return_to"
CREATED_AT_COOKIE = "jira_oauth_created_at"

CREDENTIAL_COOKIES = (
    ACCESS_TOKEN_COOKIE,
    REFRESH_TOKEN_COOKIE,
    CLOUD_ID_COOKIE,
    SITE_URL_COOKIE,
    EXPIRES_AT_COOKIE,
)
PENDING_COOKIES = (STATE_COOKIE, RETURN_TO_COOKIE, CREATED_AT_COOKIE)
# Atlassian cloud ids are UUIDs
CLOUD_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9-]{0,63}$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return _as_aware(datetime.fromisoformat(value))
    except ValueError:
        logging.warning("Ignoring malformed timestamp in Jira cookie: %s", value)
        return None


@dataclass
class OAuthCredential:
    """One user's delegated grant to Jira."""

    access_token: Optional[str]
    refresh_token: Optional[str] = None
    tenant_id: Optional[str] = None
    site_url: Optional[str] = None
    expires_at: Optional[datetime] = None

    @property
    def is_usable(self) -> bool:
        return bool(self.access_token and self.tenant_id)

    @property
    def can_refresh(self) -> bool:
        return bool(self.refresh_token)

    def is_expired(self, skew: int = EXPIRY_SKEW_SECONDS, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        now = now or utcnow()
        return now >= _as_aware(self.expires_at) - timedelta(seconds=skew)


@dataclass
class PendingAuthorization:
    """CSRF record for one in-flight OAuth handshake."""

    state: str
    return_to: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, ttl: int = PENDING_AUTHORIZATION_TTL, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return now - _as_aware(self.created_at) > timedelta(seconds=ttl)


class TokenStoreAdapter(ABC):
    """Persistence contract used by the OAuth token manager."""

    @abstractmethod
    def load(self, user_id) -> Optional[OAuthCredential]:
        ...

    @abstractmethod
    def save(self, user_id, credential: OAuthCredential) -> None:
        ...

    @abstractmethod
    def clear(self, user_id) -> None:
        ...

    @abstractmethod
    def save_pending(self, user_id, pending: PendingAuthorization) -> None:
        ...

    @abstractmethod
    def pop_pending(self, user_id) -> Optional[PendingAuthorization]:
        """Return the pending record and delete it."""

    @abstractmethod
    def clear_pending(self, user_id) -> None:
        ...


# Cookie storage
# ------------------------------
_COOKIE_UPDATES_ATTR = "_jira_cookie_updates"


def _staged_updates() -> Dict[str, Tuple[Optional[str], int]]:
    updates = getattr(g, _COOKIE_UPDATES_ATTR, None)
    if updates is None:
        updates = {}
        setattr(g, _COOKIE_UPDATES_ATTR, updates)
    return updates


def apply_cookie_updates(response):
    """Write staged cookie changes onto the outgoing response."""
    updates = getattr(g, _COOKIE_UPDATES_ATTR, None)
    if not updates:
        return response
    secure = not (current_app.debug or current_app.testing)
    for name, (value, max_age) in updates.items():
        if value is None:
            response.delete_cookie(name, path="/")
        else:
            response.set_cookie(
                name,
                value,
                max_age=max_age,
                httponly=True,
                secure=secure,
                samesite="Lax",
                path="/",
            )
    updates.clear()
    return response


class CookieTokenStore(TokenStoreAdapter):
    """Keeps tokens in encrypted, http-only cookies on the caller's browser.

    Must be used inside a request. Writes are staged on ``flask.g`` and read
    back by later calls in the same request, so a refresh mid-request is
    visible to the retry that follows it.
    """

    def _get(self, name: str) -> Optional[str]:
        updates = _staged_updates()
        if name in updates:
            return updates[name][0]
        if not has_request_context():
            return None
        return request.cookies.get(name)

    def _set(self, name: str, value: Optional[str], max_age: int) -> None:
        _staged_updates()[name] = (value, max_age)

    def _delete(self, name: str) -> None:
        self._set(name, None, 0)

    def load(self, user_id) -> Optional[OAuthCredential]:
        access_token = decrypt_token(self._get(ACCESS_TOKEN_COOKIE))
        if not access_token:
            return None
        tenant_id = self._get(CLOUD_ID_COOKIE)
        if tenant_id and not CLOUD_ID_PATTERN.fullmatch(tenant_id):
            logging.warning("Ignoring malformed Jira cloud id cookie")
            tenant_id = None
        site_url = self._get(SITE_URL_COOKIE)
        if site_url and not site_url.startswith("https://"):
            site_url = None
        return OAuthCredential(
            access_token=access_token,
            refresh_token=decrypt_token(self._get(REFRESH_TOKEN_COOKIE)),
            tenant_id=tenant_id,
            site_url=site_url,
            expires_at=_parse_datetime(self._get(EXPIRES_AT_COOKIE)),
        )

    def save(self, user_id, credential: OAuthCredential) -> None:
        max_age = CREDENTIAL_COOKIE_MAX_AGE
        self._set(ACCESS_TOKEN_COOKIE, encrypt_token(credential.access_token).decode("ascii"), max_age)
        if credential.refresh_token:
            self._set(
                REFRESH_TOKEN_COOKIE,
                encrypt_token(credential.refresh_token).decode("ascii"),
                max_age,
            )
        else:
            self._delete(REFRESH_TOKEN_COOKIE)
        for name, value in (
            (CLOUD_ID_COOKIE, credential.tenant_id),
            (SITE_URL_COOKIE, credential.site_url),
            (EXPIRES_AT_COOKIE, credential.expires_at.isoformat() if credential.expires_at else None),
        ):
            if value:
                self._set(name, value, max_age)
            else:
                self._delete(name)

    def clear(self, user_id) -> None:
        for name in CREDENTIAL_COOKIES:
            self._delete(name)

    def save_pending(self, user_id, pending: PendingAuthorization) -> None:
        self._set(STATE_COOKIE, pending.state, PENDING_AUTHORIZATION_TTL)
        self._set(CREATED_AT_COOKIE, pending.created_at.isoformat(), PENDING_AUTHORIZATION_TTL)
        if pending.return_to:
            self._set(RETURN_TO_COOKIE, pending.return_to, PENDING_AUTHORIZATION_TTL)
        else:
            self._delete(RETURN_TO_COOKIE)

    def pop_pending(self, user_id) -> Optional[PendingAuthorization]:
        state = self._get(STATE_COOKIE)
        return_to = self._get(RETURN_TO_COOKIE)
        created_at = _parse_datetime(self._get(CREATED_AT_COOKIE))
        self.clear_pending(user_id)
        if not state:
            return None
        # A state without a creation time is treated as already expired.
        return PendingAuthorization(
            state=state,
            return_to=return_to,
            created_at=created_at or datetime.min.replace(tzinfo=timezone.utc),
        )

    def clear_pending(self, user_id) -> None:
        for name in PENDING_COOKIES:
            self._delete(name)


# Database storage
# ------------------------------
def _commit(action: str) -> None:
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logging.error("Unable to %s", action, exc_info=True)
        raise


class DatabaseTokenStore(TokenStoreAdapter):
    """Keeps tokens in encrypted columns on the user's row."""

    def _user(self, user_id) -> Optional[User]:
        # populate_existing so a caller that waited on the refresh lock sees the
        # tokens another thread just committed.
        return db.session.get(User, user_id, populate_existing=True)

    def _require_user(self, user_id) -> User:
        user = self._user(user_id)
        if user is None:
            raise NotAuthenticated("Unknown user.")
        return user

    def load(self, user_id) -> Optional[OAuthCredential]:
        user = self._user(user_id)
        if user is None:
            return None
        access_token = user.get_jira_access_token()
        if not access_token:
            return None
        return OAuthCredential(
            access_token=access_token,
            refresh_token=user.get_jira_refresh_token(),
            tenant_id=user.jira_cloud_id,
            site_url=user.jira_site_url,
            expires_at=_as_aware(user.jira_token_expires_at),
        )

    def save(self, user_id, credential: OAuthCredential) -> None:
        user = self._require_user(user_id)
        user.set_jira_tokens(credential.access_token, credential.refresh_token)
        user.jira_cloud_id = credential.tenant_id
        user.jira_site_url = credential.site_url
        user.jira_token_expires_at = credential.expires_at
        _commit("save Jira credentials")

    def clear(self, user_id) -> None:
        user = self._user(user_id)
        if user is None:
            return
        user.clear_jira_credentials()
        _commit("clear Jira credentials")

    def save_pending(self, user_id, pending: PendingAuthorization) -> None:
        user = self._require_user(user_id)
        record = PendingAuthorizationRecord.query.filter_by(user_id=user.id).first()
        if record is None:
            record = PendingAuthorizationRecord(user_id=user.id)
            db.session.add(record)
        record.state = pending.state
        record.return_to = pending.return_to
        record.created_at = pending.created_at
        _commit("save pending Jira authorization")

    def pop_pending(self, user_id) -> Optional[PendingAuthorization]:
        record = PendingAuthorizationRecord.query.filter_by(user_id=user_id).first()
        if record is None:
            return None
        pending = PendingAuthorization(
            state=record.state,
            return_to=record.return_to,
            created_at=_as_aware(record.created_at),
        )
        db.session.delete(record)
        _commit("consume pending Jira authorization")
        return pending

    def clear_pending(self, user_id) -> None:
        deleted = PendingAuthorizationRecord.query.filter_by(user_id=user_id).delete()
        if deleted:
            _commit("clear pending Jira authorization")


TOKEN_STORES = {
    "cookie": CookieTokenStore,
    "database": DatabaseTokenStore,
}


def get_token_store(kind: Optional[str] = None) -> TokenStoreAdapter:
    """Return the configured store (``JIRA_TOKEN_STORE``: cookie or database)."""
    kind = (kind or current_app.config.get("JIRA_TOKEN_STORE") or "cookie").strip().lower()
    try:
        return TOKEN_STORES[kind]()
    except KeyError as exc:
        raise RuntimeError(f"Unknown JIRA_TOKEN_STORE '{kind}'") from exc
