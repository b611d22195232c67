"""Authenticated calls to the Jira REST API.

Every proxied route goes through ``JiraClient.call``: it attaches the bearer
token, refreshes once on a 401, and retries provider throttling and 5xx
responses a bounded number of times.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Dict, Optional
from urllib.parse import quote

from flask import current_app

from services.errors import (
    NoRefreshToken,
    NotAuthenticated,
    ProviderRejected,
    RequestCancelled,
    TransportError,
)
from services.oauth_service import OAuthTokenManager
from utils.http import HttpResponse, http_request

DEFAULT_API_BASE = "https://api.atlassian.com"
RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})
IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "PUT", "DELETE"})


class JiraClient:
    def __init__(
        self,
        token_manager: OAuthTokenManager,
        api_base: str = DEFAULT_API_BASE,
        *,
        max_attempts: int = 3,
        backoff: float = 0.5,
        max_backoff: float = 8.0,
        timeout: float = 20,
    ):
        self.token_manager = token_manager
        self.api_base = api_base.rstrip("/")
        self.max_attempts = max(1, max_attempts)
        self.backoff = backoff
        self.max_backoff = max_backoff
        self.timeout = timeout

    def _url(self, tenant_id: str, path: str) -> str:
        if path.startswith("http"):
            return path
        if not path.startswith("/"):
            path = f"/{path}"
        return f"{self.api_base}/ex/jira/{quote(str(tenant_id), safe='')}{path}"

    def _delay(self, attempt: int, response: Optional[HttpResponse]) -> float:
        delay = self.backoff * (2 ** (attempt - 1))
        if response is not None:
            retry_after = response.headers.get("Retry-After") or response.headers.get("retry-after")
            try:
                delay = max(delay, float(retry_after))
            except (TypeError, ValueError):
                pass
        return min(delay, self.max_backoff)

    @staticmethod
    def _check_cancelled(cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise RequestCancelled("Request was cancelled.")

    def _wait(self, delay: float, cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is None:
            time.sleep(delay)
            return
        if cancel_event.wait(delay):
            raise RequestCancelled("Request was cancelled.")

    def _send(
        self,
        method: str,
        url: str,
        token: str,
        params: Optional[Dict[str, Any]],
        payload: Optional[dict],
        cancel_event: Optional[threading.Event],
    ) -> HttpResponse:
        """One logical send with bounded retries for throttling and outages."""
        attempt = 0
        while True:
            attempt += 1
            self._check_cancelled(cancel_event)
            try:
                response = http_request(
                    method,
                    url,
                    token=token,
                    params=params,
                    payload=payload,
                    timeout=self.timeout,
                )
            except TransportError:
                if method not in IDEMPOTENT_METHODS or attempt >= self.max_attempts:
                    raise
                logging.warning("Retrying Jira %s %s after transport error (attempt %s)", method, url, attempt)
                self._wait(self._delay(attempt, None), cancel_event)
                continue

            retryable = response.status in RETRYABLE_STATUS_CODES and (
                response.status == 429 or method in IDEMPOTENT_METHODS
            )
            if not retryable or attempt >= self.max_attempts:
                return response
            logging.warning(
                "Retrying Jira %s %s after status %s (attempt %s)",
                method,
                url,
                response.status,
                attempt,
            )
            self._wait(self._delay(attempt, response), cancel_event)

    def call(
        self,
        user_id,
        path: str,
        *,
        method: str = "GET",
        params: Optional[Dict[str, Any]] = None,
        payload: Optional[dict] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> HttpResponse:
        """Execute one authenticated call; non-auth error statuses are returned as-is."""
        method = method.upper()
        credential = self.token_manager.get_credential(user_id)
        url = self._url(credential.tenant_id, path)
        response = self._send(method, url, credential.access_token, params, payload, cancel_event)
        if response.status != 401:
            return response

        try:
            renewed = self.token_manager.refresh(user_id, stale_access_token=credential.access_token)
        except NoRefreshToken as exc:
            self.token_manager.invalidate(user_id)
            raise NotAuthenticated("Jira session expired. Please reconnect your account.") from exc

        url = self._url(renewed.tenant_id, path)
        return self._send(method, url, renewed.access_token, params, payload, cancel_event)

    def get_json(
        self,
        user_id,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Any:
        """GET and decode, raising for any non-success status."""
        response = self.call(user_id, path, params=params, cancel_event=cancel_event)
        raise_for_status(response)
        return response.body


def raise_for_status(response: HttpResponse) -> None:
    if response.ok:
        return
    if response.status == 401:
        raise NotAuthenticated("Jira rejected the refreshed credentials. Please reconnect your account.")
    if response.status >= 500 or response.status == 429:
        raise TransportError(f"Jira API error: {response.status}", 502)
    raise ProviderRejected(f"Jira API error: {response.status}", response.status, response.body)


def get_jira_client(token_manager: OAuthTokenManager) -> JiraClient:
    config = current_app.config
    return JiraClient(
        token_manager,
        config.get("JIRA_API_BASE") or DEFAULT_API_BASE,
        max_attempts=int(config.get("JIRA_MAX_ATTEMPTS", 3)),
        backoff=float(config.get("JIRA_RETRY_BACKOFF", 0.5)),
    )
