"""Thin wrapper around urllib for outbound calls to the issue tracker."""

from __future__ import annotations

import json
import logging
import socket
from dataclasses import dataclass, field
from http.client import RemoteDisconnected
from typing import Any, Dict, Optional
from urllib import error as urllib_error, request as urllib_request
from urllib.parse import urlencode

from services.errors import TransportError

USER_AGENT = "TrackerLink-Integration"
DEFAULT_TIMEOUT = 20


@dataclass
class HttpResponse:
    status: int
    body: Any
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


def build_url(url: str, params: Optional[Dict[str, Any]] = None) -> str:
    if not params:
        return url
    query = urlencode({key: value for key, value in params.items() if value is not None})
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{query}"


def _headers(token: Optional[str], extra: Optional[Dict[str, str]]) -> Dict[str, str]:
    headers = {
        "Accept": "application/json",
        "Content-Type": "application/json",
        "User-Agent": USER_AGENT,
    }
    if token:
        headers["Authorization"] = f"Bearer {token}"
    if extra:
        headers.update(extra)
    return headers


def http_request(
    method: str,
    url: str,
    *,
    token: Optional[str] = None,
    params: Optional[Dict[str, Any]] = None,
    payload: Optional[dict] = None,
    headers: Optional[Dict[str, str]] = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> HttpResponse:
    """Send one request and decode the JSON body.

    HTTP error statuses are returned, not raised. Only failures to get any
    response at all become ``TransportError``.
    """
    full_url = build_url(url, params)
    data = None
    if payload is not None:
        data = json.dumps(payload).encode("utf-8")

    request = urllib_request.Request(
        full_url,
        data=data,
        headers=_headers(token, headers),
        method=method,
    )
    try:
        with urllib_request.urlopen(request, timeout=timeout) as response:
            status = response.getcode()
            raw = response.read()
            response_headers = dict(response.headers.items())
    except urllib_error.HTTPError as error:
        status = error.code
        raw = error.read()
        response_headers = dict(error.headers.items()) if error.headers else {}
    except RemoteDisconnected as error:
        raise TransportError("Jira closed the connection unexpectedly.") from error
    except (socket.timeout, TimeoutError) as error:
        raise TransportError("Timed out waiting for Jira.") from error
    except urllib_error.URLError as error:
        raise TransportError("Unable to reach Jira.") from error

    # Proxies and error pages do not always send UTF-8
    text = raw.decode("utf-8", errors="replace") if raw else ""
    if status >= 400:
        logging.warning(
            "Jira API call failed",
            extra={"method": method, "url": url, "status": status, "body": text[:500]},
        )
    try:
        body = json.loads(text) if text else {}
    except json.JSONDecodeError:
        body = {}
    return HttpResponse(status=status, body=body, headers=response_headers)
