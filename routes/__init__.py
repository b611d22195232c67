"""Shared helpers for route blueprints."""

from __future__ import annotations

from functools import wraps
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from flask import current_app, g, jsonify, request
from flask_wtf.csrf import validate_csrf
from wtforms.validators import ValidationError

__all__ = [
    "api_login_required",
    "is_safe_return_to",
    "url_with_params",
    "validate_request_csrf",
]


def is_safe_return_to(target: str | None) -> bool:
    """True for site-relative paths and absolute URLs on the current host."""
    if not target:
        return False
    parsed = urlparse(target)
    if not parsed.scheme and not parsed.netloc:
        return target.startswith("/") and not target.startswith("//") and "\\" not in target
    ref_url = urlparse(request.host_url)
    return parsed.scheme in ("http", "https") and ref_url.netloc == parsed.netloc


def url_with_params(url: str, **params) -> str:
    """Append query parameters to ``url``, keeping the ones already present."""
    parsed = urlparse(url)
    query = parse_qsl(parsed.query, keep_blank_values=True)
    query.extend((key, value) for key, value in params.items() if value is not None)
    return urlunparse(parsed._replace(query=urlencode(query)))


def validate_request_csrf(token: str | None) -> tuple[bool, str | None]:
    """Validate CSRF tokens supplied with JSON payloads."""
    if not current_app.config.get("WTF_CSRF_ENABLED", True):
        return True, None
    if not token:
        return False, "The CSRF token is missing."
    try:
        validate_csrf(token)
    except ValidationError:
        return (
            False,
            "The CSRF token is invalid or has expired. Please refresh and try again.",
        )
    return True, None


def api_login_required(f):
    """Reject API calls that arrive without a resolved host-application user."""

    @wraps(f)
    def decorated_function(*args, **kwargs):
        if getattr(g, "user", None) is None:
            return jsonify({"success": False, "message": "Authentication required."}), 401
        return f(*args, **kwargs)

    return decorated_function
