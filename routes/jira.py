"""Jira integration blueprint.

Thin handlers: each route validates its input, charges the caller's rate
limit and then delegates to the token manager, the authenticated client or
the search and issue services. Failures are turned into JSON by one error
handler.
"""
from __future__ import annotations

import logging
import math
import re
from typing import Any, Dict

from flask import Blueprint, current_app, g, jsonify, redirect, request

from routes import api_login_required, is_safe_return_to, url_with_params, validate_request_csrf
from services.errors import (
    InvalidState,
    NotConfigured,
    ProviderRejected,
    RateLimited,
    TokenExchangeFailed,
    TrackerError,
    TransportError,
    ValidationFailed,
)
from services.jira_client import get_jira_client, raise_for_status
from services.issue_service import (
    TransitionUnavailable,
    assign_issue,
    build_issue_fields,
    create_issue,
    list_transitions,
    transition_issue,
)
from services.jql_service import (
    DEFAULT_PAGE_SIZE,
    MAX_PAGE_SIZE,
    MODE_LIST,
    QueryRequest,
    parse_query_request,
    ticket_filter_clauses,
    validate_query_request,
)
from services.oauth_service import OAuthTokenManager, get_oauth_config
from services.rate_limit import rate_limiter
from services.search_service import SearchService, adf_to_text, parse_issue
from services.token_store import apply_cookie_updates, get_token_store

jira_bp = Blueprint("jira", __name__, url_prefix="/api/jira")

ISSUE_KEY_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_]*-\d+$")
EXCLUDED_PROJECT_TYPES = {"product_discovery"}
RECONNECT_MESSAGE = "Your Jira connection has expired. Please reconnect your account."


def _token_manager(*, require_config: bool = True) -> OAuthTokenManager:
    config = get_oauth_config() if require_config else None
    return OAuthTokenManager(get_token_store(), config)


def _search_service(manager: OAuthTokenManager) -> SearchService:
    return SearchService(get_jira_client(manager))


def _default_return_to() -> str:
    return current_app.config.get("JIRA_DEFAULT_RETURN_TO") or "/jira"


def _enforce_rate_limit(resource: str) -> None:
    """Count this request against the caller's quota for ``resource``."""
    config = current_app.config
    max_requests = int(config.get("JIRA_RATE_LIMIT_MAX", 100))
    window = config.get("JIRA_RATE_LIMIT_WINDOW", "1h")
    g.jira_rate_limit_resource = resource
    if not rate_limiter.check(g.user.id, resource, max_requests=max_requests, window=window):
        status = rate_limiter.get_status(g.user.id, resource)
        retry_after = math.ceil(status.reset_in) if status.reset_in is not None else None
        raise RateLimited("Too many Jira requests. Please try again later.", retry_after=retry_after)


def _bounded_int(raw: Any, default: int, minimum: int, maximum: int | None = None) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        value = default
    value = max(minimum, value)
    if maximum is not None:
        value = min(maximum, value)
    return value


def _tracker_error_response(error: TrackerError):
    status = error.status_code or 500
    response: Dict[str, Any] = {"success": False, "message": str(error)}
    if error.reconnect_required:
        status = 401
        response["reconnect_required"] = True
        response["requires_reauth"] = True
        response["message"] = str(error) or RECONNECT_MESSAGE
    elif isinstance(error, ProviderRejected):
        if status == 404:
            response["message"] = "Requested Jira resource was not found."
        elif status == 403:
            response["message"] = "You do not have permission to access this Jira resource."
    elif isinstance(error, TransportError):
        # Log the detailed error for diagnostics, but do not expose to users
        logging.error("Jira transport error: %s", error, exc_info=True)
        status = 502
        response["message"] = "An error occurred while communicating with Jira."
    elif isinstance(error, NotConfigured):
        response["configured"] = False
    elif isinstance(error, TransitionUnavailable):
        response["current_status"] = error.current_status
        response["available_transitions"] = error.available
    return response, status


@jira_bp.errorhandler(TrackerError)
def handle_tracker_error(error: TrackerError):
    payload, status = _tracker_error_response(error)
    response = jsonify(payload)
    response.status_code = status
    if isinstance(error, RateLimited) and error.retry_after is not None:
        response.headers["Retry-After"] = str(error.retry_after)
    return response


@jira_bp.after_request
def finalize_response(response):
    resource = getattr(g, "jira_rate_limit_resource", None)
    user = getattr(g, "user", None)
    if resource and user is not None:
        status = rate_limiter.get_status(user.id, resource)
        if status.remaining is not None:
            response.headers["X-RateLimit-Remaining"] = str(status.remaining)
            response.headers["X-RateLimit-Reset"] = status.reset_at.isoformat()
    return apply_cookie_updates(response)


# Authorization
# ------------------------------
@jira_bp.route("/auth/login", methods=["GET"])
@api_login_required
def login():
    return_to = request.args.get("return_to")
    if not is_safe_return_to(return_to):
        return_to = _default_return_to()
    authorization_url = _token_manager().begin_authorization(g.user.id, return_to)
    return redirect(authorization_url)


@jira_bp.route("/auth/callback", methods=["GET"])
def callback():
    fallback = _default_return_to()
    if getattr(g, "user", None) is None:
        return redirect(url_with_params(fallback, error="authentication_required"))

    store = get_token_store()
    if request.args.get("error"):
        store.clear_pending(g.user.id)
        return redirect(url_with_params(fallback, error="access_denied"))

    code = request.args.get("code")
    if not code:
        store.clear_pending(g.user.id)
        return redirect(url_with_params(fallback, error="missing_code"))

    try:
        manager = OAuthTokenManager(store, get_oauth_config())
        _, return_to = manager.complete_authorization(g.user.id, code, request.args.get("state"))
    except InvalidState:
        return redirect(url_with_params(fallback, error="invalid_state"))
    except TokenExchangeFailed as exc:
        logging.warning("Jira token exchange failed for user %s: %s", g.user.id, exc)
        return redirect(url_with_params(fallback, error="token_exchange_failed"))
    except NotConfigured:
        store.clear_pending(g.user.id)
        return redirect(url_with_params(fallback, error="not_configured"))
    except TransportError:
        logging.error("Unable to reach Jira during OAuth callback", exc_info=True)
        return redirect(url_with_params(fallback, error="callback_failed"))

    target = return_to if is_safe_return_to(return_to) else fallback
    return redirect(url_with_params(target, success="true"))


@jira_bp.route("/auth/status", methods=["GET"])
@api_login_required
def status():
    verify = request.args.get("verify", "false").lower() == "true"
    try:
        manager = _token_manager()
    except NotConfigured:
        return jsonify({"authenticated": False, "configured": False, "cloud_id": None})
    payload = manager.status_for(g.user.id, verify=verify)
    payload["configured"] = True
    return jsonify(payload)


def _csrf_guard():
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        payload = {}
    token = request.headers.get("X-CSRFToken") or payload.get("csrf_token")
    valid, message = validate_request_csrf(token)
    if not valid:
        return jsonify({"success": False, "message": message or "Invalid CSRF token."}), 400
    return None


@jira_bp.route("/auth/refresh", methods=["POST"])
@api_login_required
def refresh():
    rejected = _csrf_guard()
    if rejected:
        return rejected
    credential = _token_manager().refresh(g.user.id)
    return jsonify(
        {
            "success": True,
            "message": "Token refreshed successfully",
            "expires_at": credential.expires_at.isoformat() if credential.expires_at else None,
        }
    )


@jira_bp.route("/auth/logout", methods=["POST"])
@api_login_required
def logout():
    rejected = _csrf_guard()
    if rejected:
        return rejected
    _token_manager(require_config=False).disconnect(g.user.id)
    return jsonify({"success": True, "message": "Disconnected from Jira"})


# Proxied reads
# ------------------------------
@jira_bp.route("/search", methods=["GET"])
@api_login_required
def search():
    query = parse_query_request(request.args)
    _enforce_rate_limit("jira-search")
    manager = _token_manager()
    result = _search_service(manager).search(g.user.id, query)
    return jsonify(result.to_dict())


@jira_bp.route("/tickets", methods=["GET"])
@api_login_required
def tickets():
    query = validate_query_request(
        QueryRequest(
            filter_clauses=ticket_filter_clauses(
                project=request.args.get("project"),
                status=request.args.get("status"),
                assignee=request.args.get("assignee"),
            ),
            page_size=_bounded_int(request.args.get("max_results"), DEFAULT_PAGE_SIZE, 1, MAX_PAGE_SIZE),
            start_offset=_bounded_int(request.args.get("start_at"), 0, 0),
            mode=MODE_LIST,
        )
    )
    _enforce_rate_limit("jira-search")
    manager = _token_manager()
    result = _search_service(manager).search(g.user.id, query)
    return jsonify(result.to_dict())


def _validated_issue_key(ticket_key: str) -> str:
    if not isinstance(ticket_key, str) or not ISSUE_KEY_PATTERN.fullmatch(ticket_key):
        raise ValidationFailed("Invalid Jira issue key.")
    return ticket_key.upper()


@jira_bp.route("/tickets/<string:ticket_key>", methods=["GET"])
@api_login_required
def ticket_detail(ticket_key: str):
    key = _validated_issue_key(ticket_key)
    _enforce_rate_limit("jira-read")
    client = get_jira_client(_token_manager())
    response = client.call(g.user.id, f"/rest/api/3/issue/{key}")
    raise_for_status(response)
    issue = parse_issue(response.body)
    if issue is None:
        raise TransportError("Jira returned an unreadable issue payload.")
    return jsonify({"success": True, "issue": issue})


@jira_bp.route("/tickets/<string:ticket_key>/comments", methods=["GET"])
@api_login_required
def ticket_comments(ticket_key: str):
    key = _validated_issue_key(ticket_key)
    start_at = _bounded_int(request.args.get("start_at"), 0, 0)
    max_results = _bounded_int(request.args.get("max_results"), 50, 1, MAX_PAGE_SIZE)
    _enforce_rate_limit("jira-read")
    client = get_jira_client(_token_manager())
    body = client.get_json(
        g.user.id,
        f"/rest/api/3/issue/{key}/comment",
        params={"startAt": start_at, "maxResults": max_results, "orderBy": "-created"},
    )
    if not isinstance(body, dict):
        body = {}
    comments = []
    for entry in body.get("comments") or []:
        if not isinstance(entry, dict):
            continue
        author = entry.get("author") or {}
        comments.append(
            {
                "id": entry.get("id"),
                "author": author.get("displayName") or "Unknown",
                "body": adf_to_text(entry.get("body")),
                "created": entry.get("created"),
                "updated": entry.get("updated"),
            }
        )
    return jsonify(
        {
            "success": True,
            "comments": comments,
            "total": body.get("total", len(comments)),
            "start_at": start_at,
            "max_results": max_results,
        }
    )


@jira_bp.route("/projects", methods=["GET"])
@api_login_required
def projects():
    _enforce_rate_limit("jira-read")
    client = get_jira_client(_token_manager())
    body = client.get_json(g.user.id, "/rest/api/3/project/search", params={"maxResults": 100})
    values = body if isinstance(body, list) else (body.get("values") if isinstance(body, dict) else None)
    payload = [
        {
            "id": project.get("id"),
            "key": project.get("key"),
            "name": project.get("name"),
            "projectTypeKey": project.get("projectTypeKey"),
            "avatarUrls": project.get("avatarUrls") or {},
        }
        for project in values or []
        if isinstance(project, dict) and project.get("projectTypeKey") not in EXCLUDED_PROJECT_TYPES
    ]
    return jsonify({"success": True, "projects": payload})


# Issue writes
# ------------------------------
def _json_body() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise ValidationFailed("A JSON object body is required.")
    return payload


@jira_bp.route("/tickets/create", methods=["POST"])
@api_login_required
def create_ticket():
    rejected = _csrf_guard()
    if rejected:
        return rejected
    data = _json_body()
    build_issue_fields(data)
    _enforce_rate_limit("jira-write")
    client = get_jira_client(_token_manager())
    issue = create_issue(client, g.user.id, data)
    logging.info("User %s created Jira issue %s", g.user.id, issue.get("key"))
    return jsonify({"success": True, "issue": issue}), 201


@jira_bp.route("/tickets/<string:ticket_key>/transitions", methods=["GET"])
@api_login_required
def ticket_transitions(ticket_key: str):
    key = _validated_issue_key(ticket_key)
    _enforce_rate_limit("jira-read")
    client = get_jira_client(_token_manager())
    return jsonify({"success": True, "transitions": list_transitions(client, g.user.id, key)})


@jira_bp.route("/tickets/<string:ticket_key>/transition", methods=["POST"])
@api_login_required
def transition_ticket(ticket_key: str):
    rejected = _csrf_guard()
    if rejected:
        return rejected
    key = _validated_issue_key(ticket_key)
    data = _json_body()
    target = data.get("transition_name") or data.get("transitionName") or data.get("status")
    if not isinstance(target, str) or not target.strip():
        raise ValidationFailed("Status or transition name is required.")
    _enforce_rate_limit("jira-write")
    client = get_jira_client(_token_manager())
    result = transition_issue(client, g.user.id, key, target)
    return jsonify({"success": True, **result})


@jira_bp.route("/assign", methods=["POST"])
@api_login_required
def assign_ticket():
    rejected = _csrf_guard()
    if rejected:
        return rejected
    data = _json_body()
    key = _validated_issue_key(data.get("ticket_key") or data.get("ticketKey") or "")
    identity = {
        "account_id": data.get("assignee_account_id") or data.get("assigneeAccountId"),
        "email": data.get("assignee_email") or data.get("assigneeEmail"),
        "display_name": data.get("assignee_display_name") or data.get("assigneeDisplayName"),
    }
    if not any(isinstance(value, str) and value.strip() for value in identity.values()):
        raise ValidationFailed("An assignee account id, email or display name is required.")
    _enforce_rate_limit("jira-write")
    client = get_jira_client(_token_manager())
    result = assign_issue(client, g.user.id, key, **identity)
    return jsonify({"success": True, "message": "Ticket assigned successfully", **result})
