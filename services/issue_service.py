"""Write operations on Jira issues: create, transition and assign."""

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

from services.errors import ProviderRejected, TransportError, ValidationFailed
from services.jira_client import JiraClient, raise_for_status
from services.search_service import parse_issue

ISSUE_PATH = "/rest/api/3/issue"
USER_SEARCH_PATH = "/rest/api/3/user/search"
ASSIGNABLE_SEARCH_PATH = "/rest/api/3/user/assignable/search"
PROJECT_KEY_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_]{0,49}$")
ACCOUNT_ID_PATTERN = re.compile(r"^[A-Za-z0-9:_-]{1,128}$")
MAX_SUMMARY_LENGTH = 255
MAX_LABELS = 20


class TransitionUnavailable(ValidationFailed):
    """No workflow transition leads to the requested status."""

    def __init__(self, message: str, current_status: Optional[str], available: List[Dict[str, Any]]):
        super().__init__(message)
        self.current_status = current_status
        self.available = available


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _adf(text: str) -> Dict[str, Any]:
    return {
        "type": "doc",
        "version": 1,
        "content": [{"type": "paragraph", "content": [{"type": "text", "text": text}]}],
    }


def build_issue_fields(data: Dict[str, Any]) -> Dict[str, Any]:
    """Validate a create request and translate it to Jira's ``fields`` map."""
    project = _text(data.get("project"))
    summary = _text(data.get("summary"))
    issue_type = _text(data.get("issue_type") or data.get("issueType"))
    if not project or not summary or not issue_type:
        raise ValidationFailed("Project, summary, and issue type are required.")
    if not PROJECT_KEY_PATTERN.match(project):
        raise ValidationFailed("Invalid Jira project key.")
    if len(summary) > MAX_SUMMARY_LENGTH:
        raise ValidationFailed(f"Summary must be at most {MAX_SUMMARY_LENGTH} characters.")

    fields: Dict[str, Any] = {
        "project": {"key": project.upper()},
        "summary": summary,
        "issuetype": {"name": issue_type},
    }
    description = _text(data.get("description"))
    if description:
        fields["description"] = _adf(description)
    assignee = _text(data.get("assignee"))
    if assignee:
        if not ACCOUNT_ID_PATTERN.match(assignee):
            raise ValidationFailed("Invalid Jira account id.")
        fields["assignee"] = {"accountId": assignee}
    priority = _text(data.get("priority"))
    if priority:
        fields["priority"] = {"name": priority}

    labels = data.get("labels") or []
    if not isinstance(labels, list) or not all(isinstance(label, str) for label in labels):
        raise ValidationFailed("Labels must be a list of strings.")
    labels = [label.strip() for label in labels if label.strip()]
    if len(labels) > MAX_LABELS:
        raise ValidationFailed(f"At most {MAX_LABELS} labels are allowed.")
    if any(" " in label for label in labels):
        raise ValidationFailed("Jira labels cannot contain spaces.")
    if labels:
        fields["labels"] = labels
    return fields


def _write(client: JiraClient, user_id, method: str, path: str, payload: dict) -> Any:
    response = client.call(user_id, path, method=method, payload=payload)
    raise_for_status(response)
    return response.body


def fetch_issue(client: JiraClient, user_id, issue_key: str) -> Dict[str, Any]:
    issue = parse_issue(client.get_json(user_id, f"{ISSUE_PATH}/{issue_key}"))
    if issue is None:
        raise TransportError("Jira returned an unreadable issue payload.")
    return issue


def create_issue(client: JiraClient, user_id, data: Dict[str, Any]) -> Dict[str, Any]:
    fields = build_issue_fields(data)
    created = _write(client, user_id, "POST", ISSUE_PATH, {"fields": fields})
    key = created.get("key") if isinstance(created, dict) else None
    if not key:
        raise TransportError("Jira did not return the key of the created issue.")
    return fetch_issue(client, user_id, key)


def list_transitions(client: JiraClient, user_id, issue_key: str) -> List[Dict[str, Any]]:
    body = client.get_json(user_id, f"{ISSUE_PATH}/{issue_key}/transitions")
    transitions = []
    for entry in (body.get("transitions") if isinstance(body, dict) else None) or []:
        if not isinstance(entry, dict) or not entry.get("id"):
            continue
        target = entry.get("to") or {}
        transitions.append(
            {
                "id": str(entry["id"]),
                "name": entry.get("name") or "",
                "to": {
                    "id": target.get("id"),
                    "name": target.get("name") or "",
                    "statusCategory": (target.get("statusCategory") or {}).get("name"),
                },
            }
        )
    return transitions


def transition_issue(client: JiraClient, user_id, issue_key: str, target: str) -> Dict[str, Any]:
    """Move an issue along the workflow by transition name or target status."""
    target = _text(target)
    if not target:
        raise ValidationFailed("Status or transition name is required.")
    transitions = list_transitions(client, user_id, issue_key)
    current = client.get_json(user_id, f"{ISSUE_PATH}/{issue_key}", params={"fields": "status"})
    fields = current.get("fields") if isinstance(current, dict) else None
    current_status = ((fields or {}).get("status") or {}).get("name")

    wanted = target.lower()
    match = next(
        (
            transition
            for transition in transitions
            if transition["name"].lower() == wanted or transition["to"]["name"].lower() == wanted
        ),
        None,
    )
    if match is None:
        raise TransitionUnavailable(f'Transition "{target}" is not available.', current_status, transitions)

    _write(client, user_id, "POST", f"{ISSUE_PATH}/{issue_key}/transitions", {"transition": {"id": match["id"]}})
    return {
        "key": issue_key,
        "old_status": current_status,
        "new_status": match["to"]["name"],
        "transition": match["name"],
    }


def _user_summary(user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "accountId": user.get("accountId"),
        "displayName": user.get("displayName") or "Unknown",
        "emailAddress": user.get("emailAddress"),
    }


def resolve_assignee(
    client: JiraClient,
    user_id,
    *,
    account_id: Optional[str] = None,
    email: Optional[str] = None,
    display_name: Optional[str] = None,
) -> Dict[str, Any]:
    """Find exactly one Jira user by account id, email or display name."""
    account_id, email, display_name = _text(account_id), _text(email), _text(display_name)
    if account_id:
        if not ACCOUNT_ID_PATTERN.match(account_id):
            raise ValidationFailed("Invalid Jira account id.")
        user = client.get_json(user_id, "/rest/api/3/user", params={"accountId": account_id})
        if not isinstance(user, dict) or not user.get("accountId"):
            raise ProviderRejected(f"No Jira user found with account id {account_id}.", 404)
        return user

    term = email or display_name
    if not term:
        raise ValidationFailed("An assignee account id, email or display name is required.")
    found = client.get_json(user_id, USER_SEARCH_PATH, params={"query": term, "maxResults": 50})
    users = [user for user in found or [] if isinstance(user, dict) and user.get("accountId")]
    if not users:
        raise ProviderRejected(f'No Jira user found matching "{term}".', 404)
    if len(users) == 1:
        return users[0]
    for user in users:
        if email and (user.get("emailAddress") or "").lower() == email.lower():
            return user
        if display_name and (user.get("displayName") or "").lower() == display_name.lower():
            return user
    raise ValidationFailed(f'{len(users)} Jira users match "{term}". Use an exact email or account id.')


def assign_issue(client: JiraClient, user_id, issue_key: str, **identity) -> Dict[str, Any]:
    user = resolve_assignee(client, user_id, **identity)
    if user.get("active") is False:
        raise ValidationFailed(f"{user.get('displayName') or 'That user'} has an inactive Jira account.")

    assignable = client.get_json(
        user_id,
        ASSIGNABLE_SEARCH_PATH,
        params={"issueKey": issue_key, "accountId": user["accountId"]},
    )
    if not any(isinstance(entry, dict) and entry.get("accountId") == user["accountId"] for entry in assignable or []):
        raise ValidationFailed(f"{user.get('displayName') or 'That user'} cannot be assigned issues in this project.")

    _write(client, user_id, "PUT", f"{ISSUE_PATH}/{issue_key}/assignee", {"accountId": user["accountId"]})
    return {"key": issue_key, "assignee": _user_summary(user)}
