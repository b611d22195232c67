"""Paginated Jira search and aggregation.

Jira's search endpoint returns at most 100 issues per page, so full listings
and distinct-value counts are assembled here page by page. Distinct scans stop
after a fixed number of pages: on very large result sets the buckets are an
approximation and the result is flagged ``partial``.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from services.errors import RequestCancelled, ValidationFailed
from services.jira_client import JiraClient
from services.jql_service import (
    ALLOWED_DISTINCT_FIELDS,
    MODE_COUNT,
    MODE_DISTINCT,
    MODE_LIST,
    QueryRequest,
    query_jql,
    validate_query_request,
)

SEARCH_PATH = "/rest/api/3/search/jql"
COUNT_PATH = "/rest/api/3/search"
BATCH_SIZE = 100
MAX_SCAN_ITEMS = 1000
MAX_DISTINCT_PAGES = 10
TIME_BUDGET_SECONDS = 60.0


@dataclass
class AggregatedResult:
    mode: str
    total: int
    items: Optional[List[Dict[str, Any]]] = None
    distinct_buckets: Optional[Dict[str, int]] = None
    partial: bool = False
    start_offset: int = 0
    page_size: Optional[int] = None
    pages_fetched: int = 0
    labels: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "mode": self.mode,
            "total": self.total,
            "partial": self.partial,
        }
        if self.mode == MODE_LIST:
            payload.update(
                {
                    "issues": self.items or [],
                    "start_at": self.start_offset,
                    "max_results": self.page_size,
                }
            )
        elif self.mode == MODE_DISTINCT:
            payload["buckets"] = [
                {"value": value, "label": self.labels.get(value, value), "count": count}
                for value, count in (self.distinct_buckets or {}).items()
            ]
        return payload


# Issue normalisation
# ------------------------------
def adf_to_text(adf: Any) -> str:
    """Flatten an Atlassian Document Format body to plain text."""
    if not adf or isinstance(adf, str):
        return adf or ""
    if not isinstance(adf, dict) or adf.get("type") != "doc":
        return ""
    lines = []
    for node in adf.get("content") or []:
        if not isinstance(node, dict):
            continue
        if node.get("type") == "paragraph":
            text = "".join(
                item.get("text", "") for item in node.get("content") or [] if isinstance(item, dict)
            )
        elif node.get("type") == "text":
            text = node.get("text") or ""
        else:
            text = ""
        if text:
            lines.append(text)
    return "\n".join(lines)


def prune_empty(value: Any) -> Any:
    """Drop None, empty strings and empty containers from nested payloads."""
    if isinstance(value, dict):
        pruned = {key: prune_empty(item) for key, item in value.items()}
        return {key: item for key, item in pruned.items() if item not in (None, "", [], {})}
    if isinstance(value, list):
        return [item for item in (prune_empty(entry) for entry in value) if item not in (None, "", [], {})]
    return value


def _person(payload: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(payload, dict):
        return None
    return {
        "displayName": payload.get("displayName") or "Unknown",
        "accountId": payload.get("accountId") or "",
        "avatarUrls": payload.get("avatarUrls") or {},
    }


def parse_issue(issue: Any) -> Optional[Dict[str, Any]]:
    """Simplify a raw Jira issue; None when the payload is malformed."""
    if not isinstance(issue, dict) or not isinstance(issue.get("fields"), dict):
        logging.warning("Skipping Jira issue with unexpected payload")
        return None
    fields = issue["fields"]
    try:
        status = fields.get("status") or {}
        issue_type = fields.get("issuetype") or {}
        project = fields.get("project") or {}
        parsed = {
            "id": issue.get("id") or "",
            "key": issue.get("key") or "",
            "summary": fields.get("summary") or "No summary",
            "description": adf_to_text(fields.get("description")),
            "status": status.get("name") or "Unknown",
            "statusCategory": (status.get("statusCategory") or {}).get("name") or "unknown",
            "priority": (fields.get("priority") or {}).get("name") or "None",
            "assignee": _person(fields.get("assignee")),
            "reporter": _person(fields.get("reporter")),
            "issueType": issue_type.get("name") or "Unknown",
            "issueTypeIconUrl": issue_type.get("iconUrl") or "",
            "project": {
                "key": project.get("key") or "",
                "name": project.get("name") or "Unknown Project",
            },
            "created": fields.get("created") or "",
            "updated": fields.get("updated") or "",
            "labels": list(fields.get("labels") or []),
            "url": issue.get("self") or "",
        }
    except (AttributeError, TypeError) as exc:
        logging.warning("Unable to parse Jira issue %s: %s", issue.get("key"), exc)
        return None
    return prune_empty(parsed)


def _page_items(body: Any) -> List[Any]:
    if isinstance(body, list):
        return body
    if isinstance(body, dict):
        return body.get("issues") or body.get("values") or []
    return []


def _distinct_value(issue: Any, distinct_field: str) -> Optional[tuple]:
    """Return (bucket key, display label) for one issue."""
    fields = issue.get("fields") if isinstance(issue, dict) else None
    if not isinstance(fields, dict):
        return None
    entry = fields.get(distinct_field)
    if not isinstance(entry, dict):
        return None
    if distinct_field == "project":
        key = entry.get("key")
        return (key, entry.get("name") or key) if key else None
    name = entry.get("name")
    return (name, name) if name else None


def _issue_key(issue: Any) -> Optional[str]:
    if not isinstance(issue, dict):
        return None
    return issue.get("key") or issue.get("id") or None


class PageCursor:
    """Walks one search, page by page, until Jira has nothing new to give.

    Follows ``nextPageToken`` when the provider hands one out and falls back to
    ``startAt`` offsets otherwise. The walk ends on an empty or short page,
    ``isLast``, a reported ``total`` being reached, a token seen before, or a
    page that repeats an earlier one or adds no unseen issues.
    """

    def __init__(self, client, user_id, params: Dict[str, Any], batch_size: int, cancel_event=None):
        self.client = client
        self.user_id = user_id
        self.params = params
        self.batch_size = batch_size
        self.cancel_event = cancel_event
        self.offset = 0
        self.pages = 0
        self.received = 0
        self.exhausted = False
        self.stop_reason: Optional[str] = None
        self._next_token: Optional[str] = None
        self._seen_tokens: set = set()
        self._seen_signatures: set = set()
        self._seen_keys: set = set()
        self._last_bounds: Optional[tuple] = None

    def _stop(self, reason: str) -> None:
        self.exhausted = True
        self.stop_reason = reason

    def next_page(self) -> List[Any]:
        """Fetch the next page and return only the issues not seen before."""
        if self.exhausted:
            return []
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise RequestCancelled("Search was cancelled.")

        params = dict(self.params, maxResults=self.batch_size)
        if self._next_token:
            params["nextPageToken"] = self._next_token
        else:
            params["startAt"] = self.offset
        body = self.client.get_json(self.user_id, SEARCH_PATH, params=params, cancel_event=self.cancel_event)
        self.pages += 1
        issues = _page_items(body)
        meta = body if isinstance(body, dict) else {}
        token = meta.get("nextPageToken") or None

        if not issues:
            self._stop("empty_page")
            return []

        first_key, last_key = _issue_key(issues[0]), _issue_key(issues[-1])
        if first_key:
            signature = (first_key, last_key, len(issues), token)
            if signature in self._seen_signatures or (first_key, last_key) == self._last_bounds:
                logging.warning("Jira returned a repeated search page after %s pages; stopping", self.pages)
                self._stop("duplicate_page")
                return []
            self._seen_signatures.add(signature)
            self._last_bounds = (first_key, last_key)

        fresh = []
        for issue in issues:
            key = _issue_key(issue)
            if key is not None:
                if key in self._seen_keys:
                    continue
                self._seen_keys.add(key)
            fresh.append(issue)
        self.offset += len(issues)
        if not fresh:
            logging.warning("Jira search stalled after %s pages; stopping", self.pages)
            self._stop("stalled")
            return []
        self.received += len(fresh)

        total = meta.get("total")
        if meta.get("isLast") is True:
            self._stop("last_page")
        elif isinstance(total, int) and not isinstance(total, bool) and self.received >= total:
            self._stop("reached_total")
        elif token:
            if token in self._seen_tokens:
                self._stop("duplicate_token")
            else:
                self._seen_tokens.add(token)
                self._next_token = token
        elif len(issues) < self.batch_size:
            self._stop("short_page")
        return fresh


class SearchService:
    """Assembles complete answers from Jira's bounded search pages."""

    def __init__(
        self,
        client: JiraClient,
        *,
        batch_size: int = BATCH_SIZE,
        max_scan: int = MAX_SCAN_ITEMS,
        max_distinct_pages: int = MAX_DISTINCT_PAGES,
        time_budget: float = TIME_BUDGET_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.batch_size = batch_size
        self.max_scan = max_scan
        self.max_distinct_pages = max_distinct_pages
        self.time_budget = time_budget
        self.clock = clock

    def search(
        self,
        user_id,
        query: QueryRequest,
        cancel_event: Optional[threading.Event] = None,
    ) -> AggregatedResult:
        validate_query_request(query)
        if query.mode == MODE_COUNT:
            return self._count(user_id, query, cancel_event)
        if query.mode == MODE_DISTINCT:
            return self._distinct(user_id, query, cancel_event)
        return self._list(user_id, query, cancel_event)

    def _cursor(self, user_id, params: Dict[str, Any], cancel_event) -> PageCursor:
        return PageCursor(self.client, user_id, params, self.batch_size, cancel_event)

    def _list(self, user_id, query: QueryRequest, cancel_event) -> AggregatedResult:
        cursor = self._cursor(
            user_id, {"jql": query_jql(query), "fields": ",".join(query.fields)}, cancel_event
        )
        items: List[Dict[str, Any]] = []
        partial = False
        started = self.clock()

        while not cursor.exhausted:
            if cursor.offset >= self.max_scan:
                partial = True
                break
            if cursor.pages and self.clock() - started > self.time_budget:
                logging.warning("Jira search time budget reached after %s pages", cursor.pages)
                partial = True
                break
            for raw in cursor.next_page():
                parsed = parse_issue(raw)
                if parsed is not None:
                    items.append(parsed)

        window = items[query.start_offset:query.start_offset + query.page_size]
        return AggregatedResult(
            mode=MODE_LIST,
            total=len(items),
            items=window,
            partial=partial,
            start_offset=query.start_offset,
            page_size=query.page_size,
            pages_fetched=cursor.pages,
        )

    def _count(self, user_id, query: QueryRequest, cancel_event) -> AggregatedResult:
        if cancel_event is not None and cancel_event.is_set():
            raise RequestCancelled("Search was cancelled.")
        body = self.client.get_json(
            user_id,
            COUNT_PATH,
            params={"jql": query_jql(query), "maxResults": 0, "fields": "id"},
            cancel_event=cancel_event,
        )
        total = body.get("total") if isinstance(body, dict) else None
        if not isinstance(total, int):
            total = len(_page_items(body))
        return AggregatedResult(mode=MODE_COUNT, total=total, pages_fetched=1)

    def _distinct(self, user_id, query: QueryRequest, cancel_event) -> AggregatedResult:
        distinct_field = query.distinct_field
        if distinct_field not in ALLOWED_DISTINCT_FIELDS:
            raise ValidationFailed(f"Distinct aggregation is not allowed for '{distinct_field}'.")
        cursor = self._cursor(user_id, {"jql": query_jql(query), "fields": distinct_field}, cancel_event)
        buckets: Dict[str, int] = {}
        labels: Dict[str, str] = {}
        partial = False

        while not cursor.exhausted:
            if cursor.pages >= self.max_distinct_pages:
                partial = True
                break
            for raw in cursor.next_page():
                value = _distinct_value(raw, distinct_field)
                if value is None:
                    continue
                key, label = value
                buckets[key] = buckets.get(key, 0) + 1
                labels.setdefault(key, label)

        ordered = dict(sorted(buckets.items(), key=lambda entry: (-entry[1], entry[0])))
        return AggregatedResult(
            mode=MODE_DISTINCT,
            total=cursor.received,
            distinct_buckets=ordered,
            partial=partial,
            pages_fetched=cursor.pages,
            labels=labels,
        )
