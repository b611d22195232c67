"""Building and validating JQL from user-supplied search parameters.

JQL has no parameter binding, so every user value interpolated into a clause
is stripped of the characters that could close a string or open a
sub-expression before we wrap it in our own quotes.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, List, Mapping, Optional, Sequence, Tuple, Union

from services.errors import ValidationFailed

MODE_LIST = "list"
MODE_COUNT = "count-only"
MODE_DISTINCT = "distinct"
MODES = (MODE_LIST, MODE_COUNT, MODE_DISTINCT)

MAX_CLAUSES = 10
MAX_IN_CLAUSES = 5
MAX_JQL_LENGTH = 2000
MAX_FIELDS_COUNT = 20
MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 20
ALLOWED_DISTINCT_FIELDS = ("project", "issuetype", "status")
DEFAULT_FIELDS = (
    "summary",
    "status",
    "assignee",
    "reporter",
    "priority",
    "issuetype",
    "project",
    "created",
    "updated",
    "labels",
    "description",
)
DEFAULT_ORDER_BY = ("updated", "DESC")

TRUSTED_LITERALS = frozenset(
    {
        "currentUser()",
        "EMPTY",
        "NULL",
        "now()",
        "startOfDay()",
        "endOfDay()",
        "startOfWeek()",
        "endOfWeek()",
    }
)
OPERATORS = ("=", "!=", "~", "!~", ">", ">=", "<", "<=", "in", "not in", "is", "is not")
LIST_OPERATORS = ("in", "not in")

_UNSAFE_CHARACTERS = re.compile(r"[\"'\\;()]")
_FIELD_PATTERN = re.compile(r"^(?:[A-Za-z][A-Za-z0-9_.]*|cf\[\d+\])$")
_ORDER_BY_PATTERN = re.compile(r"\s*\bORDER\s+BY\b[\s\S]*$", re.IGNORECASE)
_AND_OR_PATTERN = re.compile(r"\b(?:AND|OR)\b", re.IGNORECASE)
_IN_PATTERN = re.compile(r"\b(?:NOT\s+)?IN\s*\(", re.IGNORECASE)

ClauseValue = Union[str, Sequence[str]]


@dataclass(frozen=True)
class FilterClause:
    field: str
    operator: str
    value: ClauseValue


@dataclass
class QueryRequest:
    """Normalized search request handed to the search service."""

    filter_clauses: Tuple[FilterClause, ...] = ()
    jql: Optional[str] = None
    fields: Tuple[str, ...] = DEFAULT_FIELDS
    page_size: int = DEFAULT_PAGE_SIZE
    start_offset: int = 0
    mode: str = MODE_LIST
    distinct_field: Optional[str] = None
    order_by: Optional[Tuple[str, str]] = DEFAULT_ORDER_BY


def sanitize_jql_value(value: Any) -> str:
    """Remove quotes, backslashes, semicolons and parentheses."""
    if value is None:
        return ""
    return _UNSAFE_CHARACTERS.sub("", str(value)).strip()


def sanitize_jql_input(jql: Any) -> str:
    """Neutralize statement separators in a user-authored JQL string."""
    if not jql or not isinstance(jql, str):
        return ""
    return jql.replace(";", " ").strip()


def strip_order_by(jql: str) -> str:
    return _ORDER_BY_PATTERN.sub("", jql).strip()


def is_trusted_literal(value: Any) -> bool:
    return isinstance(value, str) and value in TRUSTED_LITERALS


def _validate_field(name: str) -> str:
    if not isinstance(name, str) or not _FIELD_PATTERN.match(name):
        raise ValidationFailed(f"Invalid field name: {name!r}")
    return name


def _render_value(value: Any) -> str:
    if is_trusted_literal(value):
        return value
    cleaned = sanitize_jql_value(value)
    if not cleaned:
        raise ValidationFailed("Filter values must not be empty.")
    return f'"{cleaned}"'


def render_clause(clause: FilterClause) -> str:
    field_name = _validate_field(clause.field)
    operator = (clause.operator or "").strip().lower()
    if operator not in OPERATORS:
        raise ValidationFailed(f"Unsupported operator: {clause.operator!r}")

    if operator in LIST_OPERATORS:
        values = [clause.value] if isinstance(clause.value, str) else list(clause.value or [])
        if not values:
            raise ValidationFailed(f"'{operator}' requires at least one value.")
        rendered = ", ".join(_render_value(value) for value in values)
        return f"{field_name} {operator.upper()} ({rendered})"

    if not isinstance(clause.value, str):
        raise ValidationFailed(f"'{operator}' takes a single value.")
    return f"{field_name} {operator.upper()} {_render_value(clause.value)}"


def render_order_by(order_by: Optional[Tuple[str, str]]) -> str:
    if not order_by:
        return ""
    field_name, direction = order_by
    direction = (direction or "ASC").upper()
    if direction not in ("ASC", "DESC"):
        raise ValidationFailed("Sort direction must be ASC or DESC.")
    return f"ORDER BY {_validate_field(field_name)} {direction}"


def build_jql(
    clauses: Sequence[FilterClause],
    order_by: Optional[Tuple[str, str]] = None,
    *,
    base_jql: Optional[str] = None,
) -> str:
    """Join sanitized clauses with AND and append the ordering."""
    parts: List[str] = []
    base = strip_order_by(base_jql) if base_jql else ""
    if base:
        parts.append(f"({base})" if clauses else base)
    parts.extend(render_clause(clause) for clause in clauses)
    jql = " AND ".join(parts)
    suffix = render_order_by(order_by)
    if suffix:
        jql = f"{jql} {suffix}".strip()
    return jql


def query_jql(query: QueryRequest) -> str:
    """Render the full JQL for a request, ordering dropped for distinct scans."""
    base = sanitize_jql_input(query.jql)
    if query.mode == MODE_DISTINCT:
        return build_jql(query.filter_clauses, None, base_jql=base)

    # A user-authored ORDER BY wins over the default ordering.
    match = _ORDER_BY_PATTERN.search(base) if base else None
    if match:
        jql = build_jql(query.filter_clauses, None, base_jql=base)
        return f"{jql} {match.group(0).strip()}".strip()
    return build_jql(query.filter_clauses, query.order_by, base_jql=base)


def validate_query_request(query: QueryRequest) -> QueryRequest:
    """Enforce every cap; raises ValidationFailed before any network call."""
    if query.mode not in MODES:
        raise ValidationFailed(f"Unknown search mode: {query.mode!r}")
    if query.mode == MODE_DISTINCT:
        if query.distinct_field not in ALLOWED_DISTINCT_FIELDS:
            raise ValidationFailed(
                "Distinct field must be one of: " + ", ".join(ALLOWED_DISTINCT_FIELDS)
            )
    elif query.distinct_field:
        raise ValidationFailed("A distinct field can only be used in distinct mode.")

    if len(query.filter_clauses) > MAX_CLAUSES:
        raise ValidationFailed(f"At most {MAX_CLAUSES} filter clauses are allowed.")
    if not query.filter_clauses and not query.jql and query.mode != MODE_LIST:
        raise ValidationFailed("A filter is required for count and distinct searches.")

    if not query.fields:
        raise ValidationFailed("At least one field must be requested.")
    if len(query.fields) > MAX_FIELDS_COUNT:
        raise ValidationFailed(f"At most {MAX_FIELDS_COUNT} fields may be requested.")
    for name in query.fields:
        _validate_field(name)

    if not 1 <= query.page_size <= MAX_PAGE_SIZE:
        raise ValidationFailed(f"Page size must be between 1 and {MAX_PAGE_SIZE}.")
    if query.start_offset < 0:
        raise ValidationFailed("Start offset must not be negative.")

    jql = query_jql(query)
    if len(jql) > MAX_JQL_LENGTH:
        raise ValidationFailed(f"Query exceeds {MAX_JQL_LENGTH} characters.")
    if len(_AND_OR_PATTERN.findall(jql)) > MAX_CLAUSES:
        raise ValidationFailed(f"Query combines more than {MAX_CLAUSES} AND/OR clauses.")
    if len(_IN_PATTERN.findall(jql)) > MAX_IN_CLAUSES:
        raise ValidationFailed(f"Query uses more than {MAX_IN_CLAUSES} IN clauses.")
    return query


def _parse_int(raw: Any, name: str, default: int) -> int:
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise ValidationFailed(f"{name} must be an integer.") from exc


def _is_truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "t", "yes", "y", "on"}
    return bool(value)


def _parse_fields(raw: Any) -> Tuple[str, ...]:
    if raw in (None, ""):
        return DEFAULT_FIELDS
    if isinstance(raw, str):
        items = raw.split(",")
    else:
        items = list(raw)
    fields = tuple(dict.fromkeys(str(item).strip() for item in items if str(item).strip()))
    return fields or DEFAULT_FIELDS


def _parse_order_by(raw: Any) -> Optional[Tuple[str, str]]:
    if raw in (None, ""):
        return DEFAULT_ORDER_BY
    parts = str(raw).split()
    if len(parts) == 1:
        return parts[0], "ASC"
    if len(parts) == 2:
        return parts[0], parts[1]
    raise ValidationFailed("order_by must be '<field> [ASC|DESC]'.")


def _parse_clauses(raw: Any) -> Tuple[FilterClause, ...]:
    if raw in (None, ""):
        return ()
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError as exc:
            raise ValidationFailed("Filters must be valid JSON.") from exc
    if not isinstance(raw, list):
        raise ValidationFailed("Filters must be provided as a list.")
    clauses: List[FilterClause] = []
    for entry in raw:
        if isinstance(entry, FilterClause):
            clauses.append(entry)
            continue
        if not isinstance(entry, Mapping):
            raise ValidationFailed("Each filter must be an object with field, operator and value.")
        value = entry.get("value")
        if isinstance(value, list):
            value = tuple(str(item) for item in value)
        elif value is not None:
            value = str(value)
        clauses.append(
            FilterClause(
                field=str(entry.get("field") or ""),
                operator=str(entry.get("operator") or "="),
                value=value if value is not None else "",
            )
        )
    return tuple(clauses)


def parse_query_request(args: Mapping[str, Any]) -> QueryRequest:
    """Build a validated QueryRequest from inbound request parameters."""
    distinct = str(args.get("distinct") or "").strip().lower()
    count_only = _is_truthy(args.get("count_only"))
    if distinct and count_only:
        raise ValidationFailed("distinct and count_only cannot be combined in one request.")

    mode = MODE_LIST
    if distinct:
        mode = MODE_DISTINCT
    elif count_only:
        mode = MODE_COUNT

    jql = args.get("jql")
    query = QueryRequest(
        filter_clauses=_parse_clauses(args.get("filters")),
        jql=sanitize_jql_input(jql) or None,
        fields=_parse_fields(args.get("fields")),
        page_size=_parse_int(args.get("max_results"), "max_results", DEFAULT_PAGE_SIZE),
        start_offset=_parse_int(args.get("start_at"), "start_at", 0),
        mode=mode,
        distinct_field=distinct or None,
        order_by=_parse_order_by(args.get("order_by")),
    )
    return validate_query_request(query)


def ticket_filter_clauses(
    project: Optional[str] = None,
    status: Optional[str] = None,
    assignee: Optional[str] = None,
) -> Tuple[FilterClause, ...]:
    """Clauses for the simple project/status/assignee ticket filter."""
    clauses: List[FilterClause] = []
    if sanitize_jql_value(project):
        clauses.append(FilterClause("project", "=", project))
    if sanitize_jql_value(status):
        clauses.append(FilterClause("status", "=", status))
    if assignee and (is_trusted_literal(assignee) or sanitize_jql_value(assignee)):
        clauses.append(FilterClause("assignee", "=", assignee))
    return tuple(clauses)
