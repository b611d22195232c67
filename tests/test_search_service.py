import threading
import unittest

from services.errors import RequestCancelled, TransportError, ValidationFailed
from services.jql_service import MODE_COUNT, MODE_DISTINCT, QueryRequest, parse_query_request
from services.search_service import (
    COUNT_PATH,
    SEARCH_PATH,
    SearchService,
    adf_to_text,
    parse_issue,
    prune_empty,
)


def make_issue(number, status="Open", project="ABC", issue_type="Task"):
    return {
        "id": str(10000 + number),
        "key": f"{project}-{number}",
        "self": f"https://api.example.test/rest/api/3/issue/{10000 + number}",
        "fields": {
            "summary": f"Issue {number}",
            "status": {"name": status, "statusCategory": {"name": "To Do"}},
            "project": {"key": project, "name": f"Project {project}"},
            "issuetype": {"name": issue_type},
            "assignee": None,
            "labels": [],
        },
    }


class FakeClient:
    """Serves fixed page sizes and records every request."""

    def __init__(self, page_sizes=(), fail_on_page=None, total=None, issue_factory=make_issue):
        self.page_sizes = list(page_sizes)
        self.fail_on_page = fail_on_page
        self.total = total
        self.issue_factory = issue_factory
        self.calls = []

    def get_json(self, user_id, path, *, params=None, cancel_event=None):
        self.calls.append((path, dict(params or {})))
        if path == COUNT_PATH:
            return {"total": self.total, "issues": []}
        page = len([call for call in self.calls if call[0] == SEARCH_PATH]) - 1
        if self.fail_on_page is not None and page == self.fail_on_page:
            raise TransportError("Jira API error: 503", 502)
        size = self.page_sizes[page] if page < len(self.page_sizes) else 0
        start = params["startAt"]
        return {"issues": [self.issue_factory(start + index) for index in range(size)]}


class SearchServiceListTestCase(unittest.TestCase):
    def test_collects_every_page_until_a_short_one(self):
        client = FakeClient(page_sizes=(100, 100, 50))
        result = SearchService(client).search(1, QueryRequest(jql="project = ABC", page_size=20, start_offset=200))

        self.assertEqual(result.total, 250)
        self.assertFalse(result.partial)
        self.assertEqual(result.pages_fetched, 3)
        self.assertEqual([call[1]["startAt"] for call in client.calls], [0, 100, 200])
        self.assertEqual([issue["key"] for issue in result.items][:2], ["ABC-200", "ABC-201"])
        self.assertEqual(len(result.items), 20)

        payload = result.to_dict()
        self.assertEqual(payload["mode"], "list")
        self.assertEqual(payload["start_at"], 200)
        self.assertEqual(payload["max_results"], 20)

    def test_requests_use_sanitized_jql_and_fields(self):
        client = FakeClient(page_sizes=(3,))
        query = parse_query_request({"jql": "project = ABC", "fields": "summary,status"})
        SearchService(client).search(1, query)
        params = client.calls[0][1]
        self.assertEqual(params["jql"], "project = ABC ORDER BY updated DESC")
        self.assertEqual(params["fields"], "summary,status")
        self.assertEqual(params["maxResults"], 100)

    def test_scan_cap_marks_result_partial(self):
        client = FakeClient(page_sizes=(100,) * 20)
        result = SearchService(client, max_scan=300).search(1, QueryRequest(jql="project = ABC"))
        self.assertTrue(result.partial)
        self.assertEqual(result.total, 300)
        self.assertEqual(len(client.calls), 3)

    def test_time_budget_marks_result_partial(self):
        ticks = iter([0, 61, 61, 61])
        client = FakeClient(page_sizes=(100,) * 5)
        service = SearchService(client, time_budget=60, clock=lambda: next(ticks))
        result = service.search(1, QueryRequest(jql="project = ABC"))
        self.assertTrue(result.partial)
        self.assertEqual(result.pages_fetched, 1)

    def test_failed_page_aborts_the_whole_search(self):
        client = FakeClient(page_sizes=(100, 100, 100), fail_on_page=1)
        with self.assertRaises(TransportError):
            SearchService(client).search(1, QueryRequest(jql="project = ABC"))
        self.assertEqual(len(client.calls), 2)

    def test_malformed_issues_are_skipped(self):
        def factory(number):
            return {"key": f"BAD-{number}"} if number % 2 else make_issue(number)

        client = FakeClient(page_sizes=(4,), issue_factory=factory)
        result = SearchService(client).search(1, QueryRequest(jql="project = ABC"))
        self.assertEqual(result.total, 2)
        self.assertEqual([issue["key"] for issue in result.items], ["ABC-0", "ABC-2"])

    def test_cancellation_stops_before_the_next_page(self):
        cancel = threading.Event()
        cancel.set()
        client = FakeClient(page_sizes=(100,))
        with self.assertRaises(RequestCancelled):
            SearchService(client).search(1, QueryRequest(jql="project = ABC"), cancel_event=cancel)
        self.assertEqual(client.calls, [])


class SearchServiceAggregateTestCase(unittest.TestCase):
    def test_count_uses_a_single_request(self):
        client = FakeClient(total=4321)
        result = SearchService(client).search(1, QueryRequest(jql="project = ABC", mode=MODE_COUNT))
        self.assertEqual(result.total, 4321)
        self.assertEqual(len(client.calls), 1)
        path, params = client.calls[0]
        self.assertEqual(path, COUNT_PATH)
        self.assertEqual(params["maxResults"], 0)
        self.assertEqual(result.to_dict(), {"mode": "count-only", "total": 4321, "partial": False})

    def test_distinct_and_count_together_make_no_calls(self):
        client = FakeClient(page_sizes=(100,))
        with self.assertRaises(ValidationFailed):
            query = parse_query_request({"jql": "project = ABC", "distinct": "status", "count_only": "true"})
            SearchService(client).search(1, query)
        self.assertEqual(client.calls, [])

    def test_distinct_buckets_are_counted_and_ordered(self):
        statuses = ["Done", "Open", "Open", "In Progress", "Open"]

        def factory(number):
            return make_issue(number, status=statuses[number % len(statuses)])

        client = FakeClient(page_sizes=(5,), issue_factory=factory)
        query = QueryRequest(jql="project = ABC", mode=MODE_DISTINCT, distinct_field="status")
        result = SearchService(client).search(1, query)

        self.assertEqual(result.distinct_buckets, {"Open": 3, "Done": 1, "In Progress": 1})
        self.assertEqual(result.total, 5)
        self.assertFalse(result.partial)
        self.assertNotIn("ORDER BY", client.calls[0][1]["jql"])
        self.assertEqual(client.calls[0][1]["fields"], "status")

    def test_distinct_projects_use_keys_with_name_labels(self):
        client = FakeClient(page_sizes=(2,))
        query = QueryRequest(jql="project = ABC", mode=MODE_DISTINCT, distinct_field="project")
        payload = SearchService(client).search(1, query).to_dict()
        self.assertEqual(payload["buckets"], [{"value": "ABC", "label": "Project ABC", "count": 2}])

    def test_distinct_page_cap_marks_result_partial(self):
        client = FakeClient(page_sizes=(100,) * 20)
        query = QueryRequest(jql="project = ABC", mode=MODE_DISTINCT, distinct_field="issuetype")
        result = SearchService(client, max_distinct_pages=10).search(1, query)
        self.assertTrue(result.partial)
        self.assertEqual(len(client.calls), 10)
        self.assertEqual(result.distinct_buckets, {"Task": 1000})


def full_page(first=0, size=100):
    return [make_issue(first + index) for index in range(size)]


class ScriptedClient:
    """Replays a fixed list of search response bodies."""

    def __init__(self, bodies):
        self.bodies = list(bodies)
        self.calls = []

    def get_json(self, user_id, path, *, params=None, cancel_event=None):
        self.calls.append(dict(params or {}))
        index = min(len(self.calls) - 1, len(self.bodies) - 1)
        return self.bodies[index]


class PaginationStopTestCase(unittest.TestCase):
    def search(self, client, **query):
        query.setdefault("jql", "project = ABC")
        return SearchService(client).search(1, QueryRequest(**query))

    def test_is_last_ends_the_scan_on_a_full_page(self):
        client = ScriptedClient([{"issues": full_page(), "isLast": True}])
        result = self.search(client)
        self.assertEqual(len(client.calls), 1)
        self.assertEqual(result.total, 100)
        self.assertFalse(result.partial)

    def test_repeated_page_is_dropped_and_ends_the_scan(self):
        client = ScriptedClient([{"issues": full_page()}])
        result = self.search(client)
        self.assertEqual(len(client.calls), 2)
        self.assertEqual(result.total, 100)
        self.assertEqual(len({issue["key"] for issue in result.items}), len(result.items))
        self.assertFalse(result.partial)

    def test_next_page_token_is_followed(self):
        client = ScriptedClient(
            [
                {"issues": full_page(0), "nextPageToken": "page-2"},
                {"issues": full_page(100, 30), "isLast": True},
            ]
        )
        result = self.search(client, page_size=50, start_offset=100)
        self.assertEqual(client.calls[0]["startAt"], 0)
        self.assertNotIn("nextPageToken", client.calls[0])
        self.assertEqual(client.calls[1]["nextPageToken"], "page-2")
        self.assertNotIn("startAt", client.calls[1])
        self.assertEqual(result.total, 130)
        self.assertEqual(result.items[0]["key"], "ABC-100")

    def test_repeated_token_ends_the_scan(self):
        client = ScriptedClient(
            [
                {"issues": full_page(0), "nextPageToken": "same"},
                {"issues": full_page(100), "nextPageToken": "same"},
                {"issues": full_page(200), "nextPageToken": "other"},
            ]
        )
        result = self.search(client)
        self.assertEqual(len(client.calls), 2)
        self.assertEqual(result.total, 200)

    def test_reported_total_ends_the_scan(self):
        client = ScriptedClient([{"issues": full_page(0), "total": 100}, {"issues": full_page(100)}])
        result = self.search(client)
        self.assertEqual(len(client.calls), 1)
        self.assertEqual(result.total, 100)

    def test_page_of_already_seen_issues_stalls_the_scan(self):
        first = full_page(0)
        client = ScriptedClient([{"issues": first}, {"issues": list(reversed(first))}, {"issues": full_page(100)}])
        result = self.search(client)
        self.assertEqual(len(client.calls), 2)
        self.assertEqual(result.total, 100)

    def test_empty_page_ends_the_scan(self):
        client = ScriptedClient([{"issues": full_page(0)}, {"issues": []}])
        result = self.search(client)
        self.assertEqual(len(client.calls), 2)
        self.assertEqual(result.total, 100)

    def test_distinct_scan_uses_the_same_stop_rules(self):
        client = ScriptedClient([{"issues": full_page(), "isLast": True}])
        query = QueryRequest(jql="project = ABC", mode=MODE_DISTINCT, distinct_field="status")
        result = SearchService(client).search(1, query)
        self.assertEqual(len(client.calls), 1)
        self.assertEqual(result.distinct_buckets, {"Open": 100})
        self.assertFalse(result.partial)

        client = ScriptedClient([{"issues": full_page()}])
        result = SearchService(client).search(1, query)
        self.assertEqual(len(client.calls), 2)
        self.assertEqual(result.total, 100)


class IssueParsingTestCase(unittest.TestCase):
    def test_parse_issue_prunes_empty_values(self):
        parsed = parse_issue(make_issue(7))
        self.assertEqual(parsed["key"], "ABC-7")
        self.assertEqual(parsed["status"], "Open")
        self.assertEqual(parsed["project"], {"key": "ABC", "name": "Project ABC"})
        self.assertNotIn("assignee", parsed)
        self.assertNotIn("labels", parsed)
        self.assertNotIn("description", parsed)

    def test_parse_issue_rejects_malformed_payloads(self):
        self.assertIsNone(parse_issue(None))
        self.assertIsNone(parse_issue({"key": "ABC-1", "fields": "nope"}))

    def test_adf_to_text(self):
        body = {
            "type": "doc",
            "content": [
                {"type": "paragraph", "content": [{"type": "text", "text": "First"}, {"type": "text", "text": " line"}]},
                {"type": "paragraph", "content": []},
                {"type": "paragraph", "content": [{"type": "text", "text": "Second"}]},
            ],
        }
        self.assertEqual(adf_to_text(body), "First line\nSecond")
        self.assertEqual(adf_to_text("plain"), "plain")
        self.assertEqual(adf_to_text(None), "")

    def test_prune_empty_nested(self):
        self.assertEqual(prune_empty({"a": {"b": None}, "c": [1, "", {}], "d": 0}), {"c": [1], "d": 0})


if __name__ == "__main__":
    unittest.main()
