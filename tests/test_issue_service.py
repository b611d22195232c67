import unittest

from services.errors import ProviderRejected, ValidationFailed
from services.issue_service import (
    TransitionUnavailable,
    assign_issue,
    build_issue_fields,
    create_issue,
    list_transitions,
    transition_issue,
)
from utils.http import HttpResponse

TRANSITIONS = {
    "transitions": [
        {"id": "11", "name": "Start work", "to": {"id": "3", "name": "In Progress", "statusCategory": {"name": "In Progress"}}},
        {"id": "31", "name": "Close", "to": {"id": "5", "name": "Done", "statusCategory": {"name": "Done"}}},
    ]
}


class StubClient:
    """Answers reads from a path table and records every write."""

    def __init__(self, reads=None, write_status=204, write_body=None):
        self.reads = reads or {}
        self.write_status = write_status
        self.write_body = write_body
        self.reads_made = []
        self.writes = []

    def get_json(self, user_id, path, *, params=None, cancel_event=None):
        self.reads_made.append((path, params))
        if path not in self.reads:
            raise ProviderRejected("Jira API error: 404", 404)
        return self.reads[path]

    def call(self, user_id, path, *, method="GET", params=None, payload=None, cancel_event=None):
        self.writes.append((method, path, payload))
        return HttpResponse(status=self.write_status, body=self.write_body if self.write_body is not None else {})


class BuildIssueFieldsTestCase(unittest.TestCase):
    def test_required_fields(self):
        with self.assertRaises(ValidationFailed):
            build_issue_fields({"project": "ABC", "summary": "Broken login"})
        with self.assertRaises(ValidationFailed):
            build_issue_fields({"project": "ABC; DROP", "summary": "x", "issue_type": "Bug"})

    def test_optional_fields_are_translated(self):
        fields = build_issue_fields(
            {
                "project": "abc",
                "summary": "  Broken login ",
                "issueType": "Bug",
                "description": "Steps to reproduce",
                "priority": "High",
                "labels": ["auth", " "],
            }
        )
        self.assertEqual(fields["project"], {"key": "ABC"})
        self.assertEqual(fields["summary"], "Broken login")
        self.assertEqual(fields["issuetype"], {"name": "Bug"})
        self.assertEqual(fields["description"]["content"][0]["content"][0]["text"], "Steps to reproduce")
        self.assertEqual(fields["priority"], {"name": "High"})
        self.assertEqual(fields["labels"], ["auth"])
        self.assertNotIn("assignee", fields)

    def test_labels_must_be_strings_without_spaces(self):
        base = {"project": "ABC", "summary": "x", "issue_type": "Task"}
        with self.assertRaises(ValidationFailed):
            build_issue_fields(dict(base, labels="auth"))
        with self.assertRaises(ValidationFailed):
            build_issue_fields(dict(base, labels=["two words"]))


class IssueWritesTestCase(unittest.TestCase):
    def test_create_issue_posts_fields_and_returns_parsed_issue(self):
        created = {
            "id": "10001",
            "key": "ABC-7",
            "fields": {"summary": "Broken login", "status": {"name": "Open"}, "project": {"key": "ABC", "name": "Alpha"}},
        }
        client = StubClient(reads={"/rest/api/3/issue/ABC-7": created}, write_status=201, write_body={"key": "ABC-7"})
        issue = create_issue(client, 1, {"project": "ABC", "summary": "Broken login", "issue_type": "Bug"})

        self.assertEqual(issue["key"], "ABC-7")
        method, path, payload = client.writes[0]
        self.assertEqual((method, path), ("POST", "/rest/api/3/issue"))
        self.assertEqual(payload["fields"]["issuetype"], {"name": "Bug"})

    def test_rejected_create_is_raised(self):
        client = StubClient(write_status=400, write_body={"errors": {"summary": "required"}})
        with self.assertRaises(ProviderRejected) as ctx:
            create_issue(client, 1, {"project": "ABC", "summary": "x", "issue_type": "Bug"})
        self.assertEqual(ctx.exception.status_code, 400)

    def test_transition_matches_name_or_target_status(self):
        reads = {
            "/rest/api/3/issue/ABC-1/transitions": TRANSITIONS,
            "/rest/api/3/issue/ABC-1": {"fields": {"status": {"name": "Open"}}},
        }
        client = StubClient(reads=reads)
        result = transition_issue(client, 1, "ABC-1", "done")

        self.assertEqual(result, {"key": "ABC-1", "old_status": "Open", "new_status": "Done", "transition": "Close"})
        self.assertEqual(client.writes, [("POST", "/rest/api/3/issue/ABC-1/transitions", {"transition": {"id": "31"}})])

        client = StubClient(reads=reads)
        self.assertEqual(transition_issue(client, 1, "ABC-1", "Start work")["new_status"], "In Progress")

    def test_unknown_transition_lists_the_available_ones(self):
        reads = {
            "/rest/api/3/issue/ABC-1/transitions": TRANSITIONS,
            "/rest/api/3/issue/ABC-1": {"fields": {"status": {"name": "Open"}}},
        }
        client = StubClient(reads=reads)
        with self.assertRaises(TransitionUnavailable) as ctx:
            transition_issue(client, 1, "ABC-1", "Archived")
        self.assertEqual(ctx.exception.current_status, "Open")
        self.assertEqual([entry["to"]["name"] for entry in ctx.exception.available], ["In Progress", "Done"])
        self.assertEqual(client.writes, [])

    def test_list_transitions_skips_malformed_entries(self):
        client = StubClient(reads={"/rest/api/3/issue/ABC-1/transitions": {"transitions": [{"name": "no id"}, "x"]}})
        self.assertEqual(list_transitions(client, 1, "ABC-1"), [])


class AssignIssueTestCase(unittest.TestCase):
    ada = {"accountId": "acc-1", "displayName": "Ada Lovelace", "emailAddress": "ada@example.test", "active": True}
    alan = {"accountId": "acc-2", "displayName": "Alan Turing", "emailAddress": "alan@example.test", "active": True}

    def test_assign_by_email_checks_assignability(self):
        client = StubClient(
            reads={
                "/rest/api/3/user/search": [self.ada, self.alan],
                "/rest/api/3/user/assignable/search": [self.ada],
            }
        )
        result = assign_issue(client, 1, "ABC-1", email="ADA@example.test")

        self.assertEqual(result["assignee"]["accountId"], "acc-1")
        self.assertEqual(client.writes, [("PUT", "/rest/api/3/issue/ABC-1/assignee", {"accountId": "acc-1"})])
        assignable_params = client.reads_made[-1][1]
        self.assertEqual(assignable_params, {"issueKey": "ABC-1", "accountId": "acc-1"})

    def test_ambiguous_or_missing_users(self):
        client = StubClient(reads={"/rest/api/3/user/search": [self.ada, self.alan]})
        with self.assertRaises(ValidationFailed):
            assign_issue(client, 1, "ABC-1", display_name="A")

        client = StubClient(reads={"/rest/api/3/user/search": []})
        with self.assertRaises(ProviderRejected) as ctx:
            assign_issue(client, 1, "ABC-1", email="nobody@example.test")
        self.assertEqual(ctx.exception.status_code, 404)
        self.assertEqual(client.writes, [])

    def test_unassignable_or_inactive_user_is_rejected(self):
        client = StubClient(
            reads={"/rest/api/3/user": self.alan, "/rest/api/3/user/assignable/search": [self.ada]}
        )
        with self.assertRaises(ValidationFailed):
            assign_issue(client, 1, "ABC-1", account_id="acc-2")

        inactive = dict(self.alan, active=False)
        client = StubClient(reads={"/rest/api/3/user": inactive})
        with self.assertRaises(ValidationFailed):
            assign_issue(client, 1, "ABC-1", account_id="acc-2")
        self.assertEqual(client.writes, [])


if __name__ == "__main__":
    unittest.main()
