"""Tests for the Toggl and Jira clients against a mocked requests layer."""

import logging
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
import requests

from clients import AbortError, ApiError, JiraClient, TogglClient, adf_to_text
from models import Entry, Filter, HttpConfig, Range

T = datetime(2024, 1, 2, 9, 0, tzinfo=timezone.utc)
RANGE = Range(T.replace(hour=0), T.replace(hour=23, minute=59, second=59))
NO_RETRY = HttpConfig(timeout_s=5, max_retries=1, retry_delay_s=0)

CONFIG = {
    "toggl": {"api_token": "toggl-token"},
    "jira": {
        "base_url": "https://example.atlassian.net/",
        "user_email": "me@example.com",
        "api_token": "jira-token",
    },
}


def response(status=200, json_data=None, text="", reason="OK"):
    r = MagicMock()
    r.status_code = status
    r.ok = status < 400
    r.text = text
    r.reason = reason
    r.json.return_value = json_data
    return r


class FakeApi:
    """Side effect for requests.request routing on (method, URL suffix).

    A route mapped to a list answers with its items in turn.
    """

    def __init__(self, routes):
        self.routes = routes
        self.calls = []

    def __call__(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        for (route_method, suffix), answer in self.routes.items():
            if route_method == method and url.endswith(suffix):
                if isinstance(answer, list):
                    return answer.pop(0)
                return answer
        return response(404, reason="Not Found")

    def calls_to(self, method, suffix):
        return [c for c in self.calls if c[0] == method and c[1].endswith(suffix)]


@pytest.fixture
def logger():
    return logging.getLogger("test_clients")


@pytest.fixture
def api():
    """Install a FakeApi; tests fill in api.routes."""
    fake = FakeApi({})
    with patch("clients.requests.request", side_effect=fake):
        yield fake


# ---------------------------------------------------------------------------
# Toggl
# ---------------------------------------------------------------------------

def toggl_entry(description="AB-1 Review", start="2024-01-02T09:00:00+00:00", duration=600, **extra):
    document = {
        "description": description,
        "start": start,
        "stop": "2024-01-02T09:10:00+00:00",
        "duration": duration,
        "workspace_id": 1,
        "project_id": 10,
    }
    document.update(extra)
    return document


class TestTogglClient:

    def client(self):
        return TogglClient(CONFIG, NO_RETRY)

    def test_lists_entries(self, api, logger):
        api.routes[("GET", "/me/time_entries")] = response(json_data=[toggl_entry()])

        entries = self.client().list_entries(RANGE, [], logger)

        assert entries == [Entry(id=None, issue="AB-1", description="Review", start=T, duration=600)]

        method, url, kwargs = api.calls[0]
        assert url == "https://api.track.toggl.com/api/v9/me/time_entries"
        assert kwargs["params"] == {"start_date": "2024-01-02", "end_date": "2024-01-03"}
        assert kwargs["auth"] == ("toggl-token", "api_token")
        assert kwargs["timeout"] == 5

    def test_multiline_description(self, api, logger):
        api.routes[("GET", "/me/time_entries")] = response(json_data=[toggl_entry("AB-1 first\nsecond")])

        entries = self.client().list_entries(RANGE, [], logger)

        assert entries[0].description == "first\nsecond"

    def test_skips_badly_formatted_description(self, api, logger, caplog):
        api.routes[("GET", "/me/time_entries")] = response(
            json_data=[toggl_entry("Meeting without issue"), toggl_entry("CD-2 ok")]
        )

        with caplog.at_level(logging.WARNING, logger="test_clients"):
            entries = self.client().list_entries(RANGE, [], logger)

        assert [e.issue for e in entries] == ["CD-2"]
        assert "not properly formatted" in caplog.text

    def test_skips_running_entry(self, api, logger, caplog):
        running = toggl_entry(duration=-1704186000, stop=None)
        api.routes[("GET", "/me/time_entries")] = response(json_data=[running])

        with caplog.at_level(logging.WARNING, logger="test_clients"):
            entries = self.client().list_entries(RANGE, [], logger)

        assert entries == []
        assert "still running" in caplog.text

    def test_issue_code_filters_are_alternatives(self, api, logger):
        api.routes[("GET", "/me/time_entries")] = response(
            json_data=[toggl_entry("AB-1 a"), toggl_entry("CD-2 b"), toggl_entry("EF-3 c")]
        )
        filters = [Filter("issueCode", "AB-1"), Filter("issueCode", "EF-3")]

        entries = self.client().list_entries(RANGE, filters, logger)

        assert [e.issue for e in entries] == ["AB-1", "EF-3"]

    def test_different_filters_must_all_match(self, api, logger):
        api.routes[("GET", "/me/time_entries")] = response(
            json_data=[
                toggl_entry("AB-1 a", workspace_id=1, project_id=10),
                toggl_entry("AB-1 b", workspace_id=1, project_id=11),
                toggl_entry("CD-2 c", workspace_id=2, project_id=10),
            ]
        )
        filters = [Filter.from_string("workspaceId=1"), Filter.from_string("projectId=10")]

        entries = self.client().list_entries(RANGE, filters, logger)

        assert [e.description for e in entries] == ["a"]

    def test_project_name_is_resolved(self, api, logger):
        api.routes[("GET", "/me/projects")] = response(json_data=[{"id": 10, "name": "Acme"}, {"id": 11, "name": "Other"}])
        api.routes[("GET", "/me/time_entries")] = response(
            json_data=[toggl_entry("AB-1 a", project_id=10), toggl_entry("AB-1 b", project_id=11)]
        )

        entries = self.client().list_entries(RANGE, [Filter("projectName", "acme")], logger)

        assert [e.description for e in entries] == ["a"]

    def test_workspace_name_is_resolved(self, api, logger):
        api.routes[("GET", "/me/workspaces")] = response(json_data=[{"id": 2, "name": "Team"}])
        api.routes[("GET", "/me/time_entries")] = response(
            json_data=[toggl_entry("AB-1 a", workspace_id=1), toggl_entry("AB-1 b", workspace_id=2)]
        )

        entries = self.client().list_entries(RANGE, [Filter("workspaceName", "Team")], logger)

        assert [e.description for e in entries] == ["b"]

    def test_unknown_project_name_aborts(self, api, logger):
        api.routes[("GET", "/me/projects")] = response(json_data=[{"id": 10, "name": "Acme"}])

        with pytest.raises(AbortError, match="No such project found"):
            self.client().list_entries(RANGE, [Filter("projectName", "Nope")], logger)

        assert api.calls_to("GET", "/me/time_entries") == []

    def test_project_fetch_failure_aborts(self, api, logger):
        api.routes[("GET", "/me/projects")] = response(403, reason="Forbidden")

        with pytest.raises(AbortError, match="Unable to fetch projects"):
            self.client().list_entries(RANGE, [Filter("projectName", "Acme")], logger)

    def test_unsupported_filter_aborts_before_requests(self, api, logger):
        with pytest.raises(AbortError, match='Filter "billable=True" is not supported'):
            self.client().list_entries(RANGE, [Filter.from_string("billable")], logger)

        assert api.calls == []

    def test_non_numeric_id_filter_aborts(self, api, logger):
        with pytest.raises(AbortError, match="numeric"):
            self.client().list_entries(RANGE, [Filter.from_string("projectId=abc")], logger)

    def test_fetch_failure_returns_nothing(self, api, logger, caplog):
        api.routes[("GET", "/me/time_entries")] = response(401, reason="Unauthorized")

        with caplog.at_level(logging.ERROR, logger="test_clients"):
            entries = self.client().list_entries(RANGE, [], logger)

        assert entries == []
        assert "Authentication failed" in caplog.text

    def test_connection_error_returns_nothing(self, logger):
        with patch("clients.requests.request", side_effect=requests.exceptions.ConnectionError("boom")):
            assert self.client().list_entries(RANGE, [], logger) == []


# ---------------------------------------------------------------------------
# Jira
# ---------------------------------------------------------------------------

def worklog(id, started="2024-01-02T09:00:00.000+0000", seconds=600, author="me-123", comment=None):
    document = {
        "id": id,
        "started": started,
        "timeSpentSeconds": seconds,
        "author": {"accountId": author},
    }
    if comment is not None:
        document["comment"] = comment
    return document


def adf(*lines):
    return {
        "type": "doc",
        "version": 1,
        "content": [{"type": "paragraph", "content": [{"type": "text", "text": line}]} for line in lines],
    }


class TestJiraClientRead:

    def client(self, http=NO_RETRY):
        return JiraClient(CONFIG, http)

    def test_requires_issue_codes(self, api, logger):
        with pytest.raises(AbortError, match="Please provide a list of issue codes"):
            self.client().list_entries(RANGE, [], logger)
        assert api.calls == []

    def test_unknown_user_aborts(self, api, logger):
        api.routes[("GET", "/myself")] = response(401, reason="Unauthorized")

        with pytest.raises(AbortError, match="current user"):
            self.client().list_entries(RANGE, ["AB-1"], logger)

    def test_missing_account_id_aborts(self, api, logger):
        api.routes[("GET", "/myself")] = response(json_data={"displayName": "Me"})

        with pytest.raises(AbortError, match="current user"):
            self.client().list_entries(RANGE, ["AB-1"], logger)

    def test_invalid_json_aborts(self, api, logger):
        broken = response()
        broken.json.side_effect = ValueError("no json")
        api.routes[("GET", "/myself")] = broken

        with pytest.raises(AbortError, match="current user"):
            self.client().list_entries(RANGE, ["AB-1"], logger)

    def test_keeps_own_work_logs_within_range(self, api, logger):
        api.routes[("GET", "/myself")] = response(json_data={"accountId": "me-123"})
        api.routes[("GET", "/issue/AB-1/worklog")] = response(
            json_data={
                "worklogs": [
                    worklog(1, comment=adf("Review", "Fix")),
                    worklog(2, author="someone-else"),
                    worklog(3, started="2024-01-03T00:00:00.000+0000"),
                ],
                "total": 3,
            }
        )

        entries = self.client().list_entries(RANGE, ["AB-1"], logger)

        assert entries == [Entry(id="1", issue="AB-1", description="Review\nFix", start=T, duration=600)]

    def test_description_falls_back_to_issue_title(self, api, logger):
        api.routes[("GET", "/myself")] = response(json_data={"accountId": "me-123"})
        api.routes[("GET", "/issue/AB-1/worklog")] = response(json_data={"worklogs": [worklog(1)], "total": 1})
        api.routes[("GET", "/issue/AB-1")] = response(json_data={"fields": {"summary": "Login page"}})

        entries = self.client().list_entries(RANGE, ["AB-1"], logger)

        assert entries[0].description == "Login page"
        _, _, kwargs = api.calls_to("GET", "/issue/AB-1")[0]
        assert kwargs["params"] == {"fields": "summary"}

    def test_requests_use_basic_auth_and_range(self, api, logger):
        api.routes[("GET", "/myself")] = response(json_data={"accountId": "me-123"})
        api.routes[("GET", "/issue/AB-1/worklog")] = response(json_data={"worklogs": [], "total": 0})

        self.client().list_entries(RANGE, ["AB-1"], logger)

        method, url, kwargs = api.calls_to("GET", "/issue/AB-1/worklog")[0]
        assert url == "https://example.atlassian.net/rest/api/3/issue/AB-1/worklog"
        assert kwargs["auth"] == ("me@example.com", "jira-token")
        assert kwargs["params"]["startedAfter"] == (int(RANGE.start.timestamp()) - 1) * 1000
        assert kwargs["params"]["startedBefore"] == (int(RANGE.end.timestamp()) + 1) * 1000

    def test_paginates(self, api, logger):
        api.routes[("GET", "/myself")] = response(json_data={"accountId": "me-123"})
        api.routes[("GET", "/issue/AB-1/worklog")] = [
            response(json_data={"worklogs": [worklog(1, comment=adf("a")), worklog(2, comment=adf("b"))], "total": 3}),
            response(
                json_data={
                    "worklogs": [worklog(3, started="2024-01-02T11:00:00.000+0000", comment=adf("c"))],
                    "total": 3,
                }
            ),
        ]

        entries = self.client().list_entries(RANGE, ["AB-1"], logger)

        assert [e.id for e in entries] == ["1", "2", "3"]
        pages = api.calls_to("GET", "/issue/AB-1/worklog")
        assert [c[2]["params"]["startAt"] for c in pages] == [0, 2]

    def test_naive_range_is_read_as_utc(self, api, logger):
        api.routes[("GET", "/myself")] = response(json_data={"accountId": "me-123"})
        api.routes[("GET", "/issue/AB-1/worklog")] = response(
            json_data={"worklogs": [worklog(1, comment=adf("Review"))], "total": 1}
        )
        naive = Range(datetime(2024, 1, 2), datetime(2024, 1, 2, 23, 59, 59))

        entries = self.client().list_entries(naive, ["AB-1"], logger)

        assert [e.id for e in entries] == ["1"]
        _, _, kwargs = api.calls_to("GET", "/issue/AB-1/worklog")[0]
        assert kwargs["params"]["startedAfter"] == (int(RANGE.start.timestamp()) - 1) * 1000

    def test_skips_work_logs_without_id(self, api, logger, caplog):
        without_id = worklog(1, comment=adf("a"))
        del without_id["id"]
        api.routes[("GET", "/myself")] = response(json_data={"accountId": "me-123"})
        api.routes[("GET", "/issue/AB-1/worklog")] = response(
            json_data={"worklogs": [without_id, "garbage", worklog(2, comment=adf("b"))], "total": 3}
        )

        with caplog.at_level(logging.WARNING, logger="test_clients"):
            entries = self.client().list_entries(RANGE, ["AB-1"], logger)

        assert [e.id for e in entries] == ["2"]
        assert "without an ID" in caplog.text

    @pytest.mark.parametrize("body", [["not", "a", "dict"], {"worklogs": None}, "oops"])
    def test_unexpected_work_log_response_is_skipped(self, api, logger, caplog, body):
        api.routes[("GET", "/myself")] = response(json_data={"accountId": "me-123"})
        api.routes[("GET", "/issue/AB-1/worklog")] = response(json_data=body)

        with caplog.at_level(logging.WARNING, logger="test_clients"):
            entries = self.client().list_entries(RANGE, ["AB-1"], logger)

        assert entries == []
        assert "Unexpected work log response" in caplog.text

    def test_work_log_fetch_failure_is_logged(self, api, logger, caplog):
        api.routes[("GET", "/myself")] = response(json_data={"accountId": "me-123"})
        api.routes[("GET", "/issue/AB-1/worklog")] = response(404, reason="Not Found")
        api.routes[("GET", "/issue/CD-2/worklog")] = response(
            json_data={"worklogs": [worklog(7, comment=adf("x"))], "total": 1}
        )

        with caplog.at_level(logging.ERROR, logger="test_clients"):
            entries = self.client().list_entries(RANGE, ["AB-1", "CD-2"], logger)

        assert [(e.issue, e.id) for e in entries] == [("CD-2", "7")]
        assert "AB-1" in caplog.text

    def test_account_and_work_logs_are_cached(self, api, logger):
        api.routes[("GET", "/myself")] = response(json_data={"accountId": "me-123"})
        api.routes[("GET", "/issue/AB-1/worklog")] = response(json_data={"worklogs": [], "total": 0})
        client = self.client()

        client.list_entries(RANGE, ["AB-1"], logger)
        client.list_entries(RANGE, ["AB-1"], logger)

        assert len(api.calls_to("GET", "/myself")) == 1
        assert len(api.calls_to("GET", "/issue/AB-1/worklog")) == 1

    def test_retries_transient_errors(self, api, logger):
        api.routes[("GET", "/myself")] = [response(503, reason="Service Unavailable"), response(json_data={"accountId": "me-123"})]

        client = self.client(HttpConfig(max_retries=2, retry_delay_s=0))

        assert client.get_my_account_id() == "me-123"
        assert len(api.calls_to("GET", "/myself")) == 2

    def test_does_not_retry_client_errors(self, api, logger):
        api.routes[("GET", "/myself")] = response(401, reason="Unauthorized")

        with pytest.raises(AbortError):
            self.client(HttpConfig(max_retries=3, retry_delay_s=0)).get_my_account_id()

        assert len(api.calls_to("GET", "/myself")) == 1


class TestJiraClientWrite:

    def client(self):
        return JiraClient(CONFIG, NO_RETRY)

    def entry(self, **kwargs):
        values = dict(id=None, issue="AB-1", description="Login page\nFixed the form", start=T, duration=900)
        values.update(kwargs)
        return Entry(**values)

    def test_create(self, api, logger):
        api.routes[("GET", "/issue/AB-1")] = response(json_data={"fields": {"summary": "Login page"}})
        api.routes[("POST", "/issue/AB-1/worklog")] = response(201)

        assert self.client().create_entry(self.entry(), logger) is True

        _, url, kwargs = api.calls_to("POST", "/issue/AB-1/worklog")[0]
        assert url == "https://example.atlassian.net/rest/api/3/issue/AB-1/worklog"
        assert kwargs["params"] == {"adjustEstimate": "auto"}
        assert kwargs["json"] == {
            "timeSpentSeconds": 900,
            "started": "2024-01-02T09:00:00.000+0000",
            "comment": {
                "type": "doc",
                "version": 1,
                "content": [{"type": "paragraph", "content": [{"type": "text", "text": "Fixed the form"}]}],
            },
        }

    def test_create_with_empty_comment(self, api, logger):
        api.routes[("GET", "/issue/AB-1")] = response(json_data={"fields": {"summary": "Login page"}})
        api.routes[("POST", "/issue/AB-1/worklog")] = response(201)

        self.client().create_entry(self.entry(description="Login page"), logger)

        _, _, kwargs = api.calls_to("POST", "/issue/AB-1/worklog")[0]
        assert kwargs["json"]["comment"]["content"] == [{"type": "paragraph", "content": []}]

    def test_started_is_sent_in_utc(self, api, logger):
        api.routes[("POST", "/issue/AB-1/worklog")] = response(201)
        cet = timezone(timedelta(hours=1))

        self.client().create_entry(self.entry(start=datetime(2024, 1, 2, 10, 0, tzinfo=cet)), logger)

        _, _, kwargs = api.calls_to("POST", "/issue/AB-1/worklog")[0]
        assert kwargs["json"]["started"] == "2024-01-02T09:00:00.000+0000"

    def test_create_failure(self, api, logger, caplog):
        api.routes[("POST", "/issue/AB-1/worklog")] = response(400, text="bad worklog", reason="Bad Request")

        with caplog.at_level(logging.ERROR, logger="test_clients"):
            assert self.client().create_entry(self.entry(), logger) is False

        assert "Unable to create work log" in caplog.text
        assert "bad worklog" in caplog.text

    def test_writes_are_not_retried(self, api, logger):
        api.routes[("POST", "/issue/AB-1/worklog")] = response(503, reason="Service Unavailable")
        client = JiraClient(CONFIG, HttpConfig(max_retries=3, retry_delay_s=0))

        assert client.create_entry(self.entry(), logger) is False
        assert len(api.calls_to("POST", "/issue/AB-1/worklog")) == 1

    def test_update(self, api, logger):
        api.routes[("PUT", "/issue/AB-1/worklog/9")] = response(200)

        assert self.client().update_entry(self.entry(id="9"), logger) is True

        _, _, kwargs = api.calls_to("PUT", "/issue/AB-1/worklog/9")[0]
        assert kwargs["json"]["timeSpentSeconds"] == 900

    @pytest.mark.parametrize("operation", ["update_entry", "delete_entry"])
    def test_missing_id_makes_no_request(self, api, logger, caplog, operation):
        with caplog.at_level(logging.ERROR, logger="test_clients"):
            assert getattr(self.client(), operation)(self.entry(), logger) is False

        assert api.calls == []
        assert "Missing ID" in caplog.text

    def test_delete(self, api, logger):
        api.routes[("DELETE", "/issue/AB-1/worklog/9")] = response(204)

        assert self.client().delete_entry(self.entry(id="9"), logger) is True

    def test_delete_failure(self, api, logger):
        api.routes[("DELETE", "/issue/AB-1/worklog/9")] = response(404, reason="Not Found")

        assert self.client().delete_entry(self.entry(id="9"), logger) is False


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class TestAdfToText:

    def test_one_line_per_block(self):
        assert adf_to_text(adf("first", "second")) == "first\nsecond"

    def test_nested_text_is_joined(self):
        document = {
            "type": "doc",
            "content": [
                {
                    "type": "paragraph",
                    "content": [
                        {"type": "text", "text": "Fix "},
                        {"type": "text", "text": "login", "marks": [{"type": "strong"}]},
                    ],
                },
                {"type": "paragraph", "content": []},
            ],
        }
        assert adf_to_text(document) == "Fix login"

    @pytest.mark.parametrize("document", [None, "", {}, {"type": "doc", "content": []}])
    def test_empty(self, document):
        assert adf_to_text(document) == ""


class TestApiError:

    @pytest.mark.parametrize("status, transient", [(None, True), (429, True), (500, True), (503, True), (400, False), (404, False)])
    def test_transient(self, status, transient):
        assert ApiError("x", status).transient is transient
