"""API clients for Toggl and Jira."""

import logging
from datetime import timedelta
from typing import Any, Callable, Iterator, Protocol

import requests

from models import Entry, Filter, HttpConfig, Range, to_utc
from patterns import Patterns
from utils import parse_timestamp, retry

TOGGL_URL = "https://api.track.toggl.com/api/v9"

# Jira returns at most this many work logs per page
WORKLOG_PAGE_SIZE = 1000


class AbortError(Exception):
    """A client cannot continue because required context is missing."""


class ApiError(Exception):
    """User-friendly API error."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def transient(self) -> bool:
        """Worth retrying: network trouble, rate limiting or a server error."""
        return self.status_code is None or self.status_code == 429 or self.status_code >= 500


class ReadClient(Protocol):
    """Source side: lists entries, never writes."""

    def list_entries(self, date_range: Range, filters: list[Filter], logger: logging.Logger) -> list[Entry]:
        ...


class WriteClient(Protocol):
    """Destination side: lists entries of given issues and applies changes."""

    def list_entries(self, date_range: Range, issue_codes: list[str], logger: logging.Logger) -> list[Entry]:
        ...

    def create_entry(self, entry: Entry, logger: logging.Logger) -> bool:
        ...

    def update_entry(self, entry: Entry, logger: logging.Logger) -> bool:
        ...

    def delete_entry(self, entry: Entry, logger: logging.Logger) -> bool:
        ...


def _handle_api_error(response: requests.Response, service: str) -> str:
    """Convert HTTP errors to user-friendly messages."""
    status = response.status_code

    messages = {
        400: f"{service}: Bad request. {response.text[:200]}",
        401: f"{service}: Authentication failed. Check your API token!",
        403: f"{service}: Access denied. Check your permissions or API token!",
        404: f"{service}: Resource not found. Check the URL in config.json!",
        429: f"{service}: Too many requests. Wait a moment and try again.",
        500: f"{service}: Server error. The service may be temporarily unavailable.",
        502: f"{service}: Bad gateway. The service may be temporarily unavailable.",
        503: f"{service}: Service unavailable. Try again later.",
    }

    return messages.get(status, f"{service}: HTTP {status} - {response.reason}")


def _request(method: str, url: str, service: str, http: HttpConfig, **kwargs) -> requests.Response:
    """Send a request, turning every failure into an ApiError."""
    try:
        r = requests.request(method, url, timeout=http.timeout_s, **kwargs)
    except requests.exceptions.ConnectionError:
        raise ApiError(f"{service}: Cannot connect to {url}. Check your network!")
    except requests.exceptions.Timeout:
        raise ApiError(f"{service}: Connection timed out. The server may be slow.")
    except requests.exceptions.RequestException as e:
        raise ApiError(f"{service}: Request failed. {e}")

    if not r.ok:
        raise ApiError(_handle_api_error(r, service), r.status_code)
    return r


def _get_json(url: str, service: str, http: HttpConfig, logger: logging.Logger | None = None, **kwargs) -> Any:
    """GET with retries on transient errors, returning the decoded body."""

    def on_retry(attempt: int, error: Exception) -> None:
        if logger:
            logger.debug(f"{error} (retry {attempt}/{http.max_retries - 1})")

    r = retry(
        lambda: _request("GET", url, service, http, **kwargs),
        max_attempts=http.max_retries,
        delay=http.retry_delay_s,
        should_retry=lambda e: isinstance(e, ApiError) and e.transient,
        on_retry=on_retry,
    )
    try:
        return r.json()
    except ValueError:
        raise ApiError(f"{service}: Invalid JSON response from {url}", r.status_code)


class TogglClient:
    """Read client for the Toggl Track API (v9)."""

    FILTER_ISSUE_CODE = "issueCode"
    FILTER_WORKSPACE_ID = "workspaceId"
    FILTER_WORKSPACE_NAME = "workspaceName"
    FILTER_PROJECT_ID = "projectId"
    FILTER_PROJECT_NAME = "projectName"

    SUPPORTED_FILTERS = (
        FILTER_ISSUE_CODE,
        FILTER_WORKSPACE_ID,
        FILTER_WORKSPACE_NAME,
        FILTER_PROJECT_ID,
        FILTER_PROJECT_NAME,
    )

    def __init__(self, config: dict, http: HttpConfig | None = None):
        self.token = config["toggl"]["api_token"]
        self.http = http or HttpConfig()

    def _get(self, path: str, logger: logging.Logger | None = None, **kwargs) -> Any:
        return _get_json(f"{TOGGL_URL}{path}", "Toggl", self.http, logger, auth=(self.token, "api_token"), **kwargs)

    def list_entries(self, date_range: Range, filters: list[Filter], logger: logging.Logger) -> list[Entry]:
        """Fetch the user's finished time entries within the range's days."""
        filters_by_name = self._prepare_filters(filters, logger)

        # The API only takes dates, end_date is exclusive
        params = {
            "start_date": date_range.start.date().isoformat(),
            "end_date": (date_range.end.date() + timedelta(days=1)).isoformat(),
        }

        try:
            documents = self._get("/me/time_entries", logger, params=params)
        except ApiError as e:
            logger.error(f"[toggl] Unable to fetch entries from Toggl. {e}")
            return []

        entries = []
        for document in documents or []:
            entry = self._create_entry(document, filters_by_name, logger)
            if entry:
                entries.append(entry)
        return entries

    def _create_entry(
        self, document: dict, filters_by_name: dict[str, list[Filter]], logger: logging.Logger
    ) -> Entry | None:
        description = document.get("description") or ""
        start = document.get("start")
        stop = document.get("stop")

        m = Patterns.TOGGL_DESCRIPTION.match(description)
        if not m:
            logger.warning(
                f'[toggl] Can not synchronize entry "{description}" from {start} - {stop or "?"}. '
                "The entry description is not properly formatted."
            )
            return None

        issue = m.group("issue").strip()

        for group in filters_by_name.values():
            if not any(self._matches(f, issue, document) for f in group):
                logger.info(f'[toggl] Entry "{description}" has been filtered.')
                return None

        duration = document.get("duration") or 0
        if stop is None or duration <= 0:
            logger.warning(
                f'[toggl] Can not synchronize entry "{description}" that started at {start} '
                "because it is still running."
            )
            return None

        try:
            entry = Entry(
                id=None,
                issue=issue,
                description=m.group("description").strip(),
                start=parse_timestamp(start),
                duration=int(duration),
            )
        except (AttributeError, TypeError, ValueError) as e:
            logger.error(f'[toggl] Failed to create an entry from "{description}". {e}')
            return None

        logger.info(f"[toggl] Entry {entry} found.")
        return entry

    def _matches(self, f: Filter, issue: str, document: dict) -> bool:
        if f.name == self.FILTER_ISSUE_CODE:
            return issue == f.value
        if f.name == self.FILTER_WORKSPACE_ID:
            return document.get("workspace_id") == f.value
        if f.name == self.FILTER_PROJECT_ID:
            return document.get("project_id") == f.value
        return True

    def _prepare_filters(self, filters: list[Filter], logger: logging.Logger) -> dict[str, list[Filter]]:
        """Validate filters and resolve names into IDs, grouped by filter name.

        Filters with the same name are alternatives, different names must
        all match.
        """
        by_name: dict[str, list[Filter]] = {}
        for f in filters:
            if f.name not in self.SUPPORTED_FILTERS:
                raise AbortError(f'[toggl] Filter "{f}" is not supported')
            by_name.setdefault(f.name, []).append(f)

        prepared: dict[str, list[Filter]] = {}
        for name, group in by_name.items():
            if name in (self.FILTER_WORKSPACE_ID, self.FILTER_PROJECT_ID):
                group = [self._cast_id(f) for f in group]
            elif name == self.FILTER_WORKSPACE_NAME:
                group = self._resolve_names(group, "workspaces", self.FILTER_WORKSPACE_ID, logger)
            elif name == self.FILTER_PROJECT_NAME:
                group = self._resolve_names(group, "projects", self.FILTER_PROJECT_ID, logger)

            for f in group:
                prepared.setdefault(f.name, []).append(f)
        return prepared

    @staticmethod
    def _cast_id(f: Filter) -> Filter:
        try:
            return f.with_casted_value(int)
        except (TypeError, ValueError):
            raise AbortError(f'[toggl] Filter "{f}" requires a numeric value')

    def _resolve_names(
        self, group: list[Filter], resource: str, target: str, logger: logging.Logger
    ) -> list[Filter]:
        try:
            items = self._get(f"/me/{resource}", logger)
        except ApiError as e:
            raise AbortError(f"[toggl] Unable to fetch {resource} from Toggl. {e}")

        resolved = []
        for f in group:
            wanted = str(f.value).lower()
            match = next((item for item in items or [] if str(item.get("name", "")).lower() == wanted), None)
            if match is None:
                raise AbortError(f'[toggl] Unable to evaluate filter "{f}". No such {resource[:-1]} found.')
            resolved.append(Filter(name=target, value=match["id"]))
        return resolved


def _adf_text(node: dict) -> Iterator[str]:
    if node.get("type") == "text":
        yield node.get("text", "")
    for child in node.get("content") or []:
        yield from _adf_text(child)


def adf_to_text(document: Any) -> str:
    """Plain text of an Atlassian document, one line per top-level block."""
    if not isinstance(document, dict):
        return ""
    lines = ("".join(_adf_text(block)).strip() for block in document.get("content") or [])
    return "\n".join(line for line in lines if line)


class JiraClient:
    """Write client for Jira Cloud work logs (REST API v3)."""

    def __init__(self, config: dict, http: HttpConfig | None = None):
        self.base_url = config["jira"]["base_url"].rstrip("/")
        self.api_url = f"{self.base_url}/rest/api/3"
        self.email = config["jira"]["user_email"]
        self.token = config["jira"]["api_token"]
        self.http = http or HttpConfig()
        self._cache: dict[str, Any] = {}

    def _cached(self, key: str, factory: Callable[[], Any]) -> Any:
        if key not in self._cache:
            self._cache[key] = factory()
        return self._cache[key]

    def _get(self, path: str, logger: logging.Logger | None = None, **kwargs) -> Any:
        return _get_json(
            f"{self.api_url}{path}",
            "Jira",
            self.http,
            logger,
            auth=(self.email, self.token),
            headers={"Accept": "application/json"},
            **kwargs,
        )

    def _send(self, method: str, path: str, **kwargs) -> requests.Response:
        return _request(
            method,
            f"{self.api_url}{path}",
            "Jira",
            self.http,
            auth=(self.email, self.token),
            headers={"Accept": "application/json", "Content-Type": "application/json"},
            **kwargs,
        )

    def get_my_account_id(self) -> str:
        """Get the current user's Jira account ID."""

        def fetch() -> str:
            try:
                data = self._get("/myself")
            except ApiError as e:
                raise AbortError(f"[jira] Can not fetch information about the current user. {e}")
            if not isinstance(data, dict) or not data.get("accountId"):
                raise AbortError("[jira] Can not fetch information about the current user.")
            return data["accountId"]

        return self._cached("account-id", fetch)

    def list_entries(self, date_range: Range, issue_codes: list[str], logger: logging.Logger) -> list[Entry]:
        """List the current user's work logs on the given issues within the range."""
        if not issue_codes:
            raise AbortError("[jira] Please provide a list of issue codes.")

        account_id = self.get_my_account_id()
        entries = []

        for issue_code in issue_codes:
            for worklog in self._fetch_worklogs(issue_code, date_range, logger):
                if not isinstance(worklog, dict) or worklog.get("id") is None:
                    logger.warning(f"[jira] Skipping a work log of {issue_code} without an ID.")
                    continue

                try:
                    started = parse_timestamp(worklog["started"])
                except (AttributeError, KeyError, TypeError, ValueError):
                    logger.warning(f"[jira] Skipping work log {worklog['id']} with an unreadable start.")
                    continue

                author = (worklog.get("author") or {}).get("accountId")
                if author != account_id or not date_range.contains(started):
                    continue

                description = adf_to_text(worklog.get("comment")) or self._fetch_issue_title(issue_code, logger) or ""
                entry = Entry(
                    id=str(worklog["id"]),
                    issue=issue_code,
                    description=description,
                    start=started,
                    duration=int(worklog.get("timeSpentSeconds") or 0),
                )
                logger.info(f"[jira] Entry {entry} found.")
                entries.append(entry)

        return entries

    def create_entry(self, entry: Entry, logger: logging.Logger) -> bool:
        try:
            self._send(
                "POST",
                f"/issue/{entry.issue}/worklog",
                params={"adjustEstimate": "auto"},
                json=self._entry_body(entry, logger),
            )
        except ApiError as e:
            logger.error(f"[jira] Unable to create work log {entry}. {e}")
            return False

        logger.info(f"[jira] Created a work log {entry}.")
        return True

    def update_entry(self, entry: Entry, logger: logging.Logger) -> bool:
        if entry.id is None:
            logger.error(f"[jira] Unable to update work log {entry}. Missing ID in the entry.")
            return False

        try:
            self._send(
                "PUT",
                f"/issue/{entry.issue}/worklog/{entry.id}",
                params={"adjustEstimate": "auto"},
                json=self._entry_body(entry, logger),
            )
        except ApiError as e:
            logger.error(f"[jira] Unable to update work log {entry} with ID {entry.id}. {e}")
            return False

        logger.info(f"[jira] Updated work log {entry} with ID {entry.id}.")
        return True

    def delete_entry(self, entry: Entry, logger: logging.Logger) -> bool:
        if entry.id is None:
            logger.error(f"[jira] Unable to delete work log {entry}. Missing ID in the entry.")
            return False

        try:
            self._send("DELETE", f"/issue/{entry.issue}/worklog/{entry.id}")
        except ApiError as e:
            logger.error(f"[jira] Unable to delete work log {entry} with ID {entry.id}. {e}")
            return False

        logger.info(f"[jira] Deleted work log with ID {entry.id}.")
        return True

    def _fetch_worklogs(self, issue_code: str, date_range: Range, logger: logging.Logger) -> list[dict]:
        """All work logs of an issue started within the range (one second of slack each side)."""
        started_after = (int(date_range.start.timestamp()) - 1) * 1000
        started_before = (int(date_range.end.timestamp()) + 1) * 1000

        def fetch() -> list[dict]:
            worklogs: list[dict] = []
            start_at = 0
            try:
                while True:
                    data = self._get(
                        f"/issue/{issue_code}/worklog",
                        logger,
                        params={
                            "startedAfter": started_after,
                            "startedBefore": started_before,
                            "startAt": start_at,
                            "maxResults": WORKLOG_PAGE_SIZE,
                        },
                    )
                    page = data.get("worklogs") if isinstance(data, dict) else None
                    if not isinstance(page, list):
                        logger.warning(f"[jira] Unexpected work log response for the issue {issue_code}.")
                        break
                    worklogs.extend(page)

                    # Handle pagination
                    start_at += len(page)
                    if not page or start_at >= data.get("total", 0):
                        break
            except ApiError as e:
                logger.error(f"[jira] Can not fetch work logs for the issue {issue_code}. {e}")
                return []
            return worklogs

        return self._cached(f"worklog-{issue_code}-{started_after}-{started_before}", fetch)

    def _fetch_issue_title(self, issue_code: str, logger: logging.Logger) -> str | None:
        def fetch() -> str | None:
            try:
                data = self._get(f"/issue/{issue_code}", logger, params={"fields": "summary"})
            except ApiError as e:
                logger.error(f"[jira] Can not fetch information about the issue {issue_code}. {e}")
                return None
            return (data.get("fields") or {}).get("summary")

        return self._cached(f"issue-title-{issue_code}", fetch)

    def _entry_body(self, entry: Entry, logger: logging.Logger) -> dict:
        """Work log payload; the comment gets one paragraph per description line."""
        title = self._fetch_issue_title(entry.issue, logger) or ""

        lines = []
        for line in entry.description.split("\n"):
            if title and line.startswith(title):
                line = line[len(title):]
            line = line.strip()
            if line:
                lines.append(line)

        paragraphs = [{"type": "paragraph", "content": [{"type": "text", "text": line}]} for line in lines]

        return {
            "timeSpentSeconds": entry.duration,
            "started": to_utc(entry.start).strftime("%Y-%m-%dT%H:%M:%S.000%z"),
            "comment": {
                "type": "doc",
                "version": 1,
                "content": paragraphs or [{"type": "paragraph", "content": []}],
            },
        }
