"""Centralized regex patterns for time entry sync."""

import re


class Patterns:
    """Regex patterns used throughout the sync process."""

    # Toggl description: "AB-123 what I did"
    TOGGL_DESCRIPTION = re.compile(r"^(?P<issue>[a-zA-Z]+-\d+) *(?P<description>.*)$", re.DOTALL)

    # Jira issue code: AB-123
    ISSUE_CODE = re.compile(r"^[a-zA-Z]+-\d+$")

    # CLI filter: name=value or bare name
    FILTER = re.compile(r"^[a-zA-Z]+(=.*)?$")

    # Week format: YYYYWW (e.g., 202605)
    WEEK_FORMAT = re.compile(r"^\d{4}(0[1-9]|[1-4]\d|5[0-3])$")

    # Date format: YYYY-MM-DD
    DATE_FORMAT = re.compile(r"^\d{4}-\d{2}-\d{2}$")
