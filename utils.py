"""Utility functions for Toggl to Jira sync."""

import json
import logging
import os
import sys
import time
from datetime import date, datetime, timedelta, timezone
from typing import Callable, TextIO, TypeVar

from patterns import Patterns

T = TypeVar("T")

# File paths
CONFIG_FILE = "config.json"

LOGGER_NAME = "toggl2jira"


def load_config(path: str = CONFIG_FILE) -> dict:
    """Load config.json with Toggl and Jira credentials."""
    with open(path) as f:
        return json.load(f)


def validate_config(config: dict) -> list[str]:
    """Validate config structure and return list of error messages.

    Returns:
        Empty list if valid, otherwise list of error messages.
    """
    errors = []

    # Check required sections
    for section in ["toggl", "jira"]:
        if section not in config:
            errors.append(f"Missing section '{section}' in config.json")

    # Check Toggl
    if "toggl" in config:
        if not config["toggl"].get("api_token"):
            errors.append("Missing toggl.api_token")

    # Check Jira credentials
    if "jira" in config:
        for key in ["base_url", "user_email", "api_token"]:
            if not config["jira"].get(key):
                errors.append(f"Missing jira.{key}")

    # Optional HTTP tuning
    http = config.get("http", {})
    if not isinstance(http, dict):
        errors.append("Section 'http' must be an object")
    else:
        for key in ["timeout_s", "max_retries", "retry_delay_s"]:
            value = http.get(key)
            if value is not None and (isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0):
                errors.append(f"http.{key} must be a non-negative number")

    return errors


def load_config_safe(path: str = CONFIG_FILE) -> dict | None:
    """Load config with user-friendly error messages.

    Returns:
        Config dict if valid, None if errors occurred.
    """
    if not os.path.exists(path):
        print(f"[!] ERROR: {path} not found!")
        print()
        print("    Create it based on config.example.json:")
        print(f"    $ cp config.example.json {path}")
        print(f"    $ nano {path}  # Fill in your credentials")
        print()
        return None

    try:
        config = load_config(path)
    except json.JSONDecodeError as e:
        print(f"[!] ERROR: {path} is not valid JSON!")
        print(f"    Line {e.lineno}, column {e.colno}: {e.msg}")
        print()
        print("    Check for missing commas, quotes, or brackets.")
        return None

    errors = validate_config(config)
    if errors:
        print(f"[!] ERROR: {path} is incomplete:")
        for err in errors:
            print(f"    - {err}")
        print()
        print("    See config.example.json for the required structure.")
        return None

    return config


def get_week_dates(week_str: str) -> tuple[date, date]:
    """Get start and end date (Mon-Sun) for a week string YYYYWW."""
    year = int(week_str[:4])
    week = int(week_str[4:])
    # ISO week: Jan 4 is always in week 1
    jan4 = date(year, 1, 4)
    start_of_week1 = jan4 - timedelta(days=jan4.weekday())
    week_start = start_of_week1 + timedelta(weeks=week - 1)
    week_end = week_start + timedelta(days=6)
    return week_start, week_end


def parse_date(value: str, today: date | None = None) -> date:
    """Parse YYYY-MM-DD, 'today' or 'yesterday' (UTC)."""
    today = today or datetime.now(timezone.utc).date()
    keyword = value.strip().lower()

    if keyword == "today":
        return today
    if keyword == "yesterday":
        return today - timedelta(days=1)
    if not Patterns.DATE_FORMAT.match(keyword):
        raise ValueError(f"Invalid date '{value}'. Expected YYYY-MM-DD, 'today' or 'yesterday'")
    return date.fromisoformat(keyword)


def parse_timestamp(value: str) -> datetime:
    """Parse an API timestamp into an aware UTC datetime.

    Handles both '2024-01-02T09:00:00Z' (Toggl) and
    '2024-01-02T09:00:00.000+0000' (Jira).
    """
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        parsed = datetime.strptime(value, "%Y-%m-%dT%H:%M:%S.%f%z")

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_duration(seconds: int) -> str:
    """Format seconds as '1h 30m' (or '45m' below one hour)."""
    hours, rest = divmod(int(seconds), 3600)
    minutes = rest // 60
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def retry(
    operation: Callable[[], T],
    max_attempts: int = 3,
    delay: float = 1.0,
    should_retry: Callable[[Exception], bool] | None = None,
    on_retry: Callable[[int, Exception], None] | None = None,
) -> T:
    """Execute an operation with retries.

    Args:
        operation: Callable to execute
        max_attempts: Maximum number of attempts
        delay: Delay in seconds between attempts
        should_retry: Optional predicate, errors it rejects are raised at once
        on_retry: Optional callback when retrying (attempt_num, exception)

    Returns:
        Result of the first successful attempt. The last error is re-raised
        once all attempts failed.
    """
    for attempt in range(1, max_attempts):
        try:
            return operation()
        except Exception as e:
            if should_retry and not should_retry(e):
                raise
            if on_retry:
                on_retry(attempt, e)
            time.sleep(delay)
    return operation()


class ConsoleFormatter(logging.Formatter):
    """Render log records with the console markers ([*], [!], [DEBUG])."""

    MARKERS = {
        logging.DEBUG: "[DEBUG]",
        logging.INFO: "[*]",
        logging.WARNING: "[!]",
        logging.ERROR: "[!]",
        logging.CRITICAL: "[!]",
    }

    def format(self, record: logging.LogRecord) -> str:
        marker = self.MARKERS.get(record.levelno, "[*]")
        return f"    {marker} {record.getMessage()}"


def create_console_logger(verbose: bool = False, stream: TextIO | None = None) -> logging.Logger:
    """Build the logger handed to the synchronizer and clients."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.handlers.clear()
    logger.propagate = False
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(ConsoleFormatter())
    logger.addHandler(handler)
    return logger
