"""Data models for Toggl to Jira sync."""

import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable

from utils import format_duration


class InvalidConfiguration(ValueError):
    """A value object was constructed with an invalid setting."""


def to_utc(value: datetime) -> datetime:
    """Normalize a datetime to UTC (naive values are taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class GroupMode(Enum):
    """How source entries of one issue and day are treated before diffing."""

    DEFAULT = "default"
    GROUP_BY_DAY = "group_by_day"


class SyncMode(Enum):
    """Whether existing destination entries may be updated or deleted."""

    DEFAULT = "default"
    APPEND = "append"


@dataclass(frozen=True)
class Rounding:
    """Rounds durations up to a minute granularity."""

    minutes: int

    def __post_init__(self):
        if not isinstance(self.minutes, int) or not 2 <= self.minutes <= 60:
            raise InvalidConfiguration(
                f"Minutes for rounding must be integer in the range [2-60], {self.minutes} passed."
            )

    def round(self, seconds: int) -> int:
        """Snap the minute component of a second offset up to the granularity.

        The offset is read as a UTC timestamp: the date and hour are kept,
        the minute becomes the next multiple of ``minutes`` (60 carries into
        the next hour) and the seconds are dropped.
        """
        moment = datetime.fromtimestamp(seconds, tz=timezone.utc)
        minute = math.ceil(moment.minute / self.minutes) * self.minutes
        snapped = moment.replace(minute=0, second=0, microsecond=0) + timedelta(minutes=minute)
        return int(snapped.timestamp())


@dataclass(frozen=True)
class Range:
    """Closed UTC interval [start, end]."""

    start: datetime
    end: datetime

    def __post_init__(self):
        object.__setattr__(self, "start", to_utc(self.start))
        object.__setattr__(self, "end", to_utc(self.end))
        if self.end < self.start:
            raise InvalidConfiguration("End date can not be before start date.")

    def contains(self, moment: datetime) -> bool:
        return self.start <= to_utc(moment) <= self.end


@dataclass(frozen=True)
class Entry:
    """One tracked time interval, in either system."""

    id: str | None
    issue: str
    description: str
    start: datetime  # UTC
    duration: int  # seconds

    @property
    def end(self) -> datetime:
        return self.start + timedelta(seconds=self.duration)

    def with_id(self, id: str | None) -> "Entry":
        return replace(self, id=id)

    def with_rounded_duration(self, rounding: Rounding) -> "Entry":
        return replace(self, duration=rounding.round(self.duration))

    def to_string(self, max_description_length: int | None = None) -> str:
        """Human readable form, e.g. ``"AB-1 Review" [... - ..., 1h 5m]``."""
        description = self.description.replace("\n", " \\n ")

        if max_description_length is not None and len(description) > max_description_length:
            description = description[: max(max_description_length - 1, 0)].rstrip() + "…"

        return '"{} {}" [{} - {}, {}]'.format(
            self.issue,
            description,
            self.start.isoformat(timespec="seconds"),
            self.end.isoformat(timespec="seconds"),
            format_duration(self.duration),
        )

    def __str__(self) -> str:
        return self.to_string()


@dataclass(frozen=True)
class Filter:
    """A ``name=value`` restriction passed to the source client."""

    name: str
    value: Any = True

    @classmethod
    def from_string(cls, string: str) -> "Filter":
        name, sep, raw = string.partition("=")
        if not sep:
            return cls(name=name)

        value: Any = raw.strip()
        if value == "true":
            value = True
        elif value == "false":
            value = False
        return cls(name=name, value=value)

    def with_casted_value(self, cast: Callable[[Any], Any]) -> "Filter":
        return replace(self, value=cast(self.value))

    def __str__(self) -> str:
        return f"{self.name}={self.value}"


@dataclass(frozen=True)
class Options:
    """Everything a single sync run needs besides the clients."""

    range: Range
    group_mode: GroupMode = GroupMode.DEFAULT
    sync_mode: SyncMode = SyncMode.DEFAULT
    rounding: Rounding | None = None
    filters: tuple[Filter, ...] = field(default_factory=tuple)
    issue_codes: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class HttpConfig:
    """Timeouts and retry behavior for the API clients."""

    timeout_s: float = 30.0
    max_retries: int = 3
    retry_delay_s: float = 1.0

    @classmethod
    def from_config(cls, config: dict) -> "HttpConfig":
        http = config.get("http", {})
        defaults = cls()
        return cls(
            timeout_s=float(http.get("timeout_s", defaults.timeout_s)),
            max_retries=int(http.get("max_retries", defaults.max_retries)),
            retry_delay_s=float(http.get("retry_delay_s", defaults.retry_delay_s)),
        )
