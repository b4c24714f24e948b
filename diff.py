"""Reconciliation of source and destination entries into a Diff."""

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import date, datetime
from typing import Iterable

from models import Entry, GroupMode, Rounding, SyncMode, to_utc


@dataclass(frozen=True)
class Diff:
    """Four-way partition of a reconciliation result.

    inserts:       entries to create in the destination
    updates:       source entries carrying the destination ID to overwrite
    deletes:       destination entries without a source counterpart
    intersections: entries identical on both sides, reported only
    """

    inserts: tuple[Entry, ...] = ()
    updates: tuple[Entry, ...] = ()
    deletes: tuple[Entry, ...] = ()
    intersections: tuple[Entry, ...] = ()

    def __post_init__(self):
        for name in ("inserts", "updates", "deletes", "intersections"):
            object.__setattr__(self, name, tuple(getattr(self, name)))

    def merge(self, other: "Diff") -> "Diff":
        return Diff(
            self.inserts + other.inserts,
            self.updates + other.updates,
            self.deletes + other.deletes,
            self.intersections + other.intersections,
        )

    def has_changes(self) -> bool:
        return bool(self.inserts or self.updates or self.deletes)


def _start_key(entry: Entry) -> datetime:
    """Start in UTC, to the second."""
    return to_utc(entry.start).replace(microsecond=0)


def _bucket_key(entry: Entry) -> tuple[str, date]:
    return entry.issue, to_utc(entry.start).date()


class DiffGenerator:
    """Compute inserts/updates/deletes that make destination match source.

    Entries are bucketed by (issue, UTC day) and each bucket is reconciled
    on its own; results are merged in bucket discovery order (source
    buckets first, then destination-only buckets).
    """

    def diff(
        self,
        source_entries: Iterable[Entry],
        destination_entries: Iterable[Entry],
        group_mode: GroupMode = GroupMode.DEFAULT,
        sync_mode: SyncMode = SyncMode.DEFAULT,
        rounding: Rounding | None = None,
        *,
        logger: logging.Logger | None = None,
    ) -> Diff:
        source_buckets = self._bucket(source_entries)
        destination_buckets = self._bucket(destination_entries)

        keys = list(source_buckets)
        keys.extend(key for key in destination_buckets if key not in source_buckets)

        result = Diff()
        for key in keys:
            result = result.merge(
                self._diff_bucket(
                    source_buckets.get(key, []),
                    destination_buckets.get(key, []),
                    group_mode,
                    sync_mode,
                    rounding,
                    logger,
                )
            )
        return result

    @staticmethod
    def _bucket(entries: Iterable[Entry]) -> dict[tuple[str, date], list[Entry]]:
        buckets: dict[tuple[str, date], list[Entry]] = {}
        for entry in entries:
            buckets.setdefault(_bucket_key(entry), []).append(entry)
        return buckets

    def _diff_bucket(
        self,
        source_entries: list[Entry],
        destination_entries: list[Entry],
        group_mode: GroupMode,
        sync_mode: SyncMode,
        rounding: Rounding | None,
        logger: logging.Logger | None,
    ) -> Diff:
        source_entries = sorted(source_entries, key=_start_key)
        destination_entries = sorted(destination_entries, key=_start_key)

        if group_mode is GroupMode.GROUP_BY_DAY:
            source_entries = self._group(source_entries)

        if rounding is not None:
            source_entries = [entry.with_rounded_duration(rounding) for entry in source_entries]

        if sync_mode is SyncMode.APPEND:
            return Diff(inserts=source_entries, intersections=destination_entries)

        if logger is not None:
            self._warn_duplicate_starts(source_entries, logger)

        remaining = list(source_entries)
        updates: list[Entry] = []
        deletes: list[Entry] = []
        intersections: list[Entry] = []

        for destination_entry in destination_entries:
            start = _start_key(destination_entry)
            index = next((i for i, e in enumerate(remaining) if _start_key(e) == start), None)

            if index is None:
                deletes.append(destination_entry)
                continue

            match = remaining.pop(index)
            if match.duration == destination_entry.duration:
                intersections.append(match.with_id(destination_entry.id))
            else:
                updates.append(match.with_id(destination_entry.id))

        return Diff(remaining, updates, deletes, intersections)

    @staticmethod
    def _group(entries: list[Entry]) -> list[Entry]:
        """Collapse one bucket's (sorted) entries into a single entry."""
        if not entries:
            return []

        first = entries[0]
        # dict keeps first-seen order while dropping exact duplicates
        descriptions = dict.fromkeys(entry.description for entry in entries)

        return [
            Entry(
                id=None,
                issue=first.issue,
                description="\n".join(descriptions),
                start=first.start,
                duration=sum(entry.duration for entry in entries),
            )
        ]

    @staticmethod
    def _warn_duplicate_starts(entries: list[Entry], logger: logging.Logger) -> None:
        counts = Counter(_start_key(entry) for entry in entries)
        for start, count in counts.items():
            if count > 1:
                logger.warning(
                    f"{count} source entries of {entries[0].issue} start at "
                    f"{start.isoformat(timespec='seconds')}; only the first can match, "
                    "the rest will be inserted."
                )
