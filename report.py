"""Console report of a DataSet: change set and per-day summary."""

from datetime import date

from models import Entry, to_utc
from synchronizer import DataSet
from utils import format_duration

WIDTH = 100
DESCRIPTION_LENGTH = 60

# Row order within a day and the label printed for each diff partition
ACTIONS = [
    ("intersections", "no action"),
    ("inserts", "insert"),
    ("updates", "update"),
    ("deletes", "delete"),
]


def _day(entry: Entry) -> date:
    return to_utc(entry.start).date()


def group_by_day(data_set: DataSet) -> dict[date, dict[str, list[Entry]]]:
    """Sort every entry of the data set into {day: {section: [entries]}}."""
    sections = {
        "source": data_set.source_entries,
        "destination": data_set.destination_entries,
        "inserts": data_set.diff.inserts,
        "updates": data_set.diff.updates,
        "deletes": data_set.diff.deletes,
        "intersections": data_set.diff.intersections,
    }

    by_day: dict[date, dict[str, list[Entry]]] = {}
    for section, entries in sections.items():
        for entry in entries:
            by_day.setdefault(_day(entry), {}).setdefault(section, []).append(entry)

    return dict(sorted(by_day.items()))


def _signed(seconds: int) -> str:
    if seconds > 0:
        return "+" + format_duration(seconds)
    if seconds < 0:
        return "-" + format_duration(-seconds)
    return format_duration(0)


def print_change_set(by_day: dict[date, dict[str, list[Entry]]]) -> None:
    print("[Change set]")
    print(f"    {'Action':<10} | {'ID':<12} | Entry")
    print(f"    {'─' * WIDTH}")

    if not by_day:
        print("    No data")
        return

    for day, sections in by_day.items():
        print(f"    {day.isoformat()}")
        for section, action in ACTIONS:
            for entry in sections.get(section, []):
                print(f"    {action:<10} | {entry.id or '':<12} | {entry.to_string(DESCRIPTION_LENGTH)}")


def print_summary(by_day: dict[date, dict[str, list[Entry]]]) -> None:
    print("[Summary]")
    print(f"    {'Day':<10} | {'Original':>10} | {'New':>10} | {'Difference':>10}")
    print(f"    {'─' * 50}")

    if not by_day:
        print("    No data")

    original_total = new_total = 0
    for day, sections in by_day.items():
        original = sum(e.duration for e in sections.get("destination", []))
        new = sum(
            e.duration
            for section in ("inserts", "updates", "intersections")
            for e in sections.get(section, [])
        )
        original_total += original
        new_total += new
        print(
            f"    {day.isoformat():<10} | {format_duration(original):>10} | "
            f"{format_duration(new):>10} | {_signed(new - original):>10}"
        )

    print(f"    {'─' * 50}")
    print(
        f"    {'Totals':<10} | {format_duration(original_total):>10} | "
        f"{format_duration(new_total):>10} | {_signed(new_total - original_total):>10}"
    )


def dump_data_set(data_set: DataSet) -> None:
    """Print the change set followed by the duration summary."""
    by_day = group_by_day(data_set)
    print()
    print_change_set(by_day)
    print()
    print_summary(by_day)
