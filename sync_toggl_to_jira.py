"""
Sync Toggl time entries to Jira work logs.

Usage:
    # Dry-run (default) - shows what would happen for yesterday
    python sync_toggl_to_jira.py

    # Execute - actually creates/updates/deletes work logs
    python sync_toggl_to_jira.py --start 2026-01-26 --end 2026-01-30 --execute

    # A whole ISO week, one work log per issue and day, rounded to 15 minutes
    python sync_toggl_to_jira.py --week 202605 --group-by-day --rounding 15
"""

import argparse
import logging
from datetime import date, datetime, time, timezone

from clients import JiraClient, TogglClient
from models import Filter, GroupMode, HttpConfig, Options, Range, Rounding, SyncMode
from patterns import Patterns
from report import dump_data_set
from synchronizer import Synchronizer
from utils import CONFIG_FILE, create_console_logger, get_week_dates, load_config_safe, parse_date


def build_range(start: date, end: date) -> Range:
    """Whole days in UTC: start 00:00:00 to end 23:59:59."""
    return Range(
        datetime.combine(start, time(0, 0, 0), tzinfo=timezone.utc),
        datetime.combine(end, time(23, 59, 59), tzinfo=timezone.utc),
    )


def build_options(args: argparse.Namespace) -> Options:
    """Turn parsed CLI arguments into Options (raises ValueError on bad input)."""
    if args.week:
        start, end = get_week_dates(args.week)
    else:
        start, end = parse_date(args.start), parse_date(args.end)

    return Options(
        range=build_range(start, end),
        group_mode=GroupMode.GROUP_BY_DAY if args.group_by_day else GroupMode.DEFAULT,
        sync_mode=SyncMode.APPEND if args.append else SyncMode.DEFAULT,
        rounding=Rounding(args.rounding) if args.rounding is not None else None,
        filters=tuple(Filter.from_string(f) for f in args.filter),
        issue_codes=tuple(args.issue),
    )


def confirm(question: str) -> bool:
    """Ask a yes/no question on the console (EOF counts as no)."""
    try:
        answer = input(f"{question} [y/N]: ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def sync(
    synchronizer: Synchronizer,
    options: Options,
    execute: bool,
    assume_yes: bool,
    logger: logging.Logger,
) -> int:
    """Preview the diff and, when asked to, apply it. Returns the exit code."""
    mode = "EXECUTE" if execute else "DRY-RUN"

    print()
    print("=" * 70)
    print(
        f"SYNC TOGGL -> JIRA | {options.range.start.date()} to {options.range.end.date()} | Mode: {mode}"
    )
    print("=" * 70)
    print()

    print("[1] Fetching entries and computing changes...")
    data_set = synchronizer.generate_data_set(options, logger)
    diff = data_set.diff

    dump_data_set(data_set)

    print()
    print("[2] Status:")
    print(f"    - Work logs to insert: {len(diff.inserts)}")
    print(f"    - Work logs to update: {len(diff.updates)}")
    print(f"    - Work logs to delete: {len(diff.deletes)}")
    print(f"    - Unchanged: {len(diff.intersections)}")

    if not diff.has_changes():
        print()
        print("[*] Nothing to synchronize. Done.")
        return 0

    if not execute:
        print()
        print("Run with --execute to apply changes.")
        return 0

    print()
    if not assume_yes and not confirm("Synchronize the changes?"):
        print("[*] Aborted, nothing was changed.")
        return 0

    print("[3] Applying changes (delete -> update -> insert)...")
    everything_synced = synchronizer.sync(data_set, logger)

    print()
    if everything_synced:
        print("[*] Synchronization completed.")
        return 0
    print("[!] Synchronization completed with errors.")
    return 1


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Sync Toggl time entries to Jira work logs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Dry-run (default) - shows what would happen for yesterday
    python sync_toggl_to_jira.py

    # Execute - actually changes Jira
    python sync_toggl_to_jira.py --start 2026-01-26 --end 2026-01-30 --execute

    # ISO week, grouped per issue and day, rounded up to 15 minutes
    python sync_toggl_to_jira.py --week 202605 --group-by-day --rounding 15

    # Only one Toggl project, never touch existing Jira work logs
    python sync_toggl_to_jira.py --filter "projectName=Acme" --append --execute
        """,
    )

    parser.add_argument("--start", default="yesterday", help="Start date (YYYY-MM-DD, today, yesterday)")
    parser.add_argument("--end", default="yesterday", help="End date (YYYY-MM-DD, today, yesterday)")
    parser.add_argument("--week", help="Sync a whole ISO week (YYYYWW), overrides --start/--end")
    parser.add_argument("--group-by-day", action="store_true", help="One work log per issue and day")
    parser.add_argument(
        "--append", action="store_true", help="Only add work logs, never update or delete existing ones"
    )
    parser.add_argument("--rounding", type=int, help="Round durations up to N minutes (2-60)")
    parser.add_argument(
        "--filter",
        action="append",
        default=[],
        metavar="NAME=VALUE",
        help="Toggl filter: issueCode, workspaceId, workspaceName, projectId, projectName (repeatable)",
    )
    parser.add_argument(
        "--issue", action="append", default=[], metavar="CODE", help="Restrict Jira to these issues (repeatable)"
    )
    parser.add_argument(
        "--execute", action="store_true", help="Actually execute changes (default: dry-run)"
    )
    parser.add_argument("--yes", action="store_true", help="Do not ask for confirmation with --execute")
    parser.add_argument("--config", default=CONFIG_FILE, help=f"Config file (default: {CONFIG_FILE})")
    parser.add_argument("-v", "--verbose", action="store_true", help="Show debug output")

    return parser.parse_args(argv)


def validate_args(args: argparse.Namespace) -> list[str]:
    """Check argument formats and return list of error messages."""
    errors = []

    if args.week and not Patterns.WEEK_FORMAT.match(args.week):
        errors.append(f"Invalid week format '{args.week}'. Expected YYYYWW (e.g., 202605)")

    for code in args.issue:
        if not Patterns.ISSUE_CODE.match(code):
            errors.append(f"Invalid issue code '{code}'. Expected e.g. ABC-123")

    for f in args.filter:
        if not Patterns.FILTER.match(f):
            errors.append(f"Invalid filter '{f}'. Expected NAME=VALUE")

    return errors


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    errors = validate_args(args)
    if errors:
        for err in errors:
            print(f"Error: {err}")
        return 1

    # Bad dates, reversed ranges and rounding outside [2-60] all end up here
    try:
        options = build_options(args)
    except ValueError as e:
        print(f"Error: {e}")
        return 1

    config = load_config_safe(args.config)
    if config is None:
        return 1

    logger = create_console_logger(args.verbose)
    http = HttpConfig.from_config(config)
    synchronizer = Synchronizer(TogglClient(config, http), JiraClient(config, http))

    return sync(synchronizer, options, args.execute, args.yes, logger)


if __name__ == "__main__":
    exit(main())
