"""Fetch, diff and apply: the sync workflow around DiffGenerator."""

import logging
from dataclasses import dataclass

from clients import AbortError, ReadClient, WriteClient
from diff import Diff, DiffGenerator
from models import Entry, Options


@dataclass(frozen=True)
class DataSet:
    """Snapshot of both sides plus their diff, used for reporting."""

    source_entries: tuple[Entry, ...]
    destination_entries: tuple[Entry, ...]
    diff: Diff

    @classmethod
    def empty(cls) -> "DataSet":
        return cls((), (), Diff())


class Synchronizer:
    """Builds data sets from the clients and applies their diffs."""

    def __init__(
        self,
        read_client: ReadClient,
        write_client: WriteClient,
        diff_generator: DiffGenerator | None = None,
    ):
        self.read_client = read_client
        self.write_client = write_client
        self.diff_generator = diff_generator or DiffGenerator()

    def generate_data_set(self, options: Options, logger: logging.Logger) -> DataSet:
        """Fetch both sides for the range and diff them.

        Abort conditions raised by a client are logged and turn into an
        empty data set.
        """
        try:
            return self._create_data_set(options, logger)
        except AbortError as e:
            logger.error(str(e))
            return DataSet.empty()

    def sync(self, data_set: DataSet, logger: logging.Logger) -> bool:
        """Apply deletes, then updates, then inserts.

        Every operation is attempted even if an earlier one failed.

        Returns:
            True only if every operation succeeded.
        """
        diff = data_set.diff
        if not diff.has_changes():
            logger.info("Nothing to synchronize.")
            return True

        ok = True
        for operation, entries in (
            (self.write_client.delete_entry, diff.deletes),
            (self.write_client.update_entry, diff.updates),
            (self.write_client.create_entry, diff.inserts),
        ):
            for entry in entries:
                if not self._apply(operation, entry, logger):
                    ok = False
        return ok

    def _create_data_set(self, options: Options, logger: logging.Logger) -> DataSet:
        source_entries = self.read_client.list_entries(options.range, list(options.filters), logger)

        if not source_entries:
            logger.info("Nothing to synchronize.")
            return DataSet.empty()

        # dict keeps first-seen order of the issue codes
        issue_codes = list(options.issue_codes) or list(dict.fromkeys(e.issue for e in source_entries))
        destination_entries = self.write_client.list_entries(options.range, issue_codes, logger)

        diff = self.diff_generator.diff(
            source_entries,
            destination_entries,
            options.group_mode,
            options.sync_mode,
            options.rounding,
            logger=logger,
        )
        return DataSet(tuple(source_entries), tuple(destination_entries), diff)

    @staticmethod
    def _apply(operation, entry: Entry, logger: logging.Logger) -> bool:
        try:
            return operation(entry, logger)
        except AbortError as e:
            logger.error(str(e))
            return False
