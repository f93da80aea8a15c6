""".. currentmodule:: pgdeadlock.log.csvlog

Tail ``csvlog`` files. Each deadlock ERROR row holds the whole report, DETAIL
included, so rows are turned into events independently.

.. autoclass:: CSVTailer
"""

import csv
from typing import Any, Dict, Iterator, List, Optional

from .grammar import (
    DeadlockBlock,
    build_block,
    parse_detection_time,
    parse_log_timestamp,
)
from .tailer import Decoder, Tailer

# Columns of csvlog, cf.
# https://www.postgresql.org/docs/current/runtime-config-logging.html#RUNTIME-CONFIG-LOGGING-CSVLOG
LOG_TIME = 0
USER_NAME = 1
DATABASE_NAME = 2
PROCESS_ID = 3
CONNECTION_FROM = 4
SESSION_START_TIME = 8
ERROR_SEVERITY = 11
MESSAGE = 13
DETAIL = 14
CONTEXT = 18
APPLICATION_NAME = 22


def split_connection_from(value: str) -> str:
    # host:port or [local]
    if value.startswith("["):
        return value
    host, sep, port = value.rpartition(":")
    if sep and port.isdigit():
        return host
    return value


def _column(row: List[str], index: int) -> str:
    return row[index] if len(row) > index else ""


def row_as_record(row: List[str]) -> Dict[str, Any]:
    """Map a csvlog row on jsonlog keys."""
    return dict(
        timestamp=_column(row, LOG_TIME),
        user=_column(row, USER_NAME),
        dbname=_column(row, DATABASE_NAME),
        pid=_column(row, PROCESS_ID),
        remote_host=split_connection_from(_column(row, CONNECTION_FROM)),
        session_start=_column(row, SESSION_START_TIME),
        error_severity=_column(row, ERROR_SEVERITY),
        message=_column(row, MESSAGE),
        detail=_column(row, DETAIL),
        context=_column(row, CONTEXT),
        application_name=_column(row, APPLICATION_NAME),
    )


class CSVDecoder(Decoder):
    def __init__(self) -> None:
        super().__init__()
        # Lines of a row with quoted newlines.
        self.pending: List[str] = []
        self.quotes = 0
        self.pending_detection_ms: Optional[int] = None

    def feed(self, line: str) -> Iterator[DeadlockBlock]:
        if self.pending and parse_log_timestamp(line) is not None:
            # A new row starts while a quoted field is still open: the
            # pending row is garbage.
            self.malformed += 1
            self.pending = []
            self.quotes = 0

        self.pending.append(line)
        self.quotes += line.count('"')
        if self.quotes % 2:
            return
        lines, self.pending, self.quotes = self.pending, [], 0
        try:
            rows = list(csv.reader(lines))
        except csv.Error:
            self.malformed += 1
            return
        for row in rows:
            if not row:
                continue
            block = self.decode_row(row)
            if block is not None:
                yield block

    def finish(self) -> Iterator[DeadlockBlock]:
        if self.pending:
            # Truncated quoted field.
            self.malformed += 1
            self.pending = []
            self.quotes = 0
        return iter(())

    def decode_row(self, row: List[str]) -> Optional[DeadlockBlock]:
        if len(row) <= MESSAGE:
            self.malformed += 1
            return None

        record = row_as_record(row)
        message = record["message"]
        if record["error_severity"] == "ERROR" and message.startswith(
            "deadlock detected"
        ):
            try:
                block = build_block(record, self.pending_detection_ms)
            except (TypeError, ValueError):
                self.malformed += 1
                return None
            self.pending_detection_ms = None
            if block.processes:
                return block
            return None

        ms = parse_detection_time(message)
        if ms is not None:
            self.pending_detection_ms = ms
        return None


class CSVTailer(Tailer):
    """Tailer of csvlog files.

    Parameters are those of :class:`~pgdeadlock.log.tailer.Tailer`.
    """

    format = "csvlog"

    def decoder(self) -> CSVDecoder:
        return CSVDecoder()
