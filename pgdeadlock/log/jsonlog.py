""".. currentmodule:: pgdeadlock.log.jsonlog

Tail ``jsonlog`` files (PostgreSQL 15+), one JSON object per line.

.. autoclass:: JSONTailer
"""

import json
from typing import Any, Iterator, Mapping, Optional

from typing_extensions import TypedDict

from .grammar import DeadlockBlock, build_block, parse_detection_time
from .tailer import Decoder, Tailer


class JSONRecord(TypedDict, total=False):
    timestamp: str
    user: str
    dbname: str
    pid: int
    remote_host: str
    remote_port: int
    session_id: str
    session_start: str
    error_severity: str
    message: str
    detail: str
    hint: str
    context: str
    statement: str
    application_name: str
    backend_type: str


_text_fields = (
    "timestamp",
    "user",
    "dbname",
    "remote_host",
    "session_start",
    "error_severity",
    "message",
    "detail",
    "context",
    "application_name",
)


def _has_text_fields(record: Mapping[str, Any]) -> bool:
    # Absent or null is fine, other types make the record unusable.
    return all(isinstance(record.get(k), (str, type(None))) for k in _text_fields)


class JSONDecoder(Decoder):
    def __init__(self) -> None:
        super().__init__()
        self.block: Optional[DeadlockBlock] = None
        self.pending_detection_ms: Optional[int] = None

    def feed(self, line: str) -> Iterator[DeadlockBlock]:
        if not line.strip():
            return
        try:
            record: JSONRecord = json.loads(line)
        except ValueError:
            self.malformed += 1
            return
        if not isinstance(record, dict) or not _has_text_fields(record):
            self.malformed += 1
            return

        # Any record ends the open report.
        yield from self.finish()

        message = record.get("message") or ""
        if record.get("error_severity") == "ERROR" and message.startswith(
            "deadlock detected"
        ):
            self.pending_detection_ms, ms = None, self.pending_detection_ms
            try:
                self.block = build_block(record, ms)
            except (TypeError, ValueError):
                self.malformed += 1
            return

        ms = parse_detection_time(message)
        if ms is not None:
            self.pending_detection_ms = ms

    def finish(self) -> Iterator[DeadlockBlock]:
        block, self.block = self.block, None
        if block is not None and block.processes:
            yield block


class JSONTailer(Tailer):
    """Tailer of jsonlog files.

    Parameters are those of :class:`~pgdeadlock.log.tailer.Tailer`.
    """

    format = "jsonlog"

    def decoder(self) -> JSONDecoder:
        return JSONDecoder()
