"""Line grammar of PostgreSQL deadlock reports.

A deadlock report looks like this in stderr format::

    2025-11-23 00:15:51.553 PST [79638] [psql] LOG:  process 79638 detected deadlock while waiting for ShareLock on transaction 4370 after 1001.189 ms
    2025-11-23 00:15:52.554 PST [79638] [psql] ERROR:  deadlock detected
    2025-11-23 00:15:52.554 PST [79638] [psql] DETAIL:  Process 79638 waits for ShareLock on transaction 4370; blocked by process 79640.
    	Process 79640 waits for ShareLock on transaction 4369; blocked by process 79638.
    	Process 79638: UPDATE accounts SET balance = 0 WHERE id = 1;
    	Process 79640: UPDATE accounts SET balance = 0 WHERE id = 2;
    2025-11-23 00:15:52.554 PST [79638] [psql] HINT:  See server log for query details.
    2025-11-23 00:15:52.554 PST [79638] [psql] CONTEXT:  while updating tuple (0,1) in relation "accounts"

csvlog and jsonlog formats carry the same DETAIL text in a dedicated field,
without the leading tabs. :class:`DeadlockBlock` implements the DETAIL grammar
for all formats. :class:`StderrMachine` reassembles reports spanning several
stderr lines.
"""  # noqa

import enum
import re
from datetime import datetime, timezone
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Mapping,
    MutableMapping,
    Optional,
    Pattern,
    Tuple,
    Union,
)

from ..models import DeadlockProcess

_timestamp_re = re.compile(
    r"^(\d{4}-[01]\d-[0-3]\d [012]\d:[0-6]\d:[0-6]\d)(?:\.(\d{1,6}))?"
)
# process 83853 detected deadlock while waiting for ShareLock on transaction 4370 after 1001.189 ms  # noqa
_detection_re = re.compile(r"detected deadlock.*after ([\d.]+) ms")
# Process 83853 waits for ShareLock on transaction 4370; blocked by process 83850.
_wait_re = re.compile(
    r"Process (\d+) waits for (\w+) on ([A-Za-z][A-Za-z ]*?)\s*[\d(\[].*?; "
    r"blocked by process (\d+)"
)
# Process 79638: UPDATE accounts SET balance = 0 WHERE id = 1;
_process_re = re.compile(r"^\s*Process (\d+): (.*)")
# while updating tuple (0,1) in relation "accounts"
_relation_re = re.compile(r'relation "([^"]+)"')
_pid_re = re.compile(r"\[(\d+)\]")
# [PID] [app] or [PID] [app] [user@host] or [PID] [app] [user@[local]]
_metadata_re = re.compile(
    r"\[\d+\]\s*\[([^\]]*)\](?:\s*\[(\w+)@(\[local\]|[^\]]+)\])?"
)

_severities = [
    "CONTEXT",
    "DETAIL",
    "ERROR",
    "FATAL",
    "HINT",
    "INFO",
    "LOG",
    "NOTICE",
    "PANIC",
    "QUERY",
    "STATEMENT",
    "WARNING",
]
_severity_re = re.compile("(DEBUG[1-5]|" + "|".join(_severities) + "):  ")
# Records attached to the previous ERROR record.
_continuation_severities = {"CONTEXT", "DETAIL", "HINT", "QUERY", "STATEMENT"}


def parse_log_timestamp(raw: str) -> Optional[datetime]:
    """Parse leading ``YYYY-MM-DD HH:MM:SS[.fff]`` of raw.

    Time zone abbreviation is ignored.

    >>> parse_log_timestamp("2025-11-23 00:15:52.554 PST")
    datetime.datetime(2025, 11, 23, 0, 15, 52, 554000)
    >>> parse_log_timestamp("not a date") is None
    True
    """
    m = _timestamp_re.match(raw)
    if not m:
        return None
    try:
        value = datetime.strptime(m.group(1), "%Y-%m-%d %H:%M:%S")
    except ValueError:
        return None
    if m.group(2):
        value = value.replace(microsecond=int(m.group(2).ljust(6, "0")))
    return value


def parse_epoch(raw: str) -> datetime:
    epoch, ms = raw.split(".")
    value = datetime.fromtimestamp(int(epoch), timezone.utc).replace(tzinfo=None)
    return value.replace(microsecond=int(ms.ljust(6, "0")))


def parse_detection_time(line: str) -> Optional[int]:
    """Extract wait duration in milliseconds of a deadlock check message."""
    m = _detection_re.search(line)
    if m:
        try:
            return int(float(m.group(1)))
        except ValueError:
            return None
    return None


def parse_relation(text: str) -> str:
    m = _relation_re.search(text)
    return m.group(1) if m else ""


def normalize_client_addr(addr: str) -> str:
    """Returns ``local`` for Unix socket or unknown client."""
    if addr in ("", "[local]", "[unknown]"):
        return "local"
    return addr


def split_severity(line: str) -> Tuple[str, str, str]:
    """Split a stderr line in prefix, severity and message.

    :raises ValueError: if line has no severity.
    """
    prefix, severity, message = _severity_re.split(line, maxsplit=1)
    return prefix, severity, message


class PrefixParser:
    """Extract record metadata from PostgreSQL log line prefix.

    .. automethod:: from_configuration
    """

    # cf.
    # https://www.postgresql.org/docs/current/static/runtime-config-logging.html#GUC-LOG-LINE-PREFIX

    _datetime_pat = r"\d{4}-[01]\d-[0-3]\d [012]\d:[0-6]\d:[0-6]\d"
    # Pattern map of Status informations.
    _status_pat = dict(
        # Application name
        a=r"(?P<application>\[unknown\]|[\w.-]+)?",
        # Session ID
        c=r"(?P<session>\[unknown\]|[0-9a-f.]+)",
        # Database name
        d=r"(?P<database>\[unknown\]|\w+)?",
        # SQLSTATE error code
        e=r"(?P<error>\w+)",
        # Remote host name or IP address
        h=r"(?P<remote_host>\[local\]|\[unknown\]|[a-z0-9_.-]+|[0-9a-f.:]+)?",
        # Command tag: type of session's current command
        i=r"(?P<command_tag>[\w ]*)",
        # Number of the log line for each session or process, starting at 1.
        l=r"(?P<line_num>\d+)",  # noqa
        # Time stamp with milliseconds
        m=r"(?P<timestamp_ms>" + _datetime_pat + r".\d{3} [A-Z0-9+-]{2,6})",
        # Time stamp with milliseconds (as a Unix epoch)
        n=r"(?P<epoch>\d+\.\d+)",
        # Process ID
        p=r"(?P<pid>\d+)",
        # Remote host name or IP address, and remote port
        r=r"(?P<remote_host_r>\[local\]|\[unknown\]|[a-z0-9_.-]+|[0-9a-f.:]+)(?:\((?P<remote_port>\d+)\))?",  # noqa
        # Process start time stamp
        s=r"(?P<start>" + _datetime_pat + " [A-Z0-9+-]{2,6})",
        # Time stamp without milliseconds
        t=r"(?P<timestamp>" + _datetime_pat + " [A-Z0-9+-]{2,6})",
        # User name
        u=r"(?P<user>\[unknown\]|\w+)?",
        # Virtual transaction ID (backendID/localXID)
        v=r"(?P<virtual_xid>\d+/\d+)?",
        # Transaction ID (0 if none is assigned)
        x=r"(?P<xid>\d+)",
    )
    # re to search for %… in log_line_prefix.
    _format_re = re.compile(r"%([" + "".join(_status_pat.keys()) + "])")
    # re to find %q separator in log_line_prefix.
    _q_re = re.compile(r"(?<!%)%q")

    _casts: Dict[str, Callable[[str], Union[int, Optional[datetime]]]] = {
        "epoch": parse_epoch,
        "line_num": int,
        "pid": int,
        "remote_port": int,
        "start": parse_log_timestamp,
        "timestamp": parse_log_timestamp,
        "timestamp_ms": parse_log_timestamp,
        "xid": int,
    }

    @classmethod
    def mkpattern(cls, prefix: str) -> str:
        # Builds a pattern from each known fields.
        segments = cls._format_re.split(prefix)
        for i, segment in enumerate(segments):
            if i % 2:
                segments[i] = cls._status_pat[segment]
            else:
                segments[i] = re.escape(segment)
        return "".join(segments)

    @classmethod
    def from_configuration(cls, log_line_prefix: str) -> "PrefixParser":
        """Factory from log_line_prefix

        :param log_line_prefix: ``log_line_prefix`` PostgreSQL setting.
        :return: A :class:`PrefixParser` instance.
        """
        optionnal: Optional[str]
        try:
            fixed, optionnal = cls._q_re.split(log_line_prefix)
        except ValueError:
            fixed, optionnal = log_line_prefix, None

        pattern = "^" + cls.mkpattern(fixed)
        if optionnal:
            pattern += r"(?:" + cls.mkpattern(optionnal) + ")?"
        return cls(re.compile(pattern), log_line_prefix)

    def __init__(self, re_: Pattern[str], prefix_fmt: Optional[str] = None) -> None:
        self.re_ = re_
        self.prefix_fmt = prefix_fmt

    def __repr__(self) -> str:
        return "<%s '%s'>" % (self.__class__.__name__, self.prefix_fmt)

    def parse(self, prefix: str) -> MutableMapping[str, Any]:
        """Parse prefix according to log_line_prefix.

        :raises ValueError: if prefix does not match.
        """
        match = self.re_.search(prefix)
        if not match:
            raise ValueError("prefix %r does not match %r" % (prefix, self.prefix_fmt))
        fields = match.groupdict()

        self.cast_fields(fields)

        # Ensure remote_host is fed either by %h or %r.
        remote_host = fields.pop("remote_host_r", None)
        if remote_host:
            fields.setdefault("remote_host", remote_host)

        # Ensure timestamp field is fed eiter by %m, %t or %n.
        for alt in ("timestamp_ms", "epoch"):
            value = fields.pop(alt, None)
            if value and not fields.get("timestamp"):
                fields["timestamp"] = value

        return fields

    @classmethod
    def cast_fields(cls, fields: MutableMapping[str, Any]) -> None:
        # In-place cast of values in fields dictionnary.

        for k in fields:
            v = fields[k]
            if v is None:
                continue
            cast = cls._casts.get(k)
            if cast:
                fields[k] = cast(v)


def parse_stderr_prefix(
    line: str, prefix_parser: Optional[PrefixParser] = None
) -> Dict[str, Any]:
    """Extract timestamp, pid and session identity from an ERROR line.

    With a :class:`PrefixParser`, fields come from ``log_line_prefix``.
    Otherwise, the ``[pid] [app] [user@host]`` layout is guessed.
    """
    if prefix_parser is not None:
        try:
            prefix, _, _ = split_severity(line)
            fields = prefix_parser.parse(prefix)
        except ValueError:
            pass
        else:
            return dict(
                timestamp=fields.get("timestamp"),
                pid=fields.get("pid"),
                application_name=_known(fields.get("application")),
                username=_known(fields.get("user")),
                client_addr=normalize_client_addr(fields["remote_host"] or "")
                if "remote_host" in fields
                else "",
                database_name=_known(fields.get("database")),
                backend_start=fields.get("start"),
            )

    info: Dict[str, Any] = dict(
        timestamp=parse_log_timestamp(line),
        pid=None,
        application_name="",
        username="",
        client_addr="",
        database_name="",
        backend_start=None,
    )
    m = _pid_re.search(line)
    if m:
        info["pid"] = int(m.group(1))
    m = _metadata_re.search(line)
    if m:
        info["application_name"] = m.group(1)
        if m.group(2):
            info["username"] = m.group(2)
            info["client_addr"] = normalize_client_addr(m.group(3))
    return info


def _known(value: Optional[str]) -> str:
    if not value or value == "[unknown]":
        return ""
    return value


class Wait:
    """A wait-for edge from a DETAIL line."""

    __slots__ = ("pid", "lock_mode", "lock_type", "blocked_by_pid")

    def __init__(self, pid: int, lock_mode: str, lock_type: str, blocked_by_pid: int):
        self.pid = pid
        self.lock_mode = lock_mode
        self.lock_type = lock_type
        self.blocked_by_pid = blocked_by_pid

    @classmethod
    def parse(cls, line: str) -> Optional["Wait"]:
        m = _wait_re.search(line)
        if not m:
            return None
        return cls(int(m.group(1)), m.group(2), m.group(3), int(m.group(4)))


class DeadlockBlock:
    """Deadlock report under construction.

    Identity attributes are shared by all processes: PostgreSQL logs only the
    identity of the backend reporting the deadlock.
    """

    def __init__(
        self,
        detected_at: Optional[datetime] = None,
        resolved_by_pid: Optional[int] = None,
        detection_time_ms: Optional[int] = None,
        database_name: str = "",
        username: str = "",
        application_name: str = "",
        client_addr: str = "",
        backend_start: Optional[datetime] = None,
    ) -> None:
        self.detected_at = detected_at
        self.resolved_by_pid = resolved_by_pid
        self.detection_time_ms = detection_time_ms
        self.database_name = database_name
        self.username = username
        self.application_name = application_name
        self.client_addr = client_addr
        self.backend_start = backend_start
        # Fallback relation, from CONTEXT.
        self.relation = ""
        self.waits: Dict[int, Wait] = {}
        self.processes: List[DeadlockProcess] = []

    def __repr__(self) -> str:
        return "<%s %s %d process(es)>" % (
            self.__class__.__name__,
            self.detected_at,
            len(self.processes),
        )

    def add_wait(self, wait: Wait) -> None:
        self.waits.setdefault(wait.pid, wait)

    def add_process(self, pid: int, query: str) -> DeadlockProcess:
        process = DeadlockProcess(
            pid=pid,
            query=query.strip(),
            username=self.username,
            application_name=self.application_name,
            client_addr=self.client_addr,
            backend_start=self.backend_start,
        )
        self.processes.append(process)
        return process

    def extend_query(self, text: str) -> None:
        # Multi-line query of the last process.
        process = self.processes[-1]
        process.query = (process.query + "\n" + text).strip()

    def feed_detail(self, line: str) -> bool:
        """Apply one line of DETAIL grammar.

        :returns: ``True`` if line is a wait-for or process line.
        """
        wait = Wait.parse(line)
        if wait:
            self.add_wait(wait)
            return True
        m = _process_re.match(line)
        if m:
            self.add_process(int(m.group(1)), m.group(2))
            return True
        return False

    def feed_detail_text(self, detail: str) -> None:
        """Apply the DETAIL field of a csvlog or jsonlog record."""
        in_process = False
        for line in detail.splitlines():
            if not line.strip():
                continue
            if self.feed_detail(line):
                in_process = _process_re.match(line) is not None
            elif in_process:
                self.extend_query(line.rstrip())

    def set_context(self, context: str) -> None:
        relation = parse_relation(context)
        if relation:
            self.relation = relation

    def apply_waits(self) -> None:
        for process in self.processes:
            wait = self.waits.get(process.pid)
            if wait and not process.lock_mode:
                process.lock_mode = wait.lock_mode
                process.lock_type = wait.lock_type
                process.blocked_by_pid = wait.blocked_by_pid


@enum.unique
class State(enum.Enum):
    idle = enum.auto()
    collecting = enum.auto()


@enum.unique
class LineKind(enum.Enum):
    blank = enum.auto()
    detection = enum.auto()
    deadlock = enum.auto()
    wait = enum.auto()
    process = enum.auto()
    context = enum.auto()
    # Tab-prefixed line not matching any DETAIL grammar.
    continuation = enum.auto()
    # New record attached to the previous one: HINT, STATEMENT, etc.
    attached = enum.auto()
    # New unrelated record.
    record = enum.auto()
    unknown = enum.auto()


def classify(line: str) -> Tuple[LineKind, Any]:
    """Tells what a stderr line is, with the data it carries.

    This function has no side effect, it's the lexer of
    :class:`StderrMachine`.
    """
    if not line.strip():
        return LineKind.blank, None

    ms = parse_detection_time(line)
    if ms is not None:
        return LineKind.detection, ms

    wait = Wait.parse(line)
    if wait:
        return LineKind.wait, wait

    m = _process_re.match(line)
    if m:
        return LineKind.process, (int(m.group(1)), m.group(2))

    if line.startswith("\t"):
        return LineKind.continuation, line[1:].rstrip("\r\n")

    try:
        prefix, severity, message = split_severity(line)
    except ValueError:
        return LineKind.unknown, None

    if severity == "ERROR" and message.startswith("deadlock detected"):
        return LineKind.deadlock, line
    if severity == "CONTEXT":
        relation = parse_relation(message)
        if relation:
            return LineKind.context, relation
    if severity in _continuation_severities:
        return LineKind.attached, severity
    return LineKind.record, severity


class StderrMachine:
    """Reassemble deadlock reports from stderr lines.

    Feed lines one by one with :meth:`feed`. Each time a report is complete,
    :meth:`feed` returns its :class:`DeadlockBlock`. Call :meth:`finish` at end
    of input to get the last pending report.

    Reports without processes are never returned.

    .. attribute:: malformed

        Count of lines with neither severity nor tab continuation.
    """

    def __init__(self, prefix_parser: Optional[PrefixParser] = None) -> None:
        self.prefix_parser = prefix_parser
        self.state = State.idle
        self.block: Optional[DeadlockBlock] = None
        self.pending_detection_ms: Optional[int] = None
        self.malformed = 0
        # Whether a continuation line extends the last process query.
        self._in_query = False

    def feed(self, line: str) -> Optional[DeadlockBlock]:
        kind, data = classify(line)

        if kind is LineKind.blank:
            return None
        if kind is LineKind.detection:
            # Logged by the victim just before the ERROR.
            done = self._close()
            self.pending_detection_ms = data
            return done
        if kind is LineKind.deadlock:
            done = self._close()
            self._open(data)
            return done
        if kind is LineKind.unknown:
            self.malformed += 1

        if self.state is State.idle:
            return None

        assert self.block is not None
        in_query, self._in_query = self._in_query, False
        if kind is LineKind.wait:
            self.block.add_wait(data)
        elif kind is LineKind.process:
            self.block.add_process(*data)
            self._in_query = True
        elif kind is LineKind.continuation:
            if in_query:
                self.block.extend_query(data)
                self._in_query = True
        elif kind is LineKind.context:
            self.block.relation = data
        elif kind in (LineKind.record, LineKind.unknown):
            return self._close()
        return None

    def finish(self) -> Optional[DeadlockBlock]:
        return self._close()

    def discard(self) -> None:
        self.state = State.idle
        self.block = None
        self._in_query = False

    def _open(self, line: str) -> None:
        info = parse_stderr_prefix(line, self.prefix_parser)
        self.block = DeadlockBlock(
            detected_at=info["timestamp"],
            resolved_by_pid=info["pid"],
            detection_time_ms=self.pending_detection_ms,
            database_name=info["database_name"],
            username=info["username"],
            application_name=info["application_name"],
            client_addr=info["client_addr"],
            backend_start=info["backend_start"],
        )
        self.pending_detection_ms = None
        self.state = State.collecting
        self._in_query = False

    def _close(self) -> Optional[DeadlockBlock]:
        block = self.block
        self.discard()
        if block is None or not block.processes:
            return None
        return block


def build_block(
    record: Mapping[str, Any], detection_time_ms: Optional[int] = None
) -> DeadlockBlock:
    """Build a block from a structured (csvlog or jsonlog) ERROR record.

    ``record`` keys are the jsonlog keys: ``timestamp``, ``pid``, ``dbname``,
    ``user``, ``application_name``, ``remote_host``, ``session_start``,
    ``detail`` and ``context``.
    """
    pid = record.get("pid")
    block = DeadlockBlock(
        detected_at=parse_log_timestamp(str(record.get("timestamp") or "")),
        resolved_by_pid=int(pid) if pid else None,
        detection_time_ms=detection_time_ms,
        database_name=record.get("dbname") or "",
        username=record.get("user") or "",
        application_name=record.get("application_name") or "",
        client_addr=normalize_client_addr(record.get("remote_host") or ""),
        backend_start=parse_log_timestamp(str(record.get("session_start") or "")),
    )
    block.feed_detail_text(record.get("detail") or "")
    block.set_context(record.get("context") or "")
    return block
