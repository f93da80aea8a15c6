""".. currentmodule:: pgdeadlock.log.source

Locate PostgreSQL logs and pick the right tailer.

.. code-block:: python

    import psycopg2

    conn = psycopg2.connect(dsn)
    source, dbname = discover(conn)
    if source.enabled:
        tailer = new_tailer(source, store, database_name=dbname)

.. autoclass:: LogFormat
.. autoclass:: AccessMethod
.. autoclass:: LogSource
.. autofunction:: detect_format
.. autofunction:: detect_format_from_filename
.. autofunction:: log_filename_to_glob
.. autofunction:: new_tailer
.. autofunction:: discover
"""

import enum
import logging
import os.path
import re
from typing import Any, Dict, Optional, Tuple, Type

from ..store import Store
from .csvlog import CSVTailer
from .jsonlog import JSONTailer
from .readers import FilesystemReader, PgReadFileReader, Reader
from .stderr import StderrTailer
from .tailer import Tailer

logger = logging.getLogger(__name__)


@enum.unique
class LogFormat(str, enum.Enum):
    """Log encoding, named after ``log_destination`` values."""

    stderr = "stderr"
    csvlog = "csvlog"
    jsonlog = "jsonlog"
    unknown = "unknown"


@enum.unique
class AccessMethod(str, enum.Enum):
    filesystem = "filesystem"
    pg_read_file = "pg_read_file"


class LogSource:
    """Where and how to read logs.

    .. attribute:: directory

        Absolute log directory.

    .. attribute:: pattern

        Glob pattern of stderr log files, derived from ``log_filename``.

    .. attribute:: enabled

        ``False`` if ``logging_collector`` is off. There is nothing to tail
        then.
    """

    def __init__(
        self,
        directory: str,
        pattern: str,
        format: LogFormat = LogFormat.stderr,
        access_method: AccessMethod = AccessMethod.filesystem,
        enabled: bool = True,
        current_file: str = "",
        log_line_prefix: Optional[str] = None,
    ) -> None:
        self.directory = directory
        self.pattern = pattern
        self.format = format
        self.access_method = access_method
        self.enabled = enabled
        self.current_file = current_file
        self.log_line_prefix = log_line_prefix

    def __repr__(self) -> str:
        return "<%s %s %s/%s>" % (
            self.__class__.__name__,
            self.format.value,
            self.directory,
            self.pattern,
        )

    def as_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


def detect_format(log_destination: str) -> LogFormat:
    """Pick the richest format of ``log_destination``.

    >>> detect_format("stderr,csvlog")
    <LogFormat.csvlog: 'csvlog'>
    """
    destinations = log_destination.lower()
    for candidate in (LogFormat.jsonlog, LogFormat.csvlog):
        if candidate.value in destinations:
            return candidate
    return LogFormat.stderr


_extensions = {
    ".csv": LogFormat.csvlog,
    ".json": LogFormat.jsonlog,
    ".log": LogFormat.stderr,
}


def detect_format_from_filename(filename: str) -> LogFormat:
    _, ext = os.path.splitext(filename)
    return _extensions.get(ext, LogFormat.unknown)


# strftime escapes allowed in log_filename.
_strftime_re = re.compile(r"%[YmdHMSabjWyIpecn]")


def log_filename_to_glob(log_filename: str) -> str:
    """Turn ``log_filename`` setting into a glob pattern.

    >>> log_filename_to_glob("postgresql-%Y-%m-%d_%H%M%S.log")
    'postgresql-*-*-*_*.log'
    """
    pattern = _strftime_re.sub("*", log_filename)
    return re.sub(r"\*{2,}", "*", pattern)


def tailer_pattern(pattern: str, extension: str) -> str:
    # csvlog and jsonlog files are named after log_filename, with extension
    # replaced.
    if pattern.endswith(extension):
        return pattern
    if pattern.endswith(".log"):
        pattern = pattern[: -len(".log")]
    return pattern + extension


_tailers: Dict[LogFormat, Tuple[Type[Tailer], Optional[str]]] = {
    LogFormat.stderr: (StderrTailer, None),
    LogFormat.csvlog: (CSVTailer, ".csv"),
    LogFormat.jsonlog: (JSONTailer, ".json"),
}


def new_tailer(
    source: LogSource,
    store: Store,
    *,
    connection: Any = None,
    **kw: Any
) -> Tailer:
    """Instanciate the tailer matching source format.

    :param connection: a DB-API connection, required for
        :attr:`AccessMethod.pg_read_file`.
    :param kw: extra arguments of :class:`~pgdeadlock.log.tailer.Tailer`.

    Unknown format falls back to stderr.
    """
    cls, extension = _tailers.get(source.format, _tailers[LogFormat.stderr])
    pattern = source.pattern
    if extension:
        pattern = tailer_pattern(pattern, extension)

    reader: Reader
    if source.access_method is AccessMethod.pg_read_file:
        if connection is None:
            raise ValueError("pg_read_file access requires a connection")
        reader = PgReadFileReader(connection)
    else:
        reader = FilesystemReader()

    if cls is StderrTailer:
        kw.setdefault("log_line_prefix", source.log_line_prefix)
    return cls(source.directory, pattern, store, reader=reader, **kw)


def _show(cur: Any, setting: str) -> str:
    cur.execute("SHOW %s" % setting)
    (value,) = cur.fetchone()
    return value


def discover(
    connection: Any, access_method: AccessMethod = AccessMethod.filesystem
) -> Tuple[LogSource, str]:
    """Read logging configuration from a PostgreSQL connection.

    :returns: a :class:`LogSource` and current database name.
    """
    with connection.cursor() as cur:
        settings = {
            name: _show(cur, name)
            for name in (
                "logging_collector",
                "log_directory",
                "log_filename",
                "data_directory",
                "log_destination",
                "log_line_prefix",
            )
        }
        cur.execute("SELECT current_database(), pg_current_logfile()")
        dbname, current_file = cur.fetchone()

    directory = settings["log_directory"]
    if not os.path.isabs(directory):
        directory = os.path.join(settings["data_directory"], directory)

    source = LogSource(
        directory=directory,
        pattern=log_filename_to_glob(settings["log_filename"]),
        format=detect_format(settings["log_destination"]),
        access_method=access_method,
        enabled=settings["logging_collector"] == "on",
        current_file=current_file or "",
        log_line_prefix=settings["log_line_prefix"],
    )
    logger.debug("Discovered %r.", source)
    return source, dbname
