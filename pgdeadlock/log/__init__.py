"""\
.. currentmodule:: pgdeadlock.log

PostgreSQL does not keep any history of deadlocks. The only trace of a
deadlock is the report logged by the backend chosen as victim, with the
queries of each process of the cycle. :mod:`pgdeadlock.log` tails log files to
rebuild :class:`~pgdeadlock.models.DeadlockEvent` from these reports.


Formats
-------

PostgreSQL writes logs in one or more formats, according to
``log_destination`` setting. :mod:`pgdeadlock.log` reads the three of them:

- ``stderr``: plain text lines, with a prefix configured by
  ``log_line_prefix``. Multi-line queries continue on tab-indented lines.
- ``csvlog``: one CSV row per record, the report's DETAIL has its own column.
- ``jsonlog``: one JSON object per line, since PostgreSQL 15.

When several formats are enabled, prefer the richest: jsonlog, then csvlog.
See :func:`detect_format`.


Checkpoints
-----------

A tailer remembers the byte offset reached in each log file. Next scan starts
from there, so a scan only reads appended content. A file shorter than its
offset has been truncated or rotated and is read from start. Save
checkpoints with :meth:`Tailer.get_checkpoints` and restore them with
:meth:`Tailer.set_checkpoints` to resume after a restart.


Limitations
-----------

:mod:`pgdeadlock.log` does not follow files in real time. The application
schedules scans, see :class:`pgdeadlock.monitor.DeadlockMonitor`.

Deadlocks not logged by PostgreSQL, e.g. with ``log_min_messages`` above
``ERROR``, are not detected.


API Reference
-------------

.. autoclass:: Tailer
.. autoclass:: StderrTailer
.. autoclass:: CSVTailer
.. autoclass:: JSONTailer
.. autoclass:: LogSource
.. autofunction:: new_tailer
.. autofunction:: discover


Using :mod:`pgdeadlock.log` as a script
---------------------------------------

You can use this module to dump deadlocks as JSON using the following usage::

    python -m pgdeadlock.log <format> <directory> [<pattern>]

.. code:: console

    $ python -m pgdeadlock.log stderr /var/log/postgresql 'postgresql-*.log'
    {"detected_at": "2025-11-23T00:15:52.554000", "database_name": "", "instance_name": "", "resolved_by_pid": 79638, "detection_time_ms": 1001, "processes": [...]}

"""  # noqa

from .csvlog import CSVTailer
from .jsonlog import JSONTailer
from .readers import FilesystemReader, PgReadFileReader
from .source import (
    AccessMethod,
    LogFormat,
    LogSource,
    detect_format,
    detect_format_from_filename,
    discover,
    log_filename_to_glob,
    new_tailer,
)
from .stderr import StderrTailer
from .tailer import Tailer

__all__ = [
    o.__name__  # type: ignore[attr-defined]
    for o in [
        AccessMethod,
        CSVTailer,
        FilesystemReader,
        JSONTailer,
        LogFormat,
        LogSource,
        PgReadFileReader,
        StderrTailer,
        Tailer,
        detect_format,
        detect_format_from_filename,
        discover,
        log_filename_to_glob,
        new_tailer,
    ]
]
