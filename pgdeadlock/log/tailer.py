""".. currentmodule:: pgdeadlock.log.tailer

Base of log tailers.

A tailer incrementally reads log files matching a glob pattern in a directory,
remembering byte offset of each file in *checkpoints*. Each scan reads only
what was appended since previous scan, reassembles deadlock reports and
persists them in a :class:`~pgdeadlock.store.Store`.

Format specific tailers only implement a :class:`Decoder`, turning log lines
into :class:`~pgdeadlock.log.grammar.DeadlockBlock`.

.. autoclass:: Tailer
    :members:
.. autoclass:: Decoder
    :members:
"""

import logging
import threading
from datetime import datetime
from typing import (
    IO,
    Callable,
    Dict,
    Iterator,
    List,
    Mapping,
    Optional,
    Tuple,
)

from .._helpers import Timer
from ..errors import ScanError, StoreError
from ..fingerprint import extract_relation, query_fingerprint
from ..models import DeadlockEvent
from ..session import SessionCache
from ..store import Store
from .grammar import DeadlockBlock
from .readers import BUFFER_SIZE, FilesystemReader, Reader

logger = logging.getLogger(__name__)

Progress = Callable[[int, int], None]


class Decoder:
    """Turns decoded log lines into deadlock blocks.

    .. attribute:: malformed

        Count of records which could not be decoded.
    """

    def __init__(self) -> None:
        self.malformed = 0

    def feed(self, line: str) -> Iterator[DeadlockBlock]:
        """Consume one line, yield completed blocks."""
        raise NotImplementedError

    def finish(self) -> Iterator[DeadlockBlock]:
        """Yield pending block at end of input."""
        return iter(())


class Tailer:
    """Incremental deadlock reader of a set of log files.

    :param directory: log directory.
    :param pattern: glob pattern of log files in directory.
    :param store: where to persist events.
    :param reader: access method, defaults to :class:`FilesystemReader`.
    :param session_cache: optional :class:`~pgdeadlock.session.SessionCache`
        to recover transaction start of processes.
    :param instance_name: stamped on each event.
    :param database_name: default database name for events lacking one.
    """

    #: Log format name, as in ``log_destination``.
    format = "unknown"

    def __init__(
        self,
        directory: str,
        pattern: str,
        store: Store,
        *,
        reader: Optional[Reader] = None,
        session_cache: Optional[SessionCache] = None,
        instance_name: str = "",
        database_name: str = "",
        buffer_size: int = BUFFER_SIZE,
    ) -> None:
        self.directory = directory
        self.pattern = pattern
        self.store = store
        self.reader: Reader = reader or FilesystemReader(buffer_size)
        self.session_cache = session_cache
        self.instance_name = instance_name
        self.database_name = database_name
        self._checkpoints: Dict[str, int] = {}
        self._lock = threading.Lock()
        self._scan_lock = threading.Lock()

    def __repr__(self) -> str:
        return "<%s %s/%s>" % (self.__class__.__name__, self.directory, self.pattern)

    @property
    def key(self) -> str:
        """Identifies checkpoints of this tailer in store."""
        return "%s:%s/%s" % (self.format, self.directory, self.pattern)

    def decoder(self) -> Decoder:
        raise NotImplementedError

    def set_instance_name(self, name: str) -> None:
        self.instance_name = name

    def get_checkpoints(self) -> Dict[str, int]:
        """Returns a copy of file offsets."""
        with self._lock:
            return dict(self._checkpoints)

    def set_checkpoints(self, checkpoints: Mapping[str, int]) -> None:
        """Merge offsets into current checkpoints."""
        with self._lock:
            self._checkpoints.update(checkpoints)

    def reset_checkpoints(self) -> None:
        """Forget all offsets. Next scan reads files from the beginning."""
        with self._lock:
            self._checkpoints.clear()

    def scan(self, cancel: Optional[threading.Event] = None) -> int:
        """Read new content of log files and persist deadlock events.

        :param cancel: checked between records. Once set, scan returns the
            number of events stored so far and the current file is read again
            on next scan.
        :returns: number of events stored.
        :raises ScanError: if log files can't be listed.
        :raises StoreError: if some events could not be stored. Checkpoints
            are advanced anyway.
        """
        return self.scan_with_progress(None, cancel)

    def scan_with_progress(
        self, progress: Optional[Progress], cancel: Optional[threading.Event] = None
    ) -> int:
        """Like :meth:`scan`, calling ``progress(done, total)`` after each file."""
        with self._scan_lock, Timer() as timer:
            try:
                paths = self.reader.list(self.directory, self.pattern)
            except Exception as e:
                raise ScanError("glob", str(e), path=self.directory) from e

            count = 0
            errors: List[Exception] = []
            for i, path in enumerate(paths):
                stored, complete = self._scan_file(path, errors, cancel)
                count += stored
                if not complete:
                    logger.debug("Scan of %s cancelled.", self.directory)
                    break
                if progress:
                    progress(i + 1, len(paths))

            with self._lock:
                # Forget rotated away files.
                for path in set(self._checkpoints) - set(paths):
                    del self._checkpoints[path]

        logger.debug(
            "Scanned %d %s file(s) in %s, stored %d event(s).",
            len(paths),
            self.format,
            timer.delta,
            count,
        )
        if errors:
            raise StoreError(count, errors)
        return count

    def _open(self, path: str) -> Optional[Tuple[int, IO[bytes]]]:
        offset = self.get_checkpoints().get(path, 0)
        try:
            size = self.reader.size(path)
            if size < offset:
                logger.info("%s shrunk, reading from start.", path)
                offset = 0
            return self.reader.open(path, offset)
        except Exception as e:
            logger.warning("Skipping %s: %s.", path, e)
            return None

    def _scan_file(
        self,
        path: str,
        errors: List[Exception],
        cancel: Optional[threading.Event] = None,
    ) -> Tuple[int, bool]:
        # Returns number of stored events and whether file was read entirely.
        opened = self._open(path)
        if opened is None:
            return 0, True
        offset, fo = opened
        decoder = self.decoder()
        stored = 0
        consumed = 0
        # Records the decoder choked on.
        failed = 0
        with fo:
            try:
                for raw in fo:
                    if cancel is not None and cancel.is_set():
                        return stored, False
                    consumed += len(raw)
                    line = raw.decode("utf-8", errors="replace")
                    try:
                        blocks = list(decoder.feed(line))
                    except Exception as e:
                        logger.debug("Failed to decode %.64r: %s", line, e)
                        failed += 1
                        continue
                    for block in blocks:
                        stored += self._persist(block, errors)
            except OSError as e:
                logger.warning("Failed to read %s: %s.", path, e)

        for block in decoder.finish():
            stored += self._persist(block, errors)
        malformed = decoder.malformed + failed
        if malformed:
            logger.warning("Skipped %d malformed record(s) in %s.", malformed, path)
        with self._lock:
            self._checkpoints[path] = offset + consumed
        return stored, True

    def _persist(self, block: DeadlockBlock, errors: List[Exception]) -> int:
        event = self.build_event(block)
        if event is None:
            return 0
        try:
            self.store.insert_event(event)
        except Exception as e:
            logger.debug("Failed to store %r: %s", event, e)
            errors.append(e)
            return 0
        return 1

    def build_event(self, block: DeadlockBlock) -> Optional[DeadlockEvent]:
        """Turn block into an event, enriched with session cache data.

        :returns: ``None`` for a block without processes.
        """
        if not block.processes:
            return None

        block.apply_waits()
        for process in block.processes:
            process.relation_name = extract_relation(process.query) or block.relation
            process.query_fingerprint = query_fingerprint(process.query)
            if self.session_cache is None:
                continue
            state = self.session_cache.get(process.pid)
            if state is None:
                continue
            process.xact_start = state.xact_start
            if process.backend_start is None:
                process.backend_start = state.backend_start

        return DeadlockEvent(
            detected_at=block.detected_at or datetime.now(),
            database_name=block.database_name or self.database_name,
            instance_name=self.instance_name,
            resolved_by_pid=block.resolved_by_pid,
            detection_time_ms=block.detection_time_ms,
            processes=block.processes,
        )
