""".. currentmodule:: pgdeadlock.monitor

Periodic deadlock collection for a PostgreSQL instance.

:class:`DeadlockMonitor` ties a tailer, a store and a session cache together.
It restores checkpoints from the store, follows ``log_destination`` changes
and saves checkpoints after each scan.

.. code-block:: python

    import functools
    import threading

    import psycopg2

    monitor = DeadlockMonitor.from_connection(
        functools.partial(psycopg2.connect, dsn), MemoryStore(),
    )
    stop = threading.Event()
    monitor.run(stop, interval=30)

.. autoclass:: DeadlockMonitor
    :members:
"""

import logging
import threading
from typing import Any, Callable, Optional

from .errors import ScanError
from .log.source import LogSource, discover, new_tailer
from .log.tailer import Progress, Tailer
from .session import LockGraphFetcher, SessionCache
from .store import Store

logger = logging.getLogger(__name__)

# Seconds between two scans.
SCAN_INTERVAL = 30.0


class DeadlockMonitor:
    """Scan logs of one instance and persist deadlocks.

    :param source: where logs are. A disabled source makes a no-op monitor.
    :param store: events and checkpoints storage.
    :param connection: optional DB-API connection, used to follow
        ``log_destination`` changes and to read logs with ``pg_read_file``.
    :param session_cache: optional cache to recover transaction start.
    :param database_name: default database name of events.
    :param instance_name: stamped on events.
    """

    def __init__(
        self,
        source: LogSource,
        store: Store,
        *,
        connection: Any = None,
        session_cache: Optional[SessionCache] = None,
        database_name: str = "",
        instance_name: str = "",
    ) -> None:
        self.source = source
        self.store = store
        self.connection = connection
        self.session_cache = session_cache
        self.database_name = database_name
        self.instance_name = instance_name
        self._lock = threading.Lock()
        self.tailer: Optional[Tailer] = None
        if source.enabled:
            self.tailer = self._new_tailer()

    @classmethod
    def from_connection(
        cls, connect: Callable[[], Any], store: Store, **kw: Any
    ) -> "DeadlockMonitor":
        """Discover logs from a new connection and sample lock graph.

        :param connect: a callable returning a new DB-API connection. Called
            once for the monitor and again by the session cache sampler.
        """
        connection = connect()
        connection.autocommit = True
        source, dbname = discover(connection)
        kw.setdefault("database_name", dbname)
        kw.setdefault("session_cache", SessionCache(LockGraphFetcher(connect)))
        return cls(source, store, connection=connection, **kw)

    def __repr__(self) -> str:
        return "<%s %r>" % (self.__class__.__name__, self.source)

    @property
    def enabled(self) -> bool:
        return self.tailer is not None

    def _new_tailer(self) -> Tailer:
        tailer = new_tailer(
            self.source,
            self.store,
            connection=self.connection,
            session_cache=self.session_cache,
            database_name=self.database_name,
            instance_name=self.instance_name,
        )
        tailer.set_checkpoints(self.store.get_checkpoints(tailer.key))
        logger.debug("Tailing %r.", tailer)
        return tailer

    def _follow_format(self) -> None:
        # Switch tailer if log_destination changed since last scan.
        if self.connection is None:
            return
        try:
            source, _ = discover(self.connection, self.source.access_method)
        except Exception as e:
            logger.debug("Failed to read logging configuration: %s", e)
            return
        if source.format is not self.source.format:
            logger.info(
                "Log format changed from %s to %s.",
                self.source.format.value,
                source.format.value,
            )
            self.source.format = source.format
            self.tailer = self._new_tailer()

    def set_instance_name(self, name: str) -> None:
        with self._lock:
            self.instance_name = name
            if self.tailer:
                self.tailer.set_instance_name(name)

    def reset_checkpoints(self) -> None:
        """Forget offsets, in memory and in store."""
        with self._lock:
            if self.tailer:
                self.tailer.reset_checkpoints()
                self.store.set_checkpoints(self.tailer.key, {})

    def scan_once(
        self,
        progress: Optional[Progress] = None,
        cancel: Optional[threading.Event] = None,
    ) -> int:
        """Scan logs once and save checkpoints.

        :returns: number of events stored.
        :raises ScanError: see :meth:`pgdeadlock.log.tailer.Tailer.scan`.
        """
        with self._lock:
            if self.tailer is None:
                return 0
            self._follow_format()
            tailer = self.tailer
            try:
                return tailer.scan_with_progress(progress, cancel)
            finally:
                try:
                    self.store.set_checkpoints(tailer.key, tailer.get_checkpoints())
                except Exception as e:
                    logger.warning("Failed to save checkpoints: %s.", e)

    def run(self, stop: threading.Event, interval: float = SCAN_INTERVAL) -> None:
        """Scan logs every interval seconds, until stop is set."""
        if not self.enabled:
            logger.info("logging_collector is off, deadlock monitoring disabled.")
            return

        if self.session_cache:
            self.session_cache.start()
        try:
            while True:
                try:
                    count = self.scan_once(cancel=stop)
                except ScanError as e:
                    logger.warning("Deadlock scan failed: %s.", e)
                else:
                    if count:
                        logger.info("Found %d new deadlock(s).", count)
                if stop.wait(interval):
                    break
        finally:
            if self.session_cache:
                self.session_cache.stop()
