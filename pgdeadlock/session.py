""".. currentmodule:: pgdeadlock.session

PostgreSQL resets ``pg_stat_activity.xact_start`` as soon as a deadlock victim
is cancelled, so the transaction start of deadlocked backends is gone when the
log line shows up. :class:`SessionCache` samples the lock wait graph
continuously and remembers timestamps of both sides of each wait, for later
correlation with log events.

.. code-block:: python

    import psycopg2

    cache = SessionCache(LockGraphFetcher(lambda: psycopg2.connect(dsn)))
    cache.start()
    ...
    state = cache.get(pid)
    cache.stop()

.. autoclass:: SessionCache
    :members:
.. autoclass:: LockGraphFetcher
    :members: __call__
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from ._helpers import RWLock
from .models import SessionState

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(seconds=60)
POLL_INTERVAL = 1.0
CLEANUP_INTERVAL = 10.0

# Each pair of blocked and blocking backends, with their timestamps.
LOCK_GRAPH_QUERY = """\
SELECT DISTINCT
    blocked.pid,
    blocked_activity.backend_start,
    blocked_activity.xact_start,
    blocker.pid,
    blocker_activity.backend_start,
    blocker_activity.xact_start
FROM pg_locks blocked
JOIN pg_locks blocker ON (
    blocker.locktype = blocked.locktype
    AND blocker.database IS NOT DISTINCT FROM blocked.database
    AND blocker.relation IS NOT DISTINCT FROM blocked.relation
    AND blocker.transactionid IS NOT DISTINCT FROM blocked.transactionid
    AND blocker.pid != blocked.pid
    AND blocker.granted
    AND NOT blocked.granted
)
JOIN pg_stat_activity blocked_activity ON blocked_activity.pid = blocked.pid
JOIN pg_stat_activity blocker_activity ON blocker_activity.pid = blocker.pid
"""

LockGraphRow = Tuple[
    int, Optional[datetime], Optional[datetime], int, Optional[datetime], Optional[datetime]
]


class LockGraphFetcher:
    """Default lock graph source, querying PostgreSQL with psycopg2.

    :param connect: a callable returning a new DB-API connection, e.g.
        ``functools.partial(psycopg2.connect, dsn)``.

    The connection is opened lazily, kept across calls and reopened after a
    failure.
    """

    def __init__(self, connect: Callable[[], Any]) -> None:
        self.connect = connect
        self._conn: Any = None

    def __call__(self) -> List[LockGraphRow]:
        if self._conn is None or self._conn.closed:
            self._conn = self.connect()
            self._conn.autocommit = True
        try:
            with self._conn.cursor() as cur:
                cur.execute(LOCK_GRAPH_QUERY)
                return cur.fetchall()
        except Exception:
            self.close()
            raise

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None


class SessionCache:
    """Cache of backend timestamps for PIDs involved in lock waits.

    :param fetch: callable returning lock graph rows as produced by
        :data:`LOCK_GRAPH_QUERY`.
    :param ttl: how long a snapshot is kept after capture.
    :param poll_interval: seconds between two samples.
    :param cleanup_interval: seconds between two expiration passes.
    """

    def __init__(
        self,
        fetch: Callable[[], Iterable[Sequence[Any]]],
        *,
        ttl: timedelta = DEFAULT_TTL,
        poll_interval: float = POLL_INTERVAL,
        cleanup_interval: float = CLEANUP_INTERVAL,
    ) -> None:
        self.fetch = fetch
        self.ttl = ttl
        self.poll_interval = poll_interval
        self.cleanup_interval = cleanup_interval
        self._cache: Dict[int, SessionState] = {}
        self._lock = RWLock()
        self._state_lock = threading.Lock()
        self._stop: Optional[threading.Event] = None
        self._threads: List[threading.Thread] = []

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._cache)

    @property
    def running(self) -> bool:
        with self._state_lock:
            return self._stop is not None

    def start(self) -> None:
        """Start sampling and cleanup threads. No-op if already running."""
        with self._state_lock:
            if self._stop is not None:
                return
            self._stop = stop = threading.Event()
            self._threads = [
                threading.Thread(
                    target=self._loop,
                    args=(stop, self.poll_interval, self.capture),
                    name="pgdeadlock-session-sampler",
                    daemon=True,
                ),
                threading.Thread(
                    target=self._loop,
                    args=(stop, self.cleanup_interval, self.cleanup),
                    name="pgdeadlock-session-cleanup",
                    daemon=True,
                ),
            ]
            for thread in self._threads:
                thread.start()
        logger.debug("Session cache started.")

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop background threads. No-op if not running."""
        with self._state_lock:
            if self._stop is None:
                return
            self._stop.set()
            self._stop = None
            threads, self._threads = self._threads, []
        for thread in threads:
            if thread is not threading.current_thread():
                thread.join(timeout)
        logger.debug("Session cache stopped.")

    @staticmethod
    def _loop(stop: threading.Event, interval: float, func: Callable[[], Any]) -> None:
        while not stop.wait(interval):
            func()

    def capture(self) -> int:
        """Sample lock graph once and cache both sides of each wait.

        :returns: number of rows sampled. Fetch failures are logged and count
            as zero rows.
        """
        try:
            rows = list(self.fetch())
        except Exception as e:
            logger.debug("Failed to sample lock graph: %s", e)
            return 0

        now = datetime.now()
        with self._lock.write():
            for row in rows:
                (
                    blocked_pid,
                    blocked_backend,
                    blocked_xact,
                    blocker_pid,
                    blocker_backend,
                    blocker_xact,
                ) = row
                self._cache[blocked_pid] = SessionState(
                    blocked_pid, blocked_backend, blocked_xact, now
                )
                self._cache[blocker_pid] = SessionState(
                    blocker_pid, blocker_backend, blocker_xact, now
                )
        return len(rows)

    def cleanup(self, now: Optional[datetime] = None) -> int:
        """Drop snapshots older than ttl.

        :returns: the number of entries removed.
        """
        cutoff = (now or datetime.now()) - self.ttl
        with self._lock.write():
            expired = [
                pid for pid, state in self._cache.items() if state.captured_at < cutoff
            ]
            for pid in expired:
                del self._cache[pid]
        if expired:
            logger.debug("Expired %d session snapshot(s).", len(expired))
        return len(expired)

    def put(self, state: SessionState) -> None:
        """Insert or overwrite the snapshot of ``state.pid``."""
        with self._lock.write():
            self._cache[state.pid] = state

    def get(self, pid: int) -> Optional[SessionState]:
        """Returns the latest snapshot for pid, if any."""
        with self._lock.read():
            return self._cache.get(pid)
