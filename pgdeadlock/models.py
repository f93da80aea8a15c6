""".. currentmodule:: pgdeadlock.models

Objects reconstructed from PostgreSQL logs.

.. autoclass:: DeadlockEvent
.. autoclass:: DeadlockProcess
.. autoclass:: SessionState
"""

from datetime import datetime
from typing import Any, Dict, List, Optional


class DeadlockProcess:
    """One participant of a deadlock cycle.

    .. attribute:: pid

        Process ID of the backend, unique within an event.

    .. attribute:: lock_type
    .. attribute:: lock_mode

        From the ``Process X waits for MODE on TYPE`` detail line.

    .. attribute:: relation_name

        Table name, extracted from the query or from the ``CONTEXT`` message.

    .. attribute:: query

        Blocked statement as logged.

    .. attribute:: blocked_by_pid

        PID of the process holding the awaited lock, if known. This is a
        wait-for edge, it is not checked against the event's processes.

    .. attribute:: query_fingerprint

        64-bit hash of the normalized query, see
        :func:`pgdeadlock.fingerprint.fingerprint`.

    .. attribute:: username
    .. attribute:: application_name
    .. attribute:: client_addr

        Session identity, best effort depending on log format.

    .. attribute:: backend_start
    .. attribute:: xact_start

       :type: :class:`datetime.datetime`
    """

    def __init__(
        self,
        pid: int,
        query: str = "",
        lock_type: str = "",
        lock_mode: str = "",
        relation_name: str = "",
        blocked_by_pid: Optional[int] = None,
        query_fingerprint: Optional[int] = None,
        username: str = "",
        application_name: str = "",
        client_addr: str = "",
        backend_start: Optional[datetime] = None,
        xact_start: Optional[datetime] = None,
    ) -> None:
        self.pid = pid
        self.query = query
        self.lock_type = lock_type
        self.lock_mode = lock_mode
        self.relation_name = relation_name
        self.blocked_by_pid = blocked_by_pid
        self.query_fingerprint = query_fingerprint
        self.username = username
        self.application_name = application_name
        self.client_addr = client_addr
        self.backend_start = backend_start
        self.xact_start = xact_start

    def __repr__(self) -> str:
        return "<%s %d %s: %.32s>" % (
            self.__class__.__name__,
            self.pid,
            self.lock_mode or "?",
            self.query,
        )

    def __eq__(self, other: object) -> bool:
        if isinstance(other, DeadlockProcess):
            return self.as_dict() == other.as_dict()
        return NotImplemented

    def as_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


class DeadlockEvent:
    """A resolved deadlock cycle.

    .. attribute:: detected_at

       :type: :class:`datetime.datetime`

    .. attribute:: database_name
    .. attribute:: instance_name
    .. attribute:: resolved_by_pid

        PID of the victim, the backend which logged the error.

    .. attribute:: detection_time_ms

        How long the victim waited before running the deadlock check.

    .. attribute:: processes

        List of :class:`DeadlockProcess`, in log order.
    """

    def __init__(
        self,
        detected_at: datetime,
        database_name: str = "",
        instance_name: str = "",
        resolved_by_pid: Optional[int] = None,
        detection_time_ms: Optional[int] = None,
        processes: Optional[List[DeadlockProcess]] = None,
    ) -> None:
        self.detected_at = detected_at
        self.database_name = database_name
        self.instance_name = instance_name
        self.resolved_by_pid = resolved_by_pid
        self.detection_time_ms = detection_time_ms
        self.processes = processes or []

    def __repr__(self) -> str:
        return "<%s %s %s [%s]>" % (
            self.__class__.__name__,
            self.detected_at,
            self.database_name,
            ", ".join(str(p.pid) for p in self.processes),
        )

    @property
    def pids(self) -> List[int]:
        return [p.pid for p in self.processes]

    def as_dict(self) -> Dict[str, Any]:
        """Returns event fields as a :class:`dict`, processes included."""
        data = dict(self.__dict__)
        data["processes"] = [p.as_dict() for p in self.processes]
        return data


class SessionState:
    """Backend timestamps sampled from ``pg_stat_activity``."""

    __slots__ = ("pid", "backend_start", "xact_start", "captured_at")

    def __init__(
        self,
        pid: int,
        backend_start: Optional[datetime],
        xact_start: Optional[datetime],
        captured_at: datetime,
    ) -> None:
        self.pid = pid
        self.backend_start = backend_start
        self.xact_start = xact_start
        self.captured_at = captured_at

    def __repr__(self) -> str:
        return "<%s %d xact_start=%s>" % (
            self.__class__.__name__,
            self.pid,
            self.xact_start,
        )
