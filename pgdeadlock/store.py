""".. currentmodule:: pgdeadlock.store

Persistence boundary. Tailers only need an object implementing
:class:`Store`; :class:`MemoryStore` is a reference implementation.

.. autoclass:: Store
    :members:
.. autoclass:: MemoryStore
"""

import threading
from typing import Dict, List, Mapping

from typing_extensions import Protocol

from .models import DeadlockEvent


class Store(Protocol):
    """Protocol of deadlock event storage."""

    def insert_event(self, event: DeadlockEvent) -> int:
        """Persist event and its processes, returns event id.

        Any exception raised is reported by the tailer as a store failure.
        """
        ...

    def get_checkpoints(self, key: str) -> Dict[str, int]:
        """Returns file offsets saved for tailer ``key``."""
        ...

    def set_checkpoints(self, key: str, checkpoints: Mapping[str, int]) -> None:
        """Save file offsets of tailer ``key``."""
        ...


class MemoryStore:
    """Keep events and checkpoints in memory.

    .. attribute:: events

        List of inserted :class:`~pgdeadlock.models.DeadlockEvent`, in insertion
        order.
    """

    def __init__(self) -> None:
        self.events: List[DeadlockEvent] = []
        self.checkpoints: Dict[str, Dict[str, int]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self.events)

    def insert_event(self, event: DeadlockEvent) -> int:
        with self._lock:
            self.events.append(event)
            return len(self.events)

    def get_checkpoints(self, key: str) -> Dict[str, int]:
        with self._lock:
            return dict(self.checkpoints.get(key, {}))

    def set_checkpoints(self, key: str, checkpoints: Mapping[str, int]) -> None:
        with self._lock:
            self.checkpoints[key] = dict(checkpoints)
