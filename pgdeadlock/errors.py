from __future__ import annotations

from typing import List, Optional


class ScanError(Exception):
    """A log scan failed at a given stage.

    ``stage`` is one of ``glob``, ``open``, ``read`` or ``store``.
    """

    def __init__(self, stage: str, message: str, path: Optional[str] = None) -> None:
        self.message = message
        super().__init__(self.message)
        self.stage = stage
        self.path = path

    def __repr__(self) -> str:
        return "<%s %s: %.32s>" % (
            self.__class__.__name__,
            self.stage,
            self.message,
        )

    def __str__(self) -> str:
        if self.path:
            return "{} '{}': {}".format(self.stage, self.path, self.message)
        return "{}: {}".format(self.stage, self.message)


class StoreError(ScanError):
    """One or more events could not be persisted.

    The scan went on with other records and files. ``count`` holds the number
    of events successfully stored and ``errors`` the exceptions raised by the
    store.
    """

    def __init__(self, count: int, errors: List[Exception]) -> None:
        super().__init__(
            "store",
            "%d event(s) not stored, last error: %s" % (len(errors), errors[-1]),
        )
        self.count = count
        self.errors = errors
