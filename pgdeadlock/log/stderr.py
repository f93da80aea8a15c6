""".. currentmodule:: pgdeadlock.log.stderr

Tail plain text logs, with ``log_destination = 'stderr'``.

Without ``log_line_prefix``, the tailer guesses identity of the victim from
``[pid] [app] [user@host]`` bracketed fields. Give the actual prefix to parse
database name and backend start too.

.. autoclass:: StderrTailer
"""

from typing import Any, Iterator, Optional

from .grammar import DeadlockBlock, PrefixParser, StderrMachine
from .tailer import Decoder, Tailer


class StderrDecoder(Decoder):
    def __init__(self, prefix_parser: Optional[PrefixParser] = None) -> None:
        self.machine = StderrMachine(prefix_parser)
        super().__init__()

    @property
    def malformed(self) -> int:
        return self.machine.malformed

    @malformed.setter
    def malformed(self, value: int) -> None:
        self.machine.malformed = value

    def feed(self, line: str) -> Iterator[DeadlockBlock]:
        block = self.machine.feed(line)
        if block is not None:
            yield block

    def finish(self) -> Iterator[DeadlockBlock]:
        block = self.machine.finish()
        if block is not None:
            yield block


class StderrTailer(Tailer):
    """Tailer of stderr log files.

    :param log_line_prefix: optional ``log_line_prefix`` setting.

    Other parameters are those of :class:`~pgdeadlock.log.tailer.Tailer`.
    """

    format = "stderr"

    def __init__(
        self, *a: Any, log_line_prefix: Optional[str] = None, **kw: Any
    ) -> None:
        super().__init__(*a, **kw)
        self.prefix_parser: Optional[PrefixParser] = None
        if log_line_prefix:
            self.prefix_parser = PrefixParser.from_configuration(log_line_prefix)

    def decoder(self) -> StderrDecoder:
        return StderrDecoder(self.prefix_parser)
