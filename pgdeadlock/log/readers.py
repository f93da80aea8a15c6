""".. currentmodule:: pgdeadlock.log.readers

Access methods to log files. Tailers don't open files themselves, they use a
reader to list, stat and read log files.

.. autoclass:: FilesystemReader
.. autoclass:: PgReadFileReader
"""

import fnmatch
import glob
import io
import os.path
from typing import IO, Any, List, Tuple

from typing_extensions import Protocol

# Size of read buffer.
BUFFER_SIZE = 64 * 1024


class Reader(Protocol):
    def list(self, directory: str, pattern: str) -> List[str]:
        """Returns paths of files matching pattern, sorted.

        :raises OSError: if directory can't be listed.
        """
        ...

    def size(self, path: str) -> int:
        ...

    def open(self, path: str, offset: int) -> Tuple[int, IO[bytes]]:
        """Returns actual offset and a binary file object positionned there.

        Actual offset is zero if seeking to offset fails.
        """
        ...


class FilesystemReader:
    """Read log files from local filesystem."""

    def __init__(self, buffer_size: int = BUFFER_SIZE) -> None:
        self.buffer_size = buffer_size

    def __repr__(self) -> str:
        return "<%s>" % (self.__class__.__name__,)

    def list(self, directory: str, pattern: str) -> List[str]:
        if not os.path.isdir(directory):
            raise FileNotFoundError("%s is not a directory" % directory)
        return sorted(glob.glob(os.path.join(glob.escape(directory), pattern)))

    def size(self, path: str) -> int:
        return os.path.getsize(path)

    def open(self, path: str, offset: int) -> Tuple[int, IO[bytes]]:
        fo = open(path, "rb", buffering=self.buffer_size)
        try:
            fo.seek(offset)
        except OSError:
            fo.seek(0)
            offset = 0
        return offset, fo


class PgReadFileReader:
    """Read log files through a PostgreSQL connection.

    Requires superuser or ``pg_read_server_files`` role. Relative directory is
    resolved by PostgreSQL from ``data_directory``.

    :param connection: a DB-API connection, e.g. from :func:`psycopg2.connect`.
    """

    def __init__(self, connection: Any) -> None:
        self.connection = connection

    def __repr__(self) -> str:
        return "<%s>" % (self.__class__.__name__,)

    def _query(self, sql: str, *args: Any) -> List[Any]:
        with self.connection.cursor() as cur:
            cur.execute(sql, args)
            return cur.fetchall()

    def list(self, directory: str, pattern: str) -> List[str]:
        rows = self._query("SELECT pg_ls_dir(%s) ORDER BY 1", directory)
        return [
            os.path.join(directory, name)
            for name, in rows
            if fnmatch.fnmatchcase(name, pattern)
        ]

    def size(self, path: str) -> int:
        (size,), = self._query("SELECT size FROM pg_stat_file(%s)", path)
        return int(size)

    def open(self, path: str, offset: int) -> Tuple[int, IO[bytes]]:
        length = self.size(path) - offset
        if length <= 0:
            return offset, io.BytesIO()
        (data,), = self._query(
            "SELECT pg_read_binary_file(%s, %s, %s)", path, offset, length
        )
        return offset, io.BytesIO(bytes(data))
