import bdb
import json
import logging
import os
import pdb
import sys
from argparse import ArgumentParser
from typing import List, MutableMapping

from .._helpers import JSONDateEncoder, Timer, strtobool
from ..store import MemoryStore
from .source import LogFormat, LogSource, new_tailer

logger = logging.getLogger(__name__)


def main(
    argv: List[str] = sys.argv[1:],
    environ: MutableMapping[str, str] = os.environ,
) -> int:
    debug = strtobool(environ.get("DEBUG", "n"))
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname).1s: %(message)s",
    )
    parser = ArgumentParser(description="Dump deadlocks found in PostgreSQL logs.")
    parser.add_argument(
        "format",
        choices=[f.value for f in LogFormat if f is not LogFormat.unknown],
        metavar="FORMAT",
        help="Log format: stderr, csvlog or jsonlog.",
    )
    parser.add_argument(
        "directory",
        metavar="DIRECTORY",
        help="Log directory.",
    )
    # Default comes from PostgreSQL default log_filename.
    parser.add_argument(
        "pattern",
        nargs="?",
        default="postgresql-*.log",
        metavar="PATTERN",
        help="Glob pattern of log files. default: %(default)s",
    )
    parser.add_argument(
        "--log-line-prefix",
        metavar="LOG_LINE_PREFIX",
        help="log_line_prefix as configured in PostgreSQL, for stderr format.",
    )
    args = parser.parse_args(argv)

    source = LogSource(
        args.directory,
        args.pattern,
        format=LogFormat(args.format),
        log_line_prefix=args.log_line_prefix,
    )
    store = MemoryStore()
    tailer = new_tailer(source, store)
    try:
        with Timer() as timer:
            tailer.scan()
        for event in store.events:
            print(json.dumps(event.as_dict(), cls=JSONDateEncoder))
        logger.info("Found %d deadlocks in %s.", len(store), timer.delta)
    except (KeyboardInterrupt, bdb.BdbQuit):  # pragma: nocover
        logger.info("Interrupted.")
        return 1
    except Exception:
        logger.exception("Unhandled error:")
        if debug:  # pragma: nocover
            pdb.post_mortem(sys.exc_info()[2])
        return 1
    return 0


if "__main__" == __name__:  # pragma: nocover
    sys.exit(main(argv=sys.argv[1:], environ=os.environ))
