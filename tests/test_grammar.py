from datetime import datetime

import pytest

DEADLOCK = """\
2025-11-23 00:15:51.553 PST [79638] [psql] LOG:  process 79638 detected deadlock while waiting for ShareLock on transaction 4370 after 1001.189 ms
2025-11-23 00:15:51.553 PST [79638] [psql] DETAIL:  Process holding the lock: 79640. Wait queue: .
2025-11-23 00:15:52.554 PST [79638] [psql] ERROR:  deadlock detected
2025-11-23 00:15:52.554 PST [79638] [psql] DETAIL:  Process 79638 waits for ShareLock on transaction 4370; blocked by process 79640.
\tProcess 79640 waits for ShareLock on transaction 4369; blocked by process 79638.
\tProcess 79638: UPDATE accounts
\t  SET balance = balance - 10
\t  WHERE id = 1;
\tProcess 79640: UPDATE accounts SET balance = balance + 10 WHERE id = 2;
2025-11-23 00:15:52.554 PST [79638] [psql] HINT:  See server log for query details.
2025-11-23 00:15:52.554 PST [79638] [psql] CONTEXT:  while updating tuple (0,1) in relation "accounts"
2025-11-23 00:15:52.554 PST [79638] [psql] STATEMENT:  UPDATE accounts SET balance = balance - 10 WHERE id = 1;
2025-11-23 00:15:53.000 PST [79700] [psql] LOG:  duration: 0.223 ms  statement: SELECT 1;
"""  # noqa


def test_parse_log_timestamp():
    from pgdeadlock.log.grammar import parse_log_timestamp

    assert parse_log_timestamp("2025-11-23 00:15:52.554 PST") == datetime(
        2025, 11, 23, 0, 15, 52, 554000
    )
    assert parse_log_timestamp("2025-11-23 00:15:52 UTC") == datetime(
        2025, 11, 23, 0, 15, 52
    )
    assert parse_log_timestamp("2025-11-23 00:15:52.123456+01") == datetime(
        2025, 11, 23, 0, 15, 52, 123456
    )
    assert parse_log_timestamp("") is None
    assert parse_log_timestamp("PST 2025-11-23") is None


def test_parse_epoch():
    from pgdeadlock.log.grammar import parse_epoch

    assert parse_epoch("1529072152.332") == datetime(2018, 6, 15, 14, 15, 52, 332000)


def test_detection_time():
    from pgdeadlock.log.grammar import parse_detection_time

    assert 1001 == parse_detection_time(
        "process 1 detected deadlock while waiting for ShareLock on "
        "transaction 4370 after 1001.189 ms"
    )
    assert parse_detection_time("deadlock detected") is None


def test_normalize_client_addr():
    from pgdeadlock.log.grammar import normalize_client_addr

    assert "local" == normalize_client_addr("")
    assert "local" == normalize_client_addr("[local]")
    assert "10.0.0.1" == normalize_client_addr("10.0.0.1")


@pytest.mark.parametrize(
    "line,lock_type",
    [
        (
            "Process 1 waits for ShareLock on transaction 4370; "
            "blocked by process 2.",
            "transaction",
        ),
        (
            "Process 1 waits for AccessExclusiveLock on relation 16385 of "
            "database 16384; blocked by process 2.",
            "relation",
        ),
        (
            "Process 1 waits for ExclusiveLock on tuple (0,5) of relation 16385 "
            "of database 16384; blocked by process 2.",
            "tuple",
        ),
        (
            "Process 1 waits for ExclusiveLock on advisory lock [16384,1,0,1]; "
            "blocked by process 2.",
            "advisory lock",
        ),
    ],
)
def test_wait(line, lock_type):
    from pgdeadlock.log.grammar import Wait

    wait = Wait.parse(line)
    assert wait
    assert 1 == wait.pid
    assert 2 == wait.blocked_by_pid
    assert lock_type == wait.lock_type
    assert wait.lock_mode.endswith("Lock")

    assert Wait.parse("Process 1: UPDATE t SET x = 1") is None


def test_classify():
    from pgdeadlock.log.grammar import LineKind, classify

    lines = DEADLOCK.splitlines(True)
    kinds = [classify(line)[0] for line in lines]
    assert kinds == [
        LineKind.detection,
        LineKind.attached,
        LineKind.deadlock,
        LineKind.wait,
        LineKind.wait,
        LineKind.process,
        LineKind.continuation,
        LineKind.continuation,
        LineKind.process,
        LineKind.attached,
        LineKind.context,
        LineKind.attached,
        LineKind.record,
    ]

    assert (LineKind.blank, None) == classify("\n")
    assert (LineKind.unknown, None) == classify("garbage\n")
    assert (LineKind.process, (79638, "UPDATE t;")) == classify(
        "\tProcess 79638: UPDATE t;\n"
    )
    assert (LineKind.context, "orders") == classify(
        "2025-11-23 00:15:52.554 PST [1] CONTEXT:  while locking tuple (0,1) "
        'in relation "orders"\n'
    )
    assert (LineKind.attached, "CONTEXT") == classify(
        "2025-11-23 00:15:52.554 PST [1] CONTEXT:  SQL function \"f\"\n"
    )


def test_machine():
    from pgdeadlock.log.grammar import State, StderrMachine

    machine = StderrMachine()
    blocks = []
    for line in DEADLOCK.splitlines(True):
        block = machine.feed(line)
        if block:
            blocks.append(block)
        if "ERROR" in line:
            assert machine.state is State.collecting
    assert machine.state is State.idle
    assert machine.finish() is None

    (block,) = blocks
    assert "<DeadlockBlock" in repr(block)
    assert datetime(2025, 11, 23, 0, 15, 52, 554000) == block.detected_at
    assert 79638 == block.resolved_by_pid
    assert 1001 == block.detection_time_ms
    assert "psql" == block.application_name
    assert "" == block.username
    assert "accounts" == block.relation
    assert [79638, 79640] == [p.pid for p in block.processes]
    assert (
        "UPDATE accounts\n  SET balance = balance - 10\n  WHERE id = 1;"
        == block.processes[0].query
    )
    assert [79638, 79640] == sorted(block.waits)

    block.apply_waits()
    first, second = block.processes
    assert "ShareLock" == first.lock_mode
    assert "transaction" == first.lock_type
    assert 79640 == first.blocked_by_pid
    assert 79638 == second.blocked_by_pid


def test_machine_end_of_input():
    from pgdeadlock.log.grammar import StderrMachine

    machine = StderrMachine()
    # Stop right after the last process.
    for line in DEADLOCK.splitlines(True)[2:9]:
        assert machine.feed(line) is None

    block = machine.finish()
    assert block
    assert 2 == len(block.processes)
    assert machine.finish() is None


def test_machine_consecutive_deadlocks():
    from pgdeadlock.log.grammar import StderrMachine

    lines = DEADLOCK.splitlines(True)
    lines = lines[:9] + lines[2:9]
    machine = StderrMachine()
    blocks = [b for b in map(machine.feed, lines) if b]
    blocks.append(machine.finish())
    assert 2 == len(blocks)
    # Detection time is consumed by the first report.
    assert 1001 == blocks[0].detection_time_ms
    assert blocks[1].detection_time_ms is None


def test_machine_malformed():
    from pgdeadlock.log.grammar import StderrMachine

    lines = DEADLOCK.splitlines(True)
    lines.insert(9, "garbage without severity\n")
    machine = StderrMachine()
    blocks = [b for b in map(machine.feed, lines) if b]
    assert 1 == machine.malformed
    (block,) = blocks
    assert 2 == len(block.processes)
    # Report ended at garbage line, before CONTEXT.
    assert "" == block.relation


def test_machine_without_process():
    from pgdeadlock.log.grammar import StderrMachine

    lines = [
        "2025-11-23 00:15:52.554 PST [79638] ERROR:  deadlock detected\n",
        "2025-11-23 00:15:52.554 PST [79638] DETAIL:  Process 79638 waits for "
        "ShareLock on transaction 4370; blocked by process 79640.\n",
        "2025-11-23 00:15:53.000 PST [79700] LOG:  checkpoint starting: time\n",
    ]
    machine = StderrMachine()
    assert [None, None, None] == [machine.feed(line) for line in lines]
    assert machine.finish() is None


def test_stderr_prefix_guess():
    from pgdeadlock.log.grammar import parse_stderr_prefix

    info = parse_stderr_prefix(
        "2025-11-23 00:15:52.554 PST [79638] [myapp] [bob@[local]] "
        "ERROR:  deadlock detected"
    )
    assert 79638 == info["pid"]
    assert "myapp" == info["application_name"]
    assert "bob" == info["username"]
    assert "local" == info["client_addr"]

    info = parse_stderr_prefix(
        "2025-11-23 00:15:52.554 PST [79638] [myapp] [bob@10.0.0.3] "
        "ERROR:  deadlock detected"
    )
    assert "10.0.0.3" == info["client_addr"]

    info = parse_stderr_prefix("ERROR:  deadlock detected")
    assert info["pid"] is None
    assert info["timestamp"] is None


def test_prefix_parser():
    from pgdeadlock.log.grammar import PrefixParser, parse_stderr_prefix

    parser = PrefixParser.from_configuration("%m [%p] %q%u@%d ")
    assert "%m [%p]" in repr(parser)

    fields = parser.parse("2025-11-23 00:15:52.554 PST [79638] bob@app ")
    assert 79638 == fields["pid"]
    assert "bob" == fields["user"]
    assert "app" == fields["database"]
    assert datetime(2025, 11, 23, 0, 15, 52, 554000) == fields["timestamp"]

    with pytest.raises(ValueError):
        parser.parse("[79638] bob@app ")

    info = parse_stderr_prefix(
        "2025-11-23 00:15:52.554 PST [79638] bob@app ERROR:  deadlock detected",
        parser,
    )
    assert "app" == info["database_name"]
    assert "bob" == info["username"]
    assert "" == info["client_addr"]

    parser = PrefixParser.from_configuration(
        "%t [%p]: user=%u,db=%d,app=%a,client=%h,start=%s "
    )
    info = parse_stderr_prefix(
        "2025-11-23 00:15:52 UTC [79638]: user=bob,db=app,app=[unknown],"
        "client=[local],start=2025-11-23 00:10:00 UTC ERROR:  deadlock detected",
        parser,
    )
    assert "local" == info["client_addr"]
    assert "" == info["application_name"]
    assert datetime(2025, 11, 23, 0, 10) == info["backend_start"]

    # Fallback to guess when prefix does not match.
    info = parse_stderr_prefix(
        "2025-11-23 00:15:52.554 PST [79638] [psql] ERROR:  deadlock detected",
        PrefixParser.from_configuration("%n pid=%p "),
    )
    assert 79638 == info["pid"]
    assert "psql" == info["application_name"]


def test_machine_with_prefix():
    from pgdeadlock.log.grammar import PrefixParser, StderrMachine

    lines = """\
2025-11-23 00:15:52.554 UTC [79638] bob@app ERROR:  deadlock detected
2025-11-23 00:15:52.554 UTC [79638] bob@app DETAIL:  Process 79638 waits for ShareLock on transaction 4370; blocked by process 79640.
\tProcess 79640 waits for ShareLock on transaction 4369; blocked by process 79638.
\tProcess 79638: UPDATE accounts SET balance = 0 WHERE id = 1
\tProcess 79640: UPDATE accounts SET balance = 0 WHERE id = 2
""".splitlines(True)  # noqa
    machine = StderrMachine(PrefixParser.from_configuration("%m [%p] %q%u@%d "))
    for line in lines:
        assert machine.feed(line) is None
    block = machine.finish()
    assert "app" == block.database_name
    assert "bob" == block.processes[1].username


def test_block_detail_text():
    from pgdeadlock.log.grammar import DeadlockBlock

    block = DeadlockBlock()
    block.feed_detail_text(
        "Process 1 waits for ShareLock on transaction 10; blocked by process 2.\n"
        "Process 2 waits for ShareLock on transaction 11; blocked by process 1.\n"
        "Process 1: UPDATE t\n"
        "  SET x = 1\n"
        "\n"
        "Process 2: DELETE FROM t WHERE id = 2"
    )
    assert [1, 2] == [p.pid for p in block.processes]
    assert "UPDATE t\n  SET x = 1" == block.processes[0].query
    assert "DELETE FROM t WHERE id = 2" == block.processes[1].query

    block.set_context("while deleting tuple (0,2) in relation \"t\"")
    assert "t" == block.relation
    block.set_context("SQL statement")
    assert "t" == block.relation


def test_build_block():
    from pgdeadlock.log.grammar import build_block

    block = build_block(
        dict(
            timestamp="2025-11-23 00:15:52.554 PST",
            pid=79638,
            dbname="app",
            user="bob",
            application_name="psql",
            remote_host="[local]",
            session_start="2025-11-23 00:10:00 PST",
            detail="Process 79638: SELECT 1\nProcess 79640: SELECT 2",
            context='while locking tuple (0,1) in relation "orders"',
        ),
        detection_time_ms=12,
    )
    assert 79638 == block.resolved_by_pid
    assert 12 == block.detection_time_ms
    assert "local" == block.client_addr
    assert datetime(2025, 11, 23, 0, 10) == block.backend_start
    assert "orders" == block.relation
    assert "bob" == block.processes[0].username
    assert datetime(2025, 11, 23, 0, 10) == block.processes[1].backend_start


def test_prefix_parser_all_fields():
    import re

    from pgdeadlock.log.grammar import PrefixParser

    prefix_fmt = "%m [%p]: [%l-1] app=%a,db=%d,client=%h,user=%u,remote=%r,epoch=%n,timestamp=%t,tag=%i,error=%e,session=%c,start=%s,vxid=%v,xid=%x "  # noqa
    prefix = "2018-06-15 14:15:52.332 UTC [10011]: [2-1] app=[unknown],db=postgres,client=[local],user=postgres,remote=[local],epoch=1529072152.332,timestamp=2018-06-15 14:15:52 UTC,tag=authentication,error=00000,session=5b23ca18.271b,start=2018-06-15 14:15:52 UTC,vxid=3/7,xid=0 "  # noqa

    # Ensure each pattern matches.
    for pat in PrefixParser._status_pat.values():
        assert re.search(pat, prefix)

    parser = PrefixParser.from_configuration(prefix_fmt)
    fields = parser.parse(prefix)
    assert 10011 == fields["pid"]
    assert 2 == fields["line_num"]
    assert "postgres" == fields["database"]
    assert "[local]" == fields["remote_host"]
    assert "authentication" == fields["command_tag"]
    assert datetime(2018, 6, 15, 14, 15, 52) == fields["timestamp"]
    assert datetime(2018, 6, 15, 14, 15, 52) == fields["start"]
    assert 0 == fields["xid"]
