import threading

from test_tailer import STDERR_LOG, csv_lines


def make_monitor(tmp_path, store=None, **kw):
    from pgdeadlock.log import LogSource
    from pgdeadlock.monitor import DeadlockMonitor
    from pgdeadlock.store import MemoryStore

    source = LogSource(str(tmp_path), "*.log")
    store = store if store is not None else MemoryStore()
    return DeadlockMonitor(source, store, **kw), store


def test_scan_once(tmp_path):
    log = tmp_path / "postgresql.log"
    log.write_text(STDERR_LOG)
    monitor, store = make_monitor(tmp_path, database_name="app")
    assert monitor.enabled
    assert "LogSource" in repr(monitor)

    monitor.set_instance_name("main")
    progress = []
    assert 2 == monitor.scan_once(progress=lambda *a: progress.append(a))
    assert [(1, 1)] == progress
    assert ["main", "main"] == [e.instance_name for e in store.events]
    assert ["app", "app"] == [e.database_name for e in store.events]
    saved = store.get_checkpoints(monitor.tailer.key)
    assert {str(log): log.stat().st_size} == saved

    # A new monitor resumes from saved checkpoints.
    other, _ = make_monitor(tmp_path, store=store)
    assert saved == other.tailer.get_checkpoints()
    assert 0 == other.scan_once()

    other.reset_checkpoints()
    assert {} == store.get_checkpoints(other.tailer.key)
    assert 2 == other.scan_once()
    assert 4 == len(store)


def test_disabled(tmp_path, mocker):
    from pgdeadlock.log import LogSource
    from pgdeadlock.monitor import DeadlockMonitor
    from pgdeadlock.store import MemoryStore

    cache = mocker.Mock(name="session_cache")
    source = LogSource(str(tmp_path), "*.log", enabled=False)
    monitor = DeadlockMonitor(source, MemoryStore(), session_cache=cache)
    assert not monitor.enabled
    assert 0 == monitor.scan_once()
    monitor.set_instance_name("main")
    monitor.reset_checkpoints()
    monitor.run(threading.Event(), interval=0)
    assert not cache.start.called


def test_follow_format(tmp_path, mocker):
    from pgdeadlock.log import CSVTailer, LogFormat, LogSource

    (tmp_path / "postgresql.csv").write_text(csv_lines())
    discover = mocker.patch(
        "pgdeadlock.monitor.discover",
        return_value=(LogSource(str(tmp_path), "*.log", format=LogFormat.csvlog), "app"),
    )
    monitor, store = make_monitor(tmp_path, connection=mocker.Mock())
    assert 2 == monitor.scan_once()
    assert isinstance(monitor.tailer, CSVTailer)
    assert LogFormat.csvlog is monitor.source.format
    discover.assert_called_once_with(monitor.connection, monitor.source.access_method)

    tailer = monitor.tailer
    assert 0 == monitor.scan_once()
    assert tailer is monitor.tailer

    # Configuration errors keep current tailer.
    discover.side_effect = Exception("connection lost")
    assert 0 == monitor.scan_once()
    assert tailer is monitor.tailer


def test_checkpoint_save_failure(tmp_path, mocker, caplog):
    from pgdeadlock.store import MemoryStore

    (tmp_path / "postgresql.log").write_text(STDERR_LOG)
    store = MemoryStore()
    mocker.patch.object(store, "set_checkpoints", side_effect=Exception("locked"))
    monitor, _ = make_monitor(tmp_path, store=store)
    assert 2 == monitor.scan_once()
    assert "Failed to save checkpoints: locked" in caplog.text


def test_run(tmp_path, mocker, caplog):
    import logging

    from pgdeadlock.errors import ScanError

    (tmp_path / "postgresql.log").write_text(STDERR_LOG)
    cache = mocker.Mock(name="session_cache")
    cache.get.return_value = None
    monitor, store = make_monitor(tmp_path, session_cache=cache)

    stop = threading.Event()
    scan_once = mocker.patch.object(
        monitor, "scan_once", side_effect=[ScanError("glob", "denied"), 0, 2]
    )
    wait = mocker.patch.object(stop, "wait", side_effect=[False, False, True])

    with caplog.at_level(logging.INFO, logger="pgdeadlock.monitor"):
        monitor.run(stop, interval=0.01)

    assert 3 == scan_once.call_count
    scan_once.assert_called_with(cancel=stop)
    assert 3 == wait.call_count
    cache.start.assert_called_once_with()
    cache.stop.assert_called_once_with()
    assert "Deadlock scan failed: glob: denied" in caplog.text
    assert "Found 2 new deadlock(s)." in caplog.text


def test_from_connection(mocker):
    from pgdeadlock.log import LogSource
    from pgdeadlock.monitor import DeadlockMonitor
    from pgdeadlock.session import SessionCache
    from pgdeadlock.store import MemoryStore

    conn = mocker.Mock(name="connection")
    connect = mocker.Mock(return_value=conn)
    mocker.patch(
        "pgdeadlock.monitor.discover",
        return_value=(LogSource("/nonexistent", "*.log", enabled=False), "app"),
    )
    monitor = DeadlockMonitor.from_connection(connect, MemoryStore())
    connect.assert_called_once_with()
    assert conn.autocommit is True
    assert monitor.connection is conn
    assert "app" == monitor.database_name
    assert isinstance(monitor.session_cache, SessionCache)
    assert not monitor.enabled
