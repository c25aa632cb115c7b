import io
import queue
import threading
import time
from datetime import datetime, timezone

import pytest

from raftkit.future import (
    AppendFuture,
    ConfigurationsFuture,
    DeferredFuture,
    ErrorFuture,
    LogFuture,
    RaftShutdownError,
    UserSnapshotFuture,
    VerifyFuture,
)
from raftkit.log import Log


def test_defer_future_success():
    f = DeferredFuture()
    f.respond(None)
    assert f.error() is None
    assert f.error() is None


def test_defer_future_error():
    want = ValueError("x")
    f = DeferredFuture()
    f.respond(want)
    assert f.error() is want
    assert f.error() is want


def test_defer_future_concurrent():
    want = ValueError("x")
    f = DeferredFuture()
    t = threading.Thread(target=f.respond, args=(want,))
    t.start()
    assert f.error() is want
    t.join()


def test_defer_future_only_first_response_counts():
    first = ValueError("first")
    f = DeferredFuture()
    f.respond(first)
    f.respond(ValueError("second"))
    assert f.error() is first


def test_defer_future_shutdown():
    shutdown = threading.Event()
    f = DeferredFuture(shutdown)
    threading.Timer(0.02, shutdown.set).start()
    err = f.error()
    assert isinstance(err, RaftShutdownError)
    assert f.error() is err


def test_defer_future_response_wins_over_later_shutdown():
    shutdown = threading.Event()
    f = DeferredFuture(shutdown)
    f.respond(None)
    shutdown.set()
    assert f.error() is None


def test_error_future():
    err = RuntimeError("boom")
    f = ErrorFuture(err)
    assert f.error() is err
    assert f.response() is None
    assert f.index() == 0


def test_log_future_index_and_response():
    f = LogFuture(Log(index=42, term=3))
    f.result = "applied"
    f.respond(None)
    assert f.error() is None
    assert f.index() == 42
    assert f.response() == "applied"


def test_user_snapshot_future_open_once():
    reader = io.BytesIO(b"data")
    f = UserSnapshotFuture(lambda: ("meta", reader))
    meta, got = f.open()
    assert meta == "meta"
    assert got.read() == b"data"
    with pytest.raises(RuntimeError, match="no snapshot available"):
        f.open()


def test_user_snapshot_future_without_opener():
    with pytest.raises(RuntimeError, match="no snapshot available"):
        UserSnapshotFuture().open()


def test_verify_future_notifies_at_quorum():
    notify = queue.Queue()
    f = VerifyFuture(notify, quorum_size=2)
    f.vote(True)
    assert notify.empty()
    f.vote(True)
    assert notify.get_nowait() is f
    f.vote(True)
    assert notify.empty()
    assert f.votes == 2


def test_verify_future_notifies_on_denial():
    notify = queue.Queue()
    f = VerifyFuture(notify, quorum_size=3)
    f.vote(False)
    assert notify.get_nowait() is f
    f.vote(False)
    assert notify.empty()


def test_configurations_future():
    f = ConfigurationsFuture(latest={"servers": []}, latest_index=7)
    assert f.configuration() == {"servers": []}
    assert f.index() == 7


def test_append_future_accessors():
    start = datetime(2020, 1, 1, tzinfo=timezone.utc)
    f = AppendFuture(args="req", resp="resp", start=start)
    assert f.start() == start
    assert f.request() == "req"
    assert f.response() == "resp"


def test_append_future_default_start_is_now():
    before = datetime.now(timezone.utc)
    time.sleep(0.001)
    f = AppendFuture()
    assert f.start() >= before