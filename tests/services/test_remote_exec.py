import io

import pytest
from websocket import WebSocketConnectionClosedException

from cnvrgctl.errors import RemoteExecutionError, TransportError
from cnvrgctl.models import ExecTarget
from cnvrgctl.services.remote_exec import RemoteCommandChannel


class DummyLogger:
    def debug(self, *_args, **_kwargs):
        return None


class FakeSession:
    def __init__(self, stdout=(), stderr=(), returncode=0, fail_on_update=None):
        self.stdout = list(stdout)
        self.stderr = list(stderr)
        self._returncode = returncode
        self.fail_on_update = fail_on_update
        self.stdin = []
        self.open = True
        self.closed = False

    def is_open(self):
        return self.open

    def update(self, timeout=0):
        if self.fail_on_update is not None:
            raise self.fail_on_update
        if not self.stdout and not self.stderr:
            self.open = False

    def peek_stdout(self):
        return bool(self.stdout)

    def read_stdout(self):
        return self.stdout.pop(0)

    def peek_stderr(self):
        return bool(self.stderr)

    def read_stderr(self):
        return self.stderr.pop(0)

    def write_stdin(self, data):
        self.stdin.append(data)

    @property
    def returncode(self):
        if isinstance(self._returncode, Exception):
            raise self._returncode
        return self._returncode

    def close(self):
        self.closed = True


class FakeCluster:
    def __init__(self, session):
        self.session = session
        self.opened = []

    def open_exec(self, target, argv, stdin=False):
        self.opened.append((target, argv, stdin))
        return self.session


TARGET = ExecTarget(namespace="cnvrg", pod_name="postgres-0")


def test_execute_collects_streams_and_exit_code():
    session = FakeSession(stdout=[b"hello ", b"world"], stderr=[b"notice"])
    channel = RemoteCommandChannel(FakeCluster(session), logger=DummyLogger())

    result = channel.execute(TARGET, ["echo", "hello world"])

    assert result.stdout == b"hello world"
    assert result.stderr_text == "notice"
    assert result.exit_code == 0
    assert session.closed is True


def test_execute_streams_stdout_to_sink_and_stdin_in_chunks(monkeypatch):
    import cnvrgctl.services.remote_exec as remote_exec_module

    monkeypatch.setattr(remote_exec_module, "EXEC_CHUNK_SIZE", 4)
    session = FakeSession(stdout=[b"abc", b"def"])
    cluster = FakeCluster(session)
    received = []

    result = RemoteCommandChannel(cluster, logger=DummyLogger()).execute(
        TARGET,
        ["cat"],
        stdin=io.BytesIO(b"0123456789"),
        stdout_sink=received.append,
    )

    assert received == [b"abc", b"def"]
    assert result.stdout == b""
    assert session.stdin == [b"0123", b"4567", b"89"]
    assert cluster.opened[0][2] is True


def test_stderr_alone_is_not_a_failure():
    session = FakeSession(stderr=[b"WARNING: something odd"], returncode=0)
    result = RemoteCommandChannel(FakeCluster(session), logger=DummyLogger()).execute(TARGET, ["true"])

    assert result.exit_code == 0


def test_non_zero_exit_raises_remote_execution_error():
    session = FakeSession(stderr=[b"pg_restore: error: input file is too short"], returncode=1)
    channel = RemoteCommandChannel(FakeCluster(session), logger=DummyLogger())

    with pytest.raises(RemoteExecutionError) as exc_info:
        channel.execute(TARGET, ["pg_restore", "dump.sql"])

    assert exc_info.value.exit_code == 1
    assert "input file is too short" in exc_info.value.stderr
    assert session.closed is True


def test_missing_exit_status_is_a_failure_unless_unchecked():
    session = FakeSession(stdout=[b"partial"], returncode=ValueError("no status"))
    channel = RemoteCommandChannel(FakeCluster(session), logger=DummyLogger())

    with pytest.raises(RemoteExecutionError, match="without an exit status"):
        channel.execute(TARGET, ["cat", "/data/dump.rdb"])

    session = FakeSession(returncode=None)
    result = RemoteCommandChannel(FakeCluster(session), logger=DummyLogger()).execute(
        TARGET, ["true"], check=False
    )
    assert result.exit_code is None


def test_dropped_stream_raises_transport_error():
    session = FakeSession(fail_on_update=WebSocketConnectionClosedException("closed"))
    channel = RemoteCommandChannel(FakeCluster(session), logger=DummyLogger())

    with pytest.raises(TransportError, match="Exec stream"):
        channel.execute(TARGET, ["cat", "/etc/hostname"])

    assert session.closed is True
