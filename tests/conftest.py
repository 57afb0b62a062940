"""In-memory SFTP server doubles shared by the test suite."""

import threading
import time
from types import SimpleNamespace

import pytest

from sftpool.config import ConnectionConfig
from sftpool.errors import ChannelClosedError, ConnectError, RemoteOperationError
from sftpool.session import SftpSession


class FakeHandle:
    def __init__(self, path):
        self.path = path
        self.offset = 0
        self.closed = False


class FakeChannel:
    def __init__(self, remote):
        self.remote = remote
        self.closed = False
        self.stale = False
        self.handles = []

    def _enter(self, op, path=None):
        remote = self.remote
        with remote.lock:
            remote.calls.append((op, path))
            remote.active += 1
            remote.max_active = max(remote.max_active, remote.active)
        try:
            if remote.delay:
                time.sleep(remote.delay)
            if self.closed:
                raise ChannelClosedError(f"{op}: channel closed")
            if remote.drop_next.get(op, 0) > 0:
                remote.drop_next[op] -= 1
                self.closed = True
                raise ChannelClosedError(f"{op}: channel closed")
        finally:
            with remote.lock:
                remote.active -= 1

    def listdir(self, path):
        self._enter("listdir", path)
        if path not in self.remote.dirs:
            raise RemoteOperationError(f"list {path}: [Errno 2] No such file")
        return list(self.remote.dirs[path])

    def open(self, path, modes):
        self._enter("open", path)
        if path not in self.remote.files:
            raise RemoteOperationError(f"open {path}: [Errno 2] No such file")
        handle = FakeHandle(path)
        self.handles.append(handle)
        return handle

    def stat(self, path):
        self._enter("stat", path)
        if path not in self.remote.files:
            raise RemoteOperationError(f"stat {path}: [Errno 2] No such file")
        return SimpleNamespace(
            st_size=len(self.remote.files[path]),
            st_mode=0o100644,
            st_atime=1_485_353_280,
            st_mtime=1_485_353_280,
        )

    def read(self, handle, size):
        self._enter("read", handle.path)
        if handle.closed:
            raise RemoteOperationError("read: handle is closed")
        limit = self.remote.fail_read_at.get(handle.path)
        if limit is not None and handle.offset >= limit:
            raise RemoteOperationError("read: [Errno 5] Failure")
        data = self.remote.files[handle.path][handle.offset:handle.offset + size]
        handle.offset += len(data)
        return data

    def close_handle(self, handle):
        self._enter("close", handle.path)
        handle.closed = True

    def close(self):
        self.closed = True


class FakeRemote:
    """One fake SFTP server; ``factory`` plays the role of ``open_channel``."""

    def __init__(self, files=None, dirs=None):
        self.files = dict(files or {})
        self.dirs = dict(dirs or {})
        self.channels = []
        self.calls = []
        self.connects = 0
        self.refuse_connects = 0
        self.refuse_all = False
        self.drop_next = {}
        self.fail_read_at = {}
        self.delay = 0.0
        self.active = 0
        self.max_active = 0
        self.lock = threading.Lock()

    def factory(self, config):
        with self.lock:
            self.connects += 1
            if self.refuse_all or self.refuse_connects > 0:
                self.refuse_connects = max(0, self.refuse_connects - 1)
                raise ConnectError(f"could not connect to {config.host}:{config.port}: refused")
            channel = FakeChannel(self)
            self.channels.append(channel)
            return channel

    def kill(self):
        for channel in self.channels:
            channel.closed = True

    def count(self, op):
        return sum(1 for name, _ in self.calls if name == op)

    def all_handles(self):
        return [handle for channel in self.channels for handle in channel.handles]


def wait_for(predicate, timeout=5.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def conn_config():
    return ConnectionConfig(host="example.com", port=22, user="u", password="p")


@pytest.fixture
def remote():
    return FakeRemote(
        files={
            "/a.txt": bytes(range(256)) * 273 + b"\x00" * 112,  # 70000 bytes
            "/b.txt": b"hello\n",
            "/empty": b"",
        },
        dirs={"/": ["a.txt", "b.txt"]},
    )


@pytest.fixture
def session(conn_config, remote):
    s = SftpSession(conn_config, channel_factory=remote.factory, call_timeout=5.0)
    s.start()
    yield s
    s.stop(timeout=5.0)


@pytest.fixture
def make_remote():
    return FakeRemote


@pytest.fixture
def wait():
    return wait_for
