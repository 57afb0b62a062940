import os
import enum
import hashlib
from typing import Any, Dict, Iterator, Optional

from sftpool.errors import SftpoolError, StreamError, error_from_result
from sftpool.session import SftpSession
from sftpool.utils import log_error

READ_MODES = ("binary", "read")


def get_full_file(session: SftpSession, path: str) -> bytes:
    opened = session.open_file(path, READ_MODES)
    if not opened["success"]:
        raise error_from_result(opened)
    handle = opened["handle"]

    chunks = []
    while True:
        result = session.read_chunk(handle)
        if not result["success"]:
            session.close_file(handle)
            raise error_from_result(result)
        if result["eof"]:
            break
        chunks.append(result["data"])
    return b"".join(chunks)


class StreamState(enum.Enum):
    UNOPENED = "unopened"
    OPEN = "open"
    CLOSED = "closed"
    TERMINATED = "terminated"


class RemoteFileStream:
    """Lazy, forward-only iterator over the chunks of one remote file.

    The file is opened on the first ``next()`` and each further ``next()``
    reads one chunk through the session. Leaving a ``with`` block, calling
    ``close()`` or abandoning a ``for`` loop over the stream releases a handle
    that is still open.

    With ``strict`` set, an open or read failure raises ``StreamError`` so the
    consumer can tell it apart from the end of the file. Without it the
    failure is only logged and the iteration ends early.
    """

    def __init__(self, session: SftpSession, path: str, strict: bool = True):
        self.session = session
        self.path = path
        self.strict = strict
        self.state = StreamState.UNOPENED
        self.handle: Optional[Any] = None
        self.error: Optional[str] = None
        self.bytes_read = 0

    def __iter__(self) -> Iterator[bytes]:
        return self._chunks()

    def _chunks(self) -> Iterator[bytes]:
        try:
            while True:
                try:
                    chunk = next(self)
                except StopIteration:
                    return
                yield chunk
        finally:
            self.close()

    def __next__(self) -> bytes:
        if self.state is StreamState.UNOPENED:
            self._acquire()
        if self.state is not StreamState.OPEN:
            raise StopIteration

        try:
            result = self.session.read_chunk(self.handle)
        except SftpoolError:
            self.state = StreamState.TERMINATED
            self.handle = None
            raise
        if not result["success"]:
            self._release()
            self._terminate(result)
        if result["eof"]:
            self.state = StreamState.CLOSED
            self.handle = None
            raise StopIteration

        self.bytes_read += len(result["data"])
        return result["data"]

    def _acquire(self) -> None:
        try:
            opened = self.session.open_file(self.path, READ_MODES)
        except SftpoolError:
            self.state = StreamState.TERMINATED
            raise
        if not opened["success"]:
            self._terminate(opened)
        self.handle = opened["handle"]
        self.state = StreamState.OPEN

    def _terminate(self, result: Dict[str, Any]) -> None:
        self.state = StreamState.TERMINATED
        self.error = result.get("error", "unknown error")
        kind = result.get("kind", "remote_error")
        log_error(f"stream {self.session.name}:{self.path} terminated: {self.error}")
        if self.strict:
            raise StreamError(self.error, kind=kind)
        raise StopIteration

    def _release(self) -> None:
        handle, self.handle = self.handle, None
        if handle is None:
            return
        try:
            result = self.session.close_file(handle)
        except SftpoolError as exc:
            log_error(f"stream {self.session.name}:{self.path}: release failed: {exc}")
            return
        if not result["success"]:
            log_error(f"stream {self.session.name}:{self.path}: release failed: {result['error']}")

    def close(self) -> None:
        if self.state is StreamState.OPEN:
            self._release()
        if self.state in (StreamState.UNOPENED, StreamState.OPEN):
            self.state = StreamState.CLOSED

    def __enter__(self) -> "RemoteFileStream":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def stream_file(session: SftpSession, path: str, strict: bool = True) -> RemoteFileStream:
    return RemoteFileStream(session, path, strict=strict)


def download_file(session: SftpSession, path: str, local_path: str) -> Dict[str, Any]:
    parent = os.path.dirname(local_path)
    if parent:
        os.makedirs(parent, exist_ok=True)

    digest = hashlib.sha256()
    size = 0
    try:
        with stream_file(session, path) as stream, open(local_path, "wb") as handle:
            for chunk in stream:
                handle.write(chunk)
                digest.update(chunk)
                size += len(chunk)
    except SftpoolError:
        if os.path.exists(local_path):
            os.remove(local_path)
        raise

    return {
        "success": True,
        "path": path,
        "local_path": local_path,
        "size": size,
        "sha256": digest.hexdigest(),
        "session": session.name,
    }
