import os
import stat
import queue
import threading
from concurrent.futures import Future, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

from sftpool.channel import SftpChannel, open_channel
from sftpool.config import CHUNK_SIZE, DEFAULT_CALL_TIMEOUT, OPEN_MODES, ConnectionConfig
from sftpool.errors import (
    CallTimeout, ChannelClosedError, ConnectError, InvalidArgumentError, RemoteOperationError,
    SessionCrashed, SessionUnavailable
)
from sftpool.utils import iso_now, json_line, log_error, safe_name

ChannelFactory = Callable[[ConnectionConfig], SftpChannel]


@dataclass(frozen=True)
class ConnectionState:
    config: ConnectionConfig
    channel: SftpChannel


@dataclass(frozen=True)
class FileInfo:
    size: int
    access: str
    last_read: Optional[datetime]
    last_written: Optional[datetime]

    @classmethod
    def from_attributes(cls, attrs: Any) -> "FileInfo":
        mode = getattr(attrs, "st_mode", None) or 0
        readable = bool(mode & stat.S_IRUSR)
        writable = bool(mode & stat.S_IWUSR)
        if readable and writable:
            access = "read_write"
        elif readable:
            access = "read"
        elif writable:
            access = "write"
        else:
            access = "none"
        return cls(
            size=getattr(attrs, "st_size", None) or 0,
            access=access,
            last_read=_from_epoch(getattr(attrs, "st_atime", None)),
            last_written=_from_epoch(getattr(attrs, "st_mtime", None)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "size": self.size,
            "access": self.access,
            "last_read": self.last_read.isoformat() if self.last_read else None,
            "last_written": self.last_written.isoformat() if self.last_written else None,
        }


def _from_epoch(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


@dataclass
class _Request:
    operation: str
    handler: Callable[..., Dict[str, Any]]
    args: Tuple[Any, ...]
    future: Future = field(default_factory=Future)


class SftpSession:
    """One remote endpoint, served by one worker thread.

    Every public operation is queued on the session's mailbox and executed in
    submission order by ``_serve``; the channel is only ever touched from that
    thread. A closed channel during ``list_dir`` or ``open_file`` triggers one
    reconnect and one retry. A failed reconnect crashes the session.
    """

    def __init__(
        self,
        config: ConnectionConfig,
        channel_factory: ChannelFactory = open_channel,
        call_timeout: float = DEFAULT_CALL_TIMEOUT,
        log_dir: Optional[str] = None,
        on_exit: Optional[Callable[["SftpSession"], None]] = None,
    ):
        self.config = config
        self.name = config.name
        self.call_timeout = call_timeout
        self._channel_factory = channel_factory
        self._on_exit = on_exit

        self._state: Optional[ConnectionState] = None
        self._mailbox: "queue.Queue[Optional[_Request]]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._accepting = False
        self.lock = threading.Lock()

        self.created_at = datetime.now()
        self.is_dead = False
        self.death_reason = ""
        self.death_time: Optional[datetime] = None
        self.stopped = False
        self.reconnects = 0
        self.requests_served = 0

        self.session_log_path: Optional[str] = None
        if log_dir:
            stamp = self.created_at.strftime("%Y%m%d_%H%M%S")
            filename = f"{safe_name(self.name)}__{stamp}.log"
            self.session_log_path = os.path.join(log_dir, filename)

    def _log_session(self, event: str, payload: Optional[Dict[str, Any]] = None) -> None:
        if not self.session_log_path:
            return
        data = {"ts": iso_now(), "session": self.name, "event": event}
        if payload:
            data.update(payload)
        json_line(self.session_log_path, data)

    # ========= Lifecycle =========

    def start(self) -> None:
        try:
            self._state = self._connect()
        except ConnectError as exc:
            self._mark_dead(f"startup failed: {exc}")
            raise

        with self.lock:
            self._accepting = True
        self._thread = threading.Thread(
            target=self._serve, name=f"sftp-session-{self.name}", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        with self.lock:
            if not self._accepting:
                return
            self._accepting = False
            self.stopped = True
            self._mailbox.put(None)
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout)

    def is_alive(self) -> bool:
        with self.lock:
            return self._accepting

    def info(self) -> Dict[str, Any]:
        if self.is_dead:
            status = "dead"
        elif self.stopped:
            status = "stopped"
        elif self.is_alive():
            status = "running"
        else:
            status = "idle"
        return {
            "name": self.name,
            "host": self.config.host,
            "port": self.config.port,
            "status": status,
            "death_reason": self.death_reason if self.is_dead else "",
            "death_time": self.death_time.isoformat() if self.death_time else None,
            "reconnects": self.reconnects,
            "requests_served": self.requests_served,
            "pending": self._mailbox.qsize(),
            "created_at": self.created_at.isoformat(),
            "session_log_path": self.session_log_path,
        }

    def _connect(self) -> ConnectionState:
        try:
            channel = self._channel_factory(self.config)
        except ConnectError as exc:
            self._log_session("connect_failed", {"error": str(exc)})
            raise
        self._log_session("connected", self.config.redacted())
        return ConnectionState(config=self.config, channel=channel)

    def _reconnect(self) -> None:
        old_state, self._state = self._state, None
        if old_state is not None:
            old_state.channel.close()
        self._state = self._connect()
        self.reconnects += 1
        self._log_session("reconnected", {"reconnects": self.reconnects})

    def _mark_dead(self, reason: str) -> None:
        if self.is_dead:
            return
        self.is_dead = True
        self.death_reason = reason
        self.death_time = datetime.now()
        self._log_session("crashed", {"reason": reason})
        log_error(f"session {self.name} crashed: {reason}")

    # ========= Mailbox =========

    def _call(self, operation: str, handler: Callable[..., Dict[str, Any]], *args: Any) -> Dict[str, Any]:
        request = _Request(operation=operation, handler=handler, args=args)
        with self.lock:
            if not self._accepting:
                reason = self.death_reason or ("stopped" if self.stopped else "not started")
                raise SessionUnavailable(f"session {self.name} is not running: {reason}")
            self._mailbox.put(request)
        try:
            return request.future.result(timeout=self.call_timeout)
        except FutureTimeoutError:
            if not request.future.cancel() and operation == "open_file":
                request.future.add_done_callback(self._close_late_handle)
            raise CallTimeout(
                f"{operation} on session {self.name} timed out after {self.call_timeout}s"
            ) from None

    def _close_late_handle(self, future: Future) -> None:
        # Nobody is waiting for this handle any more. May run on either thread,
        # so the close goes through the mailbox.
        if future.cancelled() or future.exception() is not None:
            return
        result = future.result()
        if not result.get("success"):
            return
        self._log_session("late_handle_closed", {"path": result.get("path")})
        with self.lock:
            if self._accepting:
                self._mailbox.put(
                    _Request(operation="close_file", handler=self._handle_close_file, args=(result["handle"],))
                )

    def _serve(self) -> None:
        while True:
            request = self._mailbox.get()
            if request is None:
                break
            if not request.future.set_running_or_notify_cancel():
                continue
            try:
                result = request.handler(*request.args)
            except ConnectError as exc:
                self._crash(f"reconnect failed: {exc}")
                request.future.set_exception(
                    SessionCrashed(f"session {self.name} crashed during {request.operation}: {exc}")
                )
                break
            except Exception as exc:
                self._crash(f"{request.operation} raised {exc!r}")
                request.future.set_exception(
                    SessionCrashed(f"session {self.name} crashed during {request.operation}: {exc!r}")
                )
                break
            self.requests_served += 1
            request.future.set_result(result)

        if self._state is not None:
            self._state.channel.close()
            self._state = None
        if self.stopped:
            self._log_session("stopped")
        if self._on_exit:
            self._on_exit(self)

    def _crash(self, reason: str) -> None:
        with self.lock:
            self._accepting = False
        self._mark_dead(reason)
        while True:
            try:
                pending = self._mailbox.get_nowait()
            except queue.Empty:
                break
            if pending is not None and pending.future.set_running_or_notify_cancel():
                pending.future.set_exception(
                    SessionUnavailable(f"session {self.name} is not running: {reason}")
                )

    def _error(self, exc: RemoteOperationError, **context: Any) -> Dict[str, Any]:
        self._log_session("request_failed", dict(context, kind=exc.kind, error=str(exc)))
        result = {"success": False, "error": str(exc), "kind": exc.kind, "session": self.name}
        result.update(context)
        return result

    def _with_reconnect(self, remote_call: Callable[[SftpChannel], Any]) -> Any:
        try:
            if self._state.channel.stale:
                raise ChannelClosedError("channel timed out on an earlier call")
            return remote_call(self._state.channel)
        except ChannelClosedError as exc:
            self._log_session("reconnect", {"reason": str(exc)})
            self._reconnect()
        return remote_call(self._state.channel)

    # ========= Operations =========

    def list_dir(self, path: str) -> Dict[str, Any]:
        return self._call("list_dir", self._handle_list_dir, path)

    def open_file(self, path: str, modes: Iterable[str] = ("read",)) -> Dict[str, Any]:
        modes = frozenset(modes)
        unsupported = modes - OPEN_MODES
        if unsupported or "read" not in modes:
            exc = InvalidArgumentError(
                f"unsupported open mode {sorted(modes)}; allowed flags are {sorted(OPEN_MODES)} and 'read' is required"
            )
            return {"success": False, "error": str(exc), "kind": exc.kind, "session": self.name, "path": path}
        return self._call("open_file", self._handle_open_file, path, modes)

    def file_info(self, path: str) -> Dict[str, Any]:
        return self._call("file_info", self._handle_file_info, path)

    def read_chunk(self, handle: Any) -> Dict[str, Any]:
        return self._call("read_chunk", self._handle_read_chunk, handle)

    def close_file(self, handle: Any) -> Dict[str, Any]:
        return self._call("close_file", self._handle_close_file, handle)

    def _handle_list_dir(self, path: str) -> Dict[str, Any]:
        try:
            entries = self._with_reconnect(lambda channel: channel.listdir(path))
        except RemoteOperationError as exc:
            return self._error(exc, path=path)
        return {"success": True, "path": path, "entries": list(entries)}

    def _handle_open_file(self, path: str, modes: frozenset) -> Dict[str, Any]:
        try:
            handle = self._with_reconnect(lambda channel: channel.open(path, modes))
        except RemoteOperationError as exc:
            return self._error(exc, path=path)
        return {"success": True, "path": path, "handle": handle}

    def _handle_file_info(self, path: str) -> Dict[str, Any]:
        # No reconnect here, unlike list_dir/open_file.
        try:
            attrs = self._state.channel.stat(path)
        except RemoteOperationError as exc:
            return self._error(exc, path=path)
        return {"success": True, "path": path, "info": FileInfo.from_attributes(attrs)}

    def _handle_read_chunk(self, handle: Any) -> Dict[str, Any]:
        channel = self._state.channel
        try:
            data = channel.read(handle, CHUNK_SIZE)
        except RemoteOperationError as exc:
            return self._error(exc)
        if data:
            return {"success": True, "eof": False, "data": data}

        try:
            channel.close_handle(handle)
        except RemoteOperationError as exc:
            self._log_session("close_failed", {"error": str(exc)})
            log_error(f"session {self.name}: closing handle at end of file failed: {exc}")
        return {"success": True, "eof": True, "data": b""}

    def _handle_close_file(self, handle: Any) -> Dict[str, Any]:
        try:
            self._state.channel.close_handle(handle)
        except RemoteOperationError as exc:
            return self._error(exc)
        return {"success": True}
