import time
import threading
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from sftpool.channel import open_channel
from sftpool.config import (
    DEFAULT_CALL_TIMEOUT, MAX_RESTART_ATTEMPTS, MONITOR_INTERVAL,
    RESTART_BACKOFF_BASE, RESTART_BACKOFF_MAX, ConnectionConfig
)
from sftpool.errors import ConnectError, SessionUnavailable
from sftpool.fs import RemoteFileStream, download_file, get_full_file, stream_file
from sftpool.session import ChannelFactory, SftpSession
from sftpool.utils import log_error


@dataclass
class _RestartState:
    config: ConnectionConfig
    failures: int = 0
    restarts: int = 0
    pending: bool = False
    next_attempt: float = 0.0
    gave_up: bool = False


class SessionPool:
    """Runs one SftpSession per configured endpoint and restarts crashed ones.

    Restarts are one-for-one: a crash only affects its own endpoint. Each
    restart waits ``min(backoff_base * 2**failures, backoff_max)`` seconds,
    where ``failures`` counts consecutive failed starts; after
    ``max_restarts`` of them the endpoint is left down.
    """

    def __init__(
        self,
        configs: Iterable[ConnectionConfig],
        channel_factory: ChannelFactory = open_channel,
        call_timeout: float = DEFAULT_CALL_TIMEOUT,
        log_dir: Optional[str] = None,
        backoff_base: float = RESTART_BACKOFF_BASE,
        backoff_max: float = RESTART_BACKOFF_MAX,
        max_restarts: int = MAX_RESTART_ATTEMPTS,
        check_interval: float = MONITOR_INTERVAL,
    ):
        self.channel_factory = channel_factory
        self.call_timeout = call_timeout
        self.log_dir = log_dir
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.max_restarts = max_restarts
        self.check_interval = check_interval

        self.sessions: Dict[str, SftpSession] = {}
        self._restart: Dict[str, _RestartState] = {}
        for config in configs:
            if config.name in self._restart:
                raise ValueError(f"duplicate connection name: {config.name}")
            self._restart[config.name] = _RestartState(config=config)

        self.lock = threading.Lock()
        self._wake = threading.Event()
        self._stopping = False
        self.monitor_thread: Optional[threading.Thread] = None

    def start(self) -> None:
        for name in list(self._restart):
            self._start_session(name)
        self.monitor_thread = threading.Thread(
            target=self._monitor_loop, name="sftp-pool-monitor", daemon=True
        )
        self.monitor_thread.start()

    def _backoff(self, failures: int) -> float:
        return min(self.backoff_base * (2 ** failures), self.backoff_max)

    def _start_session(self, name: str) -> bool:
        with self.lock:
            state = self._restart[name]
        session = SftpSession(
            state.config,
            channel_factory=self.channel_factory,
            call_timeout=self.call_timeout,
            log_dir=self.log_dir,
            on_exit=self._session_exited,
        )
        try:
            session.start()
        except ConnectError as exc:
            with self.lock:
                state.failures += 1
                if state.failures > self.max_restarts:
                    state.pending = False
                    state.gave_up = True
                else:
                    state.pending = True
                    state.next_attempt = time.monotonic() + self._backoff(state.failures)
                self.sessions[name] = session
            if state.gave_up:
                log_error(f"giving up on {name} after {state.failures} failed starts: {exc}")
            else:
                log_error(f"session {name} failed to start ({exc}); retry in {self._backoff(state.failures):.1f}s")
            return False

        with self.lock:
            if self._stopping:
                stale, session = session, None
            else:
                self.sessions[name] = session
                state.failures = 0
                state.pending = False
        if session is None:
            stale.stop()
            return False
        return True

    def _session_exited(self, session: SftpSession) -> None:
        if not session.is_dead:
            return
        with self.lock:
            if self._stopping:
                return
            state = self._restart.get(session.name)
            if state is None or self.sessions.get(session.name) is not session:
                return
            state.pending = True
            state.next_attempt = time.monotonic() + self._backoff(state.failures)
        log_error(f"session {session.name} exited ({session.death_reason}); scheduling restart")
        self._wake.set()

    def _next_wait(self) -> float:
        now = time.monotonic()
        with self.lock:
            upcoming = [state.next_attempt for state in self._restart.values() if state.pending]
        if not upcoming:
            return self.check_interval
        return max(0.0, min(min(upcoming) - now, self.check_interval))

    def _monitor_loop(self) -> None:
        while not self._stopping:
            self._wake.wait(self._next_wait())
            self._wake.clear()
            if self._stopping:
                break
            self._restart_due()

    def _restart_due(self) -> None:
        now = time.monotonic()
        with self.lock:
            due = [name for name, state in self._restart.items() if state.pending and state.next_attempt <= now]
        for name in due:
            if self._stopping:
                return
            with self.lock:
                self._restart[name].restarts += 1
            self._start_session(name)

    def get_session(self, name: str) -> Optional[SftpSession]:
        with self.lock:
            return self.sessions.get(name)

    def require_session(self, name: str) -> SftpSession:
        session = self.get_session(name)
        if session is None:
            if name not in self._restart:
                raise SessionUnavailable(f"unknown session: {name}")
            raise SessionUnavailable(f"session {name} is not running")
        return session

    def list_sessions(self) -> Dict[str, Any]:
        with self.lock:
            names = sorted(self._restart)
            rows: List[Dict[str, Any]] = []
            for name in names:
                state = self._restart[name]
                session = self.sessions.get(name)
                row = session.info() if session else {"name": name, "status": "idle"}
                if state.gave_up:
                    row["status"] = "abandoned"
                elif state.pending:
                    row["status"] = "restarting"
                row["restarts"] = state.restarts
                row["failed_starts"] = state.failures
                rows.append(row)
        return {"success": True, "sessions": rows, "total": len(rows)}

    # ========= Operation table =========

    def list_dir(self, name: str, path: str) -> Dict[str, Any]:
        return self.require_session(name).list_dir(path)

    def open_file(self, name: str, path: str, modes: Iterable[str] = ("read",)) -> Dict[str, Any]:
        return self.require_session(name).open_file(path, modes)

    def file_info(self, name: str, path: str) -> Dict[str, Any]:
        return self.require_session(name).file_info(path)

    def get_full_file(self, name: str, path: str) -> bytes:
        return get_full_file(self.require_session(name), path)

    def stream_file(self, name: str, path: str, strict: bool = True) -> RemoteFileStream:
        return stream_file(self.require_session(name), path, strict=strict)

    def download_file(self, name: str, path: str, local_path: str) -> Dict[str, Any]:
        return download_file(self.require_session(name), path, local_path)

    def close_all(self) -> None:
        with self.lock:
            self._stopping = True
            sessions = list(self.sessions.values())
            self.sessions.clear()
        self._wake.set()
        for session in sessions:
            session.stop()
        if self.monitor_thread and self.monitor_thread is not threading.current_thread():
            self.monitor_thread.join(self.check_interval)
