import socket
from contextlib import contextmanager
from typing import Any, Iterable, Iterator, List
import paramiko

from sftpool.config import (
    CONNECT_TIMEOUT, KEEPALIVE_INTERVAL, OPERATION_TIMEOUT, ConnectionConfig
)
from sftpool.errors import ChannelClosedError, ConnectError, RemoteOperationError


class SftpChannel:
    """A live SSH transport plus the SFTP client running over it.

    Every remote call goes through ``_remote_call`` so paramiko's failures come
    out as ``ChannelClosedError`` (the connection is gone or unusable) or
    ``RemoteOperationError`` (the server refused the request).
    """

    def __init__(self, client: paramiko.SSHClient, sftp: paramiko.SFTPClient):
        self.client = client
        self.sftp = sftp
        self.stale = False

    def is_active(self) -> bool:
        if self.stale:
            return False
        try:
            transport = self.client.get_transport()
            if not transport or not transport.is_active():
                return False
            channel = self.sftp.get_channel()
            return bool(channel and not channel.closed)
        except Exception:
            return False

    @contextmanager
    def _remote_call(self, action: str) -> Iterator[None]:
        try:
            yield
        except socket.timeout as exc:
            # A reply may still arrive later and desync the request stream.
            self.stale = True
            raise ChannelClosedError(f"{action}: timed out ({exc})") from exc
        except (EOFError, paramiko.SSHException) as exc:
            raise ChannelClosedError(f"{action}: {exc or 'connection lost'}") from exc
        except (OSError, paramiko.SFTPError) as exc:
            if not self.is_active():
                raise ChannelClosedError(f"{action}: {exc or 'channel closed'}") from exc
            raise RemoteOperationError(f"{action}: {exc}") from exc

    def listdir(self, path: str) -> List[str]:
        with self._remote_call(f"list {path}"):
            return self.sftp.listdir(path)

    def open(self, path: str, modes: Iterable[str]) -> Any:
        # Only read flags are accepted upstream; paramiko files are always bytes.
        with self._remote_call(f"open {path}"):
            return self.sftp.open(path, "rb")

    def stat(self, path: str) -> paramiko.SFTPAttributes:
        with self._remote_call(f"stat {path}"):
            return self.sftp.stat(path)

    def read(self, handle: Any, size: int) -> bytes:
        with self._remote_call("read"):
            return handle.read(size)

    def close_handle(self, handle: Any) -> None:
        with self._remote_call("close"):
            handle.close()

    def close(self) -> None:
        try:
            self.sftp.close()
        except Exception:
            pass
        try:
            self.client.close()
        except Exception:
            pass


def open_channel(config: ConnectionConfig) -> SftpChannel:
    client = paramiko.SSHClient()

    if config.verify_host_key:
        # paramiko rejects hosts missing from known_hosts by default.
        client.load_system_host_keys()
    else:
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

    connect_kwargs = {
        "hostname": config.host,
        "port": config.port,
        "username": config.user,
        "timeout": CONNECT_TIMEOUT,
        "allow_agent": False,
        "look_for_keys": False,
    }
    if config.password:
        connect_kwargs["password"] = config.password
    if config.key_path:
        connect_kwargs["key_filename"] = config.key_path
        if config.key_passphrase:
            connect_kwargs["passphrase"] = config.key_passphrase

    try:
        client.connect(**connect_kwargs)

        transport = client.get_transport()
        if transport:
            transport.set_keepalive(KEEPALIVE_INTERVAL)

        sftp = client.open_sftp()
        sftp.get_channel().settimeout(OPERATION_TIMEOUT)
    except (paramiko.SSHException, OSError, EOFError) as exc:
        client.close()
        raise ConnectError(f"could not connect to {config.host}:{config.port}: {exc}") from exc

    return SftpChannel(client, sftp)
