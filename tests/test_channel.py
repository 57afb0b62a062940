import errno
import socket
from unittest import mock

import paramiko
import pytest

from sftpool.channel import SftpChannel, open_channel
from sftpool.config import ConnectionConfig
from sftpool.errors import ChannelClosedError, ConnectError, RemoteOperationError


def _channel(active=True):
    client = mock.MagicMock()
    client.get_transport.return_value.is_active.return_value = active
    sftp = mock.MagicMock()
    sftp.get_channel.return_value.closed = not active
    return SftpChannel(client, sftp)


def test_listdir():
    channel = _channel()
    channel.sftp.listdir.return_value = ["a.txt", "b.txt"]

    assert channel.listdir("/") == ["a.txt", "b.txt"]
    channel.sftp.listdir.assert_called_once_with("/")


def test_open_is_binary_read():
    channel = _channel()

    channel.open("/a.txt", frozenset({"read", "binary"}))

    channel.sftp.open.assert_called_once_with("/a.txt", "rb")


def test_server_status_is_remote_error():
    channel = _channel()
    channel.sftp.listdir.side_effect = FileNotFoundError(errno.ENOENT, "No such file")

    with pytest.raises(RemoteOperationError) as excinfo:
        channel.listdir("/missing")

    assert not isinstance(excinfo.value, ChannelClosedError)


def test_sftp_failure_is_remote_error():
    channel = _channel()
    channel.sftp.stat.side_effect = paramiko.SFTPError("Failure")

    with pytest.raises(RemoteOperationError) as excinfo:
        channel.stat("/x")

    assert excinfo.value.kind == "remote_error"


@pytest.mark.parametrize("exc", [EOFError(), paramiko.SSHException("Server connection dropped: ")])
def test_lost_connection_is_channel_closed(exc):
    channel = _channel()
    channel.sftp.listdir.side_effect = exc

    with pytest.raises(ChannelClosedError):
        channel.listdir("/")


def test_socket_closed_is_channel_closed():
    channel = _channel(active=False)
    channel.sftp.open.side_effect = OSError("Socket is closed")

    with pytest.raises(ChannelClosedError):
        channel.open("/a.txt", frozenset({"read"}))


def test_timeout_marks_channel_stale():
    channel = _channel()
    handle = mock.MagicMock()
    handle.read.side_effect = socket.timeout("timed out")

    with pytest.raises(ChannelClosedError):
        channel.read(handle, 32768)

    assert channel.stale
    assert not channel.is_active()


def test_close_ignores_errors():
    channel = _channel()
    channel.sftp.close.side_effect = OSError("already closed")

    channel.close()

    channel.client.close.assert_called_once_with()


@mock.patch("sftpool.channel.paramiko.SSHClient")
def test_open_channel_accepts_unknown_hosts(client_cls):
    client = client_cls.return_value
    cfg = ConnectionConfig(host="example.com", user="u", password="p")

    channel = open_channel(cfg)

    policy = client.set_missing_host_key_policy.call_args[0][0]
    assert isinstance(policy, paramiko.AutoAddPolicy)
    client.load_system_host_keys.assert_not_called()
    kwargs = client.connect.call_args[1]
    assert kwargs["hostname"] == "example.com"
    assert kwargs["port"] == 22
    assert kwargs["username"] == "u"
    assert kwargs["password"] == "p"
    assert channel.sftp is client.open_sftp.return_value


@mock.patch("sftpool.channel.paramiko.SSHClient")
def test_open_channel_verifies_hosts_on_request(client_cls):
    client = client_cls.return_value
    cfg = ConnectionConfig(host="example.com", user="u", key_path="/k", key_passphrase="s", verify_host_key=True)

    open_channel(cfg)

    client.load_system_host_keys.assert_called_once_with()
    client.set_missing_host_key_policy.assert_not_called()
    kwargs = client.connect.call_args[1]
    assert kwargs["key_filename"] == "/k"
    assert kwargs["passphrase"] == "s"
    assert "password" not in kwargs


@mock.patch("sftpool.channel.paramiko.SSHClient")
def test_open_channel_failure(client_cls):
    client = client_cls.return_value
    client.connect.side_effect = paramiko.AuthenticationException("Authentication failed.")

    with pytest.raises(ConnectError, match="Authentication failed"):
        open_channel(ConnectionConfig(host="example.com", user="u", password="bad"))

    client.close.assert_called_once_with()
