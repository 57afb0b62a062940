from typing import Any, Dict


class SftpoolError(Exception):
    kind = "error"


class ConfigError(SftpoolError):
    kind = "config_error"


class ConnectError(SftpoolError):
    """The channel could not be established. Fatal for the owning session."""

    kind = "connect_failed"


class RemoteOperationError(SftpoolError):
    kind = "remote_error"


class ChannelClosedError(RemoteOperationError):
    kind = "channel_closed"


class InvalidArgumentError(RemoteOperationError):
    kind = "invalid_argument"


class SessionUnavailable(SftpoolError):
    kind = "session_unavailable"


class SessionCrashed(SessionUnavailable):
    kind = "session_crashed"


class CallTimeout(SftpoolError):
    kind = "timeout"


class StreamError(SftpoolError):
    def __init__(self, message: str, kind: str = "remote_error"):
        super().__init__(message)
        self.kind = kind


_RESULT_KINDS = {
    cls.kind: cls
    for cls in (RemoteOperationError, ChannelClosedError, InvalidArgumentError)
}


def error_from_result(result: Dict[str, Any]) -> RemoteOperationError:
    """Rebuild the exception behind a failed operation result."""
    cls = _RESULT_KINDS.get(result.get("kind", ""), RemoteOperationError)
    return cls(result.get("error", "unknown error"))
