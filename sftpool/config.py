import os
import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sftpool.errors import ConfigError

VERSION = "0.3.0"

# ========= Static config =========
CONNECT_TIMEOUT = 10
KEEPALIVE_INTERVAL = 30
OPERATION_TIMEOUT = 30.0
CHUNK_SIZE = 32_768

DEFAULT_CALL_TIMEOUT = 60.0
MAX_CALL_TIMEOUT = 3600.0

# Supervisor restart policy
RESTART_BACKOFF_BASE = 0.5
RESTART_BACKOFF_MAX = 60.0
MAX_RESTART_ATTEMPTS = 10
MONITOR_INTERVAL = 5.0

DEFAULT_READ_MAX_BYTES = 1_000_000
MAX_READ_MAX_BYTES = 50_000_000

OPEN_MODES = frozenset({"read", "binary"})


@dataclass(frozen=True)
class ConnectionConfig:
    host: str
    user: str
    password: Optional[str] = None
    port: int = 22
    name: str = ""
    key_path: Optional[str] = None
    key_passphrase: Optional[str] = None
    verify_host_key: bool = False

    def __post_init__(self):
        if not self.name:
            object.__setattr__(self, "name", f"{self.user}@{self.host}:{self.port}")

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "ConnectionConfig":
        if not isinstance(raw, dict):
            raise ConfigError(f"connection entry must be an object, got {type(raw).__name__}")
        host = raw.get("host")
        user = raw.get("user")
        if not host:
            raise ConfigError("connection entry is missing 'host'")
        if not user:
            raise ConfigError(f"connection entry for {host} is missing 'user'")
        try:
            port = int(raw.get("port") or 22)
        except (TypeError, ValueError):
            raise ConfigError(f"invalid port for {host}: {raw.get('port')!r}")
        return cls(
            host=str(host),
            user=str(user),
            password=raw.get("password"),
            port=port,
            name=str(raw.get("name") or ""),
            key_path=raw.get("key_path"),
            key_passphrase=raw.get("key_passphrase"),
            verify_host_key=bool(raw.get("verify_host_key", False)),
        )

    def redacted(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "auth": "key" if self.key_path else "password",
            "verify_host_key": self.verify_host_key,
        }


def load_connections(path: str) -> List[ConnectionConfig]:
    """Read the static connection list from a JSON file."""
    try:
        with open(path, "r", encoding="utf-8") as handle:
            document = json.load(handle)
    except OSError as exc:
        raise ConfigError(f"cannot read connection file {path}: {exc}")
    except json.JSONDecodeError as exc:
        raise ConfigError(f"invalid JSON in connection file {path}: {exc}")

    if isinstance(document, dict):
        document = document.get("connections")
    if not isinstance(document, list):
        raise ConfigError(f"{path} must contain a list of connections")
    return [ConnectionConfig.from_dict(entry) for entry in document]


# ========= Runtime Configuration =========
class ServerConfig:
    def __init__(self):
        self.CONFIG_PATH: Optional[str] = None
        self.CALL_TIMEOUT: float = DEFAULT_CALL_TIMEOUT
        self.CACHE_DIR: Optional[str] = None
        self.PROJECT_ROOT: str = ""
        self.LOG_DIR: Optional[str] = None
        self.CONNECTIONS: List[ConnectionConfig] = []

    def load_from_env(self):
        self.CONFIG_PATH = os.environ.get("SFTPOOL_CONFIG", self.CONFIG_PATH)
        self.CACHE_DIR = os.environ.get("SFTPOOL_CACHE_DIR", self.CACHE_DIR)
        timeout_env = os.environ.get("SFTPOOL_CALL_TIMEOUT")
        if timeout_env:
            try:
                self.CALL_TIMEOUT = float(timeout_env)
            except ValueError:
                raise ConfigError(f"SFTPOOL_CALL_TIMEOUT must be a number, got {timeout_env!r}")

# Global instance
config = ServerConfig()
