import sys
import io
import json
import argparse
from sftpool.config import MAX_CALL_TIMEOUT, ConnectionConfig, config, load_connections
from sftpool.errors import ConfigError
from sftpool.utils import (
    log_error, clamp_float, make_log_dir, resolve_runtime_paths
)
from sftpool.server import handle_request

pool = None

_stdout = None


def _write_response(response: dict) -> None:
    """Write JSON-RPC response to stdout as UTF-8."""
    try:
        _stdout.write(json.dumps(response, ensure_ascii=False) + "\n")
        _stdout.flush()
    except Exception as exc:
        log_error(f"response write error: {exc}")
        try:
            _stdout.write(json.dumps(response, ensure_ascii=True) + "\n")
            _stdout.flush()
        except Exception as exc2:
            log_error(f"response write fallback error: {exc2}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="SFTP MCP server (supervised connection pool, listing, metadata, whole-file and streaming reads)"
    )
    parser.add_argument("--config", help="JSON file with the connection list (overrides SFTPOOL_CONFIG env)")
    parser.add_argument("--name", help="Name for the --host connection")
    parser.add_argument("--host", help="Add a single connection to this host")
    parser.add_argument("--port", type=int, default=22, help="Port of the --host connection")
    parser.add_argument("--user", help="Username of the --host connection")
    parser.add_argument("--password", help="Password of the --host connection")
    parser.add_argument("--key", help="Path to a private key for the --host connection")
    parser.add_argument("--passphrase", help="Passphrase for the private key")
    parser.add_argument("--verify-host", action="store_true", help="Verify the --host key against known_hosts (default: accept any host key)")
    parser.add_argument("--call-timeout", type=float, help="Seconds a caller waits for a session reply (overrides SFTPOOL_CALL_TIMEOUT env)")
    parser.add_argument("--project-root", help="Project root for downloads and local state")
    parser.add_argument("--cache-dir", help="Optional cache root override")
    return parser


def collect_connections(args: argparse.Namespace, parser: argparse.ArgumentParser):
    connections = []
    if args.config: config.CONFIG_PATH = args.config
    if config.CONFIG_PATH:
        try:
            connections.extend(load_connections(config.CONFIG_PATH))
        except ConfigError as exc:
            parser.error(str(exc))

    if args.host:
        if not args.user:
            parser.error("--user is required with --host")
        if not args.password and not args.key:
            parser.error("Either --password or --key must be provided with --host")
        connections.append(ConnectionConfig(
            host=args.host,
            port=args.port,
            user=args.user,
            password=args.password,
            name=args.name or "",
            key_path=args.key,
            key_passphrase=args.passphrase,
            verify_host_key=args.verify_host,
        ))

    if not connections:
        parser.error("No connections configured (use --config, SFTPOOL_CONFIG or --host)")
    return connections


def main() -> None:
    global pool, _stdout
    from sftpool.supervisor import SessionPool

    parser = build_parser()
    args = parser.parse_args()

    stdin = io.TextIOWrapper(sys.stdin.buffer, encoding="utf-8", errors="replace")
    _stdout = io.TextIOWrapper(sys.stdout.buffer, encoding="utf-8", line_buffering=True)

    try:
        config.load_from_env()
    except ConfigError as exc:
        parser.error(str(exc))

    if args.call_timeout: config.CALL_TIMEOUT = args.call_timeout
    config.CALL_TIMEOUT = clamp_float(config.CALL_TIMEOUT, config.CALL_TIMEOUT, 1.0, MAX_CALL_TIMEOUT)
    if args.cache_dir: config.CACHE_DIR = args.cache_dir
    config.CONNECTIONS = collect_connections(args, parser)

    runtime_paths = resolve_runtime_paths(project_root_arg=args.project_root, cache_dir_arg=args.cache_dir)
    config.PROJECT_ROOT = runtime_paths["project_root"]
    config.LOG_DIR = make_log_dir(runtime_paths["cache_root"])

    try:
        pool = SessionPool(config.CONNECTIONS, call_timeout=config.CALL_TIMEOUT, log_dir=config.LOG_DIR)
    except ValueError as exc:
        parser.error(str(exc))
    pool.start()

    log_error(
        f"SFTP pool started with {len(config.CONNECTIONS)} connection(s): "
        f"{', '.join(c.name for c in config.CONNECTIONS)}. "
        f"project_root={config.PROJECT_ROOT} logs={config.LOG_DIR}"
    )

    for line in stdin:
        line = line.strip()
        if not line:
            continue
        try:
            response = handle_request(json.loads(line), pool)
            if response is not None:
                _write_response(response)
        except json.JSONDecodeError as exc:
            log_error(f"invalid json: {exc}")
        except Exception as exc:
            log_error(f"unexpected error: {exc}")
            req_id = None
            try:
                req_id = json.loads(line).get("id")
            except (json.JSONDecodeError, AttributeError):
                pass
            _write_response({
                "jsonrpc": "2.0",
                "id": req_id,
                "error": {"code": -32603, "message": f"Internal error: {exc}"},
            })

    log_error("shutting down...")
    pool.close_all()

if __name__ == "__main__":
    main()
