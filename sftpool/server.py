import json
import base64
from typing import Any, Dict, Optional
from sftpool.config import DEFAULT_READ_MAX_BYTES, MAX_READ_MAX_BYTES, VERSION
from sftpool.errors import SftpoolError
from sftpool.utils import (
    log_error, clamp_int, resolve_local_path, _sha256_hex
)

def format_tool_result(result: Dict[str, Any], is_error: bool = False) -> Dict[str, Any]:
    text = json.dumps(result, ensure_ascii=False, separators=(",", ":"), default=str)
    if not is_error:
        return {"content": [{"type": "text", "text": text}]}
    return {"content": [{"type": "text", "text": text}], "isError": True}

def make_response(req_id: Any, result: Dict[str, Any], is_error: bool = False) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": req_id, "result": format_tool_result(result, is_error)}

def tools_list() -> Dict[str, Any]:
    session_param = {
        "type": "string",
        "description": "Connection name as configured. Optional when only one connection exists.",
    }
    path_param = {"type": "string", "description": "Remote path."}
    tools = [
        {
            "name": "sftp_sessions",
            "description": "List configured connections with their status (running|restarting|dead|abandoned).",
            "inputSchema": {"type": "object", "properties": {}},
        },
        {
            "name": "sftp_list",
            "description": "List the entry names of a remote directory.",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "session": session_param,
                    "path": {"type": "string", "description": "Remote directory. Default: /"},
                },
            },
        },
        {
            "name": "sftp_info",
            "description": "Return size, access and last read/write timestamps of a remote file.",
            "inputSchema": {
                "type": "object",
                "properties": {"session": session_param, "path": path_param},
                "required": ["path"],
            },
        },
        {
            "name": "sftp_read",
            "description": (
                "Read a whole remote file. Text is decoded as UTF-8 unless encoding=base64. "
                "Refuses files larger than max_bytes."
            ),
            "inputSchema": {
                "type": "object",
                "properties": {
                    "session": session_param,
                    "path": path_param,
                    "encoding": {"type": "string", "enum": ["utf-8", "base64"], "description": "Default: utf-8"},
                    "max_bytes": {"type": "number", "description": f"Default: {DEFAULT_READ_MAX_BYTES}"},
                },
                "required": ["path"],
            },
        },
        {
            "name": "sftp_download",
            "description": "Stream a remote file chunk by chunk into a local file under the project root.",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "session": session_param,
                    "path": path_param,
                    "local_path": {"type": "string", "description": "Local destination path."},
                },
                "required": ["path", "local_path"],
            },
        },
    ]
    return {"jsonrpc": "2.0", "result": {"tools": tools}}

def _session_name(args: Dict[str, Any], pool) -> Optional[str]:
    name = args.get("session")
    if name:
        return str(name)
    sessions = pool.list_sessions()["sessions"]
    if len(sessions) == 1:
        return sessions[0]["name"]
    return None

def list_dispatch(args: Dict[str, Any], pool) -> Dict[str, Any]:
    name = _session_name(args, pool)
    if not name: return {"success": False, "error": "session is required when several connections exist"}
    path = (args.get("path", "") or "").strip() or "/"
    return pool.list_dir(name, path)

def info_dispatch(args: Dict[str, Any], pool) -> Dict[str, Any]:
    name = _session_name(args, pool)
    if not name: return {"success": False, "error": "session is required when several connections exist"}
    path = (args.get("path", "") or "").strip()
    if not path: return {"success": False, "error": "path is required"}
    result = pool.file_info(name, path)
    if result.get("success"):
        result = {"success": True, "path": path, "session": name, **result["info"].to_dict()}
    return result

def _too_large(path: str, max_bytes: int, size: Optional[int] = None) -> Dict[str, Any]:
    seen = f"{size} > {max_bytes}" if size is not None else f"> {max_bytes}"
    return {"success": False, "error": f"file is larger than max_bytes ({seen}); use sftp_download", "path": path}

def _read_capped(pool, name: str, path: str, max_bytes: int) -> Optional[bytes]:
    chunks = []
    total = 0
    with pool.stream_file(name, path) as stream:
        for chunk in stream:
            total += len(chunk)
            if total > max_bytes:
                return None
            chunks.append(chunk)
    return b"".join(chunks)

def read_dispatch(args: Dict[str, Any], pool) -> Dict[str, Any]:
    name = _session_name(args, pool)
    if not name: return {"success": False, "error": "session is required when several connections exist"}
    path = (args.get("path", "") or "").strip()
    if not path: return {"success": False, "error": "path is required"}
    encoding = (args.get("encoding") or "utf-8").lower()
    if encoding not in {"utf-8", "base64"}:
        return {"success": False, "error": "encoding must be one of: utf-8, base64"}
    max_bytes = clamp_int(args.get("max_bytes", DEFAULT_READ_MAX_BYTES), DEFAULT_READ_MAX_BYTES, 1, MAX_READ_MAX_BYTES)

    info = pool.file_info(name, path)
    if info.get("success"):
        if info["info"].size > max_bytes:
            return _too_large(path, max_bytes, info["info"].size)
        payload = pool.get_full_file(name, path)
    elif info.get("kind") == "channel_closed":
        # stat never reconnects; opening the file does.
        payload = _read_capped(pool, name, path, max_bytes)
        if payload is None:
            return _too_large(path, max_bytes)
    else:
        return info

    content = base64.b64encode(payload).decode("ascii") if encoding == "base64" else payload.decode("utf-8", errors="replace")
    return {
        "success": True,
        "path": path,
        "session": name,
        "encoding": encoding,
        "size": len(payload),
        "sha256": _sha256_hex(payload),
        "content": content,
    }

def download_dispatch(args: Dict[str, Any], pool) -> Dict[str, Any]:
    name = _session_name(args, pool)
    if not name: return {"success": False, "error": "session is required when several connections exist"}
    path = (args.get("path", "") or "").strip()
    if not path: return {"success": False, "error": "path is required"}
    local_path = resolve_local_path(args.get("local_path", "") or "")
    if not local_path: return {"success": False, "error": "local_path is required and must be inside the project root"}
    return pool.download_file(name, path, local_path)

TOOLS = {
    "sftp_list": list_dispatch,
    "sftp_info": info_dispatch,
    "sftp_read": read_dispatch,
    "sftp_download": download_dispatch,
}

def handle_request(request: Dict[str, Any], pool) -> Optional[Dict[str, Any]]:
    method = request.get("method")
    params = request.get("params", {})
    req_id = request.get("id", 1)

    if method == "initialize":
        return {
            "jsonrpc": "2.0", "id": req_id,
            "result": {
                "protocolVersion": "2024-11-05",
                "capabilities": {"tools": {}},
                "serverInfo": {"name": "sftpool", "version": VERSION},
            },
        }

    if method == "notifications/initialized": return None
    if method == "tools/list":
        response = tools_list()
        response["id"] = req_id
        return response

    if method == "tools/call":
        tool_name = params.get("name")
        args = params.get("arguments", {}) or {}
        try:
            if tool_name == "sftp_sessions":
                result = pool.list_sessions()
            elif tool_name in TOOLS:
                result = TOOLS[tool_name](args, pool)
            else:
                return {"jsonrpc": "2.0", "id": req_id, "error": {"code": -32601, "message": f"Unknown tool: {tool_name}"}}
            return make_response(req_id, result, is_error=not result.get("success", False))
        except SftpoolError as exc:
            log_error(f"tool execution error ({tool_name}): {exc}")
            return make_response(req_id, {"success": False, "error": str(exc), "kind": exc.kind}, is_error=True)

    return {"jsonrpc": "2.0", "id": req_id, "error": {"code": -32601, "message": f"Unknown method: {method}"}}
