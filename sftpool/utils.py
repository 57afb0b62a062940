import os
import re
import sys
import json
import hashlib
from datetime import datetime
from typing import Any, Dict, Optional
from sftpool.config import config

def log_error(message: str) -> None:
    print(f"[SFTPOOL] {message}", file=sys.stderr, flush=True)

def clamp_float(value: Any, default: float, min_value: float, max_value: float) -> float:
    try:
        numeric = float(value)
    except Exception:
        numeric = default
    if numeric < min_value:
        return min_value
    if numeric > max_value:
        return max_value
    return numeric

def clamp_int(value: Any, default: int, min_value: int, max_value: int) -> int:
    try:
        numeric = int(value)
    except Exception:
        numeric = default
    if numeric < min_value:
        return min_value
    if numeric > max_value:
        return max_value
    return numeric

def iso_now() -> str:
    return datetime.now().isoformat(timespec="milliseconds")

def resolve_local_path(path: str) -> str:
    if not path:
        return ""
    expanded = os.path.expanduser(os.path.expandvars(path.strip()))
    absolute_path = os.path.abspath(expanded)

    project_root = os.path.abspath(config.PROJECT_ROOT) if config.PROJECT_ROOT else ""
    if project_root:
        common_prefix = os.path.commonpath([project_root, absolute_path])
        if common_prefix != project_root:
            log_error(f"Security: Path '{path}' resolves to '{absolute_path}' which is outside project root '{project_root}'. Access denied.")
            return ""

    return absolute_path

def safe_name(text: str) -> str:
    cleaned = re.sub(r"[^a-zA-Z0-9._-]+", "_", text.strip())
    return cleaned[:80] if cleaned else "unnamed"

def json_line(path: str, payload: Dict[str, Any]) -> None:
    try:
        with open(path, "a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")
    except Exception as exc:
        log_error(f"log write failed ({path}): {exc}")

def make_log_dir(cache_root: str) -> str:
    sessions_dir = os.path.join(cache_root, "sessions")
    os.makedirs(sessions_dir, exist_ok=True)
    return sessions_dir

def resolve_runtime_paths(
    project_root_arg: Optional[str],
    cache_dir_arg: Optional[str],
) -> Dict[str, str]:
    project_root = os.path.abspath(project_root_arg or os.getcwd())
    project_tag = safe_name(os.path.basename(project_root))
    project_hash = hashlib.sha1(project_root.encode("utf-8")).hexdigest()[:8]
    project_ns = f"{project_tag}-{project_hash}"
    cache_override = cache_dir_arg or config.CACHE_DIR
    if cache_override:
        cache_root = os.path.join(os.path.abspath(cache_override), project_ns)
    else:
        cache_root = os.path.join(project_root, ".sftpool-cache")
    return {
        "project_root": project_root,
        "project_tag": project_tag,
        "cache_root": cache_root,
    }

def _sha256_hex(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()
