import os
import re
import sys
import json
import time
import uuid
from datetime import datetime
from typing import Any, Dict, Optional

LOG_PREFIX = "[ssh-bridge]"


def log_error(message: str) -> None:
    print(f"{LOG_PREFIX} {message}", file=sys.stderr, flush=True)


def clamp_float(value: Any, default: float, min_value: float, max_value: float) -> float:
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        numeric = default
    if numeric < min_value:
        return min_value
    if numeric > max_value:
        return max_value
    return numeric


def to_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    s = str(value).lower().strip()
    if s in ("true", "1", "yes", "on"):
        return True
    if s in ("false", "0", "no", "off"):
        return False
    return default


def iso_now() -> str:
    return datetime.now().isoformat(timespec="milliseconds")


def safe_name(text: str) -> str:
    cleaned = re.sub(r"[^a-zA-Z0-9._-]+", "_", text.strip())
    return cleaned[:80] if cleaned else "unnamed"


def new_session_id() -> str:
    return f"session-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"


def preview(text: str, limit: int = 40) -> str:
    text = text or ""
    return text if len(text) <= limit else text[:limit]


def strip_bot_mention(text: str) -> str:
    # "/close@SomeBot" -> "/close"
    return re.sub(r"^(/\w+)@\w+", r"\1", text or "")


def session_title(prompt: str, max_len: int = 40) -> str:
    words = " ".join((prompt or "").split()[:6])
    return words if len(words) <= max_len else words[: max_len - 3] + "..."


def json_line(path: str, payload: Dict[str, Any]) -> None:
    try:
        with open(path, "a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")
    except OSError as exc:
        log_error(f"log write failed ({path}): {exc}")


def make_cache_dirs(cache_root: str) -> Dict[str, str]:
    sessions_dir = os.path.join(cache_root, "sessions")
    transcripts_dir = os.path.join(cache_root, "transcripts")
    tasks_dir = os.path.join(cache_root, "tasks")
    for path in (sessions_dir, transcripts_dir, tasks_dir):
        os.makedirs(path, exist_ok=True)
    return {
        "cache_root": cache_root,
        "sessions_dir": sessions_dir,
        "transcripts_dir": transcripts_dir,
        "tasks_dir": tasks_dir,
    }


def resolve_cache_root(cache_dir_arg: Optional[str]) -> str:
    if cache_dir_arg:
        return os.path.abspath(os.path.expanduser(cache_dir_arg))
    return os.path.join(os.path.abspath(os.getcwd()), ".bridge-cache")
