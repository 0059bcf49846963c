"""Directory browsing before a session starts.

A browsing thread shows the subdirectories of the current remote path. The
user answers with a number, ``..``, a full path, or ``0``/``go``/``start`` to
launch the session in the current directory.
"""
import re
import shlex
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from sshbridge.config import LIST_DIR_LIMIT, LIST_DIR_TIMEOUT
from sshbridge.models import BrowsingSession

ACTION_START = "start"
ACTION_NAVIGATE = "navigate"
ACTION_ERROR = "error"

START_TOKENS = ("0", "go", "start")
CALLBACK_PREFIX = "browse:"

_WINDOWS_ABSOLUTE = re.compile(r"^[A-Za-z]:[\\/]?")
_INTEGER = re.compile(r"^[+-]?\d+$")


@dataclass(frozen=True)
class BrowsingAction:
    kind: str
    path: Optional[str] = None
    message: str = ""

    @classmethod
    def start(cls) -> "BrowsingAction":
        return cls(ACTION_START)

    @classmethod
    def navigate(cls, path: str) -> "BrowsingAction":
        return cls(ACTION_NAVIGATE, path=path)

    @classmethod
    def error(cls, message: str) -> "BrowsingAction":
        return cls(ACTION_ERROR, message=message)


def is_absolute(path: str) -> bool:
    return path.startswith("/") or path.startswith("~") or bool(_WINDOWS_ABSOLUTE.match(path))


def _separator(path: str) -> str:
    return "\\" if "\\" in path or _WINDOWS_ABSOLUTE.match(path) else "/"


def join_path(base: str, name: str) -> str:
    sep = _separator(base)
    name = name.rstrip("/\\")
    if base.endswith(("/", "\\")):
        return base + name
    return f"{base}{sep}{name}"


def parent_path(path: str) -> Optional[str]:
    """Return the parent of ``path``, or None for a root-like path."""
    sep = _separator(path)
    trimmed = path.rstrip("/\\") or path
    if trimmed in ("~", "/") or _WINDOWS_ABSOLUTE.fullmatch(trimmed + sep):
        return None
    segments = [part for part in re.split(r"[\\/]", trimmed) if part]
    if len(segments) <= 1:
        # "/etc" has "/" as its parent; "proj" or "C:" have none.
        if trimmed.startswith("/") and segments:
            return "/"
        return None
    head, _, _ = trimmed.rpartition(sep)
    if not head:
        return "/"
    if _WINDOWS_ABSOLUTE.fullmatch(head):
        return head + sep
    return head


def parse_input(raw: str, session: BrowsingSession) -> BrowsingAction:
    token = (raw or "").strip()
    if token.lower() in START_TOKENS:
        return BrowsingAction.start()

    if token == "..":
        parent = parent_path(session.current_path)
        if parent is None:
            return BrowsingAction.error("Already at root. Type a full path or select a directory.")
        return BrowsingAction.navigate(parent)

    if is_absolute(token):
        return BrowsingAction.navigate(token)

    if _INTEGER.match(token):
        index = int(token)
        listing = session.last_dir_listing
        if 1 <= index <= len(listing):
            return BrowsingAction.navigate(join_path(session.current_path, listing[index - 1]))
        return BrowsingAction.error(
            f'Invalid selection. Enter 0-{len(listing)}, "..", or a full path.'
        )

    return BrowsingAction.error('Unrecognized input. Enter a number, "..", or a full path.')


def callback_to_input(data: str) -> Optional[str]:
    """Map an inline button payload onto the equivalent typed input."""
    if not data or not data.startswith(CALLBACK_PREFIX):
        return None
    value = data[len(CALLBACK_PREFIX):]
    if value == "start":
        return "0"
    if value == "back":
        return ".."
    if value.isdigit():
        return str(int(value) + 1)
    return None


def posix_path_arg(path: str) -> str:
    if path == "~":
        return '"$HOME"'
    if path.startswith("~/"):
        return '"$HOME"/' + shlex.quote(path[2:])
    return shlex.quote(path)


def build_list_command(path: str, windows: bool = False, limit: int = LIST_DIR_LIMIT) -> str:
    if windows:
        escaped = path.replace("'", "''")
        return (
            f"powershell -NoProfile -Command \"Get-ChildItem -Directory -Path '{escaped}' "
            f"-ErrorAction SilentlyContinue | Select-Object -First {limit} -ExpandProperty Name\""
        )
    return f"ls -1 -p {posix_path_arg(path)} 2>/dev/null | grep '/$' | head -{limit}"


def parse_listing(stdout: str) -> List[str]:
    dirs = []
    for line in (stdout or "").splitlines():
        name = line.strip().rstrip("/\\")
        if name:
            dirs.append(name)
    return dirs


def list_remote_directory(ssh: Any, target: str, path: str) -> Tuple[List[str], Optional[str]]:
    """List subdirectories of ``path`` on ``target``; returns ``(dirs, error)``."""
    try:
        command = build_list_command(path, windows=ssh.is_windows(target))
        result = ssh.exec(target, command, timeout=LIST_DIR_TIMEOUT)
    except Exception as exc:
        return [], str(exc)
    if not result.get("success"):
        return [], result.get("error") or result.get("stderr") or "listing failed"
    return parse_listing(result.get("stdout", "")), None


def format_directory_listing(path: str, dirs: List[str]) -> str:
    lines = [f"📂 {path}", ""]
    if dirs:
        lines.extend(f"{i}. 📁 {name}" for i, name in enumerate(dirs, 1))
    else:
        lines.append("(no subdirectories)")
    lines.append("")
    lines.append("Use buttons below, or type a full path")
    return "\n".join(lines)


def build_browsing_keyboard(dirs: List[str], columns: int = 2) -> Dict[str, Any]:
    rows: List[List[Dict[str, str]]] = [[
        {"text": "▶️ Start here", "callback_data": f"{CALLBACK_PREFIX}start"},
        {"text": "⬆️ Up", "callback_data": f"{CALLBACK_PREFIX}back"},
    ]]
    row: List[Dict[str, str]] = []
    for index, name in enumerate(dirs):
        label = name if len(name) <= 24 else name[:21] + "..."
        row.append({"text": f"📁 {label}", "callback_data": f"{CALLBACK_PREFIX}{index}"})
        if len(row) == columns:
            rows.append(row)
            row = []
    if row:
        rows.append(row)
    return {"inline_keyboard": rows}
