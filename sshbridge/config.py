import os
import re
from dataclasses import dataclass
from typing import Dict, List, Optional

# ========= Static config =========
CONNECT_TIMEOUT = 10
WRITE_TIMEOUT = 10.0
KEEPALIVE_INTERVAL = 30
BUFFER_SIZE = 4096
WATCHDOG_INTERVAL = 5.0
OUTPUT_FLUSH_DELAY = 0.3

DEFAULT_EXEC_TIMEOUT = 30.0
LIST_DIR_TIMEOUT = 10.0
LIST_DIR_LIMIT = 30

DEFAULT_SPAWN_TIMEOUT = 60.0
DEFAULT_IDLE_TIMEOUT = 600.0
DEFAULT_HARD_TIMEOUT = 0.0  # 0 means disabled
MAX_HARD_TIMEOUT = 86400.0

BROWSING_TTL = 300.0
SPAWNING_TTL = 60.0
SPAWNING_TTL_MARGIN = 15.0
RECENTLY_CLOSED_TTL = 30.0
SUPPRESS_REPLY_TTL = 60.0
FLOW_TTL = 300.0

MAX_MESSAGE_LENGTH = 4096
TOOL_RESULT_PREVIEW_CHARS = 500
THREAD_NAME_LIMIT = 128

POLL_TIMEOUT = 25
HTTP_TIMEOUT = 35.0

SESSION_MODES = ("tui", "stream-json")
DEFAULT_SESSION_MODE = "tui"

DEFAULT_ENGINE = "claude"
ENGINE_COMMANDS: Dict[str, str] = {
    "claude": "claude --dangerously-skip-permissions",
    "codex": "codex --dangerously-bypass-approvals-and-sandbox",
    "gemini": "gemini --yolo",
}
STREAM_JSON_FLAGS = "-p --output-format stream-json --input-format stream-json --verbose"

# ========= Output cleanup =========
# Cursor positioning: CUP (H/f) and vertical position absolute (d).
CURSOR_POSITION = re.compile(r"\x1b\[\d*(?:;\d*)?[Hfd]")
CURSOR_FORWARD = re.compile(r"\x1b\[\d*C")
OSC_SEQUENCE = re.compile(r"\x1b\][^\x07\x1b\n]*(?:\x07|\x1b\\)?")
CSI_SEQUENCE = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]")
CHARSET_SEQUENCE = re.compile(r"\x1b[()*+][0-9A-Za-z]")
ANSI_ESCAPE = re.compile(r"\x1b(?:[@-Z\\-_]|[=>78])?")
CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
BOX_CHARS = re.compile(r"[╭╮╰╯│─┌┐└┘├┤┬┴┼━┃╋▀▁▂▃▄▅▆▇█▉▊▋▌▍▎▏▐░▒▓▙▟▛▜▝▞▘▗▖]")


@dataclass
class SSHTarget:
    name: str
    host: str
    user: str = "root"
    port: int = 22
    key_path: Optional[str] = None
    password: Optional[str] = None
    os: str = "posix"
    start_dir: str = "~"
    engine: str = DEFAULT_ENGINE

    @property
    def is_windows(self) -> bool:
        return self.os.lower().startswith("win")


# ========= Runtime Configuration =========
class BridgeConfig:
    def __init__(self):
        self.TELEGRAM_BOT_TOKEN: Optional[str] = None
        self.TELEGRAM_GROUP_CHAT_ID: int = 0
        self.SSH_VERIFY_HOST_KEY: bool = True
        self.SESSION_MODE: str = DEFAULT_SESSION_MODE
        self.IDLE_TIMEOUT: float = DEFAULT_IDLE_TIMEOUT
        self.HARD_TIMEOUT: float = DEFAULT_HARD_TIMEOUT
        self.SPAWN_TIMEOUT: float = DEFAULT_SPAWN_TIMEOUT
        self.CACHE_DIR: Optional[str] = None
        self.CACHE_DIRS: Dict[str, str] = {}
        self.TARGETS: Dict[str, SSHTarget] = {}

    def load_from_env(self):
        self.TELEGRAM_BOT_TOKEN = os.environ.get("TELEGRAM_BOT_TOKEN", self.TELEGRAM_BOT_TOKEN)
        chat_id = os.environ.get("TELEGRAM_GROUP_CHAT_ID")
        if chat_id:
            self.TELEGRAM_GROUP_CHAT_ID = int(chat_id)

        verify_host_env = os.environ.get("SSH_VERIFY_HOST_KEY")
        if verify_host_env is not None:
            self.SSH_VERIFY_HOST_KEY = verify_host_env.lower() in ("true", "1", "yes")

        mode = os.environ.get("BRIDGE_SESSION_MODE")
        if mode in SESSION_MODES:
            self.SESSION_MODE = mode
        self.IDLE_TIMEOUT = float(os.environ.get("BRIDGE_IDLE_TIMEOUT", self.IDLE_TIMEOUT))
        self.HARD_TIMEOUT = float(os.environ.get("BRIDGE_HARD_TIMEOUT", self.HARD_TIMEOUT))
        self.SPAWN_TIMEOUT = float(os.environ.get("BRIDGE_SPAWN_TIMEOUT", self.SPAWN_TIMEOUT))
        self.CACHE_DIR = os.environ.get("BRIDGE_CACHE_DIR", self.CACHE_DIR)

        for name in parse_target_names(os.environ.get("BRIDGE_SSH_TARGETS", "")):
            target = load_target_from_env(name, os.environ)
            if target:
                self.TARGETS[name] = target


def parse_target_names(raw: str) -> List[str]:
    return [part.strip().lower() for part in raw.split(",") if part.strip()]


def load_target_from_env(name: str, env) -> Optional[SSHTarget]:
    prefix = f"BRIDGE_SSH_{name.upper().replace('-', '_')}_"
    host = env.get(prefix + "HOST")
    if not host:
        return None
    return SSHTarget(
        name=name,
        host=host,
        user=env.get(prefix + "USER") or "root",
        port=int(env.get(prefix + "PORT") or 22),
        key_path=env.get(prefix + "KEY") or None,
        password=env.get(prefix + "PASSWORD") or None,
        os=env.get(prefix + "OS") or "posix",
        start_dir=env.get(prefix + "START_DIR") or "~",
        engine=(env.get(prefix + "ENGINE") or DEFAULT_ENGINE).lower(),
    )


# Global instance
config = BridgeConfig()
