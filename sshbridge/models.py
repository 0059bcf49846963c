import time
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

# Thread ownership states reported by SessionRegistry.classify()
STATE_NONE = "none"
STATE_BROWSING = "browsing"
STATE_SPAWNING = "spawning"
STATE_ACTIVE = "active"
STATE_RECENTLY_CLOSED = "recentlyClosed"

ENTRY_TEXT = "text"
ENTRY_TOOL_USE = "tool_use"
ENTRY_RESULT = "result"
ENTRY_USER_INPUT = "user_input"
ENTRY_KINDS = (ENTRY_TEXT, ENTRY_TOOL_USE, ENTRY_RESULT, ENTRY_USER_INPUT)


@dataclass(frozen=True)
class TranscriptEntry:
    kind: str
    content: str
    timestamp: float = field(default_factory=time.time)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.kind not in ENTRY_KINDS:
            raise ValueError(f"unknown transcript entry kind: {self.kind}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "content": self.content,
            "timestamp": self.timestamp,
            "metadata": dict(self.metadata),
        }


@dataclass
class BrowsingSession:
    thread_id: int
    target: str
    current_path: str
    prompt: str
    engine_command: str
    chat_id: int = 0
    created_at: float = field(default_factory=time.time)
    history: List[str] = field(default_factory=list)
    last_dir_listing: List[str] = field(default_factory=list)


@dataclass
class ActiveSession:
    thread_id: int
    session_id: str
    target: str
    handle: Any
    chat_id: int = 0
    started_at: float = field(default_factory=time.time)
    transcript: List[TranscriptEntry] = field(default_factory=list)
    project: str = "unknown"
    mode: str = "tui"
    task_id: Optional[str] = None
    workspace: Optional[str] = None
    current_engine: Optional[str] = None
    rate_limit_count: int = 0
    total_turns: int = 0
    last_usage_check_time: Optional[float] = None

    prompt: str = ""
    last_activity: float = field(default_factory=time.time)
    closed: bool = False
    close_reason: str = ""
    lock: threading.Lock = field(default_factory=threading.Lock)
    delivery_lock: threading.Lock = field(default_factory=threading.Lock)

    def record(self, kind: str, content: str, **metadata: Any) -> TranscriptEntry:
        entry = TranscriptEntry(kind=kind, content=content, metadata=metadata)
        with self.lock:
            self.transcript.append(entry)
        return entry

    def touch(self, now: Optional[float] = None) -> None:
        with self.lock:
            self.last_activity = time.time() if now is None else now

    def snapshot_transcript(self) -> List[TranscriptEntry]:
        with self.lock:
            return list(self.transcript)

    def info(self) -> Dict[str, Any]:
        with self.lock:
            return {
                "thread_id": self.thread_id,
                "session_id": self.session_id,
                "target": self.target,
                "project": self.project,
                "mode": self.mode,
                "engine": self.current_engine,
                "task_id": self.task_id,
                "workspace": self.workspace,
                "started_at": self.started_at,
                "last_activity": self.last_activity,
                "turns": self.total_turns,
                "rate_limits": self.rate_limit_count,
                "transcript_entries": len(self.transcript),
                "closed": self.closed,
            }


@dataclass
class PendingQuestion:
    thread_id: int
    tool_id: str
    question: str
    options: List[str]
    created_at: float = field(default_factory=time.time)


@dataclass
class ConversationFlow:
    flow_type: str
    step: str
    chat_id: int
    user_id: int
    created_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)
    message_id: Optional[int] = None
    selections: Dict[str, Any] = field(default_factory=dict)
    cached_choices: List[str] = field(default_factory=list)
