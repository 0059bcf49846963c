import time
import threading
from typing import Callable, Dict, List, Optional, Tuple

from sshbridge.config import (
    BROWSING_TTL, SPAWNING_TTL, SPAWNING_TTL_MARGIN, RECENTLY_CLOSED_TTL, SUPPRESS_REPLY_TTL,
)
from sshbridge.models import (
    ActiveSession, BrowsingSession, PendingQuestion,
    STATE_NONE, STATE_BROWSING, STATE_SPAWNING, STATE_ACTIVE, STATE_RECENTLY_CLOSED,
)


def spawning_ttl_for(spawn_timeout: float) -> float:
    # The marker must outlive the connect it covers.
    return max(SPAWNING_TTL, spawn_timeout + SPAWNING_TTL_MARGIN)


class SessionRegistry:
    """Per-thread ownership state shared by the relay, the controller and reader threads.

    Every method takes the one lock for a short, I/O-free critical section.
    TTL entries expire lazily on read, so a stale marker never blocks a new
    session even if the watchdog is not running.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        browsing_ttl: float = BROWSING_TTL,
        spawning_ttl: float = SPAWNING_TTL,
        recently_closed_ttl: float = RECENTLY_CLOSED_TTL,
        suppress_ttl: float = SUPPRESS_REPLY_TTL,
    ):
        self.clock = clock
        self.browsing_ttl = browsing_ttl
        self.spawning_ttl = spawning_ttl
        self.recently_closed_ttl = recently_closed_ttl
        self.suppress_ttl = suppress_ttl

        self.lock = threading.Lock()
        self._active: Dict[int, ActiveSession] = {}
        self._browsing: Dict[int, BrowsingSession] = {}
        # thread_id -> expiry timestamp
        self._spawning: Dict[int, float] = {}
        self._recently_closed: Dict[int, float] = {}
        # (chat_id, thread_id, message_id) -> expiry timestamp
        self._suppress: Dict[Tuple[int, int, int], float] = {}
        self._questions: Dict[int, PendingQuestion] = {}

    # ---- lazy expiry helpers (lock held by caller) ----

    def _live(self, table: Dict, key) -> bool:
        expires = table.get(key)
        if expires is None:
            return False
        if self.clock() >= expires:
            del table[key]
            return False
        return True

    def _browsing_live(self, thread_id: int) -> Optional[BrowsingSession]:
        session = self._browsing.get(thread_id)
        if session is None:
            return None
        if self.clock() - session.created_at >= self.browsing_ttl:
            del self._browsing[thread_id]
            return None
        return session

    # ---- classification ----

    def classify(self, thread_id: int) -> str:
        with self.lock:
            if thread_id in self._active:
                return STATE_ACTIVE
            if self._live(self._spawning, thread_id):
                return STATE_SPAWNING
            if self._browsing_live(thread_id) is not None:
                return STATE_BROWSING
            if self._live(self._recently_closed, thread_id):
                return STATE_RECENTLY_CLOSED
            return STATE_NONE

    # ---- browsing ----

    def set_browsing(self, session: BrowsingSession) -> None:
        with self.lock:
            session.created_at = self.clock()
            self._browsing[session.thread_id] = session
            self._recently_closed.pop(session.thread_id, None)

    def get_browsing(self, thread_id: int) -> Optional[BrowsingSession]:
        with self.lock:
            return self._browsing_live(thread_id)

    def touch_browsing(self, thread_id: int) -> None:
        with self.lock:
            session = self._browsing_live(thread_id)
            if session is not None:
                session.created_at = self.clock()

    def remove_browsing(self, thread_id: int) -> Optional[BrowsingSession]:
        with self.lock:
            return self._browsing.pop(thread_id, None)

    def expire_browsing(self) -> List[int]:
        with self.lock:
            expired = [
                tid for tid, session in self._browsing.items()
                if self.clock() - session.created_at >= self.browsing_ttl
            ]
            for tid in expired:
                del self._browsing[tid]
            return expired

    # ---- spawning ----

    def enter_spawning(self, thread_id: int) -> bool:
        """Mark ``thread_id`` as spawning, dropping any browsing entry.

        False when the thread is already spawning or active.
        """
        with self.lock:
            if thread_id in self._active or self._live(self._spawning, thread_id):
                return False
            self._browsing.pop(thread_id, None)
            self._spawning[thread_id] = self.clock() + self.spawning_ttl
            self._recently_closed.pop(thread_id, None)
            return True

    def spawn_from_browsing(self, thread_id: int) -> Optional[BrowsingSession]:
        """Swap a live browsing entry for a spawning marker in one step."""
        with self.lock:
            if thread_id in self._active or self._live(self._spawning, thread_id):
                return None
            browsing = self._browsing_live(thread_id)
            if browsing is None:
                return None
            del self._browsing[thread_id]
            self._spawning[thread_id] = self.clock() + self.spawning_ttl
            self._recently_closed.pop(thread_id, None)
            return browsing

    def exit_spawning(self, thread_id: int) -> None:
        with self.lock:
            self._spawning.pop(thread_id, None)

    def is_spawning(self, thread_id: int) -> bool:
        with self.lock:
            return self._live(self._spawning, thread_id)

    # ---- active ----

    def set_active(self, thread_id: int, session: ActiveSession) -> None:
        with self.lock:
            self._active[thread_id] = session
            self._spawning.pop(thread_id, None)
            self._browsing.pop(thread_id, None)
            self._recently_closed.pop(thread_id, None)

    def clear_active(self, thread_id: int, session: Optional[ActiveSession] = None) -> Optional[ActiveSession]:
        with self.lock:
            current = self._active.get(thread_id)
            if current is None or (session is not None and current is not session):
                return None
            self._questions.pop(thread_id, None)
            return self._active.pop(thread_id)

    def get_active(self, thread_id: int) -> Optional[ActiveSession]:
        with self.lock:
            return self._active.get(thread_id)

    def list_active(self) -> List[ActiveSession]:
        with self.lock:
            return list(self._active.values())

    # ---- recently closed ----

    def mark_closed(self, thread_id: int) -> None:
        with self.lock:
            self._recently_closed[thread_id] = self.clock() + self.recently_closed_ttl

    # ---- reply suppression ----

    def request_suppress(self, chat_id: int, thread_id: int, message_id: int) -> None:
        """Mark ``message_id`` as already answered by the bridge."""
        with self.lock:
            now = self.clock()
            for key in [key for key, expires in self._suppress.items() if now >= expires]:
                del self._suppress[key]
            self._suppress[(chat_id, thread_id, message_id)] = now + self.suppress_ttl

    def consume_suppress(self, chat_id: int, thread_id: int, message_id: int) -> bool:
        key = (chat_id, thread_id, message_id)
        with self.lock:
            if not self._live(self._suppress, key):
                return False
            del self._suppress[key]
            return True

    # ---- pending questions ----

    def put_question(self, question: PendingQuestion) -> None:
        with self.lock:
            self._questions[question.thread_id] = question

    def get_question(self, thread_id: int) -> Optional[PendingQuestion]:
        with self.lock:
            return self._questions.get(thread_id)

    def pop_question(self, thread_id: int) -> Optional[PendingQuestion]:
        with self.lock:
            return self._questions.pop(thread_id, None)
