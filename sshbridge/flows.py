"""Button-driven guided flows (``/session`` and ``/task`` without arguments).

One flow per (chat, user). A flow is replaced wholesale when restarted and
expires five minutes after its last step.
"""
import time
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from sshbridge.config import ENGINE_COMMANDS, FLOW_TTL
from sshbridge.models import ConversationFlow

FLOW_SESSION = "session"
FLOW_TASK = "task"
FLOW_PREFIXES = {FLOW_SESSION: "sf", FLOW_TASK: "tf"}

STEP_SELECT_MACHINE = "select_machine"
STEP_SELECT_ENGINE = "select_engine"
STEP_AWAIT_PROMPT = "await_prompt"
STEP_AWAIT_DESCRIPTION = "await_description"

FlowKey = Tuple[int, int]


class FlowStore:
    def __init__(self, clock: Callable[[], float] = time.time, ttl: float = FLOW_TTL):
        self.clock = clock
        self.ttl = ttl
        self.lock = threading.Lock()
        self._flows: Dict[FlowKey, ConversationFlow] = {}

    def _expired(self, flow: ConversationFlow) -> bool:
        return self.clock() - flow.last_activity >= self.ttl

    def get(self, chat_id: int, user_id: int) -> Optional[ConversationFlow]:
        with self.lock:
            flow = self._flows.get((chat_id, user_id))
            if flow is not None and self._expired(flow):
                del self._flows[(chat_id, user_id)]
                return None
            return flow

    def set(self, flow: ConversationFlow) -> None:
        with self.lock:
            flow.last_activity = self.clock()
            self._flows[(flow.chat_id, flow.user_id)] = flow

    def clear(self, chat_id: int, user_id: int) -> Optional[ConversationFlow]:
        with self.lock:
            return self._flows.pop((chat_id, user_id), None)

    def sweep(self) -> int:
        with self.lock:
            stale = [key for key, flow in self._flows.items() if self._expired(flow)]
            for key in stale:
                del self._flows[key]
            return len(stale)

    def __len__(self) -> int:
        with self.lock:
            return len(self._flows)


def encode_callback(prefix: str, key: str, value: Any) -> str:
    # Telegram limits callback_data to 64 bytes.
    return f"{prefix}:{key}:{value}"


def decode_callback(data: str) -> Optional[Tuple[str, str, str]]:
    parts = (data or "").split(":")
    if len(parts) < 3:
        return None
    return parts[0], parts[1], ":".join(parts[2:])


def choice_keyboard(prefix: str, key: str, choices: List[str], columns: int = 2) -> Dict[str, Any]:
    rows: List[List[Dict[str, str]]] = []
    row: List[Dict[str, str]] = []
    for index, label in enumerate(choices):
        row.append({"text": label, "callback_data": encode_callback(prefix, key, index)})
        if len(row) == columns:
            rows.append(row)
            row = []
    if row:
        rows.append(row)
    rows.append([{"text": "✖️ Cancel", "callback_data": encode_callback(prefix, "x", 0)}])
    return {"inline_keyboard": rows}


@dataclass
class FlowReply:
    text: str
    keyboard: Optional[Dict[str, Any]] = None
    finished: bool = False
    flow: Optional[ConversationFlow] = None


def begin(store: FlowStore, flow_type: str, chat_id: int, user_id: int, machines: List[str]) -> FlowReply:
    if not machines:
        return FlowReply("No SSH targets configured.")
    flow = ConversationFlow(
        flow_type=flow_type,
        step=STEP_SELECT_MACHINE,
        chat_id=chat_id,
        user_id=user_id,
        cached_choices=list(machines),
    )
    store.set(flow)
    noun = "session" if flow_type == FLOW_SESSION else "task"
    return FlowReply(
        f"Pick a machine for the new {noun}:",
        keyboard=choice_keyboard(FLOW_PREFIXES[flow_type], "m", machines),
        flow=flow,
    )


def _pick(flow: ConversationFlow, value: str) -> Optional[str]:
    if not value.isdigit():
        return None
    index = int(value)
    if index >= len(flow.cached_choices):
        return None
    return flow.cached_choices[index]


def handle_callback(store: FlowStore, chat_id: int, user_id: int, data: str) -> Optional[FlowReply]:
    """Advance a flow from a button press; None if ``data`` is not a flow button."""
    decoded = decode_callback(data)
    if decoded is None or decoded[0] not in FLOW_PREFIXES.values():
        return None
    prefix, key, value = decoded

    flow = store.get(chat_id, user_id)
    if flow is None or FLOW_PREFIXES[flow.flow_type] != prefix:
        return FlowReply("This menu has expired. Start again with /session or /task.")

    if key == "x":
        store.clear(chat_id, user_id)
        return FlowReply("Cancelled.")

    if key == "m" and flow.step == STEP_SELECT_MACHINE:
        machine = _pick(flow, value)
        if machine is None:
            return FlowReply("Unknown choice.", flow=flow)
        flow.selections["machine"] = machine
        if flow.flow_type == FLOW_TASK:
            flow.step = STEP_AWAIT_DESCRIPTION
            flow.cached_choices = []
            store.set(flow)
            return FlowReply(f"Describe the task for {machine}:", flow=flow)
        flow.step = STEP_SELECT_ENGINE
        flow.cached_choices = list(ENGINE_COMMANDS)
        store.set(flow)
        return FlowReply(
            f"Machine: {machine}\nPick an engine:",
            keyboard=choice_keyboard(prefix, "e", flow.cached_choices, columns=3),
            flow=flow,
        )

    if key == "e" and flow.step == STEP_SELECT_ENGINE:
        engine = _pick(flow, value)
        if engine is None:
            return FlowReply("Unknown choice.", flow=flow)
        flow.selections["engine"] = engine
        flow.step = STEP_AWAIT_PROMPT
        flow.cached_choices = []
        store.set(flow)
        return FlowReply(
            f"Machine: {flow.selections['machine']}\nEngine: {engine}\n\n"
            "Send the prompt for the session as a message.",
            flow=flow,
        )

    return FlowReply("That button is no longer active.", flow=flow)


def handle_text(store: FlowStore, chat_id: int, user_id: int, text: str) -> Optional[FlowReply]:
    """Consume free text for a flow waiting on it; None when no flow wants it."""
    flow = store.get(chat_id, user_id)
    if flow is None or flow.step not in (STEP_AWAIT_PROMPT, STEP_AWAIT_DESCRIPTION):
        return None
    text = (text or "").strip()
    if not text:
        return FlowReply("Please send some text.", flow=flow)
    flow.selections["prompt"] = text
    store.clear(chat_id, user_id)
    return FlowReply("", finished=True, flow=flow)
