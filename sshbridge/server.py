from typing import Any, Callable, Dict, List, Optional

from sshbridge import flows
from sshbridge.flows import FLOW_SESSION, FLOW_TASK, FlowStore
from sshbridge.lifecycle import SessionController
from sshbridge.models import STATE_BROWSING
from sshbridge.navigator import CALLBACK_PREFIX, callback_to_input
from sshbridge.relay import InputRelay
from sshbridge.utils import log_error, strip_bot_mention

HELP_TEXT = (
    "Commands:\n"
    "/session <machine> <prompt> - browse to a folder, then start a session\n"
    "/session - guided session setup\n"
    "/task <machine> <prompt> - queue a task\n"
    "/task - guided task setup\n"
    "/sessions - list running sessions\n"
    "\n"
    "Inside a session thread: /close, /ctrl+c, /ctrl+d, /esc, /enter, /tab, /yes, /no"
)

# Conversational layer hook: (chat_id, thread_id, text) -> reply or None.
ConversationHandler = Callable[[int, Optional[int], str], Optional[str]]


class Bridge:
    def __init__(self, chat, controller: SessionController, relay: InputRelay, flow_store: FlowStore,
                 targets: List[str], group_chat_id: int = 0,
                 conversation: Optional[ConversationHandler] = None):
        self.chat = chat
        self.controller = controller
        self.relay = relay
        self.flows = flow_store
        self.targets = targets
        self.group_chat_id = group_chat_id
        self.conversation = conversation


def _split_args(text: str) -> List[str]:
    parts = text.split(None, 2)
    return parts[1:] if len(parts) > 1 else []


def session_dispatch(bridge: Bridge, chat_id: int, user_id: int, thread_id: Optional[int], text: str) -> None:
    args = _split_args(text)
    if not args:
        reply = flows.begin(bridge.flows, FLOW_SESSION, chat_id, user_id, bridge.targets)
        bridge.chat.send_message(chat_id, reply.text, thread_id=thread_id, reply_markup=reply.keyboard)
        return
    if len(args) < 2:
        bridge.chat.send_message(chat_id, "Usage: /session <machine> <prompt>", thread_id=thread_id)
        return
    result = bridge.controller.start_browsing(chat_id, args[0], args[1])
    if not result.get("success"):
        bridge.chat.send_message(chat_id, f"Could not start: {result.get('error')}", thread_id=thread_id)


def task_dispatch(bridge: Bridge, chat_id: int, user_id: int, thread_id: Optional[int], text: str) -> None:
    args = _split_args(text)
    if not args:
        reply = flows.begin(bridge.flows, FLOW_TASK, chat_id, user_id, bridge.targets)
        bridge.chat.send_message(chat_id, reply.text, thread_id=thread_id, reply_markup=reply.keyboard)
        return
    if len(args) < 2:
        bridge.chat.send_message(chat_id, "Usage: /task <machine> <prompt>", thread_id=thread_id)
        return
    result = bridge.controller.queue_task(chat_id, args[0], args[1], thread_id=thread_id)
    if not result.get("success"):
        bridge.chat.send_message(chat_id, f"Could not queue task: {result.get('error')}", thread_id=thread_id)


def sessions_dispatch(bridge: Bridge, chat_id: int, thread_id: Optional[int]) -> None:
    rows = bridge.controller.list_sessions()
    if not rows:
        bridge.chat.send_message(chat_id, "No running sessions.", thread_id=thread_id)
        return
    lines = [f"{len(rows)} running session(s):"]
    for row in rows:
        engine = f" [{row['engine']}]" if row.get("engine") else ""
        lines.append(f"- {row['session_id']} on {row['target']} ({row['project']}, {row['mode']}){engine}, "
                     f"{row['turns']} turns")
    bridge.chat.send_message(chat_id, "\n".join(lines), thread_id=thread_id)


def finish_flow(bridge: Bridge, chat_id: int, thread_id: Optional[int], reply: flows.FlowReply) -> None:
    flow = reply.flow
    selections = flow.selections
    if flow.flow_type == FLOW_TASK:
        result = bridge.controller.queue_task(chat_id, selections["machine"], selections["prompt"],
                                              thread_id=thread_id)
    else:
        result = bridge.controller.start_browsing(chat_id, selections["machine"], selections["prompt"],
                                                  engine=selections.get("engine"))
    if not result.get("success"):
        bridge.chat.send_message(chat_id, f"Could not start: {result.get('error')}", thread_id=thread_id)


def message_dispatch(bridge: Bridge, message: Dict[str, Any]) -> None:
    text = (message.get("text") or "").strip()
    if not text:
        return
    chat_id = message["chat"]["id"]
    user_id = (message.get("from") or {}).get("id", 0)
    thread_id = message.get("message_thread_id") if message.get("is_topic_message") else None

    message_id = message.get("message_id")
    routed = bridge.relay.route(chat_id, thread_id, text, message_id)
    if routed.claimed:
        return

    flow_reply = flows.handle_text(bridge.flows, chat_id, user_id, text)
    if flow_reply is not None:
        if flow_reply.finished:
            finish_flow(bridge, chat_id, thread_id, flow_reply)
        else:
            bridge.chat.send_message(chat_id, flow_reply.text, thread_id=thread_id)
        return

    command_text = strip_bot_mention(text)
    command = command_text.split()[0].lower()
    if command == "/session":
        session_dispatch(bridge, chat_id, user_id, thread_id, command_text)
    elif command == "/task":
        task_dispatch(bridge, chat_id, user_id, thread_id, command_text)
    elif command == "/sessions":
        sessions_dispatch(bridge, chat_id, thread_id)
    elif command in ("/help", "/start"):
        bridge.chat.send_message(chat_id, HELP_TEXT, thread_id=thread_id)
    elif bridge.conversation is not None:
        reply = bridge.conversation(chat_id, thread_id, text)
        if reply and not bridge.relay.should_suppress_reply(chat_id, thread_id, message_id):
            bridge.chat.send_message(chat_id, reply, thread_id=thread_id)


def callback_dispatch(bridge: Bridge, query: Dict[str, Any]) -> None:
    data = query.get("data") or ""
    message = query.get("message") or {}
    chat_id = (message.get("chat") or {}).get("id", 0)
    thread_id = message.get("message_thread_id")
    user_id = (query.get("from") or {}).get("id", 0)
    notice = ""

    if data.startswith(CALLBACK_PREFIX):
        token = callback_to_input(data)
        if token is None or not thread_id or bridge.controller.registry.classify(thread_id) != STATE_BROWSING:
            notice = "This browser has expired."
        else:
            bridge.controller.handle_browsing_input(chat_id, thread_id, token)
    elif data.startswith("aq:"):
        value = data[3:]
        answer = None
        if thread_id and value.isdigit():
            answer = bridge.controller.answer_question(chat_id, thread_id, int(value))
        notice = f"Answered: {answer}" if answer else "This question is no longer open."
    else:
        reply = flows.handle_callback(bridge.flows, chat_id, user_id, data)
        if reply is None:
            notice = "Unknown button."
        elif message.get("message_id"):
            bridge.chat.edit_message(chat_id, message["message_id"], reply.text, reply_markup=reply.keyboard)
        else:
            bridge.chat.send_message(chat_id, reply.text, thread_id=thread_id, reply_markup=reply.keyboard)

    bridge.chat.answer_callback(query.get("id", ""), notice)


def handle_update(update: Dict[str, Any], bridge: Bridge) -> None:
    message = update.get("message")
    query = update.get("callback_query")
    chat = (message or (query or {}).get("message") or {}).get("chat") or {}
    if bridge.group_chat_id and chat.get("id") != bridge.group_chat_id:
        log_error(f"ignoring update {update.get('update_id')} from chat {chat.get('id')}")
        return
    if message:
        message_dispatch(bridge, message)
    elif query:
        callback_dispatch(bridge, query)
