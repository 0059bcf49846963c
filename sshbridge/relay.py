from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from sshbridge.models import (
    STATE_ACTIVE, STATE_BROWSING, STATE_SPAWNING,
)
from sshbridge.utils import strip_bot_mention

# command -> (bytes written to the remote process, label shown back)
CONTROL_COMMANDS: Dict[str, Tuple[str, str]] = {
    "/ctrl+c": ("\x03", "Ctrl+C"),
    "/ctrl+d": ("\x04", "Ctrl+D"),
    "/ctrl+z": ("\x1a", "Ctrl+Z"),
    "/ctrl+\\": ("\x1c", "Ctrl+\\"),
    "/esc": ("\x1b", "Esc"),
    "/enter": ("\r", "Enter"),
    "/tab": ("\t", "Tab"),
    "/yes": ("y\r", "y"),
    "/no": ("n\r", "n"),
    "/interrupt": ("\x03", "Ctrl+C"),
    "/kill": ("\x03", "Ctrl+C"),
    "/stop": ("\x03", "Ctrl+C"),
    "/exit": ("\x04", "Ctrl+D"),
}
CLOSE_COMMANDS = ("/close", "/cancel")
SPAWNING_HINT = "⏳ Session is still starting, please wait..."
OWNED_STATES = (STATE_ACTIVE, STATE_SPAWNING, STATE_BROWSING)


@dataclass(frozen=True)
class RelayResult:
    claimed: bool
    reason: str


def control_for(text: str) -> Optional[Tuple[str, str]]:
    return CONTROL_COMMANDS.get(text.strip().lower())


class InputRelay:
    """Routes a thread message to the remote process, the navigator, or nobody."""

    def __init__(self, registry, controller):
        self.registry = registry
        self.controller = controller

    def route(self, chat_id: int, thread_id: Optional[int], text: str,
              message_id: Optional[int] = None) -> RelayResult:
        if not thread_id:
            return RelayResult(False, "no thread")
        text = strip_bot_mention((text or "").strip())
        if not text:
            return RelayResult(False, "empty")

        state = self.registry.classify(thread_id)
        if state not in OWNED_STATES:
            return RelayResult(False, state)

        # Claimed: a reply to this same message drafted elsewhere is a duplicate.
        if message_id is not None:
            self.registry.request_suppress(chat_id, thread_id, message_id)
        command = text.split()[0].lower()

        if state == STATE_SPAWNING:
            self.controller.chat.send_message(chat_id, SPAWNING_HINT, thread_id=thread_id)
            return RelayResult(True, "spawning")

        if state == STATE_BROWSING:
            if command in CLOSE_COMMANDS:
                self.controller.cancel_browsing(chat_id, thread_id)
                return RelayResult(True, "browsing cancelled")
            action = self.controller.handle_browsing_input(chat_id, thread_id, text)
            return RelayResult(True, f"browsing:{action.kind}")

        if command in CLOSE_COMMANDS:
            self.controller.close_session(thread_id, reason="closed by user",
                                          notify="Session closed.", close_thread=True)
            return RelayResult(True, "closed")
        control = control_for(text)
        if control:
            data, label = control
            self.controller.send_control(chat_id, thread_id, data, label)
            return RelayResult(True, "control")
        if self.controller.write_input(chat_id, thread_id, text):
            return RelayResult(True, "input")
        return RelayResult(True, "input failed")

    def should_suppress_reply(self, chat_id: int, thread_id: Optional[int],
                              message_id: Optional[int] = None) -> bool:
        """Single decision point for dropping a conversational reply to ``message_id``.

        Thread state is read here, at decision time. The only other input is a
        marker ``route`` left for this exact message, so a reply to a later
        message in a closed thread is never dropped.
        """
        if not thread_id:
            return False
        answered = message_id is not None and self.registry.consume_suppress(
            chat_id, thread_id, message_id)
        return answered or self.registry.classify(thread_id) in OWNED_STATES
