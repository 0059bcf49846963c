"""Structured-event (NDJSON) session output.

Sessions started in ``stream-json`` mode print one JSON event per line
instead of drawing a terminal UI, and read user turns as JSON lines on stdin.
"""
import json
from typing import Any, Dict, List, Optional, Tuple, Union

from sshbridge.config import TOOL_RESULT_PREVIEW_CHARS
from sshbridge.models import (
    TranscriptEntry, ENTRY_TEXT, ENTRY_TOOL_USE, ENTRY_RESULT,
)

Event = Union[Dict[str, Any], str]

QUESTION_TOOL = "AskUserQuestion"

# Tool input keys shown next to the tool name, in priority order.
_TOOL_SUMMARY_KEYS = ("file_path", "path", "command", "url", "query", "description")


class NdjsonParser:
    """Buffers raw output and yields complete lines only."""

    def __init__(self):
        self.buffer = ""

    def feed(self, chunk: str) -> List[str]:
        self.buffer += chunk or ""
        if "\n" not in self.buffer:
            return []
        *complete, self.buffer = self.buffer.split("\n")
        return [line for line in complete if line.strip()]

    def flush(self) -> List[str]:
        rest, self.buffer = self.buffer, ""
        return [rest] if rest.strip() else []


def wrap_stream_json_input(text: str) -> str:
    payload = {"type": "user", "message": {"role": "user", "content": text}}
    return json.dumps(payload, ensure_ascii=False) + "\n"


def decode_line(line: str) -> Optional[Event]:
    stripped = (line or "").strip()
    if not stripped:
        return None
    if not stripped.startswith("{"):
        # Plain text from wrapper scripts passes through.
        return stripped
    try:
        event = json.loads(stripped)
    except json.JSONDecodeError:
        return None
    return event if isinstance(event, dict) else None


def _content_blocks(event: Dict[str, Any]) -> List[Dict[str, Any]]:
    message = event.get("message")
    if not isinstance(message, dict):
        return []
    content = message.get("content")
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    if isinstance(content, list):
        return [block for block in content if isinstance(block, dict)]
    return []


def summarize_tool_use(name: str, tool_input: Dict[str, Any]) -> str:
    tool_input = tool_input if isinstance(tool_input, dict) else {}
    if name in ("Grep", "Glob") and tool_input.get("pattern"):
        where = tool_input.get("path")
        pattern = tool_input["pattern"]
        return f"[{name}] {pattern} in {where}" if where else f"[{name}] {pattern}"
    for key in _TOOL_SUMMARY_KEYS:
        value = tool_input.get(key)
        if value:
            return f"[{name}] {str(value)[:200]}"
    return f"[{name}]"


def _tool_result_text(block: Dict[str, Any]) -> str:
    content = block.get("content")
    if isinstance(content, list):
        parts = [item.get("text", "") for item in content if isinstance(item, dict)]
        content = "\n".join(part for part in parts if part)
    text = str(content or "")
    if len(text) > TOOL_RESULT_PREVIEW_CHARS:
        return f"{text[:TOOL_RESULT_PREVIEW_CHARS]}... ({len(text)} chars total)"
    return text


def _format_result(event: Dict[str, Any]) -> str:
    parts = [f"Session {event.get('subtype') or 'finished'}"]
    cost = event.get("total_cost_usd")
    if isinstance(cost, (int, float)):
        parts.append(f"${cost:.4f}")
    duration = event.get("duration_ms")
    if isinstance(duration, (int, float)):
        parts.append(f"{int(duration // 1000)}s")
    return " | ".join(parts)


def render_event(event: Optional[Event]) -> Optional[str]:
    if event is None:
        return None
    if isinstance(event, str):
        return event

    kind = event.get("type")
    if kind == "assistant":
        lines = []
        for block in _content_blocks(event):
            if block.get("type") == "text" and block.get("text", "").strip():
                lines.append(block["text"].strip())
            elif block.get("type") == "tool_use":
                lines.append(summarize_tool_use(block.get("name", "tool"), block.get("input") or {}))
        return "\n".join(lines) or None
    if kind == "user":
        lines = [
            _tool_result_text(block)
            for block in _content_blocks(event)
            if block.get("type") == "tool_result"
        ]
        return "\n".join(line for line in lines if line) or None
    if kind == "result":
        return _format_result(event)
    return None


def transcript_entries(event: Optional[Event]) -> List[TranscriptEntry]:
    if event is None:
        return []
    if isinstance(event, str):
        return [TranscriptEntry(kind=ENTRY_TEXT, content=event)]

    entries: List[TranscriptEntry] = []
    kind = event.get("type")
    if kind == "assistant":
        for block in _content_blocks(event):
            if block.get("type") == "text" and block.get("text", "").strip():
                entries.append(TranscriptEntry(kind=ENTRY_TEXT, content=block["text"].strip()))
            elif block.get("type") == "tool_use":
                tool_input = block.get("input") or {}
                metadata: Dict[str, Any] = {"tool_id": block.get("id"), "input": tool_input}
                if isinstance(tool_input, dict) and tool_input.get("file_path"):
                    metadata["file_path"] = tool_input["file_path"]
                entries.append(TranscriptEntry(
                    kind=ENTRY_TOOL_USE, content=block.get("name", "tool"), metadata=metadata,
                ))
    elif kind == "user":
        for block in _content_blocks(event):
            if block.get("type") == "tool_result":
                entries.append(TranscriptEntry(
                    kind=ENTRY_RESULT,
                    content=_tool_result_text(block),
                    metadata={"tool_id": block.get("tool_use_id")},
                ))
    elif kind == "result":
        entries.append(TranscriptEntry(
            kind=ENTRY_RESULT,
            content=_format_result(event),
            metadata={"subtype": event.get("subtype"), "cost": event.get("total_cost_usd")},
        ))
    return entries


def find_question(event: Optional[Event]) -> Optional[Tuple[str, str, List[str]]]:
    """Return ``(tool_id, question, options)`` for an AskUserQuestion call."""
    if not isinstance(event, dict) or event.get("type") != "assistant":
        return None
    for block in _content_blocks(event):
        if block.get("type") != "tool_use" or block.get("name") != QUESTION_TOOL:
            continue
        tool_input = block.get("input") or {}
        questions = tool_input.get("questions") or []
        if not questions or not isinstance(questions[0], dict):
            continue
        first = questions[0]
        options = []
        for option in first.get("options") or []:
            label = option.get("label") if isinstance(option, dict) else option
            if label:
                options.append(str(label))
        if options:
            return str(block.get("id", "")), str(first.get("question", "")), options
    return None


def engine_from_event(event: Optional[Event]) -> Optional[str]:
    if isinstance(event, dict) and event.get("type") == "system" and event.get("subtype") == "init":
        model = event.get("model")
        return str(model) if model else None
    return None


def is_rate_limit_event(event: Optional[Event]) -> bool:
    return isinstance(event, dict) and event.get("type") == "rate_limit_event"
