"""Terminal output sanitizer.

Turns raw chunks from a full-screen terminal UI into display lines:

1. line endings are normalized and bare-CR redraws collapse to the final draw,
2. cursor positioning becomes a line break (cursor-forward becomes a space),
3. remaining escape and control sequences are stripped,
4. lines matching an entry of ``NOISE_RULES`` are dropped,
5. blank runs collapse and the result is trimmed.

New chrome seen in the field goes into ``NOISE_RULES`` with its own test.
"""
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Pattern, Union

from sshbridge.config import (
    CURSOR_POSITION, CURSOR_FORWARD, OSC_SEQUENCE, CSI_SEQUENCE,
    CHARSET_SEQUENCE, ANSI_ESCAPE, CONTROL_CHARS, BOX_CHARS,
)

NOISE_RULES_VERSION = 5

SPINNER_GLYPHS = "✻✶✢✽✳⏺·*●✦⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏"
PROMPT_GLYPHS = "❯›>$#%"
TOOL_HEADER_WORDS = (
    "Bash", "Read", "Write", "Edit", "MultiEdit", "Update", "Create", "Search",
    "Grep", "Glob", "List", "Task", "Fetch", "WebFetch", "WebSearch",
    "TodoWrite", "NotebookEdit",
)

Chunk = Union[str, bytes]


@dataclass(frozen=True)
class NoiseRule:
    name: str
    pattern: Pattern[str]
    reason: str

    def matches(self, line: str) -> bool:
        return self.pattern.search(line) is not None


def _suffixes(word: str, min_len: int = 3) -> str:
    parts = [re.escape(word[i:]) for i in range(1, len(word) - min_len + 1)]
    return "|".join(parts)


_G = re.escape(SPINNER_GLYPHS)
# "·", "12s", "1m 3s", "0:42", "45%", "↓ 1.2k tokens", optionally in parentheses
_SPINNER_FRAGMENT = (
    r"(?:·|\(?(?:\d+m\s?\d+s|\d+(?:\.\d+)?(?:ms|s|m|%)|\d+:\d\d(?::\d\d)?"
    r"|[↓↑]?\s?\d[\d.,]*k?\s?tokens|[↓↑]\s?\d[\d.,]*k?)\)?)"
)

NOISE_RULES: List[NoiseRule] = [
    NoiseRule(
        "prompt_line",
        re.compile(rf"^(?:(?:~|/|[A-Za-z]:\\)[^\s❯›]*\s*)?[{re.escape(PROMPT_GLYPHS)}]\s*$"),
        "shell or TUI prompt with nothing typed after it",
    ),
    NoiseRule(
        "spinner_glyphs",
        re.compile(rf"^[{_G}]+(?:\s*{_SPINNER_FRAGMENT})*\s*$"),
        "spinner glyph run with optional timer or counter fragments",
    ),
    NoiseRule(
        "spinner_word",
        re.compile(rf"^[{_G}❯⎿\s]*[A-Z][a-z]+…"),
        "animated status word such as 'Pondering…'",
    ),
    NoiseRule(
        "multi_spinner",
        re.compile(r"[A-Z][a-z]+….*[A-Z][a-z]+…"),
        "status bar redraw carrying several spinner words",
    ),
    NoiseRule(
        "status_header",
        re.compile(rf"^[{_G}\s]*(?:{'|'.join(TOOL_HEADER_WORDS)})\s*\(?\s*$"),
        "tool status header cut off before its arguments",
    ),
    NoiseRule(
        "diff_stat",
        re.compile(r"^(?=.{1,24}$)(?=.*\+\d)(?:[+\-~]\d+\s*){1,4}$"),
        "compact diff-stat counters",
    ),
    NoiseRule(
        "thinking_indicator",
        re.compile(rf"^[{_G}❯\s]*\((?:thinking|thought for \d+s)\)\s*$|^[{_G}❯\s]*thought for \d+s\)?\s*$"),
        "thinking indicator",
    ),
    NoiseRule(
        "thinking_fragment",
        re.compile(rf"^(?:{_suffixes('(thinking)')})\s*$|^(?:for\s*)?\d+s\)\s*$"),
        "truncated tail of a thinking indicator",
    ),
    NoiseRule(
        "status_bar",
        re.compile(
            r"bypass permissions|bypasspermission|shift\+tab to cycle|shift\+tabtocycle"
            r"|esc to interrupt|esctointerrupt|/doctor for details",
            re.IGNORECASE,
        ),
        "permission mode and interrupt hints",
    ),
    NoiseRule("permission_glyph", re.compile("⏵"), "permission mode indicator"),
    NoiseRule("tool_indent", re.compile("⎿"), "collapsed tool result preview"),
    NoiseRule(
        "ctrl_hint",
        re.compile(r"^ctrl\+[a-z] to |ctrl\+o\s*to\s*expand|\(ctrl\+o\)", re.IGNORECASE),
        "keyboard shortcut hint",
    ),
    NoiseRule(
        "token_stats",
        re.compile(r"^\d+s\s*·\s*[↓↑]?\s*\d+(?:\.\d+)?k?\s*tokens", re.IGNORECASE),
        "elapsed time and token counter",
    ),
    NoiseRule("uptime", re.compile(r"\(\d+d\s+\d+h"), "status bar uptime"),
    NoiseRule(
        "startup_banner",
        re.compile(
            r"Tips for getting started|Welcome back|Run /init to create|/resume for more"
            r"|Claude Code v\d|No recent activity|Recent activity",
            re.IGNORECASE,
        ),
        "startup banner",
    ),
]


def match_noise(line: str) -> Optional[NoiseRule]:
    stripped = line.strip()
    if not stripped:
        return None
    for rule in NOISE_RULES:
        if rule.matches(stripped):
            return rule
    return None


def _strip_escapes(text: str) -> str:
    text = OSC_SEQUENCE.sub("", text)
    text = CSI_SEQUENCE.sub("", text)
    text = CHARSET_SEQUENCE.sub("", text)
    text = ANSI_ESCAPE.sub("", text)
    return CONTROL_CHARS.sub("", text)


def _final_draw(piece: str) -> str:
    # A bare CR rewinds to column 0; only the last visible draw survives.
    if "\r" not in piece:
        return piece
    segments = piece.split("\r")
    for segment in reversed(segments):
        if _strip_escapes(segment).strip():
            return segment
    return segments[-1]


def _logical_lines(text: str) -> List[str]:
    lines: List[str] = []
    for piece in text.split("\r\n"):
        for line in piece.split("\n"):
            lines.append(_final_draw(line))
    return lines


def _decode(chunk: Chunk) -> str:
    if isinstance(chunk, bytes):
        return chunk.decode("utf-8", errors="replace")
    return chunk or ""


def sanitize_lines(chunks: Union[Chunk, Iterable[Chunk]]) -> List[str]:
    if isinstance(chunks, (str, bytes)):
        chunks = [chunks]
    text = "".join(_decode(chunk) for chunk in chunks)
    if not text:
        return []

    kept: List[str] = []
    for logical in _logical_lines(text):
        positioned = CURSOR_POSITION.sub("\n", logical)
        positioned = CURSOR_FORWARD.sub(" ", positioned)
        for raw in positioned.split("\n"):
            line = BOX_CHARS.sub("", _strip_escapes(raw)).rstrip()
            if not line.strip():
                if kept and kept[-1] != "":
                    kept.append("")
                continue
            if match_noise(line):
                continue
            kept.append(line)

    while kept and kept[-1] == "":
        kept.pop()
    while kept and kept[0] == "":
        kept.pop(0)
    return kept


def sanitize(text: Union[Chunk, Iterable[Chunk]]) -> str:
    return "\n".join(sanitize_lines(text))
