import json

from sshbridge.models import ENTRY_RESULT, ENTRY_TEXT, ENTRY_TOOL_USE
from sshbridge.streamjson import (
    NdjsonParser, decode_line, engine_from_event, find_question, is_rate_limit_event,
    render_event, summarize_tool_use, transcript_entries,
    wrap_stream_json_input,
)


def assistant(*blocks):
    return {"type": "assistant", "message": {"content": list(blocks)}}


def test_parser_holds_partial_lines():
    parser = NdjsonParser()
    assert parser.feed('{"type": "sys') == []
    assert parser.feed('tem"}\n\n{"a"') == ['{"type": "system"}']
    assert parser.feed(": 1}\n") == ['{"a": 1}']
    assert parser.flush() == []


def test_parser_flush_returns_tail():
    parser = NdjsonParser()
    parser.feed("trailing text")
    assert parser.flush() == ["trailing text"]
    assert parser.flush() == []


def test_wrap_input_is_one_json_line():
    line = wrap_stream_json_input("héllo")
    assert line.endswith("\n") and line.count("\n") == 1
    assert json.loads(line) == {"type": "user", "message": {"role": "user", "content": "héllo"}}


def test_decode_line():
    assert decode_line("") is None
    assert decode_line("   ") is None
    assert decode_line("plain text ") == "plain text"
    assert decode_line("{broken") is None
    assert decode_line('{"type": "result"}') == {"type": "result"}


def test_tool_summaries():
    assert summarize_tool_use("Grep", {"pattern": "TODO", "path": "src"}) == "[Grep] TODO in src"
    assert summarize_tool_use("Glob", {"pattern": "*.py"}) == "[Glob] *.py"
    assert summarize_tool_use("Bash", {"command": "pytest -q", "description": "run"}) == "[Bash] pytest -q"
    assert summarize_tool_use("Edit", {"file_path": "/a.py", "path": "/b"}) == "[Edit] /a.py"
    assert summarize_tool_use("TodoWrite", {}) == "[TodoWrite]"


def test_render_assistant_text_and_tools():
    event = assistant(
        {"type": "text", "text": "  Checking.  "},
        {"type": "text", "text": "   "},
        {"type": "tool_use", "name": "Read", "input": {"file_path": "/src/a.py"}},
    )
    assert render_event(event) == "Checking.\n[Read] /src/a.py"
    assert render_event(assistant()) is None


def test_render_tool_result_truncated():
    long_text = "z" * 700
    event = {"type": "user", "message": {"content": [
        {"type": "tool_result", "tool_use_id": "t1", "content": [{"type": "text", "text": long_text}]},
    ]}}
    rendered = render_event(event)
    assert rendered.startswith("z" * 500 + "...")
    assert rendered.endswith("(700 chars total)")


def test_render_result_and_unknown():
    result = {"type": "result", "subtype": "success", "total_cost_usd": 0.0532, "duration_ms": 45900}
    assert render_event(result) == "Session success | $0.0532 | 45s"
    assert render_event({"type": "result"}) == "Session finished"
    assert render_event({"type": "system", "subtype": "init"}) is None
    assert render_event(None) is None
    assert render_event(decode_line("just text")) == "just text"


def test_transcript_entries():
    event = assistant(
        {"type": "text", "text": "Fixing"},
        {"type": "tool_use", "id": "t9", "name": "Edit", "input": {"file_path": "/x.py"}},
    )
    entries = transcript_entries(event)
    assert [e.kind for e in entries] == [ENTRY_TEXT, ENTRY_TOOL_USE]
    assert entries[1].content == "Edit"
    assert entries[1].metadata["file_path"] == "/x.py"
    assert entries[1].metadata["tool_id"] == "t9"

    result = transcript_entries({"type": "result", "subtype": "success", "total_cost_usd": 1.0})
    assert result[0].kind == ENTRY_RESULT
    assert result[0].metadata["cost"] == 1.0
    assert transcript_entries("raw line")[0].content == "raw line"
    assert transcript_entries(None) == []


def test_find_question():
    event = assistant({
        "type": "tool_use", "id": "q1", "name": "AskUserQuestion",
        "input": {"questions": [{"question": "Proceed?", "options": [{"label": "Yes"}, "No", {"label": ""}]}]},
    })
    assert find_question(event) == ("q1", "Proceed?", ["Yes", "No"])
    assert find_question(assistant({"type": "tool_use", "name": "AskUserQuestion", "input": {}})) is None
    assert find_question({"type": "user"}) is None


def test_engine_and_rate_limit_detection():
    assert engine_from_event({"type": "system", "subtype": "init", "model": "opus"}) == "opus"
    assert engine_from_event({"type": "system", "subtype": "other", "model": "opus"}) is None
    assert is_rate_limit_event({"type": "rate_limit_event"})
    assert not is_rate_limit_event("rate_limit_event")
