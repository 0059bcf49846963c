from sshbridge import flows
from sshbridge.config import ENGINE_COMMANDS
from sshbridge.flows import (
    FLOW_SESSION, FLOW_TASK, STEP_AWAIT_DESCRIPTION, STEP_AWAIT_PROMPT, STEP_SELECT_ENGINE,
    decode_callback, encode_callback,
)

CHAT, USER = -1001, 9


def buttons(reply):
    return [b["callback_data"] for row in reply.keyboard["inline_keyboard"] for b in row]


def test_callback_encoding():
    assert encode_callback("sf", "m", 1) == "sf:m:1"
    assert decode_callback("sf:m:1") == ("sf", "m", "1")
    assert decode_callback("aq") is None


def test_session_flow_to_prompt(flow_store):
    reply = flows.begin(flow_store, FLOW_SESSION, CHAT, USER, ["box", "win"])
    assert buttons(reply) == ["sf:m:0", "sf:m:1", "sf:x:0"]

    reply = flows.handle_callback(flow_store, CHAT, USER, "sf:m:1")
    assert reply.flow.selections["machine"] == "win"
    assert reply.flow.step == STEP_SELECT_ENGINE
    assert len(buttons(reply)) == len(ENGINE_COMMANDS) + 1

    reply = flows.handle_callback(flow_store, CHAT, USER, "sf:e:0")
    assert reply.flow.step == STEP_AWAIT_PROMPT
    assert reply.flow.selections["engine"] == list(ENGINE_COMMANDS)[0]

    reply = flows.handle_text(flow_store, CHAT, USER, "  add logging  ")
    assert reply.finished
    assert reply.flow.selections["prompt"] == "add logging"
    assert flow_store.get(CHAT, USER) is None


def test_task_flow_skips_engine(flow_store):
    flows.begin(flow_store, FLOW_TASK, CHAT, USER, ["box"])
    reply = flows.handle_callback(flow_store, CHAT, USER, "tf:m:0")
    assert reply.text == "Describe the task for box:"
    assert reply.flow.step == STEP_AWAIT_DESCRIPTION
    assert flows.handle_text(flow_store, CHAT, USER, "write docs").finished


def test_text_ignored_until_flow_waits_for_it(flow_store):
    assert flows.handle_text(flow_store, CHAT, USER, "hello") is None
    flows.begin(flow_store, FLOW_SESSION, CHAT, USER, ["box"])
    assert flows.handle_text(flow_store, CHAT, USER, "hello") is None


def test_flows_are_per_user(flow_store):
    flows.begin(flow_store, FLOW_TASK, CHAT, USER, ["box"])
    flows.handle_callback(flow_store, CHAT, USER, "tf:m:0")
    assert flows.handle_text(flow_store, CHAT, 10, "not mine") is None
    reply = flows.handle_callback(flow_store, CHAT, 10, "tf:m:0")
    assert reply.text.startswith("This menu has expired")


def test_cancel_and_expiry(flow_store, clock):
    flows.begin(flow_store, FLOW_SESSION, CHAT, USER, ["box"])
    assert flows.handle_callback(flow_store, CHAT, USER, "sf:x:0").text == "Cancelled."
    assert len(flow_store) == 0

    flows.begin(flow_store, FLOW_SESSION, CHAT, USER, ["box"])
    clock.advance(300)
    assert flows.handle_callback(flow_store, CHAT, USER, "sf:m:0").text.startswith("This menu has expired")


def test_stale_and_foreign_buttons(flow_store):
    assert flows.handle_callback(flow_store, CHAT, USER, "browse:0") is None
    flows.begin(flow_store, FLOW_SESSION, CHAT, USER, ["box"])
    assert flows.handle_callback(flow_store, CHAT, USER, "sf:m:5").text == "Unknown choice."
    assert flows.handle_callback(flow_store, CHAT, USER, "sf:e:0").text == "That button is no longer active."
    assert flows.handle_callback(flow_store, CHAT, USER, "tf:m:0").text.startswith("This menu has expired")


def test_no_targets():
    store = flows.FlowStore()
    reply = flows.begin(store, FLOW_SESSION, CHAT, USER, [])
    assert reply.text == "No SSH targets configured."
    assert len(store) == 0
