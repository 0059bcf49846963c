import threading
from typing import Dict, List, Optional

import pytest

from sshbridge.config import SSHTarget
from sshbridge.flows import FlowStore
from sshbridge.lifecycle import SessionController
from sshbridge.navigator import build_list_command
from sshbridge.registry import SessionRegistry
from sshbridge.relay import InputRelay


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeChat:
    def __init__(self):
        self.messages: List[Dict] = []
        self.edits: List[Dict] = []
        self.callbacks: List[Dict] = []
        self.closed_threads: List[int] = []
        self.next_thread_id = 100
        self.next_message_id = 1

    def send_message(self, chat_id, text, thread_id=None, reply_markup=None):
        self.messages.append({"chat_id": chat_id, "text": text, "thread_id": thread_id,
                              "reply_markup": reply_markup})
        self.next_message_id += 1
        return self.next_message_id

    def edit_message(self, chat_id, message_id, text, reply_markup=None):
        self.edits.append({"chat_id": chat_id, "message_id": message_id, "text": text,
                           "reply_markup": reply_markup})
        return True

    def create_thread(self, chat_id, name):
        self.next_thread_id += 1
        return self.next_thread_id

    def close_thread(self, chat_id, thread_id):
        self.closed_threads.append(thread_id)
        return True

    def answer_callback(self, callback_id, text=""):
        self.callbacks.append({"id": callback_id, "text": text})

    def texts(self, thread_id=None) -> List[str]:
        return [m["text"] for m in self.messages if thread_id is None or m["thread_id"] == thread_id]


class FakeHandle:
    def __init__(self, command: str):
        self.command = command
        self.writes: List[str] = []
        self.closed = False
        self.on_output = None
        self.on_exit = None
        # When set, write blocks until the gate opens, like a stalled channel.
        self.write_gate: Optional[threading.Event] = None
        self.write_started = threading.Event()

    def start(self, on_output, on_exit):
        self.on_output = on_output
        self.on_exit = on_exit

    def write(self, data):
        if self.closed:
            return False
        if self.write_gate is not None:
            self.write_started.set()
            self.write_gate.wait(5)
        self.writes.append(data)
        return True

    def close(self):
        self.closed = True

    def is_closed(self):
        return self.closed

    def emit(self, chunk: str) -> None:
        self.on_output(chunk)

    def exit(self, code: Optional[int] = 0) -> None:
        self.on_exit(code)


class FakeSSH:
    def __init__(self, targets: Dict[str, SSHTarget]):
        self.targets = targets
        self.listings: Dict[str, List[str]] = {}
        self.failing_paths: Dict[str, str] = {}
        self.exec_calls: List[str] = []
        self.spawn_calls: List[Dict] = []
        self.handles: List[FakeHandle] = []
        self.spawn_error: Optional[Exception] = None
        self.spawn_gate: Optional[threading.Event] = None
        self.spawned = threading.Event()

    def get_target(self, name):
        target = self.targets.get((name or "").lower())
        if target is None:
            raise KeyError(f"unknown SSH target: {name}")
        return target

    def is_windows(self, name):
        return self.get_target(name).is_windows

    def exec(self, name, command, timeout=30.0):
        self.exec_calls.append(command)
        windows = self.is_windows(name)
        for path, error in self.failing_paths.items():
            if build_list_command(path, windows) == command:
                return {"success": False, "error": error, "stdout": "", "stderr": error, "code": 2}
        for path, dirs in self.listings.items():
            if build_list_command(path, windows) == command:
                stdout = "".join(f"{name}/\n" for name in dirs)
                return {"success": True, "stdout": stdout, "stderr": "", "code": 0}
        return {"success": True, "stdout": "", "stderr": "", "code": 0}

    def spawn_interactive(self, name, command, pty=True):
        self.spawn_calls.append({"target": name, "command": command, "pty": pty})
        if self.spawn_gate is not None:
            self.spawn_gate.wait()
        if self.spawn_error is not None:
            raise self.spawn_error
        handle = FakeHandle(command)
        self.handles.append(handle)
        self.spawned.set()
        return handle


class FakeArchive:
    def __init__(self):
        self.calls = []
        self.done = threading.Event()

    def analyze(self, transcript, context):
        self.calls.append((transcript, context))
        self.done.set()


class FakeTaskQueue:
    def __init__(self):
        self.submitted = []

    def submit(self, params):
        self.submitted.append(params)
        return f"task{len(self.submitted)}"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def chat():
    return FakeChat()


@pytest.fixture
def ssh():
    fake = FakeSSH({
        "box": SSHTarget(name="box", host="10.0.0.5", user="dev", start_dir="~/proj"),
        "win": SSHTarget(name="win", host="10.0.0.9", os="windows", start_dir="C:\\work"),
    })
    fake.listings["~/proj"] = ["lib", "src", "test"]
    fake.listings["~/proj/src"] = ["core", "util"]
    return fake


@pytest.fixture
def registry(clock):
    return SessionRegistry(clock=clock)


@pytest.fixture
def archive():
    return FakeArchive()


@pytest.fixture
def task_queue():
    return FakeTaskQueue()


@pytest.fixture
def flow_store(clock):
    return FlowStore(clock=clock)


@pytest.fixture
def controller(chat, ssh, registry, archive, task_queue, flow_store, clock):
    return SessionController(
        chat,
        ssh,
        registry,
        archive=archive,
        task_queue=task_queue,
        flows=flow_store,
        spawn_timeout=2.0,
        flush_delay=0,
        background_spawn=False,
        clock=clock,
    )


@pytest.fixture
def relay(registry, controller):
    return InputRelay(registry, controller)
