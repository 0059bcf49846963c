import socket
import threading

import pytest

from sshbridge.config import WRITE_TIMEOUT, SSHTarget
from sshbridge.ssh import InteractiveHandle, SSHTransport, TransportError


class StubChannel:
    def __init__(self, chunks, exit_code=0, stderr_chunks=()):
        self.chunks = list(chunks)
        self.stderr_chunks = list(stderr_chunks)
        self.exit_code = exit_code
        self.sent = []
        self.closed = False
        self.fail_send = False
        self.stall_send = False
        self.timeout = None
        self.pty = None
        self.commands = []

    def recv_ready(self):
        return bool(self.chunks)

    def recv(self, size):
        return self.chunks.pop(0)

    def recv_stderr_ready(self):
        return bool(self.stderr_chunks)

    def recv_stderr(self, size):
        return self.stderr_chunks.pop(0)

    def exit_status_ready(self):
        return self.exit_code is not None and not self.chunks and not self.stderr_chunks

    def recv_exit_status(self):
        return self.exit_code

    def settimeout(self, timeout):
        self.timeout = timeout

    def get_pty(self, term, width, height):
        self.pty = (term, width, height)

    def exec_command(self, command):
        self.commands.append(command)

    def sendall(self, data):
        if self.fail_send:
            raise OSError("socket closed")
        if self.stall_send:
            raise socket.timeout("timed out")
        self.sent.append(data)

    def close(self):
        self.closed = True


class StubClient:
    def __init__(self, channel=None):
        self.closed = False
        self.channel = channel

    def get_transport(self):
        return self

    def open_session(self):
        return self.channel

    def close(self):
        self.closed = True


def run_handle(channel, log_path=None):
    output, exits = [], []
    finished = threading.Event()

    def on_exit(code):
        exits.append(code)
        finished.set()

    handle = InteractiveHandle(StubClient(), channel, "box-test", log_path)
    handle.start(output.append, on_exit)
    return handle, output, exits, finished


def test_reader_decodes_split_utf8_and_reports_exit(tmp_path):
    data = "café ❯".encode("utf-8")
    channel = StubChannel([data[:4], data[4:]], exit_code=3, stderr_chunks=[b"warn\n"])
    handle, output, exits, finished = run_handle(channel, str(tmp_path / "handle.log"))
    assert finished.wait(2.0)
    assert "".join(c for c in output if c != "warn\n") == "café ❯"
    assert "warn\n" in output
    assert exits == [3]
    assert (tmp_path / "handle.log").exists()


def test_reader_stops_silently_when_closed_locally():
    channel = StubChannel([], exit_code=None)
    handle, output, exits, finished = run_handle(channel)
    handle.close()
    handle.reader_thread.join(2.0)
    assert not handle.reader_thread.is_alive()
    assert exits == []
    assert channel.closed and handle.client.closed


def test_write_and_close():
    channel = StubChannel([], exit_code=None)
    handle = InteractiveHandle(StubClient(), channel, "box-test")
    assert handle.write("hi\r")
    assert channel.sent == [b"hi\r"]
    channel.fail_send = True
    assert not handle.write(b"x")
    handle.close()
    handle.close()
    assert handle.is_closed()
    assert not handle.write("after")


class StubStream:
    def __init__(self, data, code=0):
        self.data = data
        self.channel = self
        self.code = code

    def read(self):
        return self.data

    def recv_exit_status(self):
        return self.code


class StubExecClient:
    def __init__(self, stdout=b"", stderr=b"", code=0, error=None):
        self.result = (stdout, stderr, code)
        self.error = error
        self.commands = []
        self.closed = False

    def exec_command(self, command, timeout=None):
        self.commands.append(command)
        if self.error:
            raise self.error
        stdout, stderr, code = self.result
        return None, StubStream(stdout, code), StubStream(stderr, code)

    def close(self):
        self.closed = True


@pytest.fixture
def transport():
    return SSHTransport({"box": SSHTarget(name="box", host="10.0.0.5")}, verify_host_key=False)


def test_exec_success_and_failure(transport, monkeypatch):
    client = StubExecClient(stdout=b"lib/\nsrc/\n")
    monkeypatch.setattr(transport, "_shared_client", lambda name: client)
    result = transport.exec("box", "ls -1 -p")
    assert result == {"success": True, "stdout": "lib/\nsrc/\n", "stderr": "", "code": 0}

    client.result = (b"", b"ls: cannot access\n", 2)
    result = transport.exec("box", "ls -1 -p /nope")
    assert result["success"] is False
    assert result["error"] == "ls: cannot access"
    assert result["code"] == 2


def test_exec_connection_error_is_a_result(transport, monkeypatch):
    client = StubExecClient(error=EOFError("connection dropped"))
    monkeypatch.setattr(transport, "_shared_client", lambda name: client)
    result = transport.exec("box", "ls")
    assert result["success"] is False
    assert "connection dropped" in result["error"]


def test_unknown_target(transport):
    with pytest.raises(TransportError):
        transport.get_target("mars")
    assert transport.exec("mars", "ls")["success"] is False
    with pytest.raises(TransportError):
        transport.spawn_interactive("mars", "claude")


def test_spawn_bounds_writes_with_channel_timeout(transport, monkeypatch):
    channel = StubChannel([], exit_code=None)
    monkeypatch.setattr("sshbridge.ssh.connect_client", lambda target, verify: StubClient(channel))
    handle = transport.spawn_interactive("box", "claude")
    assert handle.channel is channel
    assert channel.timeout == WRITE_TIMEOUT
    assert channel.pty is not None
    assert channel.commands == ["claude"]


def test_write_timeout_is_a_failed_write():
    channel = StubChannel([], exit_code=None)
    handle = InteractiveHandle(StubClient(), channel, "box-test")
    channel.stall_send = True
    assert not handle.write("hello\r")
    assert channel.sent == []
    assert not handle.write_lock.locked()
    channel.stall_send = False
    assert handle.write("again\r")
