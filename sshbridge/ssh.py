import os
import time
import codecs
import threading
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Union

import paramiko

from sshbridge.config import (
    CONNECT_TIMEOUT, WRITE_TIMEOUT, KEEPALIVE_INTERVAL, BUFFER_SIZE, DEFAULT_EXEC_TIMEOUT, SSHTarget,
)
from sshbridge.utils import log_error, iso_now, json_line, safe_name

PTY_TERM = "xterm-256color"
PTY_WIDTH = 200
PTY_HEIGHT = 50


class TransportError(Exception):
    pass


def connect_client(target: SSHTarget, verify_host_key: bool = True) -> paramiko.SSHClient:
    client = paramiko.SSHClient()
    if verify_host_key:
        client.load_system_host_keys()
    else:
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

    connect_kwargs: Dict[str, Any] = {
        "hostname": target.host,
        "port": target.port,
        "username": target.user,
        "timeout": CONNECT_TIMEOUT,
        "allow_agent": True,
        "look_for_keys": True,
    }
    if target.password:
        connect_kwargs["password"] = target.password
    if target.key_path:
        connect_kwargs["key_filename"] = os.path.expanduser(target.key_path)

    try:
        client.connect(**connect_kwargs)
    except Exception:
        client.close()
        raise

    transport = client.get_transport()
    if transport:
        transport.set_keepalive(KEEPALIVE_INTERVAL)
    return client


class InteractiveHandle:
    """Owns one remote process: its SSH client, channel and reader thread."""

    def __init__(self, client: paramiko.SSHClient, channel: paramiko.Channel, label: str,
                 log_path: Optional[str] = None):
        self.client = client
        self.channel = channel
        self.label = label
        self.log_path = log_path

        self.lock = threading.Lock()
        self.write_lock = threading.Lock()
        self.reader_thread: Optional[threading.Thread] = None
        self.exit_code: Optional[int] = None
        self._closed = False
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._stderr_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def _log(self, direction: str, payload: Dict[str, Any]) -> None:
        if not self.log_path:
            return
        data = {"ts": iso_now(), "dir": direction, "handle": self.label}
        data.update(payload)
        json_line(self.log_path, data)

    def start(self, on_output: Callable[[str], None], on_exit: Callable[[Optional[int]], None]) -> None:
        thread = threading.Thread(target=self._reader_loop, args=(on_output, on_exit), daemon=True)
        self.reader_thread = thread
        thread.start()

    def _reader_loop(self, on_output, on_exit) -> None:
        self._log("SYS", {"event": "reader_started"})
        try:
            while not self.is_closed():
                got_data = False
                if self.channel.recv_ready():
                    raw = self.channel.recv(BUFFER_SIZE)
                    if raw:
                        got_data = True
                        text = self._decoder.decode(raw)
                        if text:
                            self._log("OUT", {"chunk": text})
                            on_output(text)
                if self.channel.recv_stderr_ready():
                    raw = self.channel.recv_stderr(BUFFER_SIZE)
                    if raw:
                        got_data = True
                        text = self._stderr_decoder.decode(raw)
                        if text:
                            self._log("ERR", {"chunk": text})
                            on_output(text)
                if got_data:
                    continue
                if self.channel.exit_status_ready() or self.channel.closed:
                    break
                time.sleep(0.05)
        except Exception as exc:
            self._log("SYS", {"event": "reader_error", "error": str(exc)})
            log_error(f"reader error on {self.label}: {exc}")

        if self.is_closed():
            self._log("SYS", {"event": "reader_finished", "reason": "closed"})
            return

        tail = self._decoder.decode(b"", final=True)
        if tail:
            on_output(tail)
        try:
            self.exit_code = self.channel.recv_exit_status() if self.channel.exit_status_ready() else None
        except Exception:
            self.exit_code = None
        self._log("SYS", {"event": "remote_exit", "code": self.exit_code})
        on_exit(self.exit_code)

    def write(self, data: Union[str, bytes]) -> bool:
        if self.is_closed():
            return False
        if isinstance(data, str):
            data = data.encode("utf-8")
        try:
            with self.write_lock:
                self.channel.sendall(data)
        except Exception as exc:
            self._log("SYS", {"event": "write_failed", "error": str(exc)})
            return False
        self._log("IN", {"bytes": len(data)})
        return True

    def is_closed(self) -> bool:
        with self.lock:
            return self._closed

    def close(self) -> None:
        with self.lock:
            if self._closed:
                return
            self._closed = True
        try:
            self.channel.close()
        except Exception:
            pass
        try:
            self.client.close()
        except Exception:
            pass
        self._log("SYS", {"event": "closed"})


class SSHTransport:
    def __init__(self, targets: Dict[str, SSHTarget], verify_host_key: bool = True,
                 sessions_dir: Optional[str] = None):
        self.targets = targets
        self.verify_host_key = verify_host_key
        self.sessions_dir = sessions_dir
        self.lock = threading.Lock()
        self._clients: Dict[str, paramiko.SSHClient] = {}

    def get_target(self, name: str) -> SSHTarget:
        target = self.targets.get((name or "").lower())
        if target is None:
            raise TransportError(f"unknown SSH target: {name}")
        return target

    def is_windows(self, name: str) -> bool:
        return self.get_target(name).is_windows

    def _shared_client(self, name: str) -> paramiko.SSHClient:
        target = self.get_target(name)
        with self.lock:
            client = self._clients.get(target.name)
        if client is not None:
            transport = client.get_transport()
            if transport and transport.is_active():
                return client
            client.close()

        client = connect_client(target, self.verify_host_key)
        with self.lock:
            previous = self._clients.get(target.name)
            self._clients[target.name] = client
        if previous is not None and previous is not client:
            previous.close()
        return client

    def exec(self, name: str, command: str, timeout: float = DEFAULT_EXEC_TIMEOUT) -> Dict[str, Any]:
        try:
            client = self._shared_client(name)
            _, stdout, stderr = client.exec_command(command, timeout=timeout)
            out = stdout.read().decode("utf-8", errors="replace")
            err = stderr.read().decode("utf-8", errors="replace")
            code = stdout.channel.recv_exit_status()
        except Exception as exc:
            with self.lock:
                stale = self._clients.pop((name or "").lower(), None)
            if stale is not None:
                stale.close()
            return {"success": False, "error": f"{name}: {exc}", "stdout": "", "stderr": "", "code": None}
        result = {"success": code == 0, "stdout": out, "stderr": err, "code": code}
        if code != 0:
            result["error"] = err.strip() or f"exit code {code}"
        return result

    def spawn_interactive(self, name: str, command: str, pty: bool = True) -> InteractiveHandle:
        target = self.get_target(name)
        try:
            client = connect_client(target, self.verify_host_key)
        except Exception as exc:
            raise TransportError(f"connect to {target.name} ({target.host}) failed: {exc}") from exc

        try:
            transport = client.get_transport()
            if transport is None:
                raise TransportError("no transport")
            channel = transport.open_session()
            # A stalled peer turns sendall into a timeout instead of a hang.
            channel.settimeout(WRITE_TIMEOUT)
            if pty:
                channel.get_pty(term=PTY_TERM, width=PTY_WIDTH, height=PTY_HEIGHT)
            channel.exec_command(command)
        except Exception as exc:
            client.close()
            raise TransportError(f"spawn on {target.name} failed: {exc}") from exc

        label = f"{target.name}-{datetime.now().strftime('%H%M%S')}"
        log_path = None
        if self.sessions_dir:
            stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            log_path = os.path.join(self.sessions_dir, f"{safe_name(target.name)}__{stamp}.log")
        handle = InteractiveHandle(client, channel, label, log_path)
        handle._log("SYS", {"event": "spawned", "host": target.host, "command": command, "pty": pty})
        return handle

    def close_all(self) -> None:
        with self.lock:
            clients = list(self._clients.values())
            self._clients.clear()
        for client in clients:
            try:
                client.close()
            except Exception:
                pass
