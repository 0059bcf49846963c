import os
import time
import shlex
import threading
from typing import Any, Callable, Dict, List, Optional

from sshbridge.config import (
    DEFAULT_ENGINE, DEFAULT_HARD_TIMEOUT, DEFAULT_IDLE_TIMEOUT, DEFAULT_SESSION_MODE,
    DEFAULT_SPAWN_TIMEOUT, ENGINE_COMMANDS, OUTPUT_FLUSH_DELAY, STREAM_JSON_FLAGS,
    WATCHDOG_INTERVAL,
)
from sshbridge.flows import FlowStore
from sshbridge.models import (
    ActiveSession, BrowsingSession, PendingQuestion,
    ENTRY_TEXT, ENTRY_USER_INPUT, STATE_ACTIVE, STATE_SPAWNING,
)
from sshbridge.navigator import (
    ACTION_ERROR, ACTION_NAVIGATE, ACTION_START, BrowsingAction,
    build_browsing_keyboard, format_directory_listing, list_remote_directory,
    parse_input, posix_path_arg,
)
from sshbridge.registry import SessionRegistry
from sshbridge.sanitizer import sanitize
from sshbridge.segmenter import split_message
from sshbridge.streamjson import (
    NdjsonParser, decode_line, engine_from_event, find_question, is_rate_limit_event,
    render_event, transcript_entries, wrap_stream_json_input,
)
from sshbridge.utils import iso_now, json_line, log_error, new_session_id, preview, session_title


def resolve_engine_command(engine: Optional[str]) -> str:
    name = (engine or DEFAULT_ENGINE).strip()
    return ENGINE_COMMANDS.get(name.lower(), name)


def build_spawn_command(path: str, engine_command: str, prompt: str,
                        windows: bool = False, mode: str = DEFAULT_SESSION_MODE) -> str:
    """Remote command that starts the CLI in ``path``.

    In stream-json mode the prompt is sent on stdin after start, so it is not
    part of the command line.
    """
    command = engine_command
    if mode == "stream-json":
        command = f"{command} {STREAM_JSON_FLAGS}"
    if windows:
        location = '"' + path.replace('"', '') + '"'
        if mode != "stream-json" and prompt:
            command = f"{command} -p '" + prompt.replace("'", "''") + "'"
        return f"cd {location} && {command}"
    if mode != "stream-json" and prompt:
        command = f"{command} {shlex.quote(prompt)}"
    return f"cd {posix_path_arg(path)} && {command}"


def project_name(path: str) -> str:
    name = os.path.basename(path.rstrip("/\\").replace("\\", "/"))
    return name if name and name != "~" else "home"


class SessionController:
    """Moves threads through browsing -> spawning -> active -> closed.

    The controller is the only writer of session state transitions. Network
    I/O (listing, spawning, chat delivery) never happens under the registry
    lock.
    """

    def __init__(
        self,
        chat,
        ssh,
        registry: SessionRegistry,
        archive=None,
        task_queue=None,
        flows: Optional[FlowStore] = None,
        session_mode: str = DEFAULT_SESSION_MODE,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
        hard_timeout: float = DEFAULT_HARD_TIMEOUT,
        spawn_timeout: float = DEFAULT_SPAWN_TIMEOUT,
        flush_delay: float = OUTPUT_FLUSH_DELAY,
        background_spawn: bool = True,
        sessions_dir: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.chat = chat
        self.ssh = ssh
        self.registry = registry
        self.archive = archive
        self.task_queue = task_queue
        self.flows = flows
        self.session_mode = session_mode
        self.idle_timeout = idle_timeout
        self.hard_timeout = hard_timeout
        self.spawn_timeout = spawn_timeout
        self.flush_delay = flush_delay
        self.background_spawn = background_spawn
        self.clock = clock
        self.event_log_path = os.path.join(sessions_dir, "bridge_events.log") if sessions_dir else None

        self.lock = threading.Lock()
        self._pending_output: Dict[str, List[str]] = {}
        self._flush_timers: Dict[str, threading.Timer] = {}
        self._parsers: Dict[str, NdjsonParser] = {}

        self.watchdog_stop = threading.Event()
        self.watchdog_thread: Optional[threading.Thread] = None

    # ---- helpers ----

    def _log_event(self, payload: Dict[str, Any]) -> None:
        if not self.event_log_path:
            return
        data = {"ts": iso_now()}
        data.update(payload)
        json_line(self.event_log_path, data)

    def _say(self, chat_id: int, thread_id: Optional[int], text: str, keyboard=None) -> Optional[int]:
        return self.chat.send_message(chat_id, text, thread_id=thread_id, reply_markup=keyboard)

    # ---- browsing ----

    def start_browsing(self, chat_id: int, target: str, prompt: str, engine: Optional[str] = None,
                       thread_id: Optional[int] = None, path: Optional[str] = None) -> Dict[str, Any]:
        try:
            target_cfg = self.ssh.get_target(target)
        except Exception as exc:
            return {"success": False, "error": str(exc)}

        if thread_id is None:
            try:
                thread_id = self.chat.create_thread(chat_id, f"{target_cfg.name}: {session_title(prompt)}")
            except Exception as exc:
                log_error(f"create thread failed: {exc}")
                return {"success": False, "error": f"could not create thread: {exc}"}

        state = self.registry.classify(thread_id)
        if state in (STATE_ACTIVE, STATE_SPAWNING):
            return {"success": False, "error": f"thread {thread_id} already has a session", "thread_id": thread_id}

        session = BrowsingSession(
            thread_id=thread_id,
            target=target_cfg.name,
            current_path=path or target_cfg.start_dir,
            prompt=prompt,
            engine_command=resolve_engine_command(engine or target_cfg.engine),
            chat_id=chat_id,
        )
        dirs, error = list_remote_directory(self.ssh, session.target, session.current_path)
        session.last_dir_listing = dirs
        self.registry.set_browsing(session)
        self._log_event({"event": "browsing_started", "thread_id": thread_id, "target": session.target,
                         "path": session.current_path})

        if error:
            self._say(chat_id, thread_id, f"Error: {error}\nStill at: {session.current_path}")
        else:
            self._send_listing(session)
        return {"success": True, "thread_id": thread_id, "path": session.current_path}

    def _send_listing(self, session: BrowsingSession) -> None:
        self._say(
            session.chat_id,
            session.thread_id,
            format_directory_listing(session.current_path, session.last_dir_listing),
            keyboard=build_browsing_keyboard(session.last_dir_listing),
        )

    def handle_browsing_input(self, chat_id: int, thread_id: int, text: str) -> BrowsingAction:
        session = self.registry.get_browsing(thread_id)
        if session is None:
            return BrowsingAction.error("No browsing session in this thread.")
        self.registry.touch_browsing(thread_id)

        action = parse_input(text, session)
        if action.kind == ACTION_START:
            self.spawn_from_browsing(chat_id, thread_id)
        elif action.kind == ACTION_NAVIGATE:
            dirs, error = list_remote_directory(self.ssh, session.target, action.path)
            if error:
                message = f"Error: {error}\nStill at: {session.current_path}"
                self._say(chat_id, thread_id, message)
                return BrowsingAction.error(message)
            session.history.append(session.current_path)
            session.current_path = action.path
            session.last_dir_listing = dirs
            self._send_listing(session)
        elif action.kind == ACTION_ERROR:
            self._say(chat_id, thread_id, action.message)
        return action

    def cancel_browsing(self, chat_id: int, thread_id: int) -> bool:
        if self.registry.remove_browsing(thread_id) is None:
            return False
        self._say(chat_id, thread_id, "Browsing cancelled.")
        return True

    # ---- spawning ----

    def spawn_from_browsing(self, chat_id: int, thread_id: int) -> Dict[str, Any]:
        browsing = self.registry.spawn_from_browsing(thread_id)
        if browsing is None:
            return {"success": False, "error": "no browsing session, or a session is already starting"}
        return self._run_spawn(
            chat_id, thread_id, browsing.target, browsing.current_path,
            browsing.prompt, browsing.engine_command,
        )

    def spawn_session(self, chat_id: int, thread_id: int, target: str, path: str, prompt: str,
                      engine: Optional[str] = None, mode: Optional[str] = None,
                      task_id: Optional[str] = None) -> Dict[str, Any]:
        if not self.registry.enter_spawning(thread_id):
            return {"success": False, "error": "thread already has a running or starting session"}
        return self._run_spawn(chat_id, thread_id, target, path, prompt,
                               resolve_engine_command(engine), mode=mode, task_id=task_id)

    def _run_spawn(self, *args, **kwargs) -> Dict[str, Any]:
        # The spawning marker is already set; only the connect may run in the background.
        if not self.background_spawn:
            return self._spawn(*args, **kwargs)
        threading.Thread(target=self._spawn, args=args, kwargs=kwargs, daemon=True).start()
        return {"success": True, "pending": True, "thread_id": args[1]}

    def _spawn(self, chat_id: int, thread_id: int, target: str, path: str, prompt: str,
               engine_command: str, mode: Optional[str] = None,
               task_id: Optional[str] = None) -> Dict[str, Any]:
        mode = mode or self.session_mode
        try:
            windows = self.ssh.is_windows(target)
        except Exception as exc:
            return self._spawn_failed(chat_id, thread_id, target, str(exc))
        command = build_spawn_command(path, engine_command, prompt, windows=windows, mode=mode)
        self._say(chat_id, thread_id, f"Starting session on {target} in {path}...")
        self._log_event({"event": "spawn_requested", "thread_id": thread_id, "target": target,
                         "command": command})

        state: Dict[str, Any] = {"abandoned": False}
        state_lock = threading.Lock()
        done = threading.Event()

        def worker():
            handle, error = None, None
            try:
                handle = self.ssh.spawn_interactive(target, command, pty=(mode != "stream-json"))
            except Exception as exc:
                error = str(exc) or exc.__class__.__name__
            with state_lock:
                orphaned = state["abandoned"]
                state["handle"] = handle
                state["error"] = error
                done.set()
            if orphaned and handle is not None:
                log_error(f"closing handle that arrived after spawn timeout (thread {thread_id})")
                handle.close()

        threading.Thread(target=worker, daemon=True).start()
        done.wait(self.spawn_timeout)
        with state_lock:
            if not done.is_set():
                state["abandoned"] = True
                return self._spawn_failed(
                    chat_id, thread_id, target, f"timed out after {int(self.spawn_timeout)}s"
                )
        if state.get("error") or state.get("handle") is None:
            return self._spawn_failed(chat_id, thread_id, target, state.get("error") or "no handle")

        handle = state["handle"]
        session = ActiveSession(
            thread_id=thread_id,
            session_id=new_session_id(),
            target=target,
            handle=handle,
            chat_id=chat_id,
            project=project_name(path),
            mode=mode,
            task_id=task_id,
            workspace=path,
            prompt=prompt,
            started_at=self.clock(),
            last_activity=self.clock(),
        )
        if prompt:
            session.record(ENTRY_USER_INPUT, prompt, initial=True)
        if mode == "stream-json":
            self._parsers[session.session_id] = NdjsonParser()

        self.registry.set_active(thread_id, session)
        self._log_event({"event": "session_started", "thread_id": thread_id,
                         "session_id": session.session_id, "target": target, "mode": mode})
        self._say(chat_id, thread_id, f"Session {session.session_id} started. Messages here go to the session; /close to end it.")

        handle.start(
            on_output=lambda chunk: self.handle_output(session, chunk),
            on_exit=lambda code: self.handle_exit(session, code),
        )
        if mode == "stream-json" and prompt:
            handle.write(wrap_stream_json_input(prompt))
        return {"success": True, "thread_id": thread_id, "session_id": session.session_id}

    def _spawn_failed(self, chat_id: int, thread_id: int, target: str, error: str) -> Dict[str, Any]:
        self.registry.exit_spawning(thread_id)
        self._log_event({"event": "spawn_failed", "thread_id": thread_id, "target": target, "error": error})
        self._say(chat_id, thread_id, f"Failed to start session on {target}: {error}")
        return {"success": False, "error": error, "thread_id": thread_id}

    # ---- output ----

    def handle_output(self, session: ActiveSession, chunk: str) -> None:
        if session.closed:
            return
        session.touch(self.clock())
        if session.mode == "stream-json":
            self._handle_stream_json(session, chunk)
            return
        with self.lock:
            self._pending_output.setdefault(session.session_id, []).append(chunk)
            if self.flush_delay <= 0 or session.session_id in self._flush_timers:
                timer = None
            else:
                timer = threading.Timer(self.flush_delay, self.flush_output, args=(session,))
                timer.daemon = True
                self._flush_timers[session.session_id] = timer
        if timer is not None:
            timer.start()
        elif self.flush_delay <= 0:
            self.flush_output(session)

    def flush_output(self, session: ActiveSession) -> None:
        """Sanitize and deliver everything buffered for ``session``."""
        with session.delivery_lock:
            with self.lock:
                self._flush_timers.pop(session.session_id, None)
                chunks = self._pending_output.pop(session.session_id, [])
            if not chunks or session.closed:
                return
            text = sanitize(chunks)
            if not text:
                return
            session.record(ENTRY_TEXT, text)
            self._deliver_locked(session, text)

    def _handle_stream_json(self, session: ActiveSession, chunk: str) -> None:
        parser = self._parsers.get(session.session_id)
        if parser is None:
            return
        texts = []
        for line in parser.feed(chunk):
            event = decode_line(line)
            if event is None:
                continue
            with session.lock:
                if is_rate_limit_event(event):
                    session.rate_limit_count += 1
                    session.last_usage_check_time = self.clock()
                elif isinstance(event, dict) and event.get("type") == "assistant":
                    session.total_turns += 1
                engine = engine_from_event(event)
                if engine:
                    session.current_engine = engine
                session.transcript.extend(transcript_entries(event))

            question = find_question(event)
            if question:
                tool_id, text, options = question
                self.registry.put_question(PendingQuestion(session.thread_id, tool_id, text, options))
                self._ask(session, text, options)
                continue
            rendered = render_event(event)
            if rendered:
                texts.append(rendered)
        if texts:
            self.deliver(session, "\n".join(texts))

    def _ask(self, session: ActiveSession, question: str, options: List[str]) -> None:
        keyboard = {"inline_keyboard": [
            [{"text": label[:60], "callback_data": f"aq:{index}"}] for index, label in enumerate(options)
        ]}
        with session.delivery_lock:
            if not session.closed:
                self._say(session.chat_id, session.thread_id, f"❓ {question}", keyboard=keyboard)

    def deliver(self, session: ActiveSession, text: str) -> None:
        with session.delivery_lock:
            self._deliver_locked(session, text)

    def _deliver_locked(self, session: ActiveSession, text: str) -> None:
        if session.closed:
            return
        # Sequential on purpose: send order is the only ordering a reader sees.
        for chunk in split_message(text):
            self._say(session.chat_id, session.thread_id, chunk)

    def handle_exit(self, session: ActiveSession, code: Optional[int]) -> None:
        self.flush_output(session)
        parser = self._parsers.get(session.session_id)
        if parser is not None:
            rest = [render_event(decode_line(line)) for line in parser.flush()]
            rest = [text for text in rest if text]
            if rest:
                self.deliver(session, "\n".join(rest))
        label = "unknown" if code is None else code
        self.close_session(session.thread_id, reason="remote exit",
                           notify=f"Session ended (exit code: {label})", session=session)

    # ---- input ----

    def _write(self, session: ActiveSession, data: str) -> bool:
        """Write outside ``session.lock`` so a stalled channel cannot hold up close."""
        with session.lock:
            if session.closed:
                return False
        ok = session.handle.write(data)
        with session.lock:
            return ok and not session.closed

    def write_input(self, chat_id: int, thread_id: int, text: str) -> bool:
        session = self.registry.get_active(thread_id)
        if session is None:
            return False
        data = wrap_stream_json_input(text) if session.mode == "stream-json" else text + "\r"
        if not self._write(session, data):
            if not session.closed:
                self._say(chat_id, thread_id, "Failed to write to the session; closing it.")
                self.close_session(thread_id, reason="write failed", session=session)
            return False
        session.record(ENTRY_USER_INPUT, text)
        session.touch(self.clock())
        if session.mode != "stream-json":
            with session.lock:
                session.total_turns += 1
        self._log_event({"event": "input", "thread_id": thread_id, "preview": preview(text)})
        return True

    def send_control(self, chat_id: int, thread_id: int, data: str, label: str) -> bool:
        session = self.registry.get_active(thread_id)
        if session is None:
            return False
        ok = self._write(session, data)
        if ok:
            session.touch(self.clock())
            self._say(chat_id, thread_id, f"Sent {label}")
        return ok

    def answer_question(self, chat_id: int, thread_id: int, index: int) -> Optional[str]:
        question = self.registry.get_question(thread_id)
        if question is None or not 0 <= index < len(question.options):
            return None
        self.registry.pop_question(thread_id)
        answer = question.options[index]
        if not self.write_input(chat_id, thread_id, answer):
            return None
        return answer

    # ---- close ----

    def close_session(self, thread_id: int, reason: str = "closed", notify: Optional[str] = None,
                      session: Optional[ActiveSession] = None, close_thread: bool = False) -> bool:
        session = session or self.registry.get_active(thread_id)
        if session is None:
            return False
        with session.lock:
            if session.closed:
                return False
            session.closed = True
            session.close_reason = reason

        try:
            session.handle.close()
        except Exception as exc:
            log_error(f"handle close failed for {session.session_id}: {exc}")
        self.registry.mark_closed(thread_id)
        self.registry.clear_active(thread_id, session)

        with self.lock:
            timer = self._flush_timers.pop(session.session_id, None)
            self._pending_output.pop(session.session_id, None)
            self._parsers.pop(session.session_id, None)
        if timer is not None:
            timer.cancel()

        self._log_event({"event": "session_closed", "thread_id": thread_id,
                         "session_id": session.session_id, "reason": reason})
        if notify:
            self._say(session.chat_id, thread_id, notify)
        if close_thread:
            self.chat.close_thread(session.chat_id, thread_id)
        self._analyze_async(session)
        return True

    def _analyze_async(self, session: ActiveSession) -> None:
        if self.archive is None:
            return
        transcript = session.snapshot_transcript()
        context = {
            "session_id": session.session_id,
            "project": session.project,
            "task_id": session.task_id,
            "target": session.target,
            "outcome": session.close_reason,
            "duration": round(self.clock() - session.started_at, 1),
            "engine": session.current_engine,
            "turns": session.total_turns,
            "rate_limits": session.rate_limit_count,
        }

        def run():
            try:
                self.archive.analyze(transcript, context)
            except Exception as exc:
                log_error(f"transcript analysis failed for {session.session_id}: {exc}")

        threading.Thread(target=run, daemon=True).start()

    # ---- tasks & listing ----

    def queue_task(self, chat_id: int, target: str, prompt: str, engine: Optional[str] = None,
                   path: Optional[str] = None, thread_id: Optional[int] = None) -> Dict[str, Any]:
        if self.task_queue is None:
            return {"success": False, "error": "task queue not configured"}
        try:
            target_cfg = self.ssh.get_target(target)
        except Exception as exc:
            return {"success": False, "error": str(exc)}
        params = {
            "target": target_cfg.name,
            "prompt": prompt,
            "engine": engine or target_cfg.engine,
            "workspace": path or target_cfg.start_dir,
            "chat_id": chat_id,
            "thread_id": thread_id,
        }
        try:
            task_id = self.task_queue.submit(params)
        except Exception as exc:
            log_error(f"task submit failed: {exc}")
            return {"success": False, "error": str(exc)}
        self._log_event({"event": "task_queued", "task_id": task_id, "target": target_cfg.name})
        self._say(chat_id, thread_id, f"Queued task {task_id} on {target_cfg.name}: {preview(prompt)}")
        return {"success": True, "task_id": task_id}

    def list_sessions(self) -> List[Dict[str, Any]]:
        rows = [session.info() for session in self.registry.list_active()]
        rows.sort(key=lambda row: row["started_at"])
        return rows

    # ---- timeouts ----

    def check_timeouts(self) -> List[int]:
        """One watchdog pass; returns the threads closed by a timeout."""
        now = self.clock()
        closed = []
        for session in self.registry.list_active():
            if self.hard_timeout > 0 and now - session.started_at >= self.hard_timeout:
                minutes = int(self.hard_timeout // 60)
                if self.close_session(session.thread_id, reason="hard timeout", session=session,
                                      notify=f"Session closed: time limit of {minutes} min reached."):
                    closed.append(session.thread_id)
            elif self.idle_timeout > 0 and now - session.last_activity >= self.idle_timeout:
                minutes = int(self.idle_timeout // 60)
                if self.close_session(session.thread_id, reason="idle timeout", session=session,
                                      notify=f"Session closed after {minutes} min without activity."):
                    closed.append(session.thread_id)
        if self.flows is not None:
            self.flows.sweep()
        self.registry.expire_browsing()
        return closed

    def _watchdog_loop(self) -> None:
        while not self.watchdog_stop.wait(WATCHDOG_INTERVAL):
            try:
                self.check_timeouts()
            except Exception as exc:
                log_error(f"watchdog error: {exc}")

    def start_watchdog(self) -> None:
        if self.watchdog_thread is not None:
            return
        self.watchdog_thread = threading.Thread(target=self._watchdog_loop, daemon=True)
        self.watchdog_thread.start()

    def close_all(self) -> None:
        self.watchdog_stop.set()
        for session in self.registry.list_active():
            self.close_session(session.thread_id, reason="shutdown", session=session,
                               notify="Bridge is shutting down; session closed.")
