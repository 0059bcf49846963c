import time
import argparse

import httpx

from sshbridge.collaborators import TaskQueue, TranscriptArchive
from sshbridge.config import MAX_HARD_TIMEOUT, SESSION_MODES, config
from sshbridge.flows import FlowStore
from sshbridge.lifecycle import SessionController
from sshbridge.registry import SessionRegistry, spawning_ttl_for
from sshbridge.relay import InputRelay
from sshbridge.server import Bridge, handle_update
from sshbridge.ssh import SSHTransport
from sshbridge.telegram import TelegramChat, TelegramError
from sshbridge.utils import clamp_float, log_error, make_cache_dirs, resolve_cache_root, to_bool

POLL_ERROR_BACKOFF = 5.0


def build_bridge(chat) -> Bridge:
    registry = SessionRegistry(spawning_ttl=spawning_ttl_for(config.SPAWN_TIMEOUT))
    flow_store = FlowStore()
    ssh = SSHTransport(config.TARGETS, config.SSH_VERIFY_HOST_KEY, sessions_dir=config.CACHE_DIRS["sessions_dir"])
    controller = SessionController(
        chat,
        ssh,
        registry,
        archive=TranscriptArchive(config.CACHE_DIRS["transcripts_dir"]),
        task_queue=TaskQueue(config.CACHE_DIRS["tasks_dir"]),
        flows=flow_store,
        session_mode=config.SESSION_MODE,
        idle_timeout=config.IDLE_TIMEOUT,
        hard_timeout=config.HARD_TIMEOUT,
        spawn_timeout=config.SPAWN_TIMEOUT,
        sessions_dir=config.CACHE_DIRS["sessions_dir"],
    )
    relay = InputRelay(registry, controller)
    return Bridge(chat, controller, relay, flow_store, sorted(config.TARGETS),
                  group_chat_id=config.TELEGRAM_GROUP_CHAT_ID)


def run_polling(bridge: Bridge) -> None:
    offset = None
    while True:
        try:
            updates = bridge.chat.get_updates(offset)
        except (httpx.HTTPError, TelegramError) as exc:
            log_error(f"getUpdates failed: {exc}")
            time.sleep(POLL_ERROR_BACKOFF)
            continue
        for update in updates:
            offset = update["update_id"] + 1
            try:
                handle_update(update, bridge)
            except Exception as exc:
                # One bad update must not take down the other threads.
                log_error(f"update {update.get('update_id')} failed: {exc}")


def main() -> None:
    # Pre-load from environment
    config.load_from_env()

    parser = argparse.ArgumentParser(
        description="Telegram forum topics <-> interactive coding CLI sessions over SSH"
    )
    parser.add_argument("--token", help="Telegram bot token (overrides TELEGRAM_BOT_TOKEN env)")
    parser.add_argument("--chat-id", type=int, help="Forum supergroup chat id (overrides TELEGRAM_GROUP_CHAT_ID env)")
    parser.add_argument("--mode", choices=SESSION_MODES, help="Session output mode (overrides BRIDGE_SESSION_MODE env)")
    parser.add_argument("--idle-timeout", help="Idle seconds before a session is closed, 0 disables")
    parser.add_argument("--hard-timeout", help="Maximum session lifetime in seconds, 0 disables")
    parser.add_argument("--spawn-timeout", help="Seconds to wait for a session to start")
    parser.add_argument("--verify-host", help="Verify SSH host keys: true/false (overrides SSH_VERIFY_HOST_KEY env)")
    parser.add_argument("--cache-dir", help="Optional cache root override")

    args = parser.parse_args()

    # Apply args over env vars
    if args.token: config.TELEGRAM_BOT_TOKEN = args.token
    if args.chat_id: config.TELEGRAM_GROUP_CHAT_ID = args.chat_id
    if args.mode: config.SESSION_MODE = args.mode
    if args.idle_timeout is not None:
        config.IDLE_TIMEOUT = clamp_float(args.idle_timeout, config.IDLE_TIMEOUT, 0.0, MAX_HARD_TIMEOUT)
    if args.hard_timeout is not None:
        config.HARD_TIMEOUT = clamp_float(args.hard_timeout, config.HARD_TIMEOUT, 0.0, MAX_HARD_TIMEOUT)
    if args.spawn_timeout is not None:
        config.SPAWN_TIMEOUT = clamp_float(args.spawn_timeout, config.SPAWN_TIMEOUT, 1.0, 600.0)
    if args.verify_host is not None:
        config.SSH_VERIFY_HOST_KEY = to_bool(args.verify_host, config.SSH_VERIFY_HOST_KEY)

    # Validation
    if not config.TELEGRAM_BOT_TOKEN:
        parser.error("Telegram bot token is required (via --token or TELEGRAM_BOT_TOKEN env)")
    if not config.TARGETS:
        parser.error("At least one SSH target is required (BRIDGE_SSH_TARGETS and BRIDGE_SSH_<NAME>_HOST env)")

    config.CACHE_DIR = resolve_cache_root(args.cache_dir or config.CACHE_DIR)
    config.CACHE_DIRS = make_cache_dirs(config.CACHE_DIR)

    chat = TelegramChat(config.TELEGRAM_BOT_TOKEN)
    bridge = build_bridge(chat)
    bridge.controller.start_watchdog()

    log_error(
        f"bridge started. targets={','.join(sorted(config.TARGETS))} mode={config.SESSION_MODE} "
        f"cache={config.CACHE_DIRS['cache_root']} verify_host={config.SSH_VERIFY_HOST_KEY}"
    )

    try:
        run_polling(bridge)
    except KeyboardInterrupt:
        pass
    finally:
        log_error("shutting down...")
        bridge.controller.close_all()
        bridge.controller.ssh.close_all()
        chat.close()


if __name__ == "__main__":
    main()
