from sshbridge.config import BridgeConfig, SSHTarget, config, load_target_from_env, parse_target_names
from sshbridge.main import build_bridge
from sshbridge.utils import clamp_float, session_title, strip_bot_mention, to_bool


def test_target_names():
    assert parse_target_names(" Box, win ,,") == ["box", "win"]
    assert parse_target_names("") == []


def test_target_from_env():
    env = {
        "BRIDGE_SSH_BUILD_BOX_HOST": "10.1.1.1",
        "BRIDGE_SSH_BUILD_BOX_PORT": "2222",
        "BRIDGE_SSH_BUILD_BOX_OS": "windows",
        "BRIDGE_SSH_BUILD_BOX_ENGINE": "Codex",
    }
    target = load_target_from_env("build-box", env)
    assert target == SSHTarget(name="build-box", host="10.1.1.1", port=2222, os="windows", engine="codex")
    assert target.is_windows
    assert load_target_from_env("ghost", env) is None


def test_load_from_env(monkeypatch):
    monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "123:abc")
    monkeypatch.setenv("TELEGRAM_GROUP_CHAT_ID", "-100200")
    monkeypatch.setenv("SSH_VERIFY_HOST_KEY", "no")
    monkeypatch.setenv("BRIDGE_SESSION_MODE", "stream-json")
    monkeypatch.setenv("BRIDGE_IDLE_TIMEOUT", "120")
    monkeypatch.setenv("BRIDGE_SSH_TARGETS", "box,missing")
    monkeypatch.setenv("BRIDGE_SSH_BOX_HOST", "box.local")
    monkeypatch.setenv("BRIDGE_SSH_BOX_START_DIR", "~/src")

    cfg = BridgeConfig()
    cfg.load_from_env()
    assert cfg.TELEGRAM_BOT_TOKEN == "123:abc"
    assert cfg.TELEGRAM_GROUP_CHAT_ID == -100200
    assert cfg.SSH_VERIFY_HOST_KEY is False
    assert cfg.SESSION_MODE == "stream-json"
    assert cfg.IDLE_TIMEOUT == 120.0
    assert list(cfg.TARGETS) == ["box"]
    assert cfg.TARGETS["box"].start_dir == "~/src"


def test_unknown_mode_keeps_default(monkeypatch):
    monkeypatch.setenv("BRIDGE_SESSION_MODE", "fancy")
    cfg = BridgeConfig()
    cfg.load_from_env()
    assert cfg.SESSION_MODE == "tui"


def test_helpers():
    assert clamp_float("abc", 5.0, 0.0, 10.0) == 5.0
    assert clamp_float("99", 5.0, 0.0, 10.0) == 10.0
    assert to_bool("Yes") is True
    assert to_bool("maybe", default=True) is True
    assert strip_bot_mention("/close@MyBot now") == "/close now"
    assert session_title("one two three four five six seven") == "one two three four five six"


def test_bridge_spawning_marker_covers_spawn_timeout(monkeypatch, tmp_path, chat):
    monkeypatch.setattr(config, "SPAWN_TIMEOUT", 120.0)
    monkeypatch.setattr(config, "TARGETS", {"box": SSHTarget(name="box", host="box.local")})
    monkeypatch.setattr(config, "CACHE_DIRS", {
        "sessions_dir": str(tmp_path), "transcripts_dir": str(tmp_path), "tasks_dir": str(tmp_path),
    })
    bridge = build_bridge(chat)
    assert bridge.controller.spawn_timeout == 120.0
    assert bridge.controller.registry.spawning_ttl > 120.0
