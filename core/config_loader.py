"""
Chat runtime configuration loader.

Reads shared/config/chat.json, validates it against an embedded JSON schema
and applies backend credentials from the environment (.env supported).
Failures are treated as warnings so the runtime can continue with
best-effort defaults; only a missing backend URL/key is fatal, and only
when a caller asks for it via ``require_backend``.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from jsonschema import Draft7Validator

from shared.logging.logger import get_logger

log = get_logger("core.config_loader")

CONFIG_PATH = Path(__file__).resolve().parent.parent / "shared" / "config" / "chat.json"

ONE_YEAR_SECONDS = 365 * 24 * 60 * 60

CHAT_CONFIG_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "backend": {
            "type": "object",
            "properties": {
                "url": {"type": "string"},
                "anon_key": {"type": "string"},
                "schema": {"type": "string"},
                "timeout_seconds": {"type": "number", "exclusiveMinimum": 0},
            },
        },
        "realtime": {
            "type": "object",
            "properties": {
                "heartbeat_interval_seconds": {"type": "number", "exclusiveMinimum": 0},
                "max_reconnect_attempts": {"type": "integer", "minimum": 0},
                "max_backoff_seconds": {"type": "number", "exclusiveMinimum": 0},
            },
        },
        "chat": {
            "type": "object",
            "properties": {
                "history_limit": {"type": "integer", "minimum": 1},
                "command_prefix": {"type": "string", "minLength": 1, "maxLength": 1},
                "max_message_length": {"type": "integer", "minimum": 1},
                "rate_limit_messages": {"type": "integer", "minimum": 1},
                "rate_limit_window_seconds": {"type": "integer", "minimum": 1},
                "cooldown_seconds": {"type": "number", "minimum": 0},
                "ban_duration_seconds": {"type": "integer", "minimum": 1},
                "timeout_presets_seconds": {
                    "type": "array",
                    "items": {"type": "integer", "minimum": 1},
                },
                "remote_commands": {"type": "array", "items": {"type": "string"}},
                "emotes": {"type": "array", "items": {"type": "string"}},
            },
        },
    },
}


# ------------------------------------------------------------
# Config models
# ------------------------------------------------------------

@dataclass
class BackendConfig:
    url: str = ""
    anon_key: str = ""
    schema: str = "public"
    timeout_seconds: float = 10.0

    @property
    def rest_url(self) -> str:
        return f"{self.url.rstrip('/')}/rest/v1"

    @property
    def realtime_url(self) -> str:
        base = self.url.rstrip("/")
        if base.startswith("https://"):
            base = "wss://" + base[len("https://"):]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://"):]
        return f"{base}/realtime/v1/websocket"


@dataclass
class RealtimeConfig:
    heartbeat_interval_seconds: float = 30.0
    max_reconnect_attempts: int = 5
    max_backoff_seconds: float = 30.0


@dataclass
class ChatBehaviourConfig:
    history_limit: int = 50
    command_prefix: str = "/"
    max_message_length: int = 500
    rate_limit_messages: int = 5
    rate_limit_window_seconds: int = 10
    cooldown_seconds: float = 10.0
    ban_duration_seconds: int = ONE_YEAR_SECONDS
    timeout_presets_seconds: List[int] = field(default_factory=lambda: [60, 600, 3600])
    remote_commands: List[str] = field(default_factory=list)
    emotes: List[str] = field(default_factory=lambda: ["wave", "hype", "gg", "lol", "heart"])


@dataclass
class ChatConfig:
    backend: BackendConfig = field(default_factory=BackendConfig)
    realtime: RealtimeConfig = field(default_factory=RealtimeConfig)
    chat: ChatBehaviourConfig = field(default_factory=ChatBehaviourConfig)


# ------------------------------------------------------------
# Helpers
# ------------------------------------------------------------

def _load_json(path: Path) -> Dict[str, Any]:
    if not path.exists():
        log.warning(f"chat config not found at {path}; using defaults")
        return {}

    try:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        log.warning(f"Failed to load chat config ({e}); using defaults")
        return {}

    if not isinstance(data, dict):
        log.warning("chat config root is not an object; ignoring")
        return {}
    return data


def _validate(payload: Dict[str, Any]) -> None:
    validator = Draft7Validator(CHAT_CONFIG_SCHEMA)
    errors = sorted(validator.iter_errors(payload), key=lambda e: list(e.path))
    for err in errors:
        loc = "/".join(str(p) for p in err.path)
        log.warning(f"chat config validation warning at '{loc}': {err.message}")


def _section(raw: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = raw.get(name)
    return value if isinstance(value, dict) else {}


def _coerce(raw: Dict[str, Any], key: str, default: Any, cast) -> Any:
    if key not in raw:
        return default
    try:
        return cast(raw[key])
    except (TypeError, ValueError):
        log.warning(f"chat config '{key}' is invalid ({raw[key]!r}); using {default!r}")
        return default


def _int_list(raw: Dict[str, Any], key: str, default: List[int]) -> List[int]:
    value = raw.get(key)
    if value is None:
        return list(default)
    if not isinstance(value, list):
        log.warning(f"chat config '{key}' must be a list; using defaults")
        return list(default)
    result: List[int] = []
    for item in value:
        try:
            number = int(item)
        except (TypeError, ValueError):
            log.warning(f"Skipping invalid '{key}' entry: {item!r}")
            continue
        if number > 0:
            result.append(number)
    return result or list(default)


def _str_list(raw: Dict[str, Any], key: str, default: List[str]) -> List[str]:
    value = raw.get(key)
    if value is None:
        return list(default)
    if not isinstance(value, list):
        log.warning(f"chat config '{key}' must be a list; using defaults")
        return list(default)
    return [str(item).strip() for item in value if str(item).strip()]


def _load_backend(raw: Dict[str, Any]) -> BackendConfig:
    defaults = BackendConfig()
    return BackendConfig(
        url=str(raw.get("url", defaults.url)),
        anon_key=str(raw.get("anon_key", defaults.anon_key)),
        schema=str(raw.get("schema", defaults.schema)),
        timeout_seconds=_coerce(raw, "timeout_seconds", defaults.timeout_seconds, float),
    )


def _load_realtime(raw: Dict[str, Any]) -> RealtimeConfig:
    defaults = RealtimeConfig()
    return RealtimeConfig(
        heartbeat_interval_seconds=_coerce(
            raw, "heartbeat_interval_seconds", defaults.heartbeat_interval_seconds, float
        ),
        max_reconnect_attempts=_coerce(
            raw, "max_reconnect_attempts", defaults.max_reconnect_attempts, int
        ),
        max_backoff_seconds=_coerce(raw, "max_backoff_seconds", defaults.max_backoff_seconds, float),
    )


def _load_chat(raw: Dict[str, Any]) -> ChatBehaviourConfig:
    defaults = ChatBehaviourConfig()

    prefix = str(raw.get("command_prefix", defaults.command_prefix))
    if len(prefix) != 1 or prefix.isspace():
        log.warning(f"command_prefix must be a single character; using '{defaults.command_prefix}'")
        prefix = defaults.command_prefix

    return ChatBehaviourConfig(
        history_limit=_coerce(raw, "history_limit", defaults.history_limit, int),
        command_prefix=prefix,
        max_message_length=_coerce(raw, "max_message_length", defaults.max_message_length, int),
        rate_limit_messages=_coerce(raw, "rate_limit_messages", defaults.rate_limit_messages, int),
        rate_limit_window_seconds=_coerce(
            raw, "rate_limit_window_seconds", defaults.rate_limit_window_seconds, int
        ),
        cooldown_seconds=_coerce(raw, "cooldown_seconds", defaults.cooldown_seconds, float),
        ban_duration_seconds=_coerce(
            raw, "ban_duration_seconds", defaults.ban_duration_seconds, int
        ),
        timeout_presets_seconds=_int_list(
            raw, "timeout_presets_seconds", defaults.timeout_presets_seconds
        ),
        remote_commands=[
            name.lower() for name in _str_list(raw, "remote_commands", defaults.remote_commands)
        ],
        emotes=_str_list(raw, "emotes", defaults.emotes),
    )


def _apply_env(backend: BackendConfig) -> BackendConfig:
    url = os.getenv("STREAMCHAT_BACKEND_URL") or os.getenv("SUPABASE_URL")
    key = os.getenv("STREAMCHAT_BACKEND_KEY") or os.getenv("SUPABASE_ANON_KEY")
    if url:
        backend.url = url.strip()
    if key:
        backend.anon_key = key.strip()
    return backend


# ------------------------------------------------------------
# Public API
# ------------------------------------------------------------

def load_chat_config(
    raw: Optional[Dict[str, Any]] = None,
    *,
    path: Optional[Path] = None,
    use_env: bool = True,
    require_backend: bool = False,
) -> ChatConfig:
    """
    Load the chat runtime configuration.

    Precedence (lowest first):
    - dataclass defaults
    - chat.json (or the ``raw`` mapping when given)
    - environment / .env (backend URL and key only)
    """
    if raw is None:
        raw = _load_json(path or CONFIG_PATH)
    _validate(raw)

    backend = _load_backend(_section(raw, "backend"))
    if use_env:
        load_dotenv()
        backend = _apply_env(backend)

    if require_backend and not (backend.url and backend.anon_key):
        raise RuntimeError(
            "Missing backend credentials. Set STREAMCHAT_BACKEND_URL and STREAMCHAT_BACKEND_KEY"
        )

    return ChatConfig(
        backend=backend,
        realtime=_load_realtime(_section(raw, "realtime")),
        chat=_load_chat(_section(raw, "chat")),
    )
