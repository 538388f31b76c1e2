"""Named chat sessions stored as JSON message arrays under the config dir."""

import hashlib
import json
import logging
import time
from pathlib import Path

from .config import global_config_dir
from .report import ConfigError

logger = logging.getLogger(__name__)

AUTO_SESSION_NAMES = ("auto", "default")


def sessions_dir() -> Path:
    return global_config_dir() / "sessions"


def sanitize_session_name(name: str) -> str:
    """Map anything but ASCII letters, digits, ``-`` and ``_`` to ``_``."""
    cleaned = "".join(
        ch if (ch.isascii() and ch.isalnum()) or ch in "-_" else "_"
        for ch in name.strip()
    )
    return cleaned or "session"


def _workspace_leaf(base_dir: str | Path) -> str:
    return Path(base_dir).resolve().name or "root"


def workspace_session_name(base_dir: str | Path) -> str:
    """Stable per-workspace name: ``ws-<leaf>-<12 hex of sha1(path)>``."""
    resolved = str(Path(base_dir).resolve())
    digest = hashlib.sha1(resolved.encode("utf-8")).hexdigest()[:12]
    return sanitize_session_name(f"ws-{_workspace_leaf(base_dir)}-{digest}")


def resolve_session_name(name: str | None, base_dir: str | Path) -> str:
    if not name or name.strip().lower() in AUTO_SESSION_NAMES:
        return workspace_session_name(base_dir)
    return sanitize_session_name(name)


def fresh_session_name(base_dir: str | Path) -> str:
    return sanitize_session_name(f"{_workspace_leaf(base_dir)}-{int(time.time())}")


def session_path(name: str) -> Path:
    return sessions_dir() / f"{sanitize_session_name(name)}.json"


def load_session(name: str) -> list[dict]:
    """Return the stored messages for *name*, or an empty list if none exist."""
    path = session_path(name)
    if not path.is_file():
        return []
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigError(f"{path}: invalid session JSON: {e}") from e
    if not isinstance(data, list):
        raise ConfigError(f"{path}: expected a JSON array of messages")
    messages = []
    for i, item in enumerate(data):
        if (
            not isinstance(item, dict)
            or item.get("role") not in ("user", "assistant")
            or not isinstance(item.get("content"), str)
        ):
            raise ConfigError(f"{path}: message {i} must have role and content")
        messages.append({"role": item["role"], "content": item["content"]})
    logger.debug("loaded session %s (%d messages)", name, len(messages))
    return messages


def save_session(name: str, messages: list[dict]) -> Path:
    path = session_path(name)
    path.parent.mkdir(parents=True, exist_ok=True)
    records = [{"role": m["role"], "content": m["content"]} for m in messages]
    path.write_text(
        json.dumps(records, indent=2, ensure_ascii=False) + "\n", encoding="utf-8"
    )
    return path


def list_sessions() -> list[str]:
    directory = sessions_dir()
    if not directory.is_dir():
        return []
    return sorted(p.stem for p in directory.glob("*.json"))


def remove_session(name: str, active: str | None = None) -> bool:
    """Delete the stored session. Refuses to remove *active*."""
    name = sanitize_session_name(name)
    if active is not None and name == sanitize_session_name(active):
        raise ConfigError(f"cannot remove the active session: {name}")
    path = session_path(name)
    if not path.is_file():
        return False
    path.unlink()
    return True
