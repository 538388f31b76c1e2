"""Configuration file loading and merging for shellmate.

Reads TOML config from ~/.config/shellmate/config.toml (global) and
<base_dir>/shellmate.toml (project). Precedence: CLI > project > global > defaults.
"""

import argparse
import os
import sys
import tomllib
from pathlib import Path
from typing import Any


from .report import ConfigError  # noqa: F401

_UNSET = object()  # Sentinel for "not set by CLI"

PROVIDERS = ("openai", "openrouter", "deepseek", "lmstudio", "generic")
EXEC_MODES = ("safe", "all", "custom")
TURN_MODES = ("chat-only", "auto", "force")

DEFAULT_MODELS = {
    "openai": "gpt-4o-mini",
    "openrouter": "openai/gpt-4o-mini",
    "deepseek": "deepseek-chat",
}

# Models offered by /model for each provider; config "models" adds more.
PROVIDER_MODEL_OPTIONS = {
    "openai": ["gpt-4o-mini", "gpt-4.1-mini", "gpt-4.1", "o4-mini"],
    "openrouter": [
        "openai/gpt-4o-mini",
        "openai/gpt-4.1-mini",
        "anthropic/claude-3.5-sonnet",
        "meta-llama/llama-3.1-70b-instruct",
    ],
    "deepseek": ["deepseek-chat", "deepseek-reasoner"],
}

PROVIDER_KEY_ENV = {
    "openai": "OPENAI_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
    "deepseek": "DEEPSEEK_API_KEY",
}

MIN_COMMAND_TIMEOUT = 1
MAX_COMMAND_TIMEOUT = 3600


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "provider": str,
    "model": str,
    "api_key": str,
    "base_url": str,
    "temperature": (int, float),
    "system_prompt": str,
    "prompt": str,
    "models": list,
    "exec_mode": str,
    "exec_allow": list,
    "exec_deny": list,
    "exec_trusted": list,
    "confirm_exec": bool,
    "mode": str,
    "history_max_messages": int,
    "history_max_chars": int,
    "command_timeout": int,
    "session": str,
    "no_verify": bool,
    "no_workspace_context": bool,
    "color": bool,
    "quiet": bool,
}

_LIST_OF_STR_KEYS = {"exec_allow", "exec_deny", "exec_trusted", "models"}

_CHOICE_KEYS = {
    "provider": PROVIDERS,
    "exec_mode": EXEC_MODES,
    "mode": TURN_MODES,
}

# Config key -> argparse dest (only where they differ)
_CONFIG_TO_ARGPARSE: dict[str, str] = {
    "exec_allow": "allow",
    "exec_deny": "deny",
    "confirm_exec": "confirm",
}

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "provider": "openai",
    "model": None,
    "api_key": None,
    "base_url": None,
    "temperature": None,
    "system_prompt": None,
    "prompt": None,
    "models": [],
    "exec_mode": "safe",
    "allow": [],
    "deny": [],
    "exec_trusted": [],
    "confirm": False,
    "mode": "auto",
    "history_max_messages": 40,
    "history_max_chars": 40000,
    "command_timeout": 120,
    "session": "auto",
    "no_verify": False,
    "no_workspace_context": False,
    "color": False,
    "no_color": False,
    "quiet": False,
}


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "shellmate"
    return Path.home() / ".config" / "shellmate"


def _type_name(expected: type | tuple[type, ...]) -> str:
    """Format an expected type spec as a human-readable string."""
    if expected is list:
        return "list"
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate types and value choices in a parsed config dict.

    Raises ConfigError for type mismatches or invalid values.
    Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int in Python, so isinstance(True, int) is True.
        # Reject bools for non-bool fields explicitly.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )

        # Validate list element types
        if key in _LIST_OF_STR_KEYS:
            for i, elem in enumerate(value):
                if not isinstance(elem, str):
                    raise ConfigError(
                        f"{source}: {key}[{i}]: expected string, got {type(elem).__name__}"
                    )

        if key in _CHOICE_KEYS and value not in _CHOICE_KEYS[key]:
            raise ConfigError(
                f"{source}: {key!r} must be one of {', '.join(_CHOICE_KEYS[key])}, "
                f"got {value!r}"
            )


def _check_api_key_in_git(config: dict, config_path: Path) -> None:
    """Warn if api_key is set in a project config inside a git repo."""
    if "api_key" not in config:
        return
    # Walk up from config file looking for .git
    parent = config_path.parent
    while parent != parent.parent:
        if (parent / ".git").exists():
            print(
                f"warning: {config_path}: 'api_key' in a git-tracked project config "
                f"may be committed accidentally. Consider using an environment variable.",
                file=sys.stderr,
            )
            return
        parent = parent.parent


def _load_single(path: Path, label: str) -> dict:
    """Load and validate a single TOML config file. Returns empty dict if missing."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e

    # Strip unknown keys after warning (keep only known ones for downstream)
    _validate_config(config, label)
    return {k: v for k, v in config.items() if k in CONFIG_KEYS}


# --- Public API ---


def load_config(base_dir: Path) -> dict:
    """Load and merge global + project config.

    Returns a flat dict with config-canonical keys. Only keys that were
    actually set in config files are included (no defaults injected).

    The returned dict also contains ``config_dir`` (a ``Path``) pointing
    to the resolved global config directory (e.g. ``~/.config/shellmate``).
    """
    config_dir = global_config_dir()
    global_path = config_dir / "config.toml"
    global_config = _load_single(global_path, str(global_path))

    project_path = Path(base_dir).resolve() / "shellmate.toml"
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _check_api_key_in_git(project_config, project_path)

    # Merge: project overrides global (shallow)
    merged = {**global_config, **project_config}

    # Attach resolved config directory so callers don't re-derive it.
    merged["config_dir"] = config_dir

    return merged


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to argparse namespace where CLI didn't set a value.

    For each config key, maps to the argparse dest name and checks if
    the value is still _UNSET. If so, applies the config value. After
    processing all config keys, sweeps remaining _UNSET sentinels and
    replaces them with hardcoded defaults from _ARGPARSE_DEFAULTS.
    """
    # Dests that use None as sentinel (argparse append actions can't use _UNSET)
    _NONE_SENTINEL_DESTS = {"allow", "deny"}

    def _is_unset(dest: str) -> bool:
        val = getattr(args, dest, _UNSET)
        if dest in _NONE_SENTINEL_DESTS:
            return val is None
        return val is _UNSET

    # Special handling for color: single config key controls mutual-exclusive pair
    if "color" in config:
        color_val = config["color"]
        if _is_unset("color") and _is_unset("no_color"):
            args.color = color_val
            args.no_color = not color_val

    for key, value in config.items():
        if key in ("color", "config_dir"):
            continue

        dest = _CONFIG_TO_ARGPARSE.get(key, key)
        if _is_unset(dest):
            setattr(args, dest, value)

    # Sweep: replace remaining sentinels with hardcoded defaults
    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)

    args.command_timeout = max(
        MIN_COMMAND_TIMEOUT, min(args.command_timeout, MAX_COMMAND_TIMEOUT)
    )

    if args.exec_mode == "custom" and not args.allow:
        print(
            "warning: exec mode is 'custom' but no allow prefixes are set "
            "(--allow or exec_allow); no command will run",
            file=sys.stderr,
        )


def config_to_session_kwargs(config: dict) -> dict:
    """Convert config dict to Session constructor kwargs.

    Translates config-canonical keys to Session's naming conventions:
    exec_allow -> allow, exec_deny -> deny, exec_trusted -> trusted,
    confirm_exec -> confirm, no_verify -> verify (inverted),
    no_workspace_context -> workspace_context (inverted), quiet -> verbose
    (inverted), session -> session_name. Drops keys that aren't Session
    concerns (color, config_dir, models).
    """
    kwargs = {}
    _DROP_KEYS = {"color", "config_dir", "models"}
    _RENAME_KEYS = {
        "exec_allow": "allow",
        "exec_deny": "deny",
        "exec_trusted": "trusted",
        "confirm_exec": "confirm",
        "session": "session_name",
    }
    _INVERT_KEYS = {
        "no_verify": "verify",
        "no_workspace_context": "workspace_context",
        "quiet": "verbose",
    }

    for key, value in config.items():
        if key in _DROP_KEYS:
            continue
        if key in _INVERT_KEYS:
            kwargs[_INVERT_KEYS[key]] = not value
        else:
            kwargs[_RENAME_KEYS.get(key, key)] = value

    return kwargs


def resolve_model(provider: str, model: str | None) -> str:
    """Return *model*, or the provider's default. Raises ConfigError if neither exists."""
    if model:
        return model
    default = DEFAULT_MODELS.get(provider)
    if default is None:
        raise ConfigError(f"--model is required when --provider is {provider}")
    return default


def resolve_api_key(provider: str, api_key: str | None) -> str | None:
    """Explicit key first, then the provider's environment variable."""
    if api_key:
        return api_key
    env_var = PROVIDER_KEY_ENV.get(provider)
    if env_var:
        return os.environ.get(env_var)
    return None


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# shellmate configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/shellmate.toml' if project else '~/.config/shellmate/config.toml'}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Provider / model ---",
        '# provider = "openai"            # "openai" | "openrouter" | "deepseek" | "lmstudio" | "generic"',
        '# model = "gpt-4o-mini"',
        '# api_key = "sk-..."              # prefer env vars; this is a fallback',
        '# base_url = "https://..."',
        "# temperature = 0.2",
        '# system_prompt = "You are a pragmatic senior software engineer."',
        '# prompt = "default"             # stored prompt to use when system_prompt is unset',
        '# models = ["my-finetune"]        # extra entries for /model list',
        "",
        "# --- Command execution ---",
        '# exec_mode = "safe"             # "safe" | "all" | "custom"',
        '# exec_allow = ["git status", "cargo test"]',
        '# exec_deny = ["rm", "git push"]',
        '# exec_trusted = ["cargo check"]',
        "# confirm_exec = false",
        "# command_timeout = 120",
        "",
        "# --- Turn behaviour ---",
        '# mode = "auto"                  # "chat-only" | "auto" | "force"',
        "# no_verify = false",
        "# no_workspace_context = false",
        "",
        "# --- History ---",
        '# session = "auto"',
        "# history_max_messages = 40",
        "# history_max_chars = 40000",
        "",
        "# --- UI ---",
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "# quiet = false",
        "",
    ]
    return "\n".join(lines)
