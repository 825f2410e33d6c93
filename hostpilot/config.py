"""Configuration file loading and merging for hostpilot.

Reads TOML config from ~/.config/hostpilot/config.toml (global) and
<base_dir>/hostpilot.toml (project). Precedence: CLI > project > global > defaults.
"""

import argparse
import os
import sys
import tomllib
from pathlib import Path
from typing import Any

from .report import ConfigError  # noqa: F401 (re-export for convenience)
from .transport import DEFAULT_BASE_URL, DEFAULT_MAX_TOKENS, DEFAULT_MODEL

_UNSET = object()  # Sentinel for "not set by CLI"

API_KEY_ENV = "ANTHROPIC_API_KEY"
API_KEY_FILE = "anthropic_api_key"
DEFAULT_HOST = "hostpilot.host:InMemoryHost"


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "model": str,
    "max_tokens": int,
    "base_url": str,
    "stream": bool,
    "max_steps": int,
    "system_prompt": str,
    "host": str,
    "sandbox": bool,
    "no_history": bool,
    "color": bool,
    "quiet": bool,
}

_POSITIVE_INT_KEYS = {"max_tokens", "max_steps"}

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "model": DEFAULT_MODEL,
    "max_tokens": DEFAULT_MAX_TOKENS,
    "base_url": DEFAULT_BASE_URL,
    "stream": True,
    "max_steps": 10,
    "system_prompt": None,
    "host": DEFAULT_HOST,
    "sandbox": True,
    "no_history": False,
    "color": False,
    "no_color": False,
    "quiet": False,
}


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "hostpilot"
    return Path.home() / ".config" / "hostpilot"


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate types in a parsed config dict.

    Raises ConfigError for type mismatches or out-of-range values.
    Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int in Python, so isinstance(True, int) is True.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )
        if key in _POSITIVE_INT_KEYS and value < 1:
            raise ConfigError(f"{source}: {key!r} must be at least 1, got {value}")

    if "host" in config and ":" not in config["host"]:
        raise ConfigError(
            f"{source}: 'host' must look like 'module:callable', got {config['host']!r}"
        )


def _load_single(path: Path, label: str) -> dict:
    """Load and validate a single TOML config file. Returns empty dict if missing."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e

    _validate_config(config, label)
    return {k: v for k, v in config.items() if k in CONFIG_KEYS}


# --- Public API ---


def resolve_api_key(config_dir: Path | None = None) -> str | None:
    """Environment first, then the first line of <config_dir>/anthropic_api_key.

    Returns None when neither is set; a missing key is reported when a
    request is attempted, not here.
    """
    key = os.environ.get(API_KEY_ENV, "").strip()
    if key:
        return key
    if config_dir is None:
        config_dir = global_config_dir()
    path = Path(config_dir) / API_KEY_FILE
    try:
        with open(path, encoding="utf-8") as f:
            key = f.readline().strip()
    except OSError:
        return None
    return key or None


def load_config(base_dir: Path) -> dict:
    """Load and merge global + project config.

    Returns a flat dict with config-canonical keys. Only keys that were
    actually set in config files are included (no defaults injected).

    The returned dict also contains ``config_dir`` (a ``Path``) pointing
    to the resolved global config directory (e.g. ``~/.config/hostpilot``).
    """
    config_dir = global_config_dir()
    global_path = config_dir / "config.toml"
    global_config = _load_single(global_path, str(global_path))

    project_path = Path(base_dir).resolve() / "hostpilot.toml"
    project_config = _load_single(project_path, str(project_path))

    merged = {**global_config, **project_config}
    merged["config_dir"] = config_dir
    return merged


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to argparse namespace where CLI didn't set a value.

    For each config key, checks if the argparse value is still _UNSET and
    if so applies the config value. Remaining sentinels are then replaced
    with hardcoded defaults from _ARGPARSE_DEFAULTS.
    """

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    # A single config key controls the --color/--no-color pair
    if "color" in config:
        color_val = config["color"]
        if _is_unset("color") and _is_unset("no_color"):
            args.color = color_val
            args.no_color = not color_val

    for key, value in config.items():
        if key in ("color", "config_dir"):
            continue
        if _is_unset(key):
            setattr(args, key, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)


def config_to_session_kwargs(config: dict) -> dict:
    """Convert config dict to Session constructor kwargs.

    no_history -> history and quiet -> verbose are inverted. Keys that
    aren't Session concerns (color, host) are dropped.
    """
    kwargs = {}
    _DROP_KEYS = {"color", "host"}
    _INVERT_KEYS = {
        "no_history": "history",
        "quiet": "verbose",
    }

    for key, value in config.items():
        if key in _DROP_KEYS:
            continue
        if key in _INVERT_KEYS:
            kwargs[_INVERT_KEYS[key]] = not value
        else:
            kwargs[key] = value

    return kwargs


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# hostpilot configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/hostpilot.toml' if project else '~/.config/hostpilot/config.toml'}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        f"# The API key is read from ${API_KEY_ENV}, or from the first line of",
        f"# ~/.config/hostpilot/{API_KEY_FILE}.",
        "",
        "# --- Provider / model ---",
        f'# model = "{DEFAULT_MODEL}"',
        f"# max_tokens = {DEFAULT_MAX_TOKENS}",
        f'# base_url = "{DEFAULT_BASE_URL}"',
        "# stream = true",
        "",
        "# --- Workflow ---",
        "# max_steps = 10",
        '# system_prompt = "You drive the host through short Python commands."',
        "",
        "# --- Host ---",
        f'# host = "{DEFAULT_HOST}"   # module:callable returning a host',
        "# sandbox = true     # restrict builtins available to commands",
        "",
        "# --- Features ---",
        "# no_history = false",
        "",
        "# --- UI ---",
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "# quiet = false",
        "",
    ]
    return "\n".join(lines)
