"""Tests for hostpilot.config: TOML loading, merging, API key and CLI integration."""

import argparse
import tomllib
from pathlib import Path

import pytest

from hostpilot.config import (
    _UNSET,
    API_KEY_ENV,
    DEFAULT_HOST,
    ConfigError,
    apply_config_to_args,
    config_to_session_kwargs,
    generate_config,
    global_config_dir,
    load_config,
    resolve_api_key,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _write_toml(path, content):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def _make_args(**overrides):
    """Build a namespace mimicking build_parser() with _UNSET sentinels."""
    defaults = {
        "model": _UNSET,
        "max_tokens": _UNSET,
        "base_url": _UNSET,
        "stream": _UNSET,
        "max_steps": _UNSET,
        "system_prompt": _UNSET,
        "host": _UNSET,
        "sandbox": _UNSET,
        "no_history": _UNSET,
        "color": _UNSET,
        "no_color": _UNSET,
        "quiet": _UNSET,
    }
    defaults.update(overrides)
    return argparse.Namespace(**defaults)


@pytest.fixture
def no_global(tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "empty"))


# ===========================================================================
# Config loading
# ===========================================================================


class TestLoadConfig:
    def test_missing_files_only_config_dir(self, tmp_path, no_global):
        result = load_config(tmp_path)
        assert result == {"config_dir": tmp_path / "empty" / "hostpilot"}

    def test_global_only(self, tmp_path, monkeypatch):
        global_dir = tmp_path / "global_cfg"
        monkeypatch.setenv("XDG_CONFIG_HOME", str(global_dir))
        _write_toml(global_dir / "hostpilot" / "config.toml", 'model = "claude-x"\n')
        result = load_config(tmp_path / "project")
        assert result["model"] == "claude-x"

    def test_project_only(self, tmp_path, no_global):
        _write_toml(tmp_path / "hostpilot.toml", "max_steps = 4\n")
        assert load_config(tmp_path)["max_steps"] == 4

    def test_project_overrides_global(self, tmp_path, monkeypatch):
        global_dir = tmp_path / "global"
        monkeypatch.setenv("XDG_CONFIG_HOME", str(global_dir))
        _write_toml(global_dir / "hostpilot" / "config.toml", "max_steps = 10\n")
        _write_toml(tmp_path / "hostpilot.toml", "max_steps = 3\n")
        assert load_config(tmp_path)["max_steps"] == 3

    def test_unknown_keys_warn(self, tmp_path, no_global, capsys):
        _write_toml(tmp_path / "hostpilot.toml", 'unknown_key = "hi"\n')
        result = load_config(tmp_path)
        assert "unknown_key" not in result
        assert "unknown config key" in capsys.readouterr().err

    def test_invalid_toml_raises(self, tmp_path, no_global):
        _write_toml(tmp_path / "hostpilot.toml", "invalid = [\n")
        with pytest.raises(ConfigError, match="invalid TOML"):
            load_config(tmp_path)

    def test_generate_config_is_valid_toml(self):
        content = generate_config()
        lines = []
        for line in content.splitlines():
            stripped = line.lstrip("# ").strip()
            if "=" in stripped and not stripped.startswith("--"):
                lines.append(stripped.split("  #")[0])
        parsed = tomllib.loads("\n".join(lines))
        assert parsed["host"] == DEFAULT_HOST

    def test_generate_config_project_flag(self):
        assert "Project config" in generate_config(project=True)
        assert "Global config" in generate_config(project=False)


# ===========================================================================
# Type validation
# ===========================================================================


class TestTypeValidation:
    def test_string_where_int_expected(self, tmp_path, no_global):
        _write_toml(tmp_path / "hostpilot.toml", 'max_steps = "many"\n')
        with pytest.raises(ConfigError, match="max_steps.*expected int.*got str"):
            load_config(tmp_path)

    def test_bool_for_int_field_raises(self, tmp_path, no_global):
        _write_toml(tmp_path / "hostpilot.toml", "max_tokens = true\n")
        with pytest.raises(ConfigError, match="got bool"):
            load_config(tmp_path)

    def test_non_positive_int(self, tmp_path, no_global):
        _write_toml(tmp_path / "hostpilot.toml", "max_steps = 0\n")
        with pytest.raises(ConfigError, match="at least 1"):
            load_config(tmp_path)

    def test_host_needs_colon(self, tmp_path, no_global):
        _write_toml(tmp_path / "hostpilot.toml", 'host = "mymodule"\n')
        with pytest.raises(ConfigError, match="module:callable"):
            load_config(tmp_path)

    def test_bool_field(self, tmp_path, no_global):
        _write_toml(tmp_path / "hostpilot.toml", "stream = false\nsandbox = false\n")
        result = load_config(tmp_path)
        assert result["stream"] is False
        assert result["sandbox"] is False


# ===========================================================================
# Applying config to args
# ===========================================================================


class TestApplyConfigToArgs:
    def test_config_fills_unset(self):
        args = _make_args()
        apply_config_to_args(args, {"max_steps": 4, "model": "m"})
        assert args.max_steps == 4
        assert args.model == "m"

    def test_cli_beats_config(self):
        args = _make_args(max_steps=7)
        apply_config_to_args(args, {"max_steps": 4})
        assert args.max_steps == 7

    def test_sentinel_resolves_to_default(self):
        args = _make_args()
        apply_config_to_args(args, {})
        assert args.max_steps == 10
        assert args.max_tokens == 2048
        assert args.stream is True
        assert args.sandbox is True
        assert args.host == DEFAULT_HOST
        assert args.system_prompt is None
        assert args.quiet is False

    def test_config_dir_not_copied(self):
        args = _make_args()
        apply_config_to_args(args, {"config_dir": Path("/x")})
        assert not hasattr(args, "config_dir")

    def test_color_config_true(self):
        args = _make_args()
        apply_config_to_args(args, {"color": True})
        assert args.color is True
        assert args.no_color is False

    def test_color_config_false(self):
        args = _make_args()
        apply_config_to_args(args, {"color": False})
        assert args.color is False
        assert args.no_color is True

    def test_color_cli_overrides_config(self):
        args = _make_args(color=True)
        apply_config_to_args(args, {"color": False})
        assert args.color is True


class TestConfigToSessionKwargs:
    def test_identity_keys(self):
        kwargs = config_to_session_kwargs({"model": "m", "max_steps": 3})
        assert kwargs == {"model": "m", "max_steps": 3}

    def test_inverted_keys(self):
        kwargs = config_to_session_kwargs({"no_history": True, "quiet": False})
        assert kwargs == {"history": False, "verbose": True}

    def test_dropped_keys(self):
        assert config_to_session_kwargs({"color": True, "host": "a:b"}) == {}

    def test_accepted_by_session(self):
        from hostpilot import Session

        kwargs = config_to_session_kwargs(
            {
                "model": "m",
                "max_tokens": 100,
                "base_url": "http://localhost",
                "stream": False,
                "max_steps": 3,
                "system_prompt": "hi",
                "sandbox": False,
                "no_history": True,
                "quiet": True,
                "color": True,
                "host": "a:b",
            }
        )
        session = Session(**kwargs)
        assert session.max_steps == 3
        assert session.history is False
        assert session.verbose is False


# ===========================================================================
# API key and global directory
# ===========================================================================


class TestResolveApiKey:
    def test_env_wins(self, tmp_path, monkeypatch):
        monkeypatch.setenv(API_KEY_ENV, "  sk-env  ")
        (tmp_path / "anthropic_api_key").write_text("sk-file\n")
        assert resolve_api_key(tmp_path) == "sk-env"

    def test_file_first_line(self, tmp_path, monkeypatch):
        monkeypatch.delenv(API_KEY_ENV, raising=False)
        (tmp_path / "anthropic_api_key").write_text("sk-file\nsecond line\n")
        assert resolve_api_key(tmp_path) == "sk-file"

    def test_missing(self, tmp_path, monkeypatch):
        monkeypatch.delenv(API_KEY_ENV, raising=False)
        assert resolve_api_key(tmp_path) is None

    def test_empty_file(self, tmp_path, monkeypatch):
        monkeypatch.delenv(API_KEY_ENV, raising=False)
        (tmp_path / "anthropic_api_key").write_text("\n")
        assert resolve_api_key(tmp_path) is None


class TestGlobalConfigDir:
    def test_respects_xdg(self, monkeypatch):
        monkeypatch.setenv("XDG_CONFIG_HOME", "/custom/xdg")
        assert global_config_dir() == Path("/custom/xdg/hostpilot")

    def test_default_home(self, monkeypatch):
        monkeypatch.delenv("XDG_CONFIG_HOME", raising=False)
        assert global_config_dir() == Path.home() / ".config" / "hostpilot"


# ===========================================================================
# Integration: full CLI -> config -> resolution
# ===========================================================================


class TestCLIIntegration:
    def test_parse_load_apply(self, tmp_path, no_global):
        _write_toml(tmp_path / "hostpilot.toml", "max_steps = 4\nsandbox = false\n")

        from hostpilot.agent import build_parser

        args = build_parser().parse_args(["--base-dir", str(tmp_path), "mute drums"])
        apply_config_to_args(args, load_config(tmp_path))

        assert args.max_steps == 4
        assert args.sandbox is False
        assert args.stream is True

    def test_cli_flag_overrides_config(self, tmp_path, no_global):
        _write_toml(tmp_path / "hostpilot.toml", "max_steps = 4\nstream = true\n")

        from hostpilot.agent import build_parser

        args = build_parser().parse_args(["--max-steps", "8", "--no-stream", "go"])
        apply_config_to_args(args, load_config(tmp_path))

        assert args.max_steps == 8
        assert args.stream is False
