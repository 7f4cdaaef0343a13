"""Configuration file loading and merging.

Reads TOML from ~/.config/opensam/config.toml (global) and
<workspace>/opensam.toml (project). Precedence: CLI > project > global > defaults.
"""

import os
import sys
import tomllib
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

from .errors import ConfigError


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "model": str,
    "api_key": str,
    "base_url": str,
    "workspace": str,
    "sessions_dir": str,
    "max_tokens": int,
    "temperature": (int, float),
    "max_iterations": int,
    "history_messages": int,
    "session_max_messages": int,
    "exec_timeout": int,
    "brave_api_key": str,
    "web_search_max_results": int,
}

_POSITIVE_INT_KEYS = {
    "max_tokens",
    "max_iterations",
    "session_max_messages",
    "exec_timeout",
    "web_search_max_results",
}

_PATH_KEYS = ("workspace", "sessions_dir")

DEFAULT_WORKSPACE = "~/.opensam/ops"
DEFAULT_MODEL = "anthropic/claude-sonnet-4"


@dataclass
class AgentConfig:
    """Fully resolved settings for one AgentLoop."""

    model: str = DEFAULT_MODEL
    api_key: str | None = None
    base_url: str | None = None
    workspace: str = DEFAULT_WORKSPACE
    sessions_dir: str | None = None
    max_tokens: int = 8192
    temperature: float = 0.7
    max_iterations: int = 20
    history_messages: int = 20
    session_max_messages: int = 100
    exec_timeout: int = 60
    brave_api_key: str | None = None
    web_search_max_results: int = 5

    @property
    def workspace_path(self) -> Path:
        return Path(self.workspace).expanduser()

    @property
    def sessions_path(self) -> Path:
        if self.sessions_dir:
            return Path(self.sessions_dir).expanduser()
        return Path("~/.opensam/sessions").expanduser()

    def agent_kwargs(self) -> dict:
        """Keyword arguments for AgentLoop (everything but the provider settings)."""
        return {
            "model": self.model,
            "max_iterations": self.max_iterations,
            "max_tokens": self.max_tokens,
            "temperature": float(self.temperature),
            "history_messages": self.history_messages,
            "sessions_dir": self.sessions_path,
            "session_max_messages": self.session_max_messages,
            "exec_timeout": self.exec_timeout,
            "brave_api_key": self.brave_api_key,
            "web_search_max_results": self.web_search_max_results,
        }


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "opensam"
    return Path.home() / ".config" / "opensam"


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Raise ConfigError for type mismatches. Warn about unknown keys."""
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int
        if isinstance(value, bool):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )
        if key in _POSITIVE_INT_KEYS and value < 1:
            raise ConfigError(f"{source}: {key!r} must be >= 1, got {value}")
        if key == "history_messages" and value < 0:
            raise ConfigError(f"{source}: 'history_messages' must be >= 0, got {value}")


def _resolve_paths(config: dict, config_dir: Path) -> None:
    """Resolve relative path values against the config file's directory."""
    for key in _PATH_KEYS:
        if key in config:
            expanded = Path(config[key]).expanduser()
            if not expanded.is_absolute():
                expanded = config_dir / expanded
            config[key] = str(expanded)


def _load_single(path: Path, label: str) -> dict:
    """Load and validate one TOML file. Returns an empty dict if missing."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e
    except OSError as e:
        raise ConfigError(f"{label}: cannot read file: {e}") from e

    _validate_config(config, label)
    known = {k: v for k, v in config.items() if k in CONFIG_KEYS}
    _resolve_paths(known, path.parent)
    return known


# --- Public API ---


def load_config(workspace: str | Path | None = None) -> dict:
    """Load and merge global + project config.

    Only keys actually set in a file are returned. The project file is
    looked up in *workspace*, or in the workspace named by the global file.
    """
    global_path = global_config_dir() / "config.toml"
    global_config = _load_single(global_path, str(global_path))

    if workspace is None:
        workspace = global_config.get("workspace", DEFAULT_WORKSPACE)
    project_path = Path(workspace).expanduser() / "opensam.toml"
    project_config = _load_single(project_path, str(project_path))

    return {**global_config, **project_config}


def resolve_config(overrides: dict[str, Any] | None = None) -> AgentConfig:
    """Build an AgentConfig from CLI overrides, config files and defaults.

    ``None`` values in *overrides* count as "not set".
    """
    cli = {k: v for k, v in (overrides or {}).items() if v is not None}
    unknown = set(cli) - {f.name for f in fields(AgentConfig)}
    if unknown:
        raise ConfigError(f"unknown setting(s): {', '.join(sorted(unknown))}")
    if "workspace" in cli:
        cli["workspace"] = str(Path(cli["workspace"]).expanduser().resolve())

    merged = {**load_config(cli.get("workspace")), **cli}
    config = AgentConfig(**merged)
    if not config.brave_api_key:
        config.brave_api_key = os.environ.get("BRAVE_API_KEY") or None
    if not config.model:
        raise ConfigError("no model configured")
    return config


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# opensam configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<workspace>/opensam.toml' if project else '~/.config/opensam/config.toml'}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Model ---",
        f'# model = "{DEFAULT_MODEL}"   # any LiteLLM model string',
        '# api_key = "sk-..."            # prefer provider env vars',
        '# base_url = "https://..."',
        "# max_tokens = 8192",
        "# temperature = 0.7",
        "",
        "# --- Agent ---",
        f'# workspace = "{DEFAULT_WORKSPACE}"',
        '# sessions_dir = "~/.opensam/sessions"',
        "# max_iterations = 20",
        "# history_messages = 20",
        "# session_max_messages = 100",
        "",
        "# --- Tools ---",
        "# exec_timeout = 60",
        '# brave_api_key = "BSA..."      # or BRAVE_API_KEY',
        "# web_search_max_results = 5",
        "",
    ]
    return "\n".join(lines)
