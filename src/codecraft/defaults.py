"""Compiled-in default configuration values for codecraft.

This module is the single source of truth for all default settings.
Other modules should import from here rather than duplicating values.
"""

from __future__ import annotations

from typing import Final

AGENT_DEFAULTS: Final[dict[str, int | float | str]] = {
    "model": "gemini-2.5-flash",
    "api_base": "https://generativelanguage.googleapis.com/v1beta",
    "api_key_env": "GEMINI_API_KEY",
    "max_turns": 15,
    "temperature": 0.3,
    "max_output_tokens": 65536,
    "timeout_seconds": 120,
    "max_retries": 2,
}

GITHUB_DEFAULTS: Final[dict[str, int | str]] = {
    "api_base": "https://api.github.com",
    "user_agent": "CodeCraft-App",
    "per_page": 100,
    "timeout_seconds": 30,
    "token_env": "GITHUB_TOKEN",
    "branch_prefix": "codecraft",
}

COMMIT_DEFAULTS: Final[dict[str, str]] = {
    "default_message": "CodeCraft: Apply AI-generated changes",
}

SERVER_DEFAULTS: Final[dict[str, int | str]] = {
    "host": "127.0.0.1",
    "port": 8787,
    "db_path": ".codecraft/state.db",
}


_BARE_KEY_CHARS = frozenset(
    "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_"
)


def _quote_key(key: str) -> str:
    if key and all(c in _BARE_KEY_CHARS for c in key):
        return key
    return f'"{key}"'


def _format_toml_value(value: object) -> str:
    if isinstance(value, str):
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value)
    msg = f"Unsupported type: {type(value)}"
    raise TypeError(msg)


def _section_to_toml(name: str, data: dict[str, object]) -> str:
    lines = [f"[{name}]"]
    for key, value in data.items():
        lines.append(f"{_quote_key(key)} = {_format_toml_value(value)}")
    return "\n".join(lines)


def generate_toml() -> str:
    """Generate a TOML configuration string from compiled-in defaults."""
    sections = [
        _section_to_toml("agent", AGENT_DEFAULTS),
        _section_to_toml("github", GITHUB_DEFAULTS),
        _section_to_toml("commit", COMMIT_DEFAULTS),
        _section_to_toml("server", SERVER_DEFAULTS),
    ]
    return "\n\n".join(sections) + "\n"
