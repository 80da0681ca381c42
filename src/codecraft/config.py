from __future__ import annotations

import os
import sys
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

from codecraft.defaults import (
    AGENT_DEFAULTS,
    COMMIT_DEFAULTS,
    GITHUB_DEFAULTS,
    SERVER_DEFAULTS,
    generate_toml,
)

CONFIG_FILENAME = "codecraft.toml"
CONFIG_DIR = ".codecraft"


@dataclass
class AgentConfig:
    model: str
    api_base: str
    api_key_env: str
    max_turns: int
    temperature: float
    max_output_tokens: int
    timeout_seconds: int
    max_retries: int

    def api_key(self) -> str | None:
        return os.environ.get(self.api_key_env) or None


@dataclass
class GitHubConfig:
    api_base: str
    user_agent: str
    per_page: int
    timeout_seconds: int
    token_env: str
    branch_prefix: str

    def fallback_token(self) -> str | None:
        return os.environ.get(self.token_env) or None


@dataclass
class CommitConfig:
    default_message: str


@dataclass
class ServerConfig:
    host: str
    port: int
    db_path: str


@dataclass
class CodecraftConfig:
    agent: AgentConfig
    github: GitHubConfig = field(
        default_factory=lambda: GitHubConfig(**GITHUB_DEFAULTS),
    )
    commit: CommitConfig = field(
        default_factory=lambda: CommitConfig(**COMMIT_DEFAULTS),
    )
    server: ServerConfig = field(
        default_factory=lambda: ServerConfig(**SERVER_DEFAULTS),
    )

    def db_path(self, project_root: Path) -> Path:
        path = Path(self.server.db_path)
        return path if path.is_absolute() else project_root / path


def _deep_merge(base: dict, overrides: dict) -> dict:
    merged = dict(base)
    for key, value in overrides.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _build_defaults() -> dict:
    return {
        "agent": dict(AGENT_DEFAULTS),
        "github": dict(GITHUB_DEFAULTS),
        "commit": dict(COMMIT_DEFAULTS),
        "server": dict(SERVER_DEFAULTS),
    }


def _config_from_dict(data: dict) -> CodecraftConfig:
    agent = data.get("agent", AGENT_DEFAULTS)
    return CodecraftConfig(
        agent=AgentConfig(
            model=str(agent["model"]),
            api_base=str(agent["api_base"]),
            api_key_env=str(agent["api_key_env"]),
            max_turns=int(agent["max_turns"]),
            temperature=float(agent["temperature"]),
            max_output_tokens=int(agent["max_output_tokens"]),
            timeout_seconds=int(agent["timeout_seconds"]),
            max_retries=int(agent["max_retries"]),
        ),
        github=GitHubConfig(**data.get("github", GITHUB_DEFAULTS)),
        commit=CommitConfig(**data.get("commit", COMMIT_DEFAULTS)),
        server=ServerConfig(**data.get("server", SERVER_DEFAULTS)),
    )


def load_config(project_root: Path) -> CodecraftConfig:
    """Load config: source defaults merged with .codecraft/codecraft.toml overrides."""
    defaults = _build_defaults()
    toml_path = project_root / CONFIG_DIR / CONFIG_FILENAME

    if not toml_path.is_file():
        return _config_from_dict(defaults)

    try:
        raw = toml_path.read_bytes()
        overrides = tomllib.loads(raw.decode())
    except (tomllib.TOMLDecodeError, UnicodeDecodeError) as exc:
        print(f"Warning: failed to parse {toml_path}: {exc}", file=sys.stderr)
        return _config_from_dict(defaults)

    merged = _deep_merge(defaults, overrides)
    return _config_from_dict(merged)


def init_config(project_root: Path) -> Path:
    """Write .codecraft/codecraft.toml from source defaults. Backup existing."""
    config_dir = project_root / CONFIG_DIR
    config_dir.mkdir(parents=True, exist_ok=True)

    config_path = config_dir / CONFIG_FILENAME
    if config_path.exists():
        backup_path = config_path.with_suffix(".toml.bak")
        backup_path.write_text(config_path.read_text())

    config_path.write_text(generate_toml())
    return config_path
