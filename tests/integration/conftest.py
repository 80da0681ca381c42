from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from codecraft.chat import ChatService
from codecraft.config import CodecraftConfig, load_config
from codecraft.store import StateDB


@pytest.fixture()
def project_root(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    return root


@pytest.fixture()
def config(project_root: Path) -> CodecraftConfig:
    d = project_root / ".codecraft"
    d.mkdir()
    (d / "codecraft.toml").write_text(
        '[agent]\nmax_turns = 6\n\n[commit]\ndefault_message = "codecraft: apply"\n'
    )
    return load_config(project_root)


@pytest.fixture()
def db(project_root: Path, config: CodecraftConfig) -> Iterator[StateDB]:
    sdb = StateDB(config.db_path(project_root))
    yield sdb
    sdb.close()


@pytest.fixture()
def service(db, config, github, model, monkeypatch) -> ChatService:
    monkeypatch.delenv("GITHUB_TOKEN", raising=False)
    db.set_token("dev", "ghp_dev")
    return ChatService(
        db,
        config,
        github_factory=lambda token: github.client(token),
        model_factory=lambda: model,
    )


@pytest.fixture()
def project(service: ChatService) -> dict:
    return service.connect_project("dev", "octo/app")
