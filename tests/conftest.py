from __future__ import annotations

import base64
import json
import re
from collections.abc import Iterator
from pathlib import Path
from typing import Any
from urllib.parse import unquote, urlsplit

import pytest

from codecraft.config import CodecraftConfig, load_config
from codecraft.github import GitHubClient
from codecraft.models import ModelRequest, ModelResponse, Part
from codecraft.store import StateDB


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, reason: str = "OK") -> None:
        self.status_code = status_code
        self.reason = reason
        self.content = b"" if payload is None else json.dumps(payload).encode()
        self.text = self.content.decode()

    def json(self) -> Any:
        return json.loads(self.content)

    @classmethod
    def raw(cls, status_code: int, body: bytes) -> FakeResponse:
        resp = cls(status_code)
        resp.content = body
        resp.text = body.decode(errors="replace")
        return resp


_ROUTES: list[tuple[str, re.Pattern[str], str]] = [
    (m, re.compile(f"^{p}$"), op)
    for m, p, op in [
        ("GET", r"/repos/[^/]+/[^/]+/git/trees/(?P<ref>.+)", "get tree"),
        ("GET", r"/repos/[^/]+/[^/]+/contents/(?P<path>.+)", "get contents"),
        ("GET", r"/repos/[^/]+/[^/]+/git/ref/heads/(?P<branch>.+)", "get ref"),
        ("GET", r"/repos/[^/]+/[^/]+/git/commits/(?P<sha>[^/]+)", "get commit"),
        ("POST", r"/repos/[^/]+/[^/]+/git/blobs", "create blob"),
        ("POST", r"/repos/[^/]+/[^/]+/git/trees", "create tree"),
        ("POST", r"/repos/[^/]+/[^/]+/git/commits", "create commit"),
        ("PATCH", r"/repos/[^/]+/[^/]+/git/refs/heads/(?P<branch>.+)", "update ref"),
        ("POST", r"/repos/[^/]+/[^/]+/git/refs", "create ref"),
        ("POST", r"/repos/[^/]+/[^/]+/pulls", "create pull"),
        ("GET", r"/user/repos", "list repos"),
        ("GET", r"/repos/(?P<repo>[^/]+/[^/]+)", "get repo"),
    ]
]


class FakeGitHub:
    """In-memory stand-in for the GitHub REST API behind a requests-like session.

    ``ops`` records the operation names in call order; ``fail`` maps an
    operation name to the HTTP status it should answer with.
    ``replies`` maps an operation name to a canned response served instead.
    """

    def __init__(
        self,
        repo: str = "octo/app",
        branch: str = "main",
        files: dict[str, str] | None = None,
    ) -> None:
        self.headers: dict[str, str] = {}
        self.repo = repo
        self.default_branch = branch
        self.files: dict[str, str] = dict(files or {})
        self.refs: dict[str, str] = {branch: "c0"}
        self.commits: dict[str, dict[str, Any]] = {"c0": {"sha": "c0", "tree": {"sha": "t0"}}}
        self.trees: dict[str, list[dict[str, Any]]] = {}
        self.blobs: dict[str, str] = {}
        self.user_repos: list[dict[str, Any]] = []
        self.pulls: list[dict[str, Any]] = []
        self.ops: list[str] = []
        self.requests: list[tuple[str, str, Any]] = []
        self.fail: dict[str, int] = {}
        self.replies: dict[str, FakeResponse] = {}
        self._seq = 0

    def reply(
        self, op: str, status_code: int = 200, payload: Any = None, *, body: bytes | None = None
    ) -> None:
        self.replies[op] = (
            FakeResponse.raw(status_code, body) if body is not None else FakeResponse(status_code, payload)
        )

    def client(self, token: str = "tok", **kwargs: Any) -> GitHubClient:
        return GitHubClient(token, session=self, **kwargs)  # type: ignore[arg-type]

    def _next(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}{self._seq}"

    def request(
        self,
        method: str,
        url: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> FakeResponse:
        path = urlsplit(url).path
        self.requests.append((method, path, json))
        for route_method, pattern, op in _ROUTES:
            match = pattern.match(path)
            if match is None or route_method != method:
                continue
            self.ops.append(op)
            if op in self.fail:
                return FakeResponse(self.fail[op], {"message": op}, reason="Injected")
            if op in self.replies:
                return self.replies[op]
            handler = getattr(self, "_" + op.replace(" ", "_"))
            return handler(params or {}, json or {}, **match.groupdict())
        return FakeResponse(404, {"message": "Not Found"}, reason="Not Found")

    def _get_tree(self, params: dict, body: dict, ref: str) -> FakeResponse:
        tree = [
            {"path": path, "type": "blob", "size": len(content), "sha": f"s-{path}"}
            for path, content in sorted(self.files.items())
        ]
        return FakeResponse(200, {"sha": "t0", "tree": tree, "truncated": False})

    def _get_contents(self, params: dict, body: dict, path: str) -> FakeResponse:
        path = unquote(path)
        if path not in self.files:
            return FakeResponse(404, {"message": "Not Found"}, reason="Not Found")
        encoded = base64.b64encode(self.files[path].encode()).decode()
        return FakeResponse(200, {"path": path, "encoding": "base64", "content": encoded})

    def _get_ref(self, params: dict, body: dict, branch: str) -> FakeResponse:
        if branch not in self.refs:
            return FakeResponse(404, {"message": "Not Found"}, reason="Not Found")
        return FakeResponse(200, {"ref": f"refs/heads/{branch}", "object": {"sha": self.refs[branch]}})

    def _get_commit(self, params: dict, body: dict, sha: str) -> FakeResponse:
        return FakeResponse(200, self.commits[sha])

    def _create_blob(self, params: dict, body: dict) -> FakeResponse:
        sha = self._next("b")
        self.blobs[sha] = body["content"]
        return FakeResponse(201, {"sha": sha})

    def _create_tree(self, params: dict, body: dict) -> FakeResponse:
        sha = self._next("t")
        self.trees[sha] = body["tree"]
        return FakeResponse(201, {"sha": sha})

    def _create_commit(self, params: dict, body: dict) -> FakeResponse:
        sha = self._next("c")
        self.commits[sha] = {
            "sha": sha,
            "tree": {"sha": body["tree"]},
            "message": body["message"],
            "parents": body["parents"],
            "html_url": f"https://github.com/{self.repo}/commit/{sha}",
        }
        return FakeResponse(201, self.commits[sha])

    def _update_ref(self, params: dict, body: dict, branch: str) -> FakeResponse:
        commit = self.commits[body["sha"]]
        for item in self.trees[commit["tree"]["sha"]]:
            if item["sha"] is None:
                self.files.pop(item["path"], None)
            else:
                self.files[item["path"]] = self.blobs[item["sha"]]
        self.refs[branch] = body["sha"]
        return FakeResponse(200, {"object": {"sha": body["sha"]}})

    def _create_ref(self, params: dict, body: dict) -> FakeResponse:
        branch = body["ref"].removeprefix("refs/heads/")
        if branch in self.refs:
            return FakeResponse(422, {"message": "Reference already exists"}, reason="Unprocessable")
        self.refs[branch] = body["sha"]
        return FakeResponse(201, {"ref": body["ref"], "object": {"sha": body["sha"]}})

    def _create_pull(self, params: dict, body: dict) -> FakeResponse:
        pr = {
            "number": len(self.pulls) + 1,
            "state": "open",
            "html_url": f"https://github.com/{self.repo}/pull/{len(self.pulls) + 1}",
            **body,
        }
        self.pulls.append(pr)
        return FakeResponse(201, pr)

    def _list_repos(self, params: dict, body: dict) -> FakeResponse:
        per_page = int(params.get("per_page", 100))
        page = int(params.get("page", 1))
        start = (page - 1) * per_page
        return FakeResponse(200, self.user_repos[start : start + per_page])

    def _get_repo(self, params: dict, body: dict, repo: str) -> FakeResponse:
        if repo != self.repo:
            return FakeResponse(404, {"message": "Not Found"}, reason="Not Found")
        return FakeResponse(
            200,
            {
                "id": 1,
                "full_name": self.repo,
                "name": self.repo.split("/")[1],
                "html_url": f"https://github.com/{self.repo}",
                "default_branch": self.default_branch,
                "description": "Demo app",
                "language": "TypeScript",
                "private": False,
            },
        )


class ScriptedModel:
    """Model client that replays queued responses and records every request."""

    def __init__(self, responses: list[ModelResponse | Exception] | None = None) -> None:
        self.responses = list(responses or [])
        self.requests: list[ModelRequest] = []

    def generate(self, request: ModelRequest) -> ModelResponse:
        self.requests.append(request)
        if not self.responses:
            return ModelResponse(parts=[Part(text="All done.")], finish_reason="STOP")
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture()
def github() -> FakeGitHub:
    return FakeGitHub(
        files={
            "README.md": "# App\n",
            "src/config.ts": "export const X=1;\n",
            "src/index.ts": "import { X } from './config';\n",
        }
    )


@pytest.fixture()
def db(tmp_path: Path) -> Iterator[StateDB]:
    sdb = StateDB(tmp_path / "state.db")
    yield sdb
    sdb.close()


@pytest.fixture()
def config(tmp_path: Path) -> CodecraftConfig:
    return load_config(tmp_path)


@pytest.fixture()
def model() -> ScriptedModel:
    return ScriptedModel()
