from __future__ import annotations

import base64
import logging
from collections.abc import Callable
from typing import Any
from urllib.parse import quote

import requests

from codecraft.errors import CommitFailed, NotFound, UpstreamError
from codecraft.models import CommitResult, FileWrite, TreeEntry

logger = logging.getLogger(__name__)

_BLOB_MODE = "100644"


class GitHubClient:
    """Repository accessor over the GitHub REST and Git data APIs.

    Holds no state beyond the HTTP session; every call is authorised with
    the bearer credential it was constructed with.
    """

    def __init__(
        self,
        token: str,
        api_base: str = "https://api.github.com",
        user_agent: str = "CodeCraft-App",
        per_page: int = 100,
        timeout: float = 30,
        session: requests.Session | None = None,
    ) -> None:
        self._api_base = api_base.rstrip("/")
        self._per_page = per_page
        self._timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"Bearer {token}",
                "User-Agent": user_agent,
                "Accept": "application/vnd.github.v3+json",
            }
        )

    def _request(
        self,
        method: str,
        path: str,
        *,
        what: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> Any:
        url = f"{self._api_base}{path}"
        try:
            resp = self.session.request(
                method, url, params=params, json=json, timeout=self._timeout
            )
        except requests.RequestException as exc:
            raise UpstreamError(0, f"{what}: {exc}") from exc
        if resp.status_code == 404:
            raise NotFound(404, f"{what}: not found")
        if not 200 <= resp.status_code < 300:
            logger.debug("GitHub %s %s -> %d: %s", method, path, resp.status_code, resp.text[:500])
            raise UpstreamError(resp.status_code, f"{what}: {resp.reason or 'request failed'}")
        if resp.status_code == 204 or not resp.content:
            return None
        return resp.json()

    # ── Reads ───────────────────────────────────────────────────────

    def fetch_tree(self, repo: str, ref: str) -> list[TreeEntry]:
        data = self._request(
            "GET",
            f"/repos/{repo}/git/trees/{quote(ref, safe='')}",
            what="Failed to fetch repo tree",
            params={"recursive": "1"},
        )
        if data.get("truncated"):
            logger.warning("Tree for %s@%s was truncated by GitHub", repo, ref)
        return [TreeEntry.model_validate(item) for item in data.get("tree", [])]

    def fetch_file(self, repo: str, path: str, ref: str) -> str:
        """Return file contents, decoding base64 payloads transparently."""
        data = self._request(
            "GET",
            f"/repos/{repo}/contents/{quote(path)}",
            what=f"Failed to fetch file: {path}",
            params={"ref": ref},
        )
        if not isinstance(data, dict):
            raise UpstreamError(422, f"Not a file: {path}")
        content = data.get("content", "")
        if data.get("encoding") == "base64":
            raw = base64.b64decode(content.replace("\n", ""))
            return raw.decode("utf-8", errors="replace")
        return content

    def list_user_repos(self) -> list[dict[str, Any]]:
        """Fetch all repos page by page until a short page ends the list."""
        repos: list[dict[str, Any]] = []
        page = 1
        while True:
            data = self._request(
                "GET",
                "/user/repos",
                what="Failed to list repositories",
                params={
                    "per_page": self._per_page,
                    "page": page,
                    "sort": "updated",
                    "affiliation": "owner,collaborator",
                },
            )
            repos.extend(data)
            if len(data) < self._per_page:
                return repos
            page += 1

    def get_repo(self, repo: str) -> dict[str, Any]:
        return self._request(
            "GET", f"/repos/{repo}", what="Repository not found or access denied"
        )

    def branch_exists(self, repo: str, branch: str) -> bool:
        try:
            self._get_ref_sha(repo, branch)
        except NotFound:
            return False
        return True

    # ── Writes ──────────────────────────────────────────────────────

    def _get_ref_sha(self, repo: str, branch: str) -> str:
        data = self._request(
            "GET",
            f"/repos/{repo}/git/ref/heads/{branch}",
            what="Failed to get branch ref",
        )
        return data["object"]["sha"]

    def create_branch(self, repo: str, branch: str, base_branch: str) -> str:
        """Create ``branch`` pointing at the head of ``base_branch``. Returns its sha."""
        sha = self._get_ref_sha(repo, base_branch)
        self._request(
            "POST",
            f"/repos/{repo}/git/refs",
            what=f"Failed to create branch {branch}",
            json={"ref": f"refs/heads/{branch}", "sha": sha},
        )
        logger.info("Created branch %s on %s from %s@%s", branch, repo, base_branch, sha[:7])
        return sha

    def create_pull_request(
        self, repo: str, title: str, body: str, head: str, base: str
    ) -> dict[str, Any]:
        return self._request(
            "POST",
            f"/repos/{repo}/pulls",
            what="Failed to create pull request",
            json={"title": title, "body": body, "head": head, "base": base},
        )

    def atomic_commit(
        self,
        repo: str,
        branch: str,
        message: str,
        changes: list[FileWrite],
    ) -> CommitResult:
        """Write ``changes`` to ``branch`` as one commit via the Git data API.

        Steps: resolve ref, resolve base tree, create blobs, create a tree
        on top of ``base_tree``, create the commit, fast-forward the ref.
        Any failing step aborts the rest; blobs or trees already created
        stay behind as unreachable objects. Readers only see the new tree
        once the final ref update succeeds.
        """
        base = f"/repos/{repo}/git"

        def step(
            name: str,
            method: str,
            path: str,
            pick: Callable[[Any], Any] | None = None,
            **kwargs: Any,
        ) -> Any:
            try:
                data = self._request(method, f"{base}{path}", what=name, **kwargs)
                return pick(data) if pick is not None else data
            except UpstreamError as exc:
                logger.error("Atomic commit on %s@%s failed at %s: %s", repo, branch, name, exc)
                raise CommitFailed(name, str(exc)) from exc
            except (ValueError, KeyError, TypeError) as exc:
                logger.error(
                    "Atomic commit on %s@%s got a malformed reply at %s: %r", repo, branch, name, exc
                )
                raise CommitFailed(name, f"malformed response: {exc!r}") from exc

        def sha_of(data: Any) -> str:
            return data["sha"]

        base_sha = step(
            "get ref", "GET", f"/ref/heads/{branch}", pick=lambda d: d["object"]["sha"]
        )
        base_tree_sha = step(
            "get commit", "GET", f"/commits/{base_sha}", pick=lambda d: d["tree"]["sha"]
        )

        tree_items: list[dict[str, Any]] = []
        for change in changes:
            if change.content is None:
                tree_items.append(
                    {"path": change.path, "mode": _BLOB_MODE, "type": "blob", "sha": None}
                )
                continue
            blob_sha = step(
                f"create blob for {change.path}",
                "POST",
                "/blobs",
                pick=sha_of,
                json={"content": change.content, "encoding": "utf-8"},
            )
            tree_items.append(
                {"path": change.path, "mode": _BLOB_MODE, "type": "blob", "sha": blob_sha}
            )

        tree_sha = step(
            "create tree",
            "POST",
            "/trees",
            pick=sha_of,
            json={"base_tree": base_tree_sha, "tree": tree_items},
        )

        commit_sha, commit_url = step(
            "create commit",
            "POST",
            "/commits",
            pick=lambda d: (d["sha"], d.get("html_url") or ""),
            json={"message": message, "tree": tree_sha, "parents": [base_sha]},
        )

        step(
            "update ref",
            "PATCH",
            f"/refs/heads/{branch}",
            json={"sha": commit_sha, "force": False},
        )
        logger.info(
            "Committed %d change(s) to %s@%s as %s",
            len(changes),
            repo,
            branch,
            commit_sha[:7],
        )
        return CommitResult(sha=commit_sha, url=commit_url)
