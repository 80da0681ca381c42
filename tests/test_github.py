from __future__ import annotations

from unittest.mock import MagicMock

import pytest
import requests

from codecraft.errors import CommitFailed, NotFound, UpstreamError
from codecraft.github import GitHubClient
from codecraft.models import FileWrite


class TestHeaders:
    def test_bearer_and_identifying_headers(self, github):
        github.client("ghp_abc")
        assert github.headers["Authorization"] == "Bearer ghp_abc"
        assert github.headers["User-Agent"] == "CodeCraft-App"
        assert github.headers["Accept"] == "application/vnd.github.v3+json"


class TestReads:
    def test_fetch_tree(self, github):
        tree = github.client().fetch_tree("octo/app", "main")
        assert [e.path for e in tree] == ["README.md", "src/config.ts", "src/index.ts"]
        assert all(e.is_blob for e in tree)

    def test_fetch_file_decodes_base64(self, github):
        content = github.client().fetch_file("octo/app", "src/config.ts", "main")
        assert content == "export const X=1;\n"

    def test_fetch_missing_file_raises_not_found(self, github):
        with pytest.raises(NotFound):
            github.client().fetch_file("octo/app", "nope.ts", "main")

    def test_non_2xx_raises_upstream_error(self, github):
        github.fail["get tree"] = 500
        with pytest.raises(UpstreamError) as excinfo:
            github.client().fetch_tree("octo/app", "main")
        assert excinfo.value.status == 500

    def test_transport_failure_is_upstream_error(self):
        session = MagicMock()
        session.headers = {}
        session.request.side_effect = requests.ConnectionError("refused")
        with pytest.raises(UpstreamError) as excinfo:
            GitHubClient("t", session=session).get_repo("octo/app")
        assert excinfo.value.status == 0

    def test_list_user_repos_paginates_until_short_page(self, github):
        github.user_repos = [{"id": i, "full_name": f"octo/r{i}"} for i in range(5)]
        repos = github.client(per_page=2).list_user_repos()
        assert len(repos) == 5
        assert github.ops.count("list repos") == 3

    def test_list_user_repos_exact_multiple_fetches_empty_page(self, github):
        github.user_repos = [{"id": i} for i in range(4)]
        github.client(per_page=2).list_user_repos()
        assert github.ops.count("list repos") == 3

    def test_branch_exists(self, github):
        client = github.client()
        assert client.branch_exists("octo/app", "main")
        assert not client.branch_exists("octo/app", "feature")


class TestBranchesAndPulls:
    def test_create_branch_from_base_head(self, github):
        sha = github.client().create_branch("octo/app", "codecraft/x-1", "main")
        assert sha == "c0"
        assert github.refs["codecraft/x-1"] == "c0"

    def test_create_pull_request(self, github):
        pr = github.client().create_pull_request("octo/app", "T", "B", "feat", "main")
        assert pr["number"] == 1
        assert github.pulls[0]["head"] == "feat"


class TestAtomicCommit:
    def test_six_steps_in_order(self, github):
        result = github.client().atomic_commit(
            "octo/app",
            "main",
            "update",
            [FileWrite(path="a.txt", content="A"), FileWrite(path="b.txt", content="B")],
        )
        assert github.ops == [
            "get ref",
            "get commit",
            "create blob",
            "create blob",
            "create tree",
            "create commit",
            "update ref",
        ]
        assert result.sha == github.refs["main"]
        assert result.url.endswith(result.sha)
        assert github.files["a.txt"] == "A"

    def test_tree_uses_base_tree_and_parent(self, github):
        github.client().atomic_commit(
            "octo/app", "main", "m", [FileWrite(path="a.txt", content="A")]
        )
        bodies = {path.rsplit("/", 1)[-1]: body for method, path, body in github.requests if method == "POST"}
        assert bodies["trees"]["base_tree"] == "t0"
        assert bodies["commits"]["parents"] == ["c0"]

    def test_ref_update_is_not_forced(self, github):
        github.client().atomic_commit(
            "octo/app", "main", "m", [FileWrite(path="a.txt", content="A")]
        )
        patch_body = next(body for method, _, body in github.requests if method == "PATCH")
        assert patch_body["force"] is False

    def test_delete_skips_blob_and_marks_removal(self, github):
        github.client().atomic_commit(
            "octo/app", "main", "rm", [FileWrite(path="README.md", content=None)]
        )
        assert "create blob" not in github.ops
        (items,) = github.trees.values()
        assert items == [{"path": "README.md", "mode": "100644", "type": "blob", "sha": None}]
        assert "README.md" not in github.files

    def test_tree_failure_never_updates_ref(self, github):
        github.fail["create tree"] = 422
        with pytest.raises(CommitFailed) as excinfo:
            github.client().atomic_commit(
                "octo/app", "main", "m", [FileWrite(path="a.txt", content="A")]
            )
        assert excinfo.value.step == "create tree"
        assert "update ref" not in github.ops
        assert "create commit" not in github.ops
        assert github.refs["main"] == "c0"

    def test_ref_conflict_raises_commit_failed(self, github):
        github.fail["update ref"] = 409
        with pytest.raises(CommitFailed) as excinfo:
            github.client().atomic_commit(
                "octo/app", "main", "m", [FileWrite(path="a.txt", content=None)]
            )
        assert excinfo.value.step == "update ref"
        assert isinstance(excinfo.value.__cause__, UpstreamError)
        assert excinfo.value.__cause__.status == 409

    def test_missing_branch_fails_at_first_step(self, github):
        with pytest.raises(CommitFailed) as excinfo:
            github.client().atomic_commit(
                "octo/app", "gone", "m", [FileWrite(path="a.txt", content="A")]
            )
        assert excinfo.value.step == "get ref"
        assert github.ops == ["get ref"]

    @pytest.mark.parametrize(
        ("op", "status", "payload", "body"),
        [
            ("get ref", 200, {"ref": "refs/heads/main"}, None),
            ("create blob", 201, None, b"<html>oops</html>"),
            ("create tree", 201, {"url": "no sha here"}, None),
            ("create commit", 201, None, b""),
        ],
    )
    def test_malformed_reply_raises_commit_failed(self, github, op, status, payload, body):
        github.reply(op, status, payload, body=body)
        with pytest.raises(CommitFailed) as excinfo:
            github.client().atomic_commit(
                "octo/app", "main", "m", [FileWrite(path="a.txt", content="A")]
            )
        assert excinfo.value.step.startswith(op)
        assert "update ref" not in github.ops
        assert github.refs["main"] == "c0"
