"""Turn a stored set of proposed changes into one commit on a branch."""

from __future__ import annotations

import logging
from typing import Protocol

from codecraft.models import CodeChange, CommitResult, FileWrite

logger = logging.getLogger(__name__)


class CommitWriter(Protocol):
    def atomic_commit(
        self, repo: str, branch: str, message: str, changes: list[FileWrite]
    ) -> CommitResult: ...


def to_file_writes(changes: list[CodeChange]) -> list[FileWrite]:
    """Deletes become null-content entries; creates and edits carry their content."""
    return [
        FileWrite(
            path=change.path,
            content=None if change.action == "delete" else (change.content or ""),
        )
        for change in changes
    ]


def apply_changes(
    writer: CommitWriter,
    repo: str,
    branch: str,
    changes: list[CodeChange],
    message: str,
) -> CommitResult:
    """Run the full atomic commit sequence for ``changes``.

    Not idempotent: every call performs a new blob/tree/commit/ref pass.
    Callers that need exactly-once application must record the result.
    """
    writes = to_file_writes(changes)
    logger.info(
        "Applying %d change(s) to %s@%s (%d delete(s))",
        len(writes),
        repo,
        branch,
        sum(1 for w in writes if w.content is None),
    )
    return writer.atomic_commit(repo, branch, message, writes)
