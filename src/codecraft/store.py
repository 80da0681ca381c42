from __future__ import annotations

import json
import secrets
import sqlite3
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS credentials (
    user_id TEXT PRIMARY KEY,
    access_token TEXT NOT NULL,
    token_type TEXT NOT NULL DEFAULT 'bearer',
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    repo_full_name TEXT NOT NULL,
    repo_url TEXT NOT NULL,
    default_branch TEXT NOT NULL DEFAULT 'main',
    description TEXT,
    language TEXT,
    created_at TEXT NOT NULL,
    UNIQUE (user_id, repo_full_name)
);

CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    user_id TEXT NOT NULL,
    title TEXT NOT NULL DEFAULT 'New Conversation',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
    seq INTEGER NOT NULL,
    role TEXT NOT NULL CHECK (role IN ('user', 'assistant', 'system')),
    content TEXT NOT NULL,
    code_changes TEXT,
    commit_message TEXT,
    applied_sha TEXT,
    applied_at TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS commits (
    sha TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    message_id TEXT,
    branch TEXT NOT NULL,
    url TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS branches (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    base_branch TEXT NOT NULL,
    base_sha TEXT NOT NULL,
    description TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS pull_requests (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    number INTEGER NOT NULL,
    branch_name TEXT NOT NULL,
    base_branch TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT,
    status TEXT NOT NULL,
    url TEXT,
    created_at TEXT NOT NULL
);
"""


def new_id() -> str:
    return secrets.token_urlsafe(15)


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _decode_message(row: sqlite3.Row) -> dict[str, Any]:
    message = dict(row)
    raw = message.get("code_changes")
    message["code_changes"] = json.loads(raw) if raw else None
    return message


class StateDB:
    """Durable store for credentials, projects, conversations and commit records.

    One connection is shared across server threads; writes are serialized
    by a lock.
    """

    def __init__(self, db_path: Path) -> None:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.executescript(_SCHEMA)
        self._lock = threading.RLock()

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> StateDB:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def _write(self, sql: str, params: tuple | list = ()) -> sqlite3.Cursor:
        with self._lock:
            cur = self._conn.execute(sql, params)
            self._conn.commit()
            return cur

    def _one(self, sql: str, params: tuple | list = ()) -> dict[str, Any] | None:
        with self._lock:
            row = self._conn.execute(sql, params).fetchone()
        return dict(row) if row else None

    def _all(self, sql: str, params: tuple | list = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    # ── Credentials ──────────────────────────────────────────────────

    def set_token(self, user_id: str, access_token: str) -> None:
        self._write(
            "INSERT INTO credentials (user_id, access_token, updated_at) VALUES (?, ?, ?) "
            "ON CONFLICT(user_id) DO UPDATE SET access_token=excluded.access_token, "
            "updated_at=excluded.updated_at",
            (user_id, access_token, _now()),
        )

    def get_token(self, user_id: str) -> str | None:
        row = self._one(
            "SELECT access_token FROM credentials WHERE user_id=?", (user_id,)
        )
        return row["access_token"] if row else None

    # ── Projects ─────────────────────────────────────────────────────

    def create_project(
        self,
        user_id: str,
        repo_full_name: str,
        repo_url: str,
        default_branch: str = "main",
        description: str | None = None,
        language: str | None = None,
    ) -> dict[str, Any]:
        project_id = new_id()
        self._write(
            "INSERT INTO projects (id, user_id, repo_full_name, repo_url, default_branch, "
            "description, language, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                project_id,
                user_id,
                repo_full_name,
                repo_url,
                default_branch,
                description,
                language,
                _now(),
            ),
        )
        return self.get_project(project_id, user_id)  # type: ignore[return-value]

    def get_project(self, project_id: str, user_id: str) -> dict[str, Any] | None:
        return self._one(
            "SELECT * FROM projects WHERE id=? AND user_id=?", (project_id, user_id)
        )

    def find_project(self, user_id: str, repo_full_name: str) -> dict[str, Any] | None:
        return self._one(
            "SELECT * FROM projects WHERE user_id=? AND repo_full_name=?",
            (user_id, repo_full_name),
        )

    def list_projects(self, user_id: str | None = None) -> list[dict[str, Any]]:
        if user_id is None:
            rows = self._all("SELECT * FROM projects ORDER BY created_at")
        else:
            rows = self._all(
                "SELECT * FROM projects WHERE user_id=? ORDER BY created_at", (user_id,)
            )
        return [dict(r) for r in rows]

    def delete_project(self, project_id: str, user_id: str) -> bool:
        cur = self._write(
            "DELETE FROM projects WHERE id=? AND user_id=?", (project_id, user_id)
        )
        return cur.rowcount > 0

    def project_stats(self, project_id: str) -> dict[str, int]:
        row = self._one(
            "SELECT "
            "(SELECT COUNT(*) FROM conversations WHERE project_id=:p) AS conversations, "
            "(SELECT COUNT(*) FROM messages m JOIN conversations c "
            " ON m.conversation_id=c.id WHERE c.project_id=:p) AS messages, "
            "(SELECT COUNT(*) FROM commits WHERE project_id=:p) AS commits",
            {"p": project_id},  # type: ignore[arg-type]
        )
        return row or {"conversations": 0, "messages": 0, "commits": 0}

    # ── Conversations ────────────────────────────────────────────────

    def create_conversation(self, project_id: str, user_id: str, title: str) -> str:
        conversation_id = new_id()
        now = _now()
        self._write(
            "INSERT INTO conversations (id, project_id, user_id, title, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (conversation_id, project_id, user_id, title, now, now),
        )
        return conversation_id

    def get_conversation(self, conversation_id: str, user_id: str) -> dict[str, Any] | None:
        return self._one(
            "SELECT * FROM conversations WHERE id=? AND user_id=?",
            (conversation_id, user_id),
        )

    def list_conversations(self, project_id: str) -> list[dict[str, Any]]:
        rows = self._all(
            "SELECT * FROM conversations WHERE project_id=? ORDER BY updated_at DESC",
            (project_id,),
        )
        return [dict(r) for r in rows]

    def touch_conversation(self, conversation_id: str) -> None:
        self._write(
            "UPDATE conversations SET updated_at=? WHERE id=?", (_now(), conversation_id)
        )

    # ── Messages ─────────────────────────────────────────────────────

    def add_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        code_changes: list[dict[str, Any]] | None = None,
        commit_message: str | None = None,
    ) -> str:
        message_id = new_id()
        with self._lock:
            seq_row = self._conn.execute(
                "SELECT COALESCE(MAX(seq), 0) + 1 FROM messages WHERE conversation_id=?",
                (conversation_id,),
            ).fetchone()
            self._conn.execute(
                "INSERT INTO messages (id, conversation_id, seq, role, content, "
                "code_changes, commit_message, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    message_id,
                    conversation_id,
                    seq_row[0],
                    role,
                    content,
                    json.dumps(code_changes) if code_changes else None,
                    commit_message,
                    _now(),
                ),
            )
            self._conn.commit()
        return message_id

    def get_message(self, message_id: str) -> dict[str, Any] | None:
        rows = self._all("SELECT * FROM messages WHERE id=?", (message_id,))
        return _decode_message(rows[0]) if rows else None

    def list_messages(self, conversation_id: str) -> list[dict[str, Any]]:
        rows = self._all(
            "SELECT * FROM messages WHERE conversation_id=? ORDER BY seq",
            (conversation_id,),
        )
        return [_decode_message(r) for r in rows]

    def mark_applied(self, message_id: str, sha: str) -> None:
        self._write(
            "UPDATE messages SET applied_sha=?, applied_at=? WHERE id=?",
            (sha, _now(), message_id),
        )

    # ── Commits / branches / pull requests ───────────────────────────

    def record_commit(
        self, sha: str, project_id: str, branch: str, url: str, message_id: str | None = None
    ) -> None:
        self._write(
            "INSERT OR REPLACE INTO commits (sha, project_id, message_id, branch, url, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (sha, project_id, message_id, branch, url, _now()),
        )

    def list_commits(self, project_id: str) -> list[dict[str, Any]]:
        rows = self._all(
            "SELECT * FROM commits WHERE project_id=? ORDER BY created_at", (project_id,)
        )
        return [dict(r) for r in rows]

    def record_branch(
        self,
        project_id: str,
        name: str,
        base_branch: str,
        base_sha: str,
        description: str | None = None,
    ) -> dict[str, Any]:
        branch_id = new_id()
        self._write(
            "INSERT INTO branches (id, project_id, name, base_branch, base_sha, description, "
            "created_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (branch_id, project_id, name, base_branch, base_sha, description, _now()),
        )
        return self._one("SELECT * FROM branches WHERE id=?", (branch_id,))  # type: ignore[return-value]

    def list_branches(self, project_id: str) -> list[dict[str, Any]]:
        rows = self._all(
            "SELECT * FROM branches WHERE project_id=? ORDER BY created_at", (project_id,)
        )
        return [dict(r) for r in rows]

    def record_pull_request(
        self,
        project_id: str,
        number: int,
        branch_name: str,
        base_branch: str,
        title: str,
        description: str | None,
        status: str,
        url: str | None,
    ) -> dict[str, Any]:
        pr_id = new_id()
        self._write(
            "INSERT INTO pull_requests (id, project_id, number, branch_name, base_branch, "
            "title, description, status, url, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                pr_id,
                project_id,
                number,
                branch_name,
                base_branch,
                title,
                description,
                status,
                url,
                _now(),
            ),
        )
        return self._one("SELECT * FROM pull_requests WHERE id=?", (pr_id,))  # type: ignore[return-value]

    def list_pull_requests(self, project_id: str) -> list[dict[str, Any]]:
        rows = self._all(
            "SELECT * FROM pull_requests WHERE project_id=? ORDER BY created_at",
            (project_id,),
        )
        return [dict(r) for r in rows]
