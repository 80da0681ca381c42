"""Service layer: conversations, runs, commit application, projects, branches."""

from __future__ import annotations

import logging
import re
import threading
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any

from codecraft.agent import AgentLoop
from codecraft.channel import EventChannel
from codecraft.commit import apply_changes
from codecraft.config import CodecraftConfig
from codecraft.errors import (
    AlreadyApplied,
    BranchExists,
    ConversationNotFound,
    CredentialNotFound,
    DuplicateProject,
    MessageNotFound,
    NoProposedChanges,
    ProjectNotFound,
)
from codecraft.github import GitHubClient
from codecraft.llm import GeminiClient, ModelClient
from codecraft.models import (
    CodeChange,
    CommitResult,
    DoneEvent,
    ErrorEvent,
    HistoryTurn,
    MessageSavedEvent,
    RepoSummary,
    StreamEvent,
)
from codecraft.store import StateDB
from codecraft.tools import ConversationContext, ToolExecutor

logger = logging.getLogger(__name__)

TITLE_LENGTH = 100
SLUG_LENGTH = 50

GitHubFactory = Callable[[str], GitHubClient]
ModelFactory = Callable[[], ModelClient]


def slugify(text: str, max_length: int = SLUG_LENGTH) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:max_length].rstrip("-") or "change"


def branch_name(prefix: str, description: str, timestamp: int | None = None) -> str:
    ts = int(time.time()) if timestamp is None else timestamp
    return f"{prefix}/{slugify(description)}-{ts}"


def _history_role(role: str) -> str:
    return "model" if role == "assistant" else "user"


@dataclass
class PreparedRun:
    """Everything one run needs, resolved before the stream opens."""

    conversation_id: str
    project_id: str
    user_message: str
    loop: AgentLoop


class ChatService:
    def __init__(
        self,
        db: StateDB,
        config: CodecraftConfig,
        github_factory: GitHubFactory | None = None,
        model_factory: ModelFactory | None = None,
    ) -> None:
        self.db = db
        self.config = config
        self._github_factory = github_factory or self._default_github
        self._model_factory = model_factory or self._default_model
        self._apply_lock = threading.Lock()

    def _default_github(self, token: str) -> GitHubClient:
        gh = self.config.github
        return GitHubClient(
            token,
            api_base=gh.api_base,
            user_agent=gh.user_agent,
            per_page=gh.per_page,
            timeout=gh.timeout_seconds,
        )

    def _default_model(self) -> ModelClient:
        agent = self.config.agent
        return GeminiClient(
            agent.api_key(),
            model=agent.model,
            api_base=agent.api_base,
            timeout=agent.timeout_seconds,
            max_retries=agent.max_retries,
        )

    # ── Lookups ─────────────────────────────────────────────────────

    def accessor_for(self, user_id: str) -> GitHubClient:
        token = self.db.get_token(user_id) or self.config.github.fallback_token()
        if not token:
            raise CredentialNotFound(user_id)
        return self._github_factory(token)

    def project(self, user_id: str, project_id: str) -> dict[str, Any]:
        project = self.db.get_project(project_id, user_id)
        if project is None:
            raise ProjectNotFound(project_id)
        return project

    def _conversation(self, user_id: str, conversation_id: str) -> dict[str, Any]:
        conversation = self.db.get_conversation(conversation_id, user_id)
        if conversation is None:
            raise ConversationNotFound(conversation_id)
        return conversation

    # ── Runs ────────────────────────────────────────────────────────

    def start_run(
        self,
        user_id: str,
        project_id: str,
        content: str,
        conversation_id: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> PreparedRun:
        """Validate, persist the user message and build the agent loop.

        Everything that can fail before streaming starts fails here, so the
        caller can still answer with a plain HTTP error.
        """
        project = self.project(user_id, project_id)
        accessor = self.accessor_for(user_id)

        if conversation_id is None:
            conversation_id = self.db.create_conversation(
                project_id, user_id, content[:TITLE_LENGTH]
            )
            history: list[HistoryTurn] = []
        else:
            conversation = self._conversation(user_id, conversation_id)
            if conversation["project_id"] != project_id:
                raise ConversationNotFound(conversation_id)
            history = [
                HistoryTurn(role=_history_role(m["role"]), text=m["content"])
                for m in self.db.list_messages(conversation_id)
                if m["role"] != "system"
            ]
        self.db.add_message(conversation_id, "user", content)

        repo = project["repo_full_name"]
        branch = project["default_branch"]
        tree = accessor.fetch_tree(repo, branch)
        context = ConversationContext(
            repo_full_name=repo,
            default_branch=branch,
            repo_tree=tree,
            history=history,
        )
        agent = self.config.agent
        loop = AgentLoop(
            self._model_factory(),
            ToolExecutor(context, accessor),
            max_turns=agent.max_turns,
            temperature=agent.temperature,
            max_output_tokens=agent.max_output_tokens,
            cancel_event=cancel_event,
        )
        logger.info(
            "Prepared run for %s in conversation %s (%d tree entries)",
            repo,
            conversation_id,
            len(tree),
        )
        return PreparedRun(
            conversation_id=conversation_id,
            project_id=project_id,
            user_message=content,
            loop=loop,
        )

    def stream(self, run: PreparedRun) -> Iterator[StreamEvent]:
        """Orchestrator events, then ``message_saved`` and the terminal event."""
        for event in run.loop.run(run.user_message):
            if event.type == "done":
                break
            yield event
            if event.type == "error":
                return

        executor = run.loop.executor
        changes = executor.proposed_changes
        try:
            message_id = self.db.add_message(
                run.conversation_id,
                "assistant",
                run.loop.full_text,
                code_changes=[c.model_dump() for c in changes] or None,
                commit_message=executor.commit_message,
            )
            self.db.touch_conversation(run.conversation_id)
        except Exception:
            logger.exception("Failed to save assistant message for %s", run.conversation_id)
            yield ErrorEvent(error="Failed to save assistant message")
            return

        yield MessageSavedEvent(
            message_id=message_id,
            conversation_id=run.conversation_id,
            has_code_changes=bool(changes),
        )
        yield DoneEvent()

    def execute(self, run: PreparedRun, channel: EventChannel) -> None:
        """Drain ``stream`` into ``channel``; always closes it."""
        try:
            for event in self.stream(run):
                channel.put(event)
        finally:
            channel.close()

    def list_conversations(self, user_id: str, project_id: str) -> list[dict[str, Any]]:
        self.project(user_id, project_id)
        return self.db.list_conversations(project_id)

    def list_messages(self, user_id: str, conversation_id: str) -> list[dict[str, Any]]:
        self._conversation(user_id, conversation_id)
        return self.db.list_messages(conversation_id)

    # ── Commit application ──────────────────────────────────────────

    def apply(
        self,
        user_id: str,
        project_id: str,
        message_id: str,
        commit_message: str | None = None,
        branch: str | None = None,
    ) -> CommitResult:
        project = self.project(user_id, project_id)
        message = self.db.get_message(message_id)
        if message is None:
            raise MessageNotFound(message_id)
        conversation = self.db.get_conversation(message["conversation_id"], user_id)
        if conversation is None or conversation["project_id"] != project_id:
            raise MessageNotFound(message_id)
        if not message["code_changes"]:
            raise NoProposedChanges(message_id)
        changes = [CodeChange.model_validate(c) for c in message["code_changes"]]

        accessor = self.accessor_for(user_id)
        repo = project["repo_full_name"]
        target = branch or project["default_branch"]
        final_message = (
            commit_message
            or message["commit_message"]
            or self.config.commit.default_message
        )

        with self._apply_lock:
            current = self.db.get_message(message_id)
            if current and current["applied_sha"]:
                raise AlreadyApplied(message_id, current["applied_sha"])
            if branch and not accessor.branch_exists(repo, branch):
                accessor.create_branch(repo, branch, project["default_branch"])
            result = apply_changes(accessor, repo, target, changes, final_message)
            self.db.mark_applied(message_id, result.sha)

        self.db.record_commit(result.sha, project_id, target, result.url, message_id)
        return result

    # ── Projects ────────────────────────────────────────────────────

    def list_projects(self, user_id: str) -> list[dict[str, Any]]:
        return self.db.list_projects(user_id)

    def github_repos(self, user_id: str) -> list[RepoSummary]:
        repos = self.accessor_for(user_id).list_user_repos()
        return [
            RepoSummary(
                id=r["id"],
                full_name=r["full_name"],
                name=r["name"],
                html_url=r["html_url"],
                description=r.get("description"),
                language=r.get("language"),
                default_branch=r.get("default_branch") or "main",
                is_private=bool(r.get("private")),
            )
            for r in repos
        ]

    def connect_project(self, user_id: str, repo_full_name: str) -> dict[str, Any]:
        if self.db.find_project(user_id, repo_full_name) is not None:
            raise DuplicateProject(repo_full_name)
        repo = self.accessor_for(user_id).get_repo(repo_full_name)
        project = self.db.create_project(
            user_id,
            repo_full_name,
            repo_url=repo["html_url"],
            default_branch=repo.get("default_branch") or "main",
            description=repo.get("description"),
            language=repo.get("language"),
        )
        logger.info("Connected %s for %s", repo_full_name, user_id)
        return project

    def delete_project(self, user_id: str, project_id: str) -> None:
        if not self.db.delete_project(project_id, user_id):
            raise ProjectNotFound(project_id)

    # ── Branches / pull requests ────────────────────────────────────

    def create_branch(
        self,
        user_id: str,
        project_id: str,
        description: str,
        base_branch: str | None = None,
    ) -> dict[str, Any]:
        project = self.project(user_id, project_id)
        accessor = self.accessor_for(user_id)
        repo = project["repo_full_name"]
        base = base_branch or project["default_branch"]
        name = branch_name(self.config.github.branch_prefix, description)
        if accessor.branch_exists(repo, name):
            raise BranchExists(name)
        sha = accessor.create_branch(repo, name, base)
        return self.db.record_branch(project_id, name, base, sha, description)

    def create_pull_request(
        self,
        user_id: str,
        project_id: str,
        title: str,
        head: str,
        body: str = "",
        base: str | None = None,
    ) -> dict[str, Any]:
        project = self.project(user_id, project_id)
        accessor = self.accessor_for(user_id)
        target = base or project["default_branch"]
        pr = accessor.create_pull_request(
            project["repo_full_name"], title, body, head, target
        )
        logger.info("Opened PR #%s on %s", pr["number"], project["repo_full_name"])
        return self.db.record_pull_request(
            project_id,
            number=pr["number"],
            branch_name=head,
            base_branch=target,
            title=title,
            description=body,
            status=pr.get("state", "open"),
            url=pr.get("html_url"),
        )

    def list_pull_requests(self, user_id: str, project_id: str) -> list[dict[str, Any]]:
        self.project(user_id, project_id)
        return self.db.list_pull_requests(project_id)
