"""Exception taxonomy shared by the accessor, agent loop and services."""

from __future__ import annotations


class CodecraftError(Exception):
    """Base class for all codecraft failures."""


class UpstreamError(CodecraftError):
    """Raised when the repository host answers with a non-2xx status."""

    def __init__(self, status: int, message: str) -> None:
        self.status = status
        super().__init__(f"{message} (HTTP {status})")


class NotFound(UpstreamError):
    """Upstream 404. Downgraded to a tool result string during read_file."""


class CommitFailed(CodecraftError):
    """Raised when any step of the atomic multi-file commit fails."""

    def __init__(self, step: str, detail: str) -> None:
        self.step = step
        super().__init__(f"Commit failed at step '{step}': {detail}")


class ModelError(CodecraftError):
    """Raised when the model provider cannot produce a usable response."""


class CredentialNotFound(CodecraftError):
    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__("GitHub token not found. Please re-authenticate.")


class ProjectNotFound(CodecraftError):
    def __init__(self, project_id: str) -> None:
        self.project_id = project_id
        super().__init__("Project not found")


class ConversationNotFound(CodecraftError):
    def __init__(self, conversation_id: str) -> None:
        self.conversation_id = conversation_id
        super().__init__("Conversation not found")


class MessageNotFound(CodecraftError):
    def __init__(self, message_id: str) -> None:
        self.message_id = message_id
        super().__init__("Message not found")


class NoProposedChanges(CodecraftError):
    def __init__(self, message_id: str) -> None:
        self.message_id = message_id
        super().__init__("No code changes found in message")


class AlreadyApplied(CodecraftError):
    def __init__(self, message_id: str, sha: str) -> None:
        self.message_id = message_id
        self.sha = sha
        super().__init__(f"Changes already applied in commit {sha}")


class DuplicateProject(CodecraftError):
    def __init__(self, repo_full_name: str) -> None:
        self.repo_full_name = repo_full_name
        super().__init__("Repository already connected")


class BranchExists(CodecraftError):
    def __init__(self, branch: str) -> None:
        self.branch = branch
        super().__init__(f"Branch already exists: {branch}")
