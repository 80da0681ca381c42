from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol

from pydantic import ValidationError

from codecraft.models import (
    CodeChange,
    FunctionCall,
    HistoryTurn,
    ProposeChangesArgs,
    ProposedBatch,
    ReadFileArgs,
    SearchFilesArgs,
    ToolDeclaration,
    TreeEntry,
)

logger = logging.getLogger(__name__)

READ_FILE = "read_file"
SEARCH_FILES = "search_files"
PROPOSE_CHANGES = "propose_changes"

NO_MATCHES = "No matching files found"
PROPOSED_ACK = (
    "Changes proposed successfully. "
    "The user will review and can apply them with one click."
)
UNKNOWN_TOOL = "Unknown tool"

TOOL_DECLARATIONS: list[ToolDeclaration] = [
    ToolDeclaration(
        name=READ_FILE,
        description=(
            "Read the contents of a file from the repository. "
            "Use this to understand existing code before making changes."
        ),
        parameters={
            "type": "OBJECT",
            "properties": {
                "path": {
                    "type": "STRING",
                    "description": "The file path relative to the repository root",
                },
            },
            "required": ["path"],
        },
    ),
    ToolDeclaration(
        name=SEARCH_FILES,
        description=(
            "Search for files in the repository by name pattern. "
            "Returns matching file paths."
        ),
        parameters={
            "type": "OBJECT",
            "properties": {
                "pattern": {
                    "type": "STRING",
                    "description": (
                        "File name pattern or keyword to search for "
                        "(e.g. 'tailwind', '.css', 'config')"
                    ),
                },
            },
            "required": ["pattern"],
        },
    ),
    ToolDeclaration(
        name=PROPOSE_CHANGES,
        description=(
            "Propose file changes to be committed. "
            "The user will review and approve before committing."
        ),
        parameters={
            "type": "OBJECT",
            "properties": {
                "commitMessage": {
                    "type": "STRING",
                    "description": "A clear, concise commit message",
                },
                "changes": {
                    "type": "ARRAY",
                    "description": "Array of file changes",
                    "items": {
                        "type": "OBJECT",
                        "properties": {
                            "path": {
                                "type": "STRING",
                                "description": "File path relative to repository root",
                            },
                            "action": {
                                "type": "STRING",
                                "enum": ["create", "edit", "delete"],
                                "description": "The type of change",
                            },
                            "content": {
                                "type": "STRING",
                                "description": (
                                    "The complete new file content "
                                    "(required for create/edit)"
                                ),
                            },
                        },
                        "required": ["path", "action"],
                    },
                },
            },
            "required": ["commitMessage", "changes"],
        },
    ),
]


class RepositoryReader(Protocol):
    def fetch_file(self, repo: str, path: str, ref: str) -> str: ...


@dataclass
class ConversationContext:
    """Request-scoped state owned by one in-flight run."""

    repo_full_name: str
    default_branch: str
    repo_tree: list[TreeEntry]
    file_contents: dict[str, str] = field(default_factory=dict)
    history: list[HistoryTurn] = field(default_factory=list)


@dataclass
class ToolResult:
    output: str
    proposed: list[CodeChange] = field(default_factory=list)


class ToolExecutor:
    """Resolve tool invocations into result strings fed back to the model.

    Failures a model can route around (missing files, malformed arguments,
    unknown tools) come back as text. Anything else propagates.
    """

    def __init__(self, context: ConversationContext, reader: RepositoryReader) -> None:
        self.context = context
        self._reader = reader
        self.batches: list[ProposedBatch] = []
        self._dispatch: dict[str, Callable[[dict], ToolResult]] = {
            READ_FILE: self._read_file,
            SEARCH_FILES: self._search_files,
            PROPOSE_CHANGES: self._propose_changes,
        }

    @property
    def proposed_changes(self) -> list[CodeChange]:
        """All proposed changes of this run, batches appended in call order."""
        return [change for batch in self.batches for change in batch.changes]

    @property
    def commit_message(self) -> str | None:
        return self.batches[-1].commit_message if self.batches else None

    def execute(self, call: FunctionCall) -> ToolResult:
        handler = self._dispatch.get(call.name)
        if handler is None:
            logger.warning("Model called unknown tool %r", call.name)
            return ToolResult(UNKNOWN_TOOL)
        try:
            return handler(call.args)
        except ValidationError as exc:
            logger.warning("Invalid arguments for %s: %s", call.name, exc)
            return ToolResult(f"Error: invalid arguments for {call.name}: {exc}")

    def _read_file(self, args: dict) -> ToolResult:
        path = ReadFileArgs.model_validate(args).path
        try:
            content = self._reader.fetch_file(
                self.context.repo_full_name, path, self.context.default_branch
            )
        except Exception as exc:
            logger.warning("read_file %s failed: %s", path, exc)
            return ToolResult(f"Error: Could not read file {path}")
        self.context.file_contents[path] = content
        return ToolResult(content)

    def _search_files(self, args: dict) -> ToolResult:
        pattern = SearchFilesArgs.model_validate(args).pattern.lower()
        matches = [
            entry.path
            for entry in self.context.repo_tree
            if entry.is_blob and pattern in entry.path.lower()
        ]
        if not matches:
            return ToolResult(NO_MATCHES)
        return ToolResult("Found files:\n" + "\n".join(matches))

    def _propose_changes(self, args: dict) -> ToolResult:
        parsed = ProposeChangesArgs.model_validate(args)
        self.batches.append(
            ProposedBatch(commit_message=parsed.commit_message, changes=parsed.changes)
        )
        logger.info(
            "Recorded %d proposed change(s): %s", len(parsed.changes), parsed.commit_message
        )
        return ToolResult(PROPOSED_ACK, proposed=list(parsed.changes))
