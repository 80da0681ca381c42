"""Pydantic models defining the contracts between codecraft components.

Three families live here: the model-invocation boundary (contents, parts,
tool declarations), the agent's domain records (tree entries, proposed
changes, commit results) and the typed stream events delivered to the
browser. Wire models serialize with camelCase aliases so the JSON matches
what the web client expects.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


# ── Repository ──────────────────────────────────────────────────────


class TreeEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    path: str
    kind: str = Field(alias="type")
    size: int | None = None
    sha: str | None = None

    @property
    def is_blob(self) -> bool:
        return self.kind == "blob"


class CommitResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    sha: str
    url: str


class FileWrite(BaseModel):
    """One entry of an atomic commit. ``content=None`` removes the path."""

    path: str
    content: str | None


ChangeAction = Literal["create", "edit", "delete"]


class CodeChange(WireModel):
    """A proposed file mutation awaiting user approval."""

    path: str = Field(min_length=1)
    action: ChangeAction
    content: str | None = None

    @model_validator(mode="after")
    def _content_required(self) -> CodeChange:
        if self.action != "delete" and self.content is None:
            msg = f"content is required for action '{self.action}' ({self.path})"
            raise ValueError(msg)
        return self


class ProposedBatch(BaseModel):
    commit_message: str
    changes: list[CodeChange]


# ── Tool arguments ──────────────────────────────────────────────────


class ReadFileArgs(BaseModel):
    path: str = Field(min_length=1)


class SearchFilesArgs(BaseModel):
    pattern: str = Field(min_length=1)


class ProposeChangesArgs(WireModel):
    commit_message: str = Field(min_length=1)
    changes: list[CodeChange] = Field(min_length=1)


# ── Model invocation boundary ───────────────────────────────────────


class FunctionCall(BaseModel):
    name: str
    args: dict[str, Any] = Field(default_factory=dict)


class FunctionResponse(BaseModel):
    name: str
    response: dict[str, Any]


class Part(BaseModel):
    text: str | None = None
    function_call: FunctionCall | None = None
    function_response: FunctionResponse | None = None


class Content(BaseModel):
    role: Literal["user", "model"]
    parts: list[Part]


class ToolDeclaration(BaseModel):
    name: str
    description: str
    parameters: dict[str, Any]


class ModelRequest(BaseModel):
    system_instruction: str
    tools: list[ToolDeclaration]
    temperature: float
    max_output_tokens: int
    contents: list[Content]


class ModelResponse(BaseModel):
    parts: list[Part] = Field(default_factory=list)
    finish_reason: str | None = None


class FinishReason(StrEnum):
    STOP = "stop"
    TRUNCATED = "truncated"
    MAX_TURNS = "max_turns"
    ERROR = "error"


class HistoryTurn(BaseModel):
    role: Literal["user", "model"]
    text: str


# ── Stream events ───────────────────────────────────────────────────


class StatusEvent(WireModel):
    type: Literal["status"] = "status"
    status_text: str


class TextEvent(WireModel):
    type: Literal["text"] = "text"
    content: str


class ToolCallEvent(WireModel):
    type: Literal["tool_call"] = "tool_call"
    tool_call: FunctionCall


class CodeChangeEvent(WireModel):
    type: Literal["code_change"] = "code_change"
    code_change: CodeChange


class MessageSavedEvent(WireModel):
    type: Literal["message_saved"] = "message_saved"
    message_id: str
    conversation_id: str
    has_code_changes: bool


class DoneEvent(WireModel):
    type: Literal["done"] = "done"


class ErrorEvent(WireModel):
    type: Literal["error"] = "error"
    error: str


StreamEvent = Annotated[
    StatusEvent
    | TextEvent
    | ToolCallEvent
    | CodeChangeEvent
    | MessageSavedEvent
    | DoneEvent
    | ErrorEvent,
    Field(discriminator="type"),
]

TERMINAL_EVENT_TYPES = frozenset({"done", "error"})


# ── HTTP request payloads ───────────────────────────────────────────


class SendMessageRequest(WireModel):
    project_id: str
    content: str = Field(min_length=1, max_length=10000)
    conversation_id: str | None = None


class ApplyRequest(WireModel):
    project_id: str
    message_id: str
    commit_message: str | None = None
    branch: str | None = None


class CreateProjectRequest(WireModel):
    repo_full_name: str = Field(min_length=3, pattern=r"^[^/]+/[^/]+$")


class CreateBranchRequest(WireModel):
    project_id: str
    description: str = Field(min_length=1, max_length=100)
    base_branch: str | None = None


class CreatePullRequestRequest(WireModel):
    project_id: str
    title: str = Field(min_length=1)
    head: str = Field(min_length=1)
    body: str = ""
    base: str | None = None


class RepoSummary(WireModel):
    id: int
    full_name: str
    name: str
    html_url: str
    description: str | None = None
    language: str | None = None
    default_branch: str
    is_private: bool = False
