"""Bounded tool-calling conversation loop, modelled as an explicit state machine.

Each state has a handler that may yield stream events and returns the next
state. ``TURN_START`` owns the turn budget and cancellation checks, so every
path back into the model passes through them.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Generator, Iterator
from dataclasses import dataclass, field
from enum import Enum

from codecraft.llm import ModelClient, is_truncated
from codecraft.models import (
    CodeChangeEvent,
    Content,
    DoneEvent,
    ErrorEvent,
    FinishReason,
    FunctionCall,
    FunctionResponse,
    HistoryTurn,
    ModelRequest,
    ModelResponse,
    Part,
    StatusEvent,
    StreamEvent,
    TextEvent,
    ToolCallEvent,
)
from codecraft.stall import NUDGE_MESSAGE, StallPredicate, is_stalling
from codecraft.tools import TOOL_DECLARATIONS, ConversationContext, ToolExecutor

logger = logging.getLogger(__name__)

MAX_TURNS = 15

SYSTEM_PROMPT = """\
You are CodeCraft, an expert AI coding agent. You help developers build and \
modify code in their GitHub repositories.

## CRITICAL: Act, don't explain
- Do NOT write long explanations of what you plan to do. Just DO it using tools.
- Do NOT describe changes in text before calling propose_changes. Call the tool directly.
- Keep ALL text responses under 2-3 sentences. Let your tool calls do the work.

## Tools
- "read_file": read file contents. ALWAYS read before editing.
- "search_files": find files by name pattern.
- "propose_changes": submit code changes. This is the ONLY way to make changes.

## Workflow
1. Use search_files or read_file to understand the code
2. Call propose_changes with ALL changes in a single call
3. Write a 1-2 sentence summary AFTER proposing

## Rules
- ALWAYS read a file before editing it
- Provide COMPLETE new file content in propose_changes (not partial diffs)
- Group all related changes into a single propose_changes call
- NEVER list out changes in text, just call propose_changes directly
- Be concise. No bullet-point previews of what you'll change."""

STATUS_THINKING = "Thinking..."
STATUS_PROCESSING = "Processing..."
STATUS_NUDGING = "Generating changes..."


class LoopState(Enum):
    TURN_START = "turn_start"
    MODEL_CALL = "model_call"
    INTERPRET = "interpret"
    EXECUTE_TOOLS = "execute_tools"
    STALL_CHECK = "stall_check"
    DONE = "done"
    ERROR = "error"


TERMINAL_STATES = frozenset({LoopState.DONE, LoopState.ERROR})

Handler = Generator[StreamEvent, None, LoopState]


@dataclass
class Turn:
    """One model invocation after interpretation."""

    text: str
    invocations: list[FunctionCall] = field(default_factory=list)
    finish: FinishReason = FinishReason.STOP
    raw_finish_reason: str | None = None


def interpret(response: ModelResponse) -> Turn:
    """Split a model response into joined text and ordered tool invocations."""
    texts = [p.text for p in response.parts if p.text]
    calls = [p.function_call for p in response.parts if p.function_call is not None]
    finish = (
        FinishReason.TRUNCATED
        if is_truncated(response.finish_reason)
        else FinishReason.STOP
    )
    return Turn(
        text="".join(texts),
        invocations=calls,
        finish=finish,
        raw_finish_reason=response.finish_reason,
    )


def state_after_interpret(turn: Turn) -> LoopState:
    return LoopState.EXECUTE_TOOLS if turn.invocations else LoopState.STALL_CHECK


def state_after_stall_check(
    turn: Turn, predicate: StallPredicate = is_stalling
) -> LoopState:
    """A stalled turn goes back for another model call; anything else ends the run."""
    if predicate(turn.text, turn.raw_finish_reason):
        return LoopState.TURN_START
    return LoopState.DONE


def budget_exhausted(turn_index: int, max_turns: int = MAX_TURNS) -> bool:
    return turn_index >= max_turns


def render_repo_context(context: ConversationContext) -> str:
    tree = "\n".join(
        f"  {entry.path} ({entry.size or '?'}b)"
        for entry in context.repo_tree
        if entry.is_blob
    )
    rendered = (
        f"## Repository: {context.repo_full_name}\n"
        f"Branch: {context.default_branch}\n\n"
        f"## File Structure:\n{tree}\n"
    )
    if context.file_contents:
        rendered += "\n## File Contents (already loaded):\n"
        for path, content in context.file_contents.items():
            rendered += f"\n### {path}\n```\n{content}\n```\n"
    return rendered


def build_contents(history: list[HistoryTurn], user_message: str) -> list[Content]:
    contents = [
        Content(role=turn.role, parts=[Part(text=turn.text)]) for turn in history
    ]
    contents.append(Content(role="user", parts=[Part(text=user_message)]))
    return contents


class AgentLoop:
    """Drive one run: model turns, tool execution, stall nudges, terminal event.

    ``run`` is a generator of stream events. It always ends with exactly one
    ``done`` or ``error`` event unless the consumer closes it early.
    """

    def __init__(
        self,
        client: ModelClient,
        executor: ToolExecutor,
        *,
        max_turns: int = MAX_TURNS,
        temperature: float = 0.3,
        max_output_tokens: int = 65536,
        stall_predicate: StallPredicate = is_stalling,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self._client = client
        self.executor = executor
        self.max_turns = max_turns
        self._temperature = temperature
        self._max_output_tokens = max_output_tokens
        self._stall_predicate = stall_predicate
        self._cancel_event = cancel_event

        self.state = LoopState.TURN_START
        self.turn = 0
        self.nudges = 0
        self.contents: list[Content] = []
        self.texts: list[str] = []
        self.finish: FinishReason | None = None
        self.cancelled = False
        self.error: str | None = None
        self._response: ModelResponse | None = None
        self._current: Turn | None = None

        self._handlers: dict[LoopState, Callable[[], Handler]] = {
            LoopState.TURN_START: self._turn_start,
            LoopState.MODEL_CALL: self._model_call,
            LoopState.INTERPRET: self._interpret,
            LoopState.EXECUTE_TOOLS: self._execute_tools,
            LoopState.STALL_CHECK: self._stall_check,
        }

    @property
    def context(self) -> ConversationContext:
        return self.executor.context

    @property
    def full_text(self) -> str:
        return "".join(self.texts)

    def run(self, user_message: str) -> Iterator[StreamEvent]:
        self.contents = build_contents(self.context.history, user_message)
        logger.info(
            "Run started on %s@%s (%d prior turns)",
            self.context.repo_full_name,
            self.context.default_branch,
            len(self.context.history),
        )
        while self.state not in TERMINAL_STATES:
            handler = self._handlers[self.state]
            try:
                self.state = yield from handler()
            except Exception as exc:
                logger.exception("Agent loop failed in state %s", self.state.value)
                self.error = str(exc) or "AI generation failed"
                self.finish = FinishReason.ERROR
                self.state = LoopState.ERROR

        if self.state is LoopState.ERROR:
            yield ErrorEvent(error=self.error or "AI generation failed")
            return
        logger.info(
            "Run finished after %d turn(s), finish=%s, %d proposed change(s)",
            self.turn,
            self.finish,
            len(self.executor.proposed_changes),
        )
        yield DoneEvent()

    # ── State handlers ──────────────────────────────────────────────

    def _turn_start(self) -> Handler:
        if self._cancel_event is not None and self._cancel_event.is_set():
            logger.info("Run cancelled before turn %d", self.turn)
            self.cancelled = True
            self.finish = FinishReason.STOP
            return LoopState.DONE
        if budget_exhausted(self.turn, self.max_turns):
            logger.info("Turn budget of %d exhausted", self.max_turns)
            self.finish = FinishReason.MAX_TURNS
            return LoopState.DONE
        yield StatusEvent(
            status_text=STATUS_THINKING if self.turn == 0 else STATUS_PROCESSING
        )
        return LoopState.MODEL_CALL

    def _model_call(self) -> Handler:
        yield from ()
        request = ModelRequest(
            system_instruction=SYSTEM_PROMPT + "\n\n" + render_repo_context(self.context),
            tools=TOOL_DECLARATIONS,
            temperature=self._temperature,
            max_output_tokens=self._max_output_tokens,
            contents=list(self.contents),
        )
        self.turn += 1
        logger.debug("Model call %d/%d", self.turn, self.max_turns)
        self._response = self._client.generate(request)
        return LoopState.INTERPRET

    def _interpret(self) -> Handler:
        assert self._response is not None
        turn = interpret(self._response)
        self._current = turn
        if turn.text:
            self.texts.append(turn.text)
            yield TextEvent(content=turn.text)

        parts: list[Part] = []
        if turn.text:
            parts.append(Part(text=turn.text))
        parts.extend(Part(function_call=call) for call in turn.invocations)
        if parts:
            self.contents.append(Content(role="model", parts=parts))
        return state_after_interpret(turn)

    def _stall_check(self) -> Handler:
        assert self._current is not None
        next_state = state_after_stall_check(self._current, self._stall_predicate)
        if next_state is LoopState.DONE:
            self.finish = self._current.finish
            return next_state
        logger.info("Turn %d stalled (finish=%s); nudging", self.turn, self._current.raw_finish_reason)
        self.nudges += 1
        yield StatusEvent(status_text=STATUS_NUDGING)
        self.contents.append(Content(role="user", parts=[Part(text=NUDGE_MESSAGE)]))
        return next_state

    def _execute_tools(self) -> Handler:
        assert self._current is not None
        responses: list[Part] = []
        for call in self._current.invocations:
            yield ToolCallEvent(tool_call=call)
            logger.info("Executing tool %s", call.name)
            result = self.executor.execute(call)
            for change in result.proposed:
                yield CodeChangeEvent(code_change=change)
            responses.append(
                Part(
                    function_response=FunctionResponse(
                        name=call.name, response={"result": result.output}
                    )
                )
            )
        self.contents.append(Content(role="user", parts=responses))
        return LoopState.TURN_START
