"""Detect model turns that explain an edit instead of making it."""

from __future__ import annotations

import re
from collections.abc import Callable

from codecraft.llm import is_truncated

StallPredicate = Callable[[str, "str | None"], bool]

_EXPLAINING_RE = re.compile(
    r"here'?s?\s+the|proposed\s+change|i'll\s+now|i\s+will\s+now|let\s+me\s+now",
    re.IGNORECASE,
)

NUDGE_MESSAGE = (
    "Do not repeat your explanation. Call the propose_changes tool NOW with "
    "the file changes. Be direct: no text, just the tool call."
)


def has_open_code_fence(text: str) -> bool:
    return text.count("```") % 2 == 1


def ends_with_code_fence(text: str) -> bool:
    return text.rstrip().endswith("```")


def is_stalling(text: str, finish_reason: str | None) -> bool:
    """True when a tool-less turn looks like a false stop.

    Either the output was cut off, or the prose announces an action
    ("here's the", "I'll now", ...), or it ends on a code fence: an
    unterminated block, or a finished block the model never proposed.
    """
    if is_truncated(finish_reason):
        return True
    stripped = text.strip()
    if not stripped:
        return False
    return (
        bool(_EXPLAINING_RE.search(stripped))
        or has_open_code_fence(stripped)
        or ends_with_code_fence(stripped)
    )
