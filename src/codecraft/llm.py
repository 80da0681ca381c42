"""Generative-model boundary: the protocol the agent loop needs and a Gemini client."""

from __future__ import annotations

import logging
import random
import time
from typing import Any, Protocol

import requests

from codecraft.errors import ModelError
from codecraft.models import (
    Content,
    FunctionCall,
    ModelRequest,
    ModelResponse,
    Part,
)

logger = logging.getLogger(__name__)

_TRUNCATION_REASONS = frozenset({"MAX_TOKENS", "RECITATION"})


class ModelClient(Protocol):
    def generate(self, request: ModelRequest) -> ModelResponse: ...


def is_truncated(finish_reason: str | None) -> bool:
    return (finish_reason or "").upper() in _TRUNCATION_REASONS


def _is_retryable(status: int) -> bool:
    return status == 429 or status >= 500


def _render_part(part: Part) -> dict[str, Any]:
    rendered: dict[str, Any] = {}
    if part.text is not None:
        rendered["text"] = part.text
    if part.function_call is not None:
        rendered["functionCall"] = part.function_call.model_dump()
    if part.function_response is not None:
        rendered["functionResponse"] = part.function_response.model_dump()
    return rendered


def _render_content(content: Content) -> dict[str, Any]:
    return {"role": content.role, "parts": [_render_part(p) for p in content.parts]}


def build_payload(request: ModelRequest) -> dict[str, Any]:
    """Render a request in the shape of the ``generateContent`` endpoint."""
    return {
        "systemInstruction": {"parts": [{"text": request.system_instruction}]},
        "tools": [
            {"functionDeclarations": [t.model_dump() for t in request.tools]}
        ],
        "generationConfig": {
            "temperature": request.temperature,
            "maxOutputTokens": request.max_output_tokens,
        },
        "contents": [_render_content(c) for c in request.contents],
    }


def parse_response(data: dict[str, Any]) -> ModelResponse:
    """Extract text and function-call parts from the first candidate."""
    candidates = data.get("candidates") or []
    if not candidates:
        feedback = data.get("promptFeedback") or {}
        reason = feedback.get("blockReason")
        if reason:
            raise ModelError(f"Model refused the prompt: {reason}")
        return ModelResponse(parts=[], finish_reason=None)

    candidate = candidates[0]
    parts: list[Part] = []
    for raw in (candidate.get("content") or {}).get("parts") or []:
        if raw.get("text"):
            parts.append(Part(text=raw["text"]))
        call = raw.get("functionCall")
        if call:
            parts.append(
                Part(
                    function_call=FunctionCall(
                        name=call["name"], args=call.get("args") or {}
                    )
                )
            )
    return ModelResponse(parts=parts, finish_reason=candidate.get("finishReason"))


class GeminiClient:
    """Minimal HTTP client for the Gemini ``generateContent`` API."""

    def __init__(
        self,
        api_key: str | None,
        model: str = "gemini-2.5-flash",
        api_base: str = "https://generativelanguage.googleapis.com/v1beta",
        timeout: float = 120,
        max_retries: int = 2,
        session: requests.Session | None = None,
    ) -> None:
        if not api_key:
            raise ModelError("No model API key configured")
        self.model = model
        self._url = f"{api_base.rstrip('/')}/models/{model}:generateContent"
        self._timeout = timeout
        self._max_retries = max_retries
        self.session = session or requests.Session()
        self.session.headers.update(
            {"x-goog-api-key": api_key, "Content-Type": "application/json"}
        )

    def _backoff(self, attempt: int) -> float:
        base_delay = [1.0, 2.0, 4.0][min(attempt - 1, 2)]
        return base_delay * random.uniform(0.5, 1.5)

    def generate(self, request: ModelRequest) -> ModelResponse:
        payload = build_payload(request)
        attempt = 0
        while True:
            attempt += 1
            try:
                resp = self.session.post(self._url, json=payload, timeout=self._timeout)
            except requests.exceptions.Timeout as exc:
                if attempt <= self._max_retries:
                    delay = self._backoff(attempt)
                    logger.warning("Model timeout on attempt %d; retrying in %.2fs", attempt, delay)
                    time.sleep(delay)
                    continue
                raise ModelError(f"Model timed out after {attempt} attempt(s)") from exc
            except requests.RequestException as exc:
                raise ModelError(f"Failed to reach model endpoint: {exc}") from exc

            if _is_retryable(resp.status_code) and attempt <= self._max_retries:
                delay = self._backoff(attempt)
                logger.warning(
                    "Model attempt %d received %d; retrying in %.2fs",
                    attempt,
                    resp.status_code,
                    delay,
                )
                time.sleep(delay)
                continue
            if resp.status_code != 200:
                raise ModelError(f"Model API error {resp.status_code}: {resp.text[:2000]}")
            break

        try:
            data = resp.json()
        except ValueError as exc:
            raise ModelError("Model returned a non-JSON response") from exc

        usage = data.get("usageMetadata") or {}
        logger.debug(
            "Model usage: prompt_tokens=%s output_tokens=%s",
            usage.get("promptTokenCount"),
            usage.get("candidatesTokenCount"),
        )
        return parse_response(data)
