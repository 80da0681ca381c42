from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
import requests

from codecraft.errors import ModelError
from codecraft.llm import GeminiClient, build_payload, is_truncated, parse_response
from codecraft.models import (
    Content,
    FunctionCall,
    FunctionResponse,
    ModelRequest,
    Part,
)
from codecraft.tools import TOOL_DECLARATIONS


def _request() -> ModelRequest:
    return ModelRequest(
        system_instruction="be brief",
        tools=TOOL_DECLARATIONS,
        temperature=0.3,
        max_output_tokens=65536,
        contents=[
            Content(role="user", parts=[Part(text="hi")]),
            Content(
                role="model",
                parts=[Part(function_call=FunctionCall(name="read_file", args={"path": "a"}))],
            ),
            Content(
                role="user",
                parts=[
                    Part(
                        function_response=FunctionResponse(
                            name="read_file", response={"result": "x"}
                        )
                    )
                ],
            ),
        ],
    )


def _http(status: int, payload: dict | None = None) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.text = "" if payload is None else str(payload)
    resp.json.return_value = payload
    return resp


def _session(*responses: object) -> MagicMock:
    session = MagicMock()
    session.headers = {}
    session.post.side_effect = list(responses)
    return session


_OK = {
    "candidates": [
        {
            "content": {"parts": [{"text": "Hello"}]},
            "finishReason": "STOP",
        }
    ]
}


class TestIsTruncated:
    @pytest.mark.parametrize("reason", ["MAX_TOKENS", "RECITATION", "max_tokens"])
    def test_truncated(self, reason: str):
        assert is_truncated(reason)

    @pytest.mark.parametrize("reason", ["STOP", "SAFETY", None, ""])
    def test_not_truncated(self, reason: str | None):
        assert not is_truncated(reason)


class TestBuildPayload:
    def test_shape(self):
        payload = build_payload(_request())
        assert payload["systemInstruction"] == {"parts": [{"text": "be brief"}]}
        assert payload["generationConfig"] == {"temperature": 0.3, "maxOutputTokens": 65536}
        names = [d["name"] for d in payload["tools"][0]["functionDeclarations"]]
        assert names == ["read_file", "search_files", "propose_changes"]

    def test_contents_render_calls_and_responses(self):
        contents = build_payload(_request())["contents"]
        assert contents[0] == {"role": "user", "parts": [{"text": "hi"}]}
        assert contents[1]["parts"][0] == {
            "functionCall": {"name": "read_file", "args": {"path": "a"}}
        }
        assert contents[2]["parts"][0] == {
            "functionResponse": {"name": "read_file", "response": {"result": "x"}}
        }


class TestParseResponse:
    def test_text_and_calls_in_order(self):
        data = {
            "candidates": [
                {
                    "content": {
                        "parts": [
                            {"text": "Looking"},
                            {"functionCall": {"name": "search_files", "args": {"pattern": "x"}}},
                        ]
                    },
                    "finishReason": "STOP",
                }
            ]
        }
        resp = parse_response(data)
        assert resp.parts[0].text == "Looking"
        assert resp.parts[1].function_call == FunctionCall(
            name="search_files", args={"pattern": "x"}
        )
        assert resp.finish_reason == "STOP"

    def test_call_without_args(self):
        data = {"candidates": [{"content": {"parts": [{"functionCall": {"name": "x"}}]}}]}
        assert parse_response(data).parts[0].function_call.args == {}

    def test_blocked_prompt_raises(self):
        with pytest.raises(ModelError, match="SAFETY"):
            parse_response({"promptFeedback": {"blockReason": "SAFETY"}})

    def test_empty_candidates(self):
        resp = parse_response({"candidates": []})
        assert resp.parts == []
        assert resp.finish_reason is None


class TestGeminiClient:
    def test_requires_key(self):
        with pytest.raises(ModelError):
            GeminiClient(None)

    def test_posts_to_generate_content(self):
        session = _session(_http(200, _OK))
        client = GeminiClient("k", model="gemini-2.5-flash", session=session)
        resp = client.generate(_request())
        assert resp.parts[0].text == "Hello"
        url = session.post.call_args.args[0]
        assert url.endswith("/models/gemini-2.5-flash:generateContent")
        assert session.headers["x-goog-api-key"] == "k"

    @patch("codecraft.llm.time.sleep")
    def test_retries_5xx(self, mock_sleep: MagicMock):
        session = _session(_http(503), _http(200, _OK))
        resp = GeminiClient("k", max_retries=2, session=session).generate(_request())
        assert resp.finish_reason == "STOP"
        assert session.post.call_count == 2
        mock_sleep.assert_called_once()

    @patch("codecraft.llm.time.sleep")
    def test_retries_rate_limit(self, mock_sleep: MagicMock):
        session = _session(_http(429), _http(429), _http(200, _OK))
        resp = GeminiClient("k", max_retries=2, session=session).generate(_request())
        assert resp.parts[0].text == "Hello"
        assert session.post.call_count == 3
        assert mock_sleep.call_count == 2

    @patch("codecraft.llm.time.sleep")
    def test_rate_limit_gives_up_after_retries(self, mock_sleep: MagicMock):
        session = _session(_http(429), _http(429))
        with pytest.raises(ModelError, match="429"):
            GeminiClient("k", max_retries=1, session=session).generate(_request())
        assert session.post.call_count == 2

    @patch("codecraft.llm.time.sleep")
    def test_retries_timeout_then_gives_up(self, mock_sleep: MagicMock):
        session = _session(
            requests.exceptions.Timeout(), requests.exceptions.Timeout()
        )
        with pytest.raises(ModelError, match="timed out"):
            GeminiClient("k", max_retries=1, session=session).generate(_request())
        assert session.post.call_count == 2

    def test_4xx_is_not_retried(self):
        session = _session(_http(400, {"error": "bad"}))
        with pytest.raises(ModelError, match="400"):
            GeminiClient("k", session=session).generate(_request())
        assert session.post.call_count == 1

    def test_non_json_body(self):
        resp = _http(200)
        resp.json.side_effect = ValueError("not json")
        with pytest.raises(ModelError, match="non-JSON"):
            GeminiClient("k", session=_session(resp)).generate(_request())
