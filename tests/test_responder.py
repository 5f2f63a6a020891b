"""
Tests para rag/query/responder.py — Cliente Groq con reintentos y parseo.

El cliente Groq se reemplaza por un mock; nunca se llama a la API real.
"""

import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from groq import APIConnectionError

from agent.errors import UpstreamUnavailable
from agent.models import KnowledgeItem, RetrievalResult, SearchMethod
from rag.query.responder import (
    DEFAULT_ESCALATION_ACTION,
    GroqResponder,
    build_system_prompt,
    parse_response,
)


def _completion(content, total_tokens=42):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(total_tokens=total_tokens),
    )


def _connection_error():
    return APIConnectionError(
        request=httpx.Request("POST", "https://api.groq.com/openai/v1/chat/completions")
    )


def _responder(side_effect, **kwargs):
    client = MagicMock()
    client.chat.completions.create = AsyncMock(side_effect=side_effect)
    kwargs.setdefault("base_delay", 0.0)
    return GroqResponder(client=client, **kwargs), client.chat.completions.create


class TestComplete:
    def test_success_first_attempt(self):
        responder, create = _responder([_completion('{"message": "OK"}')])
        result = asyncio.run(responder.complete("system", "user"))

        assert result == '{"message": "OK"}'
        assert create.await_count == 1
        kwargs = create.call_args.kwargs
        assert kwargs["response_format"] == {"type": "json_object"}
        assert kwargs["model"] == "llama-3.3-70b-versatile"
        assert kwargs["messages"][0] == {"role": "system", "content": "system"}

    def test_retries_transient_with_backoff(self):
        responder, create = _responder(
            [asyncio.TimeoutError(), _connection_error(), _completion("done")],
            base_delay=1.0,
        )
        with patch("rag.query.responder.asyncio.sleep", new_callable=AsyncMock) as sleep:
            result = asyncio.run(responder.complete("s", "u"))

        assert result == "done"
        assert create.await_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]

    def test_exhausted_retries(self):
        responder, create = _responder([asyncio.TimeoutError()] * 3, max_retries=3)
        with pytest.raises(UpstreamUnavailable):
            asyncio.run(responder.complete("s", "u"))
        assert create.await_count == 3

    def test_empty_content_is_retried(self):
        responder, create = _responder([_completion(""), _completion("ok")])
        assert asyncio.run(responder.complete("s", "u")) == "ok"
        assert create.await_count == 2

    def test_non_transient_error_not_retried(self):
        responder, create = _responder([ValueError("bad request")])
        with pytest.raises(UpstreamUnavailable):
            asyncio.run(responder.complete("s", "u"))
        assert create.await_count == 1

    def test_timeout_per_attempt(self):
        async def slow(**kwargs):
            await asyncio.sleep(1)

        responder, _ = _responder(slow, timeout_seconds=0.01, max_retries=1)
        with pytest.raises(UpstreamUnavailable):
            asyncio.run(responder.complete("s", "u"))

    def test_requires_api_key(self):
        with pytest.raises(ValueError):
            GroqResponder(api_key=None)


class TestParseResponse:
    def test_valid_json(self):
        raw = json.dumps(
            {
                "message": "予約番号はMy auで取得できます。",
                "suggestions": ["有効期限は？"],
                "actions": [
                    {"type": "link", "label": "My au", "value": "my_au"},
                    {"type": "button", "label": "", "value": "x"},
                ],
                "needsEscalation": True,
                "confidence": "0.4",
            },
            ensure_ascii=False,
        )
        parsed = parse_response(raw)

        assert parsed["structured"] is True
        assert parsed["message"] == "予約番号はMy auで取得できます。"
        assert parsed["needs_escalation"] is True
        assert parsed["confidence"] == 0.4
        # Acciones sin label se descartan
        assert [a["value"] for a in parsed["actions"]] == ["my_au"]

    def test_markdown_fence(self):
        parsed = parse_response('```json\n{"message": "こんにちは"}\n```')
        assert parsed["structured"] is True
        assert parsed["message"] == "こんにちは"
        assert parsed["confidence"] is None

    def test_plain_text_fallback(self):
        parsed = parse_response("すみません、わかりません。")

        assert parsed["structured"] is False
        assert parsed["message"] == "すみません、わかりません。"
        assert parsed["actions"] == [DEFAULT_ESCALATION_ACTION]
        assert parsed["needs_escalation"] is False

    def test_json_without_message(self):
        parsed = parse_response('{"confidence": 0.9}')
        assert parsed["structured"] is False

    def test_invalid_confidence(self):
        parsed = parse_response('{"message": "ok", "confidence": "alta"}')
        assert parsed["confidence"] is None


class TestSystemPrompt:
    def test_includes_session_and_faq(self):
        item = KnowledgeItem(
            id="faq-x",
            category="carrier_process",
            question="予約番号の取得方法",
            answer="My auから取得できます",
            carrier="au",
        )
        results = [RetrievalResult(item=item, score=0.9, method=SearchMethod.FUSED)]
        prompt = build_system_prompt(
            results, {"current_carrier": "au", "current_step": "reservation_number"}
        )

        assert "現在のキャリア: au" in prompt
        assert "現在のステップ: reservation_number" in prompt
        assert "移行先キャリア: 未設定" in prompt
        assert "Q: 予約番号の取得方法" in prompt

    def test_without_results(self):
        prompt = build_system_prompt([], {})
        assert "関連するFAQが見つかりませんでした" in prompt
        assert "現在のステップ: 初期" in prompt
