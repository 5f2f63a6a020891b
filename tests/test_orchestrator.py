"""
Tests para agent/orchestrator.py — Orquestador principal.

Usa mocks para el LLM y un embedder falso, pero DB real temporal
para sesiones, workflows y tickets.
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from agent.errors import UpstreamUnavailable
from agent.orchestrator import (
    EMPTY_MESSAGE,
    FALLBACK_MESSAGE,
    WORKFLOW_CANCELLED_MESSAGE,
    match_option,
    normalize_message,
)


def _llm(message="MNPの手続きについてご案内します。", confidence=0.9, **extra):
    payload = {
        "message": message,
        "suggestions": ["手数料は？"],
        "actions": [],
        "needsEscalation": False,
        "confidence": confidence,
    }
    payload.update(extra)
    return json.dumps(payload, ensure_ascii=False)


def _send(orchestrator, text, session_id="s1", **carriers):
    return asyncio.run(orchestrator.process_message(session_id, text, **carriers))


class TestHelpers:
    def test_normalize_fullwidth_and_spaces(self):
        assert normalize_message("  ＭＮＰとは？  ") == "MNPとは?"

    def test_normalize_carrier_names(self):
        assert normalize_message("ドコモからソフトバンク") == "docomoからSoftBank"
        assert normalize_message("AU に乗り換え") == "au に乗り換え"

    def test_match_option(self, registry):
        step = registry.get("step_by_step").steps[0]
        assert match_option(step, "はい") == "yes"
        assert match_option(step, "NO") == "no"
        assert match_option(step, "たぶん") is None


class TestQuestions:
    def test_question_answered_with_rag(self, orchestrator, responder, db):
        turn = _send(orchestrator, "MNPとは何ですか？")

        assert turn.message.startswith("MNPは電話番号を変えずに")
        assert turn.suggestions == ["手続きの流れを教えて", "手数料は？"]
        assert turn.needs_escalation is False
        assert turn.escalation is None
        assert turn.metadata["confidence"] == 0.9
        assert turn.metadata["rag_results"] >= 1
        assert "response_time_ms" in turn.metadata

        system_prompt = responder.complete.await_args.args[0]
        assert "Q: MNPとは何ですか？" in system_prompt

        history = db.get_recent_messages("s1")
        assert [m["role"] for m in history] == ["user", "assistant"]

    def test_low_relevance_adds_escalation_action(self, orchestrator):
        turn = _send(orchestrator, "天気")
        assert turn.metadata["rag_results"] == 0
        assert any(a.type == "escalation" for a in turn.actions)
        assert turn.needs_escalation is False

    def test_empty_message(self, orchestrator, responder):
        turn = _send(orchestrator, "   ")
        assert turn.message == EMPTY_MESSAGE
        responder.complete.assert_not_awaited()

    def test_message_normalized_before_storing(self, orchestrator, db):
        _send(orchestrator, "ＭＮＰとは？")
        assert db.get_recent_messages("s1")[0]["content"] == "MNPとは?"

    def test_carriers_saved_lowercase(self, orchestrator, db):
        _send(orchestrator, "MNPとは？", current_carrier="Docomo", target_carrier="AU")
        session = db.get_session("s1")
        assert session["current_carrier"] == "docomo"
        assert session["target_carrier"] == "au"

    def test_unstructured_reply(self, orchestrator, responder):
        responder.complete.return_value = "ただのテキストです"
        turn = _send(orchestrator, "MNPとは？")
        assert turn.message == "ただのテキストです"
        assert turn.metadata["structured_response"] is False
        assert any(a.type == "escalation" for a in turn.actions)


class TestFailures:
    def test_llm_unavailable(self, orchestrator, responder):
        responder.complete.side_effect = UpstreamUnavailable("groq down")
        turn = _send(orchestrator, "MNPとは？")

        assert turn.message == FALLBACK_MESSAGE
        assert turn.metadata["fallback"] is True
        assert turn.actions[0].type == "escalation"

    def test_unexpected_error_never_raises(self, orchestrator):
        orchestrator.retriever = MagicMock()
        orchestrator.retriever.search = AsyncMock(side_effect=RuntimeError("boom"))
        turn = _send(orchestrator, "MNPとは？")

        assert turn.message == FALLBACK_MESSAGE
        assert "response_time_ms" in turn.metadata


class TestEscalation:
    def test_low_confidence_creates_ticket(self, orchestrator, responder, arbiter):
        responder.complete.return_value = _llm(confidence=0.1)
        turn = _send(orchestrator, "予約番号の有効期限は？")

        assert turn.needs_escalation is True
        assert turn.escalation.reason == "low AI confidence"
        assert turn.escalation.queue_position == 1
        assert turn.escalation.estimated_wait_time == 20
        assert "約20分" in turn.message
        link = [a for a in turn.actions if a.type == "link"][0]
        assert link.url == turn.escalation.handoff_url
        assert f"ticket={turn.escalation.ticket_id}" in link.url

        ticket = asyncio.run(arbiter.get_ticket(turn.escalation.ticket_id))
        assert ticket.context["last_query"] == "予約番号の有効期限は?"

    def test_active_ticket_reused(self, orchestrator, responder):
        responder.complete.return_value = _llm(confidence=0.1)
        first = _send(orchestrator, "予約番号の有効期限は？")
        second = _send(orchestrator, "手数料はいくら？")
        assert second.escalation.ticket_id == first.escalation.ticket_id

    def test_repeated_questions(self, orchestrator):
        _send(orchestrator, "MNPとは？")
        second = _send(orchestrator, "MNPって何？")
        assert second.needs_escalation is False

        third = _send(orchestrator, "MNPとは何ですか？")
        assert third.needs_escalation is True
        assert third.escalation.reason == "repeated question"
        assert third.escalation.urgency == "high"
        assert "お急ぎ" in third.message

    def test_llm_flag_without_heuristic(self, orchestrator, responder):
        responder.complete.return_value = _llm(needsEscalation=True)
        turn = _send(orchestrator, "MNPとは？")
        assert turn.needs_escalation is True
        assert turn.escalation is None
        assert any(a.type == "escalation" for a in turn.actions)


class TestWorkflowTurns:
    def test_roadmap_docomo_to_au(self, orchestrator, responder):
        turn = _send(orchestrator, "ロードマップを見たい", current_carrier="docomo", target_carrier="au")
        assert turn.current_step == "overview"
        assert turn.metadata["workflow_id"] == "roadmap"
        assert [a.label for a in turn.actions] == ["次へ", "スキップ"]

        turn = _send(orchestrator, "次へ")
        assert turn.current_step == "carrier_selection"
        assert sum(a.type == "quick_reply" for a in turn.actions) == 6

        turn = _send(orchestrator, "次へ")
        assert turn.current_step == "docomo_requirements"

        turn = _send(orchestrator, "次へ")
        assert turn.current_step == "completion_summary"
        assert turn.metadata["completed"] is True
        assert turn.metadata["progress"] == 100
        responder.complete.assert_not_awaited()

    def test_option_by_label(self, orchestrator):
        _send(orchestrator, "手続きを始める")
        turn = _send(orchestrator, "いいえ")
        assert turn.current_step == "proxy_info"

    def test_validation_error_repeats_step(self, orchestrator):
        _send(orchestrator, "手続きを始める")
        _send(orchestrator, "はい")
        turn = _send(orchestrator, "docomo")
        assert turn.current_step == "phone_number"

        turn = _send(orchestrator, "12345")
        assert turn.current_step == "phone_number"
        assert turn.message.startswith("正しい携帯電話番号を入力してください")
        assert turn.metadata["validation_errors"] == ["正しい携帯電話番号を入力してください"]

        turn = _send(orchestrator, "09012345678")
        assert turn.current_step == "reservation_number"

    def test_question_inside_workflow(self, orchestrator, responder, engine):
        _send(orchestrator, "手続きを始める")
        turn = _send(orchestrator, "予約番号とは何ですか？")

        assert turn.current_step == "initial"
        responder.complete.assert_awaited_once()
        step, _ = asyncio.run(engine.current("s1"))
        assert step.id == "initial"

    def test_skip(self, orchestrator):
        _send(orchestrator, "手続きを始める")
        turn = _send(orchestrator, "スキップ")
        assert turn.current_step == "carrier_identification"

    def test_question_about_ending_keeps_workflow(self, orchestrator, responder, engine):
        _send(orchestrator, "手続きを始める")
        turn = _send(orchestrator, "手続きが終了するのはいつですか？")

        assert turn.message != WORKFLOW_CANCELLED_MESSAGE
        responder.complete.assert_awaited_once()
        step, _ = asyncio.run(engine.current("s1"))
        assert step.id == "initial"

    def test_cancel(self, orchestrator, engine):
        _send(orchestrator, "手続きを始める")
        turn = _send(orchestrator, "キャンセル")
        assert turn.message == WORKFLOW_CANCELLED_MESSAGE
        assert asyncio.run(engine.current("s1")) is None


class TestPassThroughs:
    def test_start_workflow_uses_session_carriers(self, orchestrator, db):
        db.ensure_session("s1", "au", "docomo")
        step, record = asyncio.run(orchestrator.start_workflow("s1", "roadmap"))
        assert step.id == "overview"
        assert record.collected_data == {"current_carrier": "au", "target_carrier": "docomo"}

    def test_history(self, orchestrator):
        _send(orchestrator, "MNPとは？")
        history = asyncio.run(orchestrator.history("s1"))
        assert len(history) == 2

    @pytest.mark.parametrize("workflow_id", ["roadmap", "step_by_step"])
    def test_reset(self, orchestrator, workflow_id):
        asyncio.run(orchestrator.start_workflow("s1", workflow_id))
        step, record = asyncio.run(orchestrator.reset_workflow("s1"))
        assert record.workflow_id == workflow_id
        assert record.progress == 0
