"""
Tests para los modelos Pydantic del dominio y de la API.

Cubre:
- Validación de ChatRequest (campos requeridos, max_length)
- ErrorResponse (formato RFC 7807)
- Restricciones de los registros del dominio (score, rating, frozen)
"""

from datetime import datetime

import pytest
from pydantic import ValidationError

from agent.models import (
    ChatAction,
    EscalationTicket,
    KnowledgeItem,
    RetrievalResult,
    SearchMethod,
    StepDefinition,
    TicketPriority,
    TicketStatus,
)
from api.models import (
    ChatRequest,
    ErrorResponse,
    HealthResponse,
    TicketResolveRequest,
    WorkflowAdvanceRequest,
)


def _item(**overrides):
    data = dict(id="faq-1", category="mnp_basic", question="Q", answer="A")
    data.update(overrides)
    return KnowledgeItem(**data)


def _ticket(**overrides):
    now = datetime.now()
    data = dict(
        id="MNP-1",
        session_id="s1",
        reason="low AI confidence",
        priority=TicketPriority.MEDIUM,
        estimated_wait_time=20,
        queue_position=1,
        created_at=now,
        updated_at=now,
    )
    data.update(overrides)
    return EscalationTicket(**data)


class TestChatRequest:
    """Validación de request entrante."""

    def test_request_valido(self):
        req = ChatRequest(session_id="s1", message="MNPとは？")
        assert req.session_id == "s1"
        assert req.current_carrier is None

    def test_request_sin_session(self):
        with pytest.raises(ValidationError):
            ChatRequest(message="Hola")

    def test_request_message_vacio(self):
        with pytest.raises(ValidationError):
            ChatRequest(session_id="s1", message="")

    def test_request_message_muy_largo(self):
        with pytest.raises(ValidationError):
            ChatRequest(session_id="s1", message="x" * 1001)


class TestErrorResponse:
    """Modelo de error RFC 7807."""

    def test_error_response_completo(self):
        err = ErrorResponse(
            type="conflict", title="Conflicto", status=409, detail="Ticket activo"
        )
        data = err.model_dump()
        assert data["status"] == 409
        assert data["messages"] is None

    def test_error_response_con_mensajes(self):
        err = ErrorResponse(
            type="validation_error",
            title="Datos de entrada inválidos",
            status=422,
            detail="契約者確認は必須です",
            messages=["契約者確認は必須です"],
        )
        assert err.messages == ["契約者確認は必須です"]

    def test_error_response_sin_campos(self):
        with pytest.raises(ValidationError):
            ErrorResponse(type="x")


class TestDomainRecords:
    def test_knowledge_item_defaults(self):
        item = _item()
        assert item.priority == 1
        assert item.carrier is None
        assert item.is_active is True

    def test_knowledge_item_is_frozen(self):
        item = _item()
        with pytest.raises(ValidationError):
            item.priority = 5

    def test_retrieval_score_bounds(self):
        with pytest.raises(ValidationError):
            RetrievalResult(item=_item(), score=1.2, method=SearchMethod.FUSED)
        with pytest.raises(ValidationError):
            RetrievalResult(item=_item(), score=-0.1, method=SearchMethod.VECTOR)

    def test_step_type_restricted(self):
        with pytest.raises(ValidationError):
            StepDefinition(id="x", type="unknown", content="...")

    def test_ticket_rating_bounds(self):
        with pytest.raises(ValidationError):
            _ticket(rating=6)

    def test_ticket_is_active(self):
        assert _ticket().is_active
        assert not _ticket(status=TicketStatus.RESOLVED).is_active
        assert not _ticket(status=TicketStatus.CANCELLED).is_active

    def test_chat_action_type_restricted(self):
        with pytest.raises(ValidationError):
            ChatAction(type="popup", label="x", value="y")


class TestRequestModels:
    def test_advance_requires_step(self):
        with pytest.raises(ValidationError):
            WorkflowAdvanceRequest(user_input="hola")

    def test_resolve_rating_bounds(self):
        with pytest.raises(ValidationError):
            TicketResolveRequest(resolution="ok", rating=0)

    def test_health_response(self):
        health = HealthResponse(
            status="healthy", version="1.0.0", components={"database": "ok"}
        )
        assert health.components["database"] == "ok"
