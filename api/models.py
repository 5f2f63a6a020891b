"""
Pydantic models para validación de requests/responses.

Define schemas tipados para todos los endpoints de la API. Las respuestas
de dominio (ChatTurn, EscalationTicket, ...) se reutilizan de agent.models.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from agent.models import (
    ProgressRecord,
    StepDefinition,
    TicketPriority,
    TicketStatus,
)


# Error Response (RFC 7807 simplificado)


class ErrorResponse(BaseModel):
    """
    Modelo de error estructurado inspirado en RFC 7807.

    Se usa en todos los errores para garantizar un formato consistente
    y predecible para los consumidores de la API.
    """

    type: str = Field(
        ..., description="Categoría del error (ej: 'validation_error', 'conflict')"
    )
    title: str = Field(..., description="Título breve del error")
    status: int = Field(..., description="Código HTTP del error")
    detail: str = Field(..., description="Descripción legible del error")
    messages: Optional[List[str]] = Field(
        None, description="Mensajes de validación del paso (solo 422 de workflow)"
    )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "type": "conflict",
                    "title": "Conflicto",
                    "status": 409,
                    "detail": "La sesión ya tiene un ticket activo",
                    "messages": None,
                }
            ]
        }
    }


# Chat


class ChatRequest(BaseModel):
    """Request de un turno de conversación"""

    session_id: str = Field(..., description="ID de la sesión de chat", min_length=1)
    message: str = Field(
        ..., description="Mensaje del usuario", min_length=1, max_length=1000
    )
    current_carrier: Optional[str] = Field(None, description="Carrier actual")
    target_carrier: Optional[str] = Field(None, description="Carrier de destino")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "session_id": "sess-001",
                    "message": "MNPとは何ですか？",
                    "current_carrier": "docomo",
                    "target_carrier": "au",
                }
            ]
        }
    }


# Workflow


class WorkflowStartRequest(BaseModel):
    workflow_id: Optional[str] = Field(None, description="roadmap | step_by_step")
    initial_data: Dict[str, Any] = Field(default_factory=dict)


class WorkflowAdvanceRequest(BaseModel):
    current_step_id: str = Field(..., min_length=1)
    user_input: Optional[str] = None
    selected_option: Optional[str] = None


class WorkflowSkipRequest(BaseModel):
    reason: Optional[str] = None


class WorkflowResetRequest(BaseModel):
    workflow_id: Optional[str] = None
    initial_data: Dict[str, Any] = Field(default_factory=dict)


class WorkflowStateResponse(BaseModel):
    """Paso actual (None al completar) y progreso de la sesión"""

    step: Optional[StepDefinition] = None
    progress: ProgressRecord
    completed: bool = False


# Escalation


class EscalationRequest(BaseModel):
    session_id: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1)
    priority: TicketPriority = TicketPriority.MEDIUM
    contact_info: Dict[str, Any] = Field(default_factory=dict)
    context: Dict[str, Any] = Field(default_factory=dict)


class TicketUpdateRequest(BaseModel):
    status: Optional[TicketStatus] = None
    assigned_agent: Optional[str] = None
    notes: Optional[str] = None
    estimated_wait_time: Optional[int] = Field(None, ge=0)


class TicketResolveRequest(BaseModel):
    resolution: str = Field(..., min_length=1)
    feedback: Optional[str] = None
    rating: Optional[int] = Field(None, ge=1, le=5)


# Health


class HealthResponse(BaseModel):
    """Response del health check"""

    status: str = Field(..., description="Estado del servicio")
    version: str = Field(..., description="Versión de la API")
    components: Dict[str, str] = Field(..., description="Estado de componentes")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "status": "healthy",
                    "version": "1.0.0",
                    "components": {
                        "database": "ok",
                        "knowledge_items": "ok (12 items)",
                        "workflows": "ok (2)",
                    },
                }
            ]
        }
    }
