"""
Models — Registros de dominio del asistente MNP.

Todos son modelos Pydantic "planos": sin tipos de transporte, se
serializan directo a JSON para la API o para SQLite.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


# Knowledge


class KnowledgeItem(BaseModel):
    """Un par pregunta/respuesta curado, usable como grounding."""

    model_config = ConfigDict(frozen=True)

    id: str
    category: str
    subcategory: Optional[str] = None
    question: str
    answer: str
    keywords: List[str] = Field(default_factory=list)
    carrier: Optional[str] = None  # None = genérico
    priority: int = 1
    embedding: Optional[List[float]] = None
    is_active: bool = True
    version: int = 1


class SearchMethod(str, Enum):
    VECTOR = "vector"
    LEXICAL = "lexical"
    FUSED = "fused"


class RetrievalResult(BaseModel):
    item: KnowledgeItem
    score: float = Field(..., ge=0.0, le=1.0)
    method: SearchMethod


class SearchResult(BaseModel):
    items: List[RetrievalResult] = Field(default_factory=list)
    context_relevance: float = 0.0


# Workflows

StepType = Literal["info", "question", "action", "validation", "completion"]


class StepOption(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    label: str
    value: str
    next_step: Optional[str] = None


class ValidationRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str
    type: Literal["required", "pattern", "custom"]
    message: str
    pattern: Optional[str] = None
    custom_validator: Optional[str] = None


class StepCondition(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str
    operator: str
    value: Any = None
    action: Literal["skip", "branch", "require"]
    target: Optional[str] = None


class StepDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""
    type: StepType
    content: str
    options: List[StepOption] = Field(default_factory=list)
    validation: List[ValidationRule] = Field(default_factory=list)
    conditions: List[StepCondition] = Field(default_factory=list)
    next_step: Optional[str] = None
    carrier_specific: List[str] = Field(default_factory=list)
    estimated_time: Optional[int] = None  # minutos


class WorkflowMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    version: str = "1.0.0"
    estimated_duration: int = 30  # minutos


class WorkflowDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    mode: str = "step_by_step"
    steps: List[StepDefinition]
    metadata: WorkflowMetadata = Field(default_factory=WorkflowMetadata)


class ProgressRecord(BaseModel):
    """Estado mutable de una sesión dentro de un workflow."""

    session_id: str
    workflow_id: str
    current_step: Optional[str]
    completed_steps: List[str] = Field(default_factory=list)
    collected_data: Dict[str, Any] = Field(default_factory=dict)
    progress: int = 0
    completed: bool = False
    estimated_completion: datetime
    last_updated: datetime = Field(default_factory=datetime.now)


# Escalation


class TicketPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class TicketStatus(str, Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    WAITING_CUSTOMER = "waiting_customer"
    RESOLVED = "resolved"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = {TicketStatus.RESOLVED, TicketStatus.CANCELLED}
QUEUED_STATUSES = {TicketStatus.PENDING, TicketStatus.ASSIGNED}


class EscalationTicket(BaseModel):
    id: str
    session_id: str
    reason: str
    priority: TicketPriority
    status: TicketStatus = TicketStatus.PENDING
    assigned_agent: Optional[str] = None
    estimated_wait_time: int
    queue_position: int
    contact_info: Dict[str, Any] = Field(default_factory=dict)
    context: Dict[str, Any] = Field(default_factory=dict)
    notes: Optional[str] = None
    resolution: Optional[str] = None
    feedback: Optional[str] = None
    rating: Optional[int] = Field(default=None, ge=1, le=5)
    created_at: datetime
    updated_at: datetime
    resolved_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status not in TERMINAL_STATUSES


class EscalationDecision(BaseModel):
    escalate: bool
    reason: Optional[str] = None
    urgency: Optional[Literal["low", "medium", "high"]] = None


class EscalationStats(BaseModel):
    total_escalations: int
    by_status: Dict[str, int]
    by_priority: Dict[str, int]
    average_wait_time: float
    average_resolution_time: float
    satisfaction_rating: float
    active_agents: int
    queue_length: int


# Conversation


class ChatAction(BaseModel):
    type: Literal["button", "link", "escalation", "quick_reply"]
    label: str
    value: str
    url: Optional[str] = None
    style: Optional[Literal["primary", "secondary", "danger"]] = None


class EscalationInfo(BaseModel):
    ticket_id: str
    reason: str
    urgency: str
    status: str
    estimated_wait_time: int
    queue_position: int
    handoff_url: str


class ChatTurn(BaseModel):
    """Respuesta completa de un turno de conversación."""

    message: str
    session_id: str
    suggestions: List[str] = Field(default_factory=list)
    actions: List[ChatAction] = Field(default_factory=list)
    current_step: Optional[str] = None
    needs_escalation: bool = False
    escalation: Optional[EscalationInfo] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
