"""
Escalation Arbiter — Decide cuándo derivar a un operador humano y
administra el ciclo de vida de los tickets.

Heurísticas (la primera que se cumple gana):
1. Confianza de la IA < 0.3                   → medium
2. ≥ 3 preguntas repetidas del usuario         → high
3. ≥ 2 palabras negativas en la respuesta      → high
4. Sesión abierta hace más de 30 minutos       → medium

La cola (posición y espera estimada) se calcula bajo un único lock para
que dos `initiate` concurrentes no lean la misma longitud de cola.
"""

import asyncio
import logging
import unicodedata
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from agent.db_service import DBService
from agent.errors import Conflict, NotFound, ValidationError
from agent.models import (
    EscalationDecision,
    EscalationStats,
    EscalationTicket,
    TicketPriority,
    TicketStatus,
)

logger = logging.getLogger(__name__)


REASON_LOW_CONFIDENCE = "low AI confidence"
REASON_REPEATED_QUESTION = "repeated question"
REASON_NEGATIVE_SENTIMENT = "negative sentiment"
REASON_LONG_SESSION = "long session"

# Categoría que viaja en la URL de LINE
REASON_CATEGORY = {
    REASON_LOW_CONFIDENCE: "technical",
    REASON_REPEATED_QUESTION: "general",
    REASON_NEGATIVE_SENTIMENT: "urgent",
    REASON_LONG_SESSION: "general",
}

NEGATIVE_KEYWORDS = ["困る", "分からない", "難しい", "問題", "エラー", "失敗", "不安"]

# Minutos de espera base por prioridad
BASE_WAIT_MINUTES = {
    TicketPriority.URGENT: 5,
    TicketPriority.HIGH: 10,
    TicketPriority.MEDIUM: 20,
    TicketPriority.LOW: 30,
}
DEFAULT_WAIT_MINUTES = 20

STATS_PERIODS = {"1d": 1, "7d": 7, "30d": 30, "90d": 90}

# Transiciones legales (solo con STRICT_TICKET_TRANSITIONS)
ALLOWED_TRANSITIONS = {
    TicketStatus.PENDING: {
        TicketStatus.ASSIGNED,
        TicketStatus.IN_PROGRESS,
        TicketStatus.CANCELLED,
    },
    TicketStatus.ASSIGNED: {
        TicketStatus.PENDING,
        TicketStatus.IN_PROGRESS,
        TicketStatus.CANCELLED,
    },
    TicketStatus.IN_PROGRESS: {
        TicketStatus.WAITING_CUSTOMER,
        TicketStatus.RESOLVED,
        TicketStatus.CANCELLED,
    },
    TicketStatus.WAITING_CUSTOMER: {
        TicketStatus.IN_PROGRESS,
        TicketStatus.RESOLVED,
        TicketStatus.CANCELLED,
    },
    TicketStatus.RESOLVED: set(),
    TicketStatus.CANCELLED: set(),
}

HANDOFF_MESSAGES = {
    "high": "お急ぎの件として承りました。オペレーターが約{wait}分でご対応いたします。",
    "medium": "担当者にエスカレーションいたします。約{wait}分でご連絡いたします。",
    "low": "詳しい担当者におつなぎいたします。約{wait}分でご対応いたします。",
}


# Similitud de preguntas

# Terminaciones interrogativas que no cambian el tema de la pregunta
QUESTION_ENDINGS = (
    "でしょう",
    "ください",
    "教えて",
    "です",
    "ます",
    "とは",
    "って",
    "なに",
    "なん",
    "何",
    "か",
    "の",
    "は",
    "を",
)


def normalize_question(text: str) -> str:
    """NFKC, minúsculas, sin puntuación ni terminaciones interrogativas."""
    text = unicodedata.normalize("NFKC", text).lower()
    text = "".join(
        ch
        for ch in text
        if not unicodedata.category(ch).startswith("P") and not ch.isspace()
    )

    stripped = text
    changed = True
    while changed and stripped:
        changed = False
        for ending in QUESTION_ENDINGS:
            if stripped.endswith(ending) and len(stripped) > len(ending):
                stripped = stripped[: -len(ending)]
                changed = True
                break
    return stripped or text


def levenshtein(a: str, b: str) -> int:
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        current = [i]
        for j, cb in enumerate(b, 1):
            cost = 0 if ca == cb else 1
            current.append(min(current[j - 1] + 1, previous[j] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def similarity(a: str, b: str) -> float:
    """1 - levenshtein / max(len). Dos strings vacíos son idénticos."""
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return 1.0 - levenshtein(a, b) / longest


def count_repeated_questions(
    history: List[Dict[str, Any]], threshold: float = 0.7
) -> int:
    """Tamaño del grupo más grande de turnos de usuario similares a un mismo turno ancla."""
    questions = [
        normalize_question(m["content"])
        for m in history
        if m.get("role") == "user" and m.get("content")
    ]

    best = 0
    for i, anchor in enumerate(questions):
        group = 1 + sum(
            1
            for j, other in enumerate(questions)
            if j != i and similarity(anchor, other) > threshold
        )
        best = max(best, group)
    return best


def negative_keyword_hits(text: str) -> int:
    return sum(1 for word in NEGATIVE_KEYWORDS if word in (text or ""))


def analyze_sentiment(text: str, threshold: int = 2) -> str:
    hits = negative_keyword_hits(text)
    if hits >= threshold:
        return "negative"
    if hits == 1:
        return "neutral"
    return "positive"


def estimate_wait_minutes(priority: TicketPriority, queue_length: int) -> int:
    """Espera base por prioridad + 5 minutos cada 2 tickets en cola."""
    base = BASE_WAIT_MINUTES.get(priority, DEFAULT_WAIT_MINUTES)
    return base + (queue_length // 2) * 5


class EscalationArbiter:
    """Heurísticas de escalamiento y gestión de tickets."""

    def __init__(
        self,
        db: DBService,
        low_confidence_threshold: float = 0.3,
        repeat_threshold: int = 3,
        repeat_similarity: float = 0.7,
        negative_keyword_hits: int = 2,
        session_timeout_seconds: int = 1800,
        strict_transitions: bool = False,
        support_line_url: str = "https://line.me/R/oaMessage/@mnpsupport",
    ):
        self._db = db
        self.low_confidence_threshold = low_confidence_threshold
        self.repeat_threshold = repeat_threshold
        self.repeat_similarity = repeat_similarity
        self.negative_keyword_hits = negative_keyword_hits
        self.session_timeout_seconds = session_timeout_seconds
        self.strict_transitions = strict_transitions
        self.support_line_url = support_line_url
        self._queue_lock = asyncio.Lock()

    # Decisión

    async def should_escalate(
        self,
        session_id: str,
        last_reply: str,
        confidence: Optional[float] = None,
        history: Optional[List[Dict[str, Any]]] = None,
    ) -> EscalationDecision:
        if confidence is not None and confidence < self.low_confidence_threshold:
            return EscalationDecision(
                escalate=True, reason=REASON_LOW_CONFIDENCE, urgency="medium"
            )

        if history:
            repeats = count_repeated_questions(history, self.repeat_similarity)
            if repeats >= self.repeat_threshold:
                return EscalationDecision(
                    escalate=True, reason=REASON_REPEATED_QUESTION, urgency="high"
                )

        if analyze_sentiment(last_reply, self.negative_keyword_hits) == "negative":
            return EscalationDecision(
                escalate=True, reason=REASON_NEGATIVE_SENTIMENT, urgency="high"
            )

        if await self.session_age_seconds(session_id) > self.session_timeout_seconds:
            return EscalationDecision(
                escalate=True, reason=REASON_LONG_SESSION, urgency="medium"
            )

        return EscalationDecision(escalate=False)

    async def session_age_seconds(self, session_id: str) -> float:
        session = await asyncio.to_thread(self._db.get_session, session_id)
        if session is None:
            return 0.0
        created = datetime.fromisoformat(session["created_at"])
        return (datetime.now() - created).total_seconds()

    # Tickets

    async def initiate(
        self,
        session_id: str,
        reason: str,
        priority: TicketPriority = TicketPriority.MEDIUM,
        contact_info: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> EscalationTicket:
        """
        Crea un ticket en cola.

        Raises:
            Conflict: la sesión ya tiene un ticket activo
        """
        priority = TicketPriority(priority)
        async with self._queue_lock:
            active = await asyncio.to_thread(
                self._db.active_ticket_for_session, session_id
            )
            if active is not None:
                raise Conflict(
                    f"La sesión {session_id} ya tiene un ticket activo ({active['id']})"
                )

            queue_length = await asyncio.to_thread(self._db.count_queued_tickets)
            now = datetime.now().isoformat()
            row = await asyncio.to_thread(
                self._db.insert_ticket,
                {
                    "id": f"MNP-{uuid.uuid4().hex[:10].upper()}",
                    "session_id": session_id,
                    "reason": reason,
                    "priority": priority.value,
                    "status": TicketStatus.PENDING.value,
                    "estimated_wait_time": estimate_wait_minutes(priority, queue_length),
                    "queue_position": queue_length + 1,
                    "contact_info": contact_info or {},
                    "context": context or {},
                    "created_at": now,
                    "updated_at": now,
                },
            )

        ticket = EscalationTicket.model_validate(row)
        logger.info(
            f"[{session_id}] ticket {ticket.id} creado "
            f"(prioridad={priority.value}, posición={ticket.queue_position}, "
            f"espera={ticket.estimated_wait_time}min)"
        )
        return ticket

    async def update_status(
        self,
        ticket_id: str,
        status: Optional[TicketStatus] = None,
        assigned_agent: Optional[str] = None,
        notes: Optional[str] = None,
        estimated_wait_time: Optional[int] = None,
    ) -> EscalationTicket:
        ticket = await self.get_ticket(ticket_id)

        fields: Dict[str, Any] = {}
        if status is not None:
            status = TicketStatus(status)
            self._check_transition(ticket, status)
            fields["status"] = status.value
            if status == TicketStatus.RESOLVED:
                fields["resolved_at"] = datetime.now().isoformat()
        if assigned_agent is not None:
            fields["assigned_agent"] = assigned_agent
        if notes is not None:
            fields["notes"] = notes
        if estimated_wait_time is not None:
            fields["estimated_wait_time"] = estimated_wait_time

        if not fields:
            return ticket

        row = await asyncio.to_thread(self._db.update_ticket, ticket_id, fields)
        updated = EscalationTicket.model_validate(row)
        logger.info(f"Ticket {ticket_id}: {ticket.status.value} → {updated.status.value}")
        return updated

    async def resolve(
        self,
        ticket_id: str,
        resolution: str,
        feedback: Optional[str] = None,
        rating: Optional[int] = None,
    ) -> EscalationTicket:
        if rating is not None and not 1 <= rating <= 5:
            raise ValidationError("rating debe estar entre 1 y 5")

        ticket = await self.get_ticket(ticket_id)
        if self.strict_transitions and not ticket.is_active:
            raise Conflict(f"Ticket {ticket_id} ya está cerrado ({ticket.status.value})")

        row = await asyncio.to_thread(
            self._db.update_ticket,
            ticket_id,
            {
                "status": TicketStatus.RESOLVED.value,
                "resolution": resolution,
                "feedback": feedback,
                "rating": rating,
                "resolved_at": datetime.now().isoformat(),
            },
        )
        logger.info(f"Ticket {ticket_id} resuelto")
        return EscalationTicket.model_validate(row)

    def _check_transition(self, ticket: EscalationTicket, status: TicketStatus) -> None:
        if not self.strict_transitions or status == ticket.status:
            return
        if status not in ALLOWED_TRANSITIONS[ticket.status]:
            raise Conflict(
                f"Transición inválida {ticket.status.value} → {status.value}"
            )

    async def get_ticket(self, ticket_id: str) -> EscalationTicket:
        row = await asyncio.to_thread(self._db.get_ticket, ticket_id)
        if row is None:
            raise NotFound(f"Ticket no encontrado: {ticket_id}")
        return EscalationTicket.model_validate(row)

    async def get_status(self, session_id: str) -> Optional[EscalationTicket]:
        """Último ticket de la sesión (activo o no)."""
        row = await asyncio.to_thread(self._db.latest_ticket_for_session, session_id)
        return EscalationTicket.model_validate(row) if row else None

    async def list(
        self,
        status: Optional[TicketStatus] = None,
        priority: Optional[TicketPriority] = None,
        assigned_agent: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[EscalationTicket]:
        rows = await asyncio.to_thread(
            self._db.list_tickets,
            TicketStatus(status).value if status else None,
            TicketPriority(priority).value if priority else None,
            assigned_agent,
            limit,
            offset,
        )
        return [EscalationTicket.model_validate(r) for r in rows]

    async def stats(self, period: str = "7d") -> EscalationStats:
        if period not in STATS_PERIODS:
            raise ValidationError(
                f"Periodo inválido: {period} (usar {', '.join(STATS_PERIODS)})"
            )

        since = datetime.now() - timedelta(days=STATS_PERIODS[period])
        rows = await asyncio.to_thread(self._db.tickets_since, since)
        tickets = [EscalationTicket.model_validate(r) for r in rows]

        by_status = {s.value: 0 for s in TicketStatus}
        by_priority = {p.value: 0 for p in TicketPriority}
        for t in tickets:
            by_status[t.status.value] += 1
            by_priority[t.priority.value] += 1

        resolution_minutes = [
            (t.resolved_at - t.created_at).total_seconds() / 60
            for t in tickets
            if t.resolved_at is not None
        ]
        ratings = [t.rating for t in tickets if t.rating is not None]

        return EscalationStats(
            total_escalations=len(tickets),
            by_status=by_status,
            by_priority=by_priority,
            average_wait_time=_mean([t.estimated_wait_time for t in tickets]),
            average_resolution_time=_mean(resolution_minutes),
            satisfaction_rating=_mean(ratings),
            active_agents=await asyncio.to_thread(self._db.count_active_agents),
            queue_length=await asyncio.to_thread(self._db.count_queued_tickets),
        )

    # Handoff

    @staticmethod
    def handoff_message(urgency: Optional[str], wait_minutes: int) -> str:
        template = HANDOFF_MESSAGES.get(urgency or "medium", HANDOFF_MESSAGES["medium"])
        return template.format(wait=wait_minutes)

    def handoff_url(self, ticket: EscalationTicket) -> str:
        params = urlencode(
            {
                "ticket": ticket.id,
                "urgency": ticket.priority.value,
                "category": REASON_CATEGORY.get(ticket.reason, "general"),
            }
        )
        return f"{self.support_line_url}?{params}"


def _mean(values: List[float]) -> float:
    return round(sum(values) / len(values), 2) if values else 0.0


def urgency_to_priority(urgency: Optional[str]) -> TicketPriority:
    try:
        return TicketPriority(urgency)
    except ValueError:
        return TicketPriority.MEDIUM
