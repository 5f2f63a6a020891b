"""
Orchestrator — Punto de entrada principal del asistente MNP.

Flujo de un turno:
1. Asegurar la sesión, normalizar y guardar el mensaje del usuario
2. Si hay un workflow en curso → comando / opción / input del paso
   (las preguntas libres caen al retrieval con el paso como contexto)
3. Si no, un comando de inicio arranca roadmap o step_by_step
4. Si no → retrieval + LLM + parseo defensivo
5. Heurísticas de escalamiento sobre la respuesta redactada
6. Guardar la respuesta y devolver el ChatTurn

El usuario siempre recibe una respuesta: ante cualquier falla se
devuelve una disculpa fija con la acción de contactar a un operador.
"""

import asyncio
import logging
import re
import time
import unicodedata
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from agent.db_service import DBService
from agent.errors import Conflict, UpstreamUnavailable, ValidationError
from agent.escalation import EscalationArbiter, urgency_to_priority
from agent.models import (
    ChatAction,
    ChatTurn,
    EscalationDecision,
    EscalationInfo,
    EscalationTicket,
    ProgressRecord,
    StepDefinition,
)
from agent.workflow import WorkflowEngine
from rag.query.intent import Intent, IntentClassifier
from rag.query.responder import (
    DEFAULT_ESCALATION_ACTION,
    build_system_prompt,
    parse_response,
)

logger = logging.getLogger(__name__)


FALLBACK_MESSAGE = (
    "申し訳ございません。現在システムに問題が発生しています。"
    "しばらく時間をおいて再度お試しいただくか、オペレーターにお問い合わせください。"
)
EMPTY_MESSAGE = "メッセージを入力してください。"
WORKFLOW_CANCELLED_MESSAGE = "手続きガイドを終了しました。ほかにご質問があればお気軽にどうぞ。"
WORKFLOW_DONE_MESSAGE = "すべての手続きが完了しました。お疲れさまでした。"

START_INTENTS = {
    Intent.START_ROADMAP: "roadmap",
    Intent.START_STEP_BY_STEP: "step_by_step",
}


# Normalización del mensaje

_CARRIER_SPELLINGS = [
    (re.compile(r"ドコモ|docomo", re.IGNORECASE), "docomo"),
    (re.compile(r"エーユー|(?<![a-z])au(?![a-z])", re.IGNORECASE), "au"),
    (re.compile(r"ソフトバンク|softbank", re.IGNORECASE), "SoftBank"),
    (re.compile(r"(?<![a-z])mnp(?![a-z])", re.IGNORECASE), "MNP"),
]
_SPACES_RE = re.compile(r"\s+")


def normalize_message(message: str) -> str:
    """NFKC (ＭＮＰ → MNP), espacios colapsados y nombres de carrier unificados."""
    text = unicodedata.normalize("NFKC", message or "")
    text = _SPACES_RE.sub(" ", text).strip()
    for pattern, replacement in _CARRIER_SPELLINGS:
        text = pattern.sub(replacement, text)
    return text


def match_option(step: StepDefinition, text: str) -> Optional[str]:
    """Valor de la opción cuyo label/valor/id coincide con el mensaje."""
    wanted = text.strip().lower()
    for option in step.options:
        if wanted in (option.label.lower(), option.value.lower(), option.id.lower()):
            return option.value
    return None


def build_actions(raw_actions: List[Dict[str, Any]]) -> List[ChatAction]:
    """Convierte las acciones del LLM descartando las que no son válidas."""
    actions = []
    for raw in raw_actions:
        try:
            actions.append(ChatAction.model_validate(raw))
        except PydanticValidationError:
            logger.debug(f"Acción descartada: {raw}")
    return actions


class ConversationOrchestrator:
    """Compone retriever, motor de workflows y árbitro de escalamiento."""

    def __init__(
        self,
        db: DBService,
        retriever,
        responder,
        workflows: WorkflowEngine,
        arbiter: EscalationArbiter,
        classifier: Optional[IntentClassifier] = None,
        max_tokens: int = 1024,
        temperature: float = 0.5,
        low_relevance_threshold: float = 0.5,
        history_limit: int = 10,
    ):
        self._db = db
        self.retriever = retriever
        self.responder = responder
        self.workflows = workflows
        self.arbiter = arbiter
        self.classifier = classifier or IntentClassifier()
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.low_relevance_threshold = low_relevance_threshold
        self.history_limit = history_limit

        logger.info("ConversationOrchestrator inicializado")

    # Entry point

    async def process_message(
        self,
        session_id: str,
        message: str,
        current_carrier: Optional[str] = None,
        target_carrier: Optional[str] = None,
    ) -> ChatTurn:
        """Procesa un turno completo. Nunca levanta excepciones."""
        started = time.perf_counter()
        try:
            turn = await self._process(
                session_id, message, current_carrier, target_carrier
            )
        except Exception as e:
            logger.error(f"[{session_id}] Error procesando mensaje: {e}", exc_info=True)
            return self._fallback_turn(session_id, started)

        turn.metadata["response_time_ms"] = round(
            (time.perf_counter() - started) * 1000, 1
        )
        return turn

    async def _process(
        self,
        session_id: str,
        message: str,
        current_carrier: Optional[str],
        target_carrier: Optional[str],
    ) -> ChatTurn:
        session = await asyncio.to_thread(
            self._db.ensure_session,
            session_id,
            current_carrier.lower() if current_carrier else None,
            target_carrier.lower() if target_carrier else None,
        )
        text = normalize_message(message)
        if not text:
            return ChatTurn(message=EMPTY_MESSAGE, session_id=session_id)

        logger.info(f"[{session_id}] Mensaje: {text[:60]}")
        await asyncio.to_thread(self._db.add_message, session_id, "user", text)

        intent = self.classifier.classify(text)["intent"]
        current_step = None

        state = await self.workflows.current(session_id)
        if state is not None and state[0] is not None and not state[1].completed:
            step, record = state
            current_step = step.id
            turn = await self._workflow_turn(session_id, text, intent, step, record)
            if turn is not None:
                await self._store_reply(session_id, turn)
                return turn

        elif intent in START_INTENTS:
            step, record = await self.workflows.start(
                session_id,
                START_INTENTS[intent],
                self._initial_data(session),
            )
            turn = self._step_turn(session_id, step, record, record.completed)
            await self._store_reply(session_id, turn)
            return turn

        turn = await self._answer(session, text, current_step)
        await self._store_reply(session_id, turn, turn.metadata.get("confidence"))
        return turn

    # Workflow

    async def _workflow_turn(
        self,
        session_id: str,
        text: str,
        intent: Intent,
        step: StepDefinition,
        record: ProgressRecord,
    ) -> Optional[ChatTurn]:
        """Turno dentro de un workflow. None si es una pregunta libre."""
        if intent == Intent.CANCEL:
            await self.workflows.end(session_id)
            return ChatTurn(
                message=WORKFLOW_CANCELLED_MESSAGE,
                session_id=session_id,
                metadata={"workflow_id": record.workflow_id, "cancelled": True},
            )

        if intent == Intent.SKIP:
            next_step, updated, completed = await self.workflows.skip(
                session_id, reason="user_request"
            )
            return self._step_turn(session_id, next_step, updated, completed)

        option = match_option(step, text)
        if option is None and intent == Intent.QUESTION:
            return None

        try:
            if option is not None:
                result = await self.workflows.advance(
                    session_id, step.id, selected_option=option
                )
            elif intent == Intent.NEXT:
                result = await self.workflows.advance(session_id, step.id)
            else:
                result = await self.workflows.advance(
                    session_id, step.id, user_input=text
                )
        except ValidationError as e:
            turn = self._step_turn(session_id, step, record, False)
            turn.message = "\n".join(e.messages) + "\n\n" + step.content
            turn.metadata["validation_errors"] = e.messages
            return turn

        next_step, updated, completed = result
        return self._step_turn(session_id, next_step, updated, completed)

    def _step_turn(
        self,
        session_id: str,
        step: Optional[StepDefinition],
        record: ProgressRecord,
        completed: bool,
    ) -> ChatTurn:
        metadata = {
            "workflow_id": record.workflow_id,
            "progress": record.progress,
            "completed": completed,
        }
        if step is None:
            return ChatTurn(
                message=WORKFLOW_DONE_MESSAGE, session_id=session_id, metadata=metadata
            )

        actions = [
            ChatAction(type="quick_reply", label=o.label, value=o.value)
            for o in step.options
        ]
        if step.type != "completion":
            if not step.options:
                actions.append(
                    ChatAction(type="button", label="次へ", value="次へ", style="primary")
                )
            actions.append(
                ChatAction(
                    type="button", label="スキップ", value="スキップ", style="secondary"
                )
            )

        return ChatTurn(
            message=f"【{step.name}】\n{step.content}" if step.name else step.content,
            session_id=session_id,
            actions=actions,
            current_step=step.id,
            metadata=metadata,
        )

    @staticmethod
    def _initial_data(session: Dict[str, Any]) -> Dict[str, Any]:
        return {
            key: session[key]
            for key in ("current_carrier", "target_carrier")
            if session.get(key)
        }

    # Retrieval + LLM

    async def _answer(
        self, session: Dict[str, Any], text: str, current_step: Optional[str]
    ) -> ChatTurn:
        session_id = session["id"]
        search = await self.retriever.search(
            text,
            {"carrier": session.get("current_carrier"), "current_step": current_step},
        )

        system_prompt = build_system_prompt(
            search.items, {**session, "current_step": current_step}
        )
        try:
            raw = await self.responder.complete(
                system_prompt, text, self.max_tokens, self.temperature
            )
        except UpstreamUnavailable as e:
            logger.error(f"[{session_id}] LLM no disponible: {e}")
            turn = self._fallback_turn(session_id, None)
            turn.current_step = current_step
            return turn

        parsed = parse_response(raw)
        actions = build_actions(parsed["actions"])
        suggest_escalation = (
            search.context_relevance < self.low_relevance_threshold
            or parsed["needs_escalation"]
        )
        if suggest_escalation and not any(a.type == "escalation" for a in actions):
            actions.append(ChatAction(**DEFAULT_ESCALATION_ACTION))

        confidence = (
            parsed["confidence"]
            if parsed["confidence"] is not None
            else search.context_relevance
        )
        message = parsed["message"]

        history = await asyncio.to_thread(
            self._db.get_recent_messages, session_id, self.history_limit
        )
        decision = await self.arbiter.should_escalate(
            session_id, message, confidence, history
        )

        escalation = None
        if decision.escalate:
            ticket = await self._ensure_ticket(session_id, decision, text, current_step)
            escalation = EscalationInfo(
                ticket_id=ticket.id,
                reason=ticket.reason,
                urgency=decision.urgency or "medium",
                status=ticket.status.value,
                estimated_wait_time=ticket.estimated_wait_time,
                queue_position=ticket.queue_position,
                handoff_url=self.arbiter.handoff_url(ticket),
            )
            message += "\n\n" + self.arbiter.handoff_message(
                decision.urgency, ticket.estimated_wait_time
            )
            actions.append(
                ChatAction(
                    type="link",
                    label="LINEでオペレーターに相談",
                    value="line_support",
                    url=escalation.handoff_url,
                    style="primary",
                )
            )

        return ChatTurn(
            message=message,
            session_id=session_id,
            suggestions=parsed["suggestions"],
            actions=actions,
            current_step=current_step,
            needs_escalation=decision.escalate or parsed["needs_escalation"],
            escalation=escalation,
            metadata={
                "confidence": confidence,
                "rag_results": len(search.items),
                "context_relevance": search.context_relevance,
                "structured_response": parsed["structured"],
            },
        )

    async def _ensure_ticket(
        self,
        session_id: str,
        decision: EscalationDecision,
        last_query: str,
        current_step: Optional[str],
    ) -> EscalationTicket:
        """Reutiliza el ticket activo de la sesión o crea uno nuevo."""
        existing = await self.arbiter.get_status(session_id)
        if existing is not None and existing.is_active:
            return existing
        try:
            return await self.arbiter.initiate(
                session_id,
                decision.reason or "escalation",
                urgency_to_priority(decision.urgency),
                context={"last_query": last_query, "current_step": current_step},
            )
        except Conflict:
            # Otro turno concurrente creó el ticket primero
            return await self.arbiter.get_status(session_id)

    # Helpers

    async def _store_reply(
        self, session_id: str, turn: ChatTurn, confidence: Optional[float] = None
    ) -> None:
        await asyncio.to_thread(
            self._db.add_message, session_id, "assistant", turn.message, confidence
        )

    @staticmethod
    def _fallback_turn(session_id: str, started: Optional[float]) -> ChatTurn:
        metadata: Dict[str, Any] = {"fallback": True}
        if started is not None:
            metadata["response_time_ms"] = round((time.perf_counter() - started) * 1000, 1)
        return ChatTurn(
            message=FALLBACK_MESSAGE,
            session_id=session_id,
            suggestions=["オペレーターに相談する"],
            actions=[ChatAction(**DEFAULT_ESCALATION_ACTION)],
            metadata=metadata,
        )

    # Pass-throughs

    async def start_workflow(self, session_id, workflow_id=None, initial_data=None):
        session = await asyncio.to_thread(self._db.ensure_session, session_id)
        data = {**self._initial_data(session), **(initial_data or {})}
        return await self.workflows.start(session_id, workflow_id, data)

    async def advance_workflow(
        self, session_id, current_step_id, user_input=None, selected_option=None
    ):
        return await self.workflows.advance(
            session_id, current_step_id, user_input, selected_option
        )

    async def skip_step(self, session_id, reason=None):
        return await self.workflows.skip(session_id, reason)

    async def current_step(self, session_id):
        return await self.workflows.current(session_id)

    async def reset_workflow(self, session_id, workflow_id=None, initial_data=None):
        return await self.workflows.reset(session_id, workflow_id, initial_data)

    async def history(self, session_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self._db.get_recent_messages, session_id, limit)
