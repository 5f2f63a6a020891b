"""
FastAPI Application - API REST del asistente MNP
- Settings centralizado (Pydantic BaseSettings via config.py)
- Dependency Injection con Depends()
- Errores del dominio → ErrorResponse con el status correcto

Endpoints:
- GET  /                                   → Raíz informativa
- GET  /health                             → Health check
- POST /chat                               → Turno de conversación
- GET  /chat/{session_id}/history          → Historial de la sesión
- GET  /workflows                          → Workflows disponibles
- POST /workflows/{session_id}/start       → Iniciar workflow
- POST /workflows/{session_id}/advance     → Avanzar paso
- POST /workflows/{session_id}/skip        → Saltar paso
- GET  /workflows/{session_id}/current     → Paso actual
- POST /workflows/{session_id}/reset       → Reiniciar workflow
- POST /escalations                        → Crear ticket
- GET  /escalations                        → Listar tickets
- GET  /escalations/stats                  → Estadísticas
- GET  /escalations/session/{session_id}   → Último ticket de la sesión
- GET  /escalations/{ticket_id}            → Ticket por id
- PATCH /escalations/{ticket_id}           → Actualizar estado
- POST /escalations/{ticket_id}/resolve    → Resolver
"""

import asyncio
import sys
import logging
from pathlib import Path
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, Depends, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

# Agregar directorio raíz al path para imports
project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from api.config import Settings, get_settings
from api.models import (
    ChatRequest,
    ErrorResponse,
    EscalationRequest,
    HealthResponse,
    TicketResolveRequest,
    TicketUpdateRequest,
    WorkflowAdvanceRequest,
    WorkflowResetRequest,
    WorkflowSkipRequest,
    WorkflowStartRequest,
    WorkflowStateResponse,
)
from agent.db_service import DBService
from agent.errors import AssistantError, ValidationError
from agent.escalation import EscalationArbiter
from agent.models import (
    ChatTurn,
    EscalationStats,
    EscalationTicket,
    TicketPriority,
    TicketStatus,
)
from agent.orchestrator import ConversationOrchestrator
from agent.workflow import WorkflowEngine, WorkflowRegistry
from rag.query.embedder import SentenceTransformerEmbedder
from rag.query.knowledge_store import KnowledgeStore
from rag.query.responder import GroqResponder
from rag.query.retriever import KnowledgeRetriever

# Logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"


# Dependency Injection
# Singleton del orquestador, inyectable via Depends() para facilitar testing

_orchestrator: ConversationOrchestrator | None = None


def build_orchestrator(settings: Settings) -> ConversationOrchestrator:
    """Arma el grafo de componentes a partir de la configuración."""
    db = DBService(settings.db_full_path)
    store = KnowledgeStore(settings.db_full_path)
    embedder = SentenceTransformerEmbedder(
        settings.EMBEDDING_MODEL, settings.EMBEDDING_TIMEOUT_SECONDS
    )
    try:
        # Pre-carga del modelo, fuera del timeout de cada consulta
        embedder.load()
    except Exception as e:
        logger.warning(f"Modelo de embeddings no cargado al inicio: {e}")
    retriever = KnowledgeRetriever(
        store,
        embedder,
        similarity_threshold=settings.SIMILARITY_THRESHOLD,
        vector_weight=settings.VECTOR_WEIGHT,
        lexical_weight=settings.LEXICAL_WEIGHT,
        max_results=settings.MAX_RESULTS,
        candidate_pool=settings.CANDIDATE_POOL,
    )
    responder = GroqResponder(
        api_key=settings.GROQ_API_KEY,
        model=settings.LLM_MODEL,
        timeout_seconds=settings.COMPLETION_TIMEOUT_SECONDS,
        max_retries=settings.COMPLETION_MAX_RETRIES,
        base_delay=settings.RETRY_BASE_DELAY,
    )
    workflows = WorkflowEngine(
        WorkflowRegistry.from_file(settings.workflows_full_path),
        db,
        default_workflow=settings.DEFAULT_WORKFLOW,
    )
    arbiter = EscalationArbiter(
        db,
        low_confidence_threshold=settings.LOW_CONFIDENCE_THRESHOLD,
        repeat_threshold=settings.REPEAT_THRESHOLD,
        repeat_similarity=settings.REPEAT_SIMILARITY,
        negative_keyword_hits=settings.NEGATIVE_KEYWORD_HITS,
        session_timeout_seconds=settings.SESSION_TIMEOUT_SECONDS,
        strict_transitions=settings.STRICT_TICKET_TRANSITIONS,
        support_line_url=settings.SUPPORT_LINE_URL,
    )
    return ConversationOrchestrator(
        db,
        retriever,
        responder,
        workflows,
        arbiter,
        max_tokens=settings.MAX_TOKENS,
        temperature=settings.TEMPERATURE,
        low_relevance_threshold=settings.LOW_RELEVANCE_THRESHOLD,
    )


def get_orchestrator(
    settings: Settings = Depends(get_settings),
) -> ConversationOrchestrator:
    """
    Dependency que provee el ConversationOrchestrator.

    Permite override en tests via app.dependency_overrides[get_orchestrator].
    """
    global _orchestrator
    if _orchestrator is None:
        logger.info("Inicializando ConversationOrchestrator...")
        _orchestrator = build_orchestrator(settings)
        logger.info("ConversationOrchestrator inicializado correctamente")
    return _orchestrator


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler: pre-carga el orquestador al startup."""
    logger.info("MNP Assistant API iniciando...")
    try:
        get_orchestrator(get_settings())
        logger.info("Orchestrator pre-cargado")
    except Exception as e:
        logger.error(f"Error inicializando orchestrator: {e}")

    yield
    logger.info("MNP Assistant API cerrando...")


# FastAPI App

app = FastAPI(
    title="MNP Assistant API",
    description="API REST del asistente conversacional de portabilidad numérica (MNP)",
    version=API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
    responses={
        422: {"model": ErrorResponse, "description": "Error de validación"},
        500: {"model": ErrorResponse, "description": "Error interno"},
    },
)

# CORS middleware (para desarrollo)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # En producción, especificar dominios
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Global Error Handlers

ERROR_TITLES = {
    400: "Solicitud inválida",
    404: "No Encontrado",
    409: "Conflicto",
    422: "Datos de entrada inválidos",
    503: "Servicio no disponible",
}


@app.exception_handler(AssistantError)
async def assistant_exception_handler(request: Request, exc: AssistantError):
    """Errores del dominio → status según el tipo de error."""
    if exc.status_code >= 500:
        logger.error(f"{exc.error_type} en {request.url.path}: {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            type=exc.error_type,
            title=ERROR_TITLES.get(exc.status_code, "Error"),
            status=exc.status_code,
            detail=exc.detail,
            messages=exc.messages if isinstance(exc, ValidationError) else None,
        ).model_dump(),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Errores de validación Pydantic → 422 con formato ErrorResponse."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            type="validation_error",
            title="Datos de entrada inválidos",
            status=422,
            detail=str(exc.errors()),
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """HTTPException → ErrorResponse con el status original."""
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            type="http_error",
            title=ERROR_TITLES.get(exc.status_code, "Error"),
            status=exc.status_code,
            detail=exc.detail if isinstance(exc.detail, str) else str(exc.detail),
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """
    Excepción no manejada → 500 genérico.

    Loguea el error real pero devuelve mensaje genérico al cliente.
    """
    logger.error(f"Error no manejado en {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            type="internal_error",
            title="Error Interno",
            status=500,
            detail="Error interno del servidor. Intenta nuevamente más tarde.",
        ).model_dump(),
    )


def _state_response(step, progress, completed: bool) -> WorkflowStateResponse:
    return WorkflowStateResponse(step=step, progress=progress, completed=completed)


# Endpoints


@app.get("/", tags=["Root"])
async def root():
    """Endpoint raíz"""
    return {
        "message": "MNP Assistant API",
        "version": API_VERSION,
        "docs": "/docs",
        "health": "/health",
    }


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check(
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
    settings: Settings = Depends(get_settings),
):
    """
    Health check endpoint.

    Verifica el estado de:
    - Base de datos y base de conocimiento
    - Workflows cargados
    - Groq API (via API key)
    """
    components = {}
    overall_status = "healthy"

    try:
        if settings.db_full_path.exists():
            components["database"] = "ok"
            items = await asyncio.to_thread(orchestrator.retriever.store.active_items)
            components["knowledge_items"] = f"ok ({len(items)} items)"
            if not items:
                overall_status = "degraded"
        else:
            components["database"] = "missing"
            overall_status = "unhealthy"
    except Exception:
        components["database"] = "error"
        overall_status = "unhealthy"

    workflows = orchestrator.workflows.available()
    components["workflows"] = f"ok ({len(workflows)})"

    if settings.GROQ_API_KEY:
        components["groq_api"] = "ok"
    else:
        components["groq_api"] = "no_api_key"
        overall_status = "degraded"

    return HealthResponse(
        status=overall_status, version=API_VERSION, components=components
    )


# Chat


@app.post("/chat", response_model=ChatTurn, tags=["Chat"])
async def chat(
    request: ChatRequest,
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    """
    Procesa un turno de conversación.

    Siempre responde 200: ante fallas internas el turno trae una disculpa
    y la acción de contactar a un operador.
    """
    logger.info(f"Chat de {request.session_id}: {request.message[:50]}...")
    return await orchestrator.process_message(
        request.session_id,
        request.message,
        current_carrier=request.current_carrier,
        target_carrier=request.target_carrier,
    )


@app.get("/chat/{session_id}/history", tags=["Chat"])
async def chat_history(
    session_id: str,
    limit: int = Query(50, ge=1, le=200),
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    return {"session_id": session_id, "messages": await orchestrator.history(session_id, limit)}


# Workflows


@app.get("/workflows", tags=["Workflow"])
async def list_workflows(
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    return {"workflows": orchestrator.workflows.available()}


@app.post(
    "/workflows/{session_id}/start",
    response_model=WorkflowStateResponse,
    tags=["Workflow"],
)
async def start_workflow(
    session_id: str,
    request: WorkflowStartRequest,
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    step, progress = await orchestrator.start_workflow(
        session_id, request.workflow_id, request.initial_data
    )
    return _state_response(step, progress, progress.completed)


@app.post(
    "/workflows/{session_id}/advance",
    response_model=WorkflowStateResponse,
    tags=["Workflow"],
)
async def advance_workflow(
    session_id: str,
    request: WorkflowAdvanceRequest,
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    step, progress, completed = await orchestrator.advance_workflow(
        session_id,
        request.current_step_id,
        request.user_input,
        request.selected_option,
    )
    return _state_response(step, progress, completed)


@app.post(
    "/workflows/{session_id}/skip",
    response_model=WorkflowStateResponse,
    tags=["Workflow"],
)
async def skip_step(
    session_id: str,
    request: WorkflowSkipRequest,
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    step, progress, completed = await orchestrator.skip_step(session_id, request.reason)
    return _state_response(step, progress, completed)


@app.get(
    "/workflows/{session_id}/current",
    response_model=WorkflowStateResponse,
    tags=["Workflow"],
)
async def current_step(
    session_id: str,
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    state = await orchestrator.current_step(session_id)
    if state is None:
        raise HTTPException(
            status_code=404, detail=f"Sesión sin workflow activo: {session_id}"
        )
    step, progress = state
    return _state_response(step, progress, progress.completed)


@app.post(
    "/workflows/{session_id}/reset",
    response_model=WorkflowStateResponse,
    tags=["Workflow"],
)
async def reset_workflow(
    session_id: str,
    request: WorkflowResetRequest,
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    step, progress = await orchestrator.reset_workflow(
        session_id, request.workflow_id, request.initial_data
    )
    return _state_response(step, progress, progress.completed)


# Escalations


@app.post(
    "/escalations",
    response_model=EscalationTicket,
    status_code=201,
    tags=["Escalation"],
)
async def initiate_escalation(
    request: EscalationRequest,
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.arbiter.initiate(
        request.session_id,
        request.reason,
        request.priority,
        contact_info=request.contact_info,
        context=request.context,
    )


@app.get("/escalations", response_model=List[EscalationTicket], tags=["Escalation"])
async def list_escalations(
    status: Optional[TicketStatus] = None,
    priority: Optional[TicketPriority] = None,
    assigned_agent: Optional[str] = None,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.arbiter.list(
        status=status,
        priority=priority,
        assigned_agent=assigned_agent,
        limit=limit,
        offset=offset,
    )


@app.get("/escalations/stats", response_model=EscalationStats, tags=["Escalation"])
async def escalation_stats(
    period: str = Query("7d", description="1d | 7d | 30d | 90d"),
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.arbiter.stats(period)


@app.get(
    "/escalations/session/{session_id}",
    response_model=Optional[EscalationTicket],
    tags=["Escalation"],
)
async def escalation_status(
    session_id: str,
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.arbiter.get_status(session_id)


@app.get(
    "/escalations/{ticket_id}", response_model=EscalationTicket, tags=["Escalation"]
)
async def get_escalation(
    ticket_id: str,
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.arbiter.get_ticket(ticket_id)


@app.patch(
    "/escalations/{ticket_id}", response_model=EscalationTicket, tags=["Escalation"]
)
async def update_escalation(
    ticket_id: str,
    request: TicketUpdateRequest,
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.arbiter.update_status(
        ticket_id,
        status=request.status,
        assigned_agent=request.assigned_agent,
        notes=request.notes,
        estimated_wait_time=request.estimated_wait_time,
    )


@app.post(
    "/escalations/{ticket_id}/resolve",
    response_model=EscalationTicket,
    tags=["Escalation"],
)
async def resolve_escalation(
    ticket_id: str,
    request: TicketResolveRequest,
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.arbiter.resolve(
        ticket_id, request.resolution, request.feedback, request.rating
    )


# Error Handler 404


@app.exception_handler(404)
async def not_found_handler(request: Request, exc):
    """Handler para 404"""
    return JSONResponse(
        status_code=404,
        content=ErrorResponse(
            type="not_found",
            title="No Encontrado",
            status=404,
            detail=(
                exc.detail
                if isinstance(exc, HTTPException) and exc.detail != "Not Found"
                else f"El endpoint '{request.url.path}' no existe."
            ),
        ).model_dump(),
    )


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "api.main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        reload=True,
        log_level="info",
    )
