"""
Configuración compartida de fixtures para los tests del asistente MNP.

Provee:
- Settings de prueba (sin necesidad de .env real)
- DB SQLite temporal creada desde schema.sql (+ FAQ reales)
- Embedder y responder falsos (sin modelos ni API)
- Motor de workflows, árbitro de escalamiento y orquestador
- TestClient de FastAPI con dependency overrides
"""

import json
import sqlite3
import sys
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

# Agregar raíz del proyecto al path
project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

import api.main as main_module
from api.config import Settings, get_settings
from api.main import app, get_orchestrator
from agent.db_service import DBService
from agent.errors import UpstreamUnavailable
from agent.escalation import EscalationArbiter
from agent.orchestrator import ConversationOrchestrator
from agent.workflow import WorkflowEngine, WorkflowRegistry
from rag.ingest.load_knowledge import ingest
from rag.query.knowledge_store import KnowledgeStore
from rag.query.retriever import KnowledgeRetriever

_SCHEMA_PATH = project_root / "database" / "schema" / "schema.sql"
WORKFLOWS_PATH = project_root / "knowledge" / "workflows.json"

# Respuesta JSON bien formada del LLM
LLM_REPLY = json.dumps(
    {
        "message": "MNPは電話番号を変えずにキャリアを乗り換えられる制度です。",
        "suggestions": ["手続きの流れを教えて", "手数料は？"],
        "actions": [],
        "needsEscalation": False,
        "confidence": 0.9,
    },
    ensure_ascii=False,
)


class FakeEmbedder:
    """Embedder determinista: vector fijo por texto, o falla si se pide."""

    def __init__(self, vectors=None, default=None, fail=False):
        self.vectors = vectors or {}
        self.default = default or [0.0, 0.0, 1.0]
        self.fail = fail
        self.calls = []

    async def embed(self, text):
        self.calls.append(text)
        if self.fail:
            raise UpstreamUnavailable("embedding timeout")
        return self.vectors.get(text, self.default)


# Settings de prueba


@pytest.fixture
def db_path(tmp_path) -> Path:
    """DB temporal con el schema real."""
    db_file = tmp_path / "test.db"
    conn = sqlite3.connect(db_file)
    with open(_SCHEMA_PATH, "r", encoding="utf-8") as f:
        conn.executescript(f.read())
    conn.close()
    return db_file


@pytest.fixture
def test_settings(db_path) -> Settings:
    """Settings con valores seguros para testing (no necesita .env)."""
    return Settings(
        GROQ_API_KEY="test-key-fake-12345",
        LLM_MODEL="llama-3.3-70b-versatile",
        EMBEDDING_MODEL="paraphrase-multilingual-MiniLM-L12-v2",
        DATABASE_PATH=str(db_path),
        WORKFLOWS_PATH=str(WORKFLOWS_PATH),
        RETRY_BASE_DELAY=0.0,
    )


# Componentes


@pytest.fixture
def db(db_path) -> DBService:
    return DBService(db_path)


@pytest.fixture
def store(db_path) -> KnowledgeStore:
    """KnowledgeStore con las FAQ de knowledge/faqs.json (sin embeddings)."""
    ingest(db_path, with_embeddings=False)
    return KnowledgeStore(db_path)


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def retriever(store, embedder) -> KnowledgeRetriever:
    return KnowledgeRetriever(store, embedder)


@pytest.fixture
def registry() -> WorkflowRegistry:
    return WorkflowRegistry.from_file(WORKFLOWS_PATH)


@pytest.fixture
def engine(registry, db) -> WorkflowEngine:
    return WorkflowEngine(registry, db)


@pytest.fixture
def arbiter(db) -> EscalationArbiter:
    return EscalationArbiter(db)


@pytest.fixture
def responder() -> AsyncMock:
    """Responder falso: complete() devuelve un JSON bien formado."""
    mock = AsyncMock()
    mock.complete.return_value = LLM_REPLY
    return mock


@pytest.fixture
def orchestrator(db, retriever, responder, engine, arbiter) -> ConversationOrchestrator:
    return ConversationOrchestrator(db, retriever, responder, engine, arbiter)


# TestClient con DI overrides


@pytest.fixture
def client(test_settings, orchestrator, monkeypatch) -> TestClient:
    """
    TestClient de FastAPI con dependency overrides.

    Reemplaza las dependencias reales por las de prueba:
    - get_settings → test_settings (sin .env)
    - get_orchestrator → orquestador con embedder/LLM falsos
    """
    monkeypatch.setattr(main_module, "_orchestrator", orchestrator)
    app.dependency_overrides[get_settings] = lambda: test_settings
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator

    with TestClient(app, raise_server_exceptions=False) as c:
        yield c

    # Limpiar overrides después del test
    app.dependency_overrides.clear()
