"""
Configuración centralizada del asistente MNP.

Usa Pydantic BaseSettings para:
- Validar TODAS las variables de entorno al startup
- Proveer tipos seguros y defaults documentados
- Fallar rápido si falta config crítica (GROQ_API_KEY)
- Centralizar los umbrales de retrieval y escalamiento
"""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


# Raíz del proyecto (donde vive .env)
PROJECT_ROOT = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    """Configuración tipada y validada del asistente."""

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",  # Ignorar env vars no declaradas
    )

    # LLM / Groq
    GROQ_API_KEY: str  # Requerida — falla al startup si falta
    LLM_MODEL: str = "llama-3.3-70b-versatile"
    MAX_TOKENS: int = 1024
    TEMPERATURE: float = 0.5
    COMPLETION_TIMEOUT_SECONDS: float = 30.0
    COMPLETION_MAX_RETRIES: int = 3
    RETRY_BASE_DELAY: float = 1.0

    # Embeddings
    EMBEDDING_MODEL: str = "paraphrase-multilingual-MiniLM-L12-v2"
    EMBEDDING_TIMEOUT_SECONDS: float = 5.0

    # Retrieval (fusión híbrida)
    SIMILARITY_THRESHOLD: float = 0.7
    VECTOR_WEIGHT: float = 0.7
    LEXICAL_WEIGHT: float = 0.3
    MAX_RESULTS: int = 5
    CANDIDATE_POOL: int = 10
    LOW_RELEVANCE_THRESHOLD: float = 0.5

    # Escalamiento
    LOW_CONFIDENCE_THRESHOLD: float = 0.3
    REPEAT_THRESHOLD: int = 3
    REPEAT_SIMILARITY: float = 0.7
    NEGATIVE_KEYWORD_HITS: int = 2
    SESSION_TIMEOUT_SECONDS: int = 1800
    STRICT_TICKET_TRANSITIONS: bool = False
    SUPPORT_LINE_URL: str = "https://line.me/R/oaMessage/@mnpsupport"

    # Workflows
    WORKFLOWS_PATH: str = "knowledge/workflows.json"
    DEFAULT_WORKFLOW: str = "step_by_step"

    # Database
    DATABASE_PATH: str = "database/sqlite/mnp_assistant.db"

    # API
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000

    @property
    def db_full_path(self) -> Path:
        """Ruta absoluta a la base de datos."""
        return self._resolve(self.DATABASE_PATH)

    @property
    def workflows_full_path(self) -> Path:
        """Ruta absoluta al JSON de workflows."""
        return self._resolve(self.WORKFLOWS_PATH)

    @staticmethod
    def _resolve(raw: str) -> Path:
        path = Path(raw)
        if path.is_absolute():
            return path
        return PROJECT_ROOT / path


@lru_cache
def get_settings() -> Settings:
    """
    Singleton de configuración (cacheado).

    Falla inmediatamente si faltan variables requeridas (GROQ_API_KEY),
    dando un error claro al startup en lugar de fallar en runtime.
    """
    return Settings()
