"""
Embedder - Genera embeddings de texto con sentence-transformers.

El encode es bloqueante (CPU), así que corre en un thread y con timeout:
si tarda demasiado o falla se levanta UpstreamUnavailable y el retriever
degrada a búsqueda léxica.
"""

import asyncio
import logging
import threading
from typing import List, Optional

from sentence_transformers import SentenceTransformer

from agent.errors import UpstreamUnavailable

# Modelo multilingüe por defecto (soporta japonés, inglés, y 50+ idiomas)
DEFAULT_EMBEDDING_MODEL = "paraphrase-multilingual-MiniLM-L12-v2"

logger = logging.getLogger(__name__)


class SentenceTransformerEmbedder:
    """Proveedor de embeddings asíncrono."""

    def __init__(
        self,
        model_name: Optional[str] = None,
        timeout_seconds: float = 5.0,
        model: Optional[SentenceTransformer] = None,
    ):
        self.model_name = model_name or DEFAULT_EMBEDDING_MODEL
        self.timeout_seconds = timeout_seconds
        self._model = model
        self._load_lock = threading.Lock()

    @property
    def model(self) -> SentenceTransformer:
        if self._model is None:
            with self._load_lock:
                # Un solo hilo carga el modelo; los demás esperan y lo reusan
                if self._model is None:
                    logger.info(f"Cargando modelo de embeddings: {self.model_name}")
                    self._model = SentenceTransformer(self.model_name)
        return self._model

    def load(self) -> "SentenceTransformerEmbedder":
        """Carga el modelo ya (sin timeout). Se llama al arrancar la API."""
        _ = self.model
        return self

    def _encode(self, text: str) -> List[float]:
        vector = self.model.encode([text], convert_to_numpy=True)[0]
        return [float(x) for x in vector]

    async def embed(self, text: str) -> List[float]:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._encode, text), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError as e:
            raise UpstreamUnavailable(
                f"Embedding timeout ({self.timeout_seconds}s)"
            ) from e
        except Exception as e:
            raise UpstreamUnavailable(f"Error generando embedding: {e}") from e
