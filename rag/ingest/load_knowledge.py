"""
Load Knowledge - Carga las FAQ curadas en la base de conocimiento.

Este módulo:
1. Lee knowledge/faqs.json y valida cada ítem con KnowledgeItem
2. Hace upsert en la tabla knowledge_items (version+1 si ya existía)
3. Genera embeddings (pregunta + respuesta) en batch con sentence-transformers
   y los guarda en el store

Uso:
    python rag/ingest/load_knowledge.py [--no-embeddings]
"""

import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

project_root = Path(__file__).resolve().parent.parent.parent
sys.path.insert(0, str(project_root))

from agent.models import KnowledgeItem
from rag.query.embedder import DEFAULT_EMBEDDING_MODEL
from rag.query.knowledge_store import KnowledgeStore

logger = logging.getLogger(__name__)

DEFAULT_FAQ_PATH = project_root / "knowledge" / "faqs.json"


def load_items(path: Path = DEFAULT_FAQ_PATH) -> List[KnowledgeItem]:
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)
    return [KnowledgeItem.model_validate(entry) for entry in raw]


def embed_items(items: List[KnowledgeItem], model) -> List[KnowledgeItem]:
    """Devuelve copias de los ítems con embedding calculado."""
    texts = [f"{item.question} {item.answer}" for item in items]
    vectors = model.encode(texts, convert_to_numpy=True, show_progress_bar=True)
    return [
        item.model_copy(update={"embedding": [float(x) for x in vector]})
        for item, vector in zip(items, vectors)
    ]


def ingest(
    db_path: Path,
    faq_path: Path = DEFAULT_FAQ_PATH,
    model=None,
    with_embeddings: bool = True,
    model_name: Optional[str] = None,
) -> int:
    """
    Carga las FAQ en el store.

    Args:
        db_path: Base SQLite (ya inicializada con schema.sql)
        faq_path: JSON con las FAQ
        model: SentenceTransformer (si es None se carga `model_name`)
        with_embeddings: False para cargar solo texto (búsqueda léxica)
        model_name: Modelo de embeddings; debe ser el mismo que usa la API

    Returns:
        Cantidad de ítems cargados
    """
    items = load_items(faq_path)
    logger.info(f"{len(items)} FAQ leídas de {faq_path}")

    if with_embeddings:
        if model is None:
            from sentence_transformers import SentenceTransformer

            model_name = model_name or DEFAULT_EMBEDDING_MODEL
            logger.info(f"Cargando modelo de embeddings: {model_name}")
            model = SentenceTransformer(model_name)
        items = embed_items(items, model)

    store = KnowledgeStore(db_path)
    for item in items:
        store.upsert_item(item)

    logger.info(f"{len(items)} ítems cargados en {db_path}")
    return len(items)


def main(argv: Optional[List[str]] = None) -> int:
    """Ingesta con la DB y el modelo de embeddings de la configuración."""
    from api.config import get_settings

    argv = sys.argv[1:] if argv is None else argv
    settings = get_settings()
    return ingest(
        settings.db_full_path,
        with_embeddings="--no-embeddings" not in argv,
        model_name=settings.EMBEDDING_MODEL,
    )


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    count = main()
    print(f"✅ {count} FAQ cargadas")
