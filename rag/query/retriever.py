"""
Retriever - Recupera FAQ relevantes combinando búsqueda vectorial y léxica.

Este módulo:
1. Embebe la query (con timeout; si falla, degrada a solo léxica)
2. Búsqueda vectorial (FAISS) y léxica (BM25 + keywords) sobre el store
3. Fusiona ambas por id con pesos 0.7 / 0.3
4. Aplica boosts por carrier, paso actual del workflow y prioridad
5. Calcula la relevancia del contexto para el turno
"""

import asyncio
import logging
from typing import Dict, List, Optional, Set

from agent.errors import NotFound
from agent.models import RetrievalResult, SearchMethod, SearchResult
from rag.query.knowledge_store import KnowledgeStore

logger = logging.getLogger(__name__)

CARRIER_BOOST = 0.2
STEP_BOOST = 0.15
PRIORITY_BOOST = 0.05

# Categorías relevantes para cada paso de workflow
STEP_CATEGORY_RELEVANCE: Dict[str, Set[str]] = {
    # step_by_step
    "initial": {"mnp_basic"},
    "proxy_info": {"mnp_basic"},
    "carrier_identification": {"carrier_process", "mnp_basic"},
    "phone_number": {"carrier_process"},
    "reservation_number": {"carrier_process", "troubleshooting"},
    "application": {"carrier_process", "troubleshooting"},
    "line_switching": {"troubleshooting"},
    "completion": {"mnp_basic", "troubleshooting"},
    # roadmap
    "overview": {"mnp_basic"},
    "carrier_selection": {"carrier_process", "mnp_basic"},
    "docomo_requirements": {"carrier_process"},
    "au_requirements": {"carrier_process"},
    "softbank_requirements": {"carrier_process"},
    "completion_summary": {"mnp_basic", "troubleshooting"},
}


def is_step_relevant(category: str, step_id: Optional[str]) -> bool:
    if not step_id:
        return False
    return category in STEP_CATEGORY_RELEVANCE.get(step_id, set())


def format_context(results: List[RetrievalResult]) -> str:
    """Formatea las FAQ recuperadas como pares Q/A para el prompt."""
    if not results:
        return "関連するFAQが見つかりませんでした。一般的なMNP情報を基に回答してください。"
    return "\n\n".join(f"Q: {r.item.question}\nA: {r.item.answer}" for r in results)


class KnowledgeRetriever:
    """Búsqueda híbrida sobre la base de conocimiento MNP."""

    def __init__(
        self,
        store: KnowledgeStore,
        embedder,
        similarity_threshold: float = 0.7,
        vector_weight: float = 0.7,
        lexical_weight: float = 0.3,
        max_results: int = 5,
        candidate_pool: int = 10,
    ):
        """
        Args:
            store: KnowledgeStore con los ítems
            embedder: Proveedor con `async embed(text) -> list[float]`
            similarity_threshold: Similitud mínima para resultados vectoriales
                (y score léxico mínimo para entrar sin match vectorial)
            vector_weight: Peso de la similitud coseno en la fusión
            lexical_weight: Peso del score léxico en la fusión
            max_results: Resultados devueltos tras el ranking
            candidate_pool: Candidatos pedidos a cada método
        """
        self.store = store
        self.embedder = embedder
        self.similarity_threshold = similarity_threshold
        self.vector_weight = vector_weight
        self.lexical_weight = lexical_weight
        self.max_results = max_results
        self.candidate_pool = candidate_pool

    async def search(
        self, query: str, context: Optional[Dict[str, Optional[str]]] = None
    ) -> SearchResult:
        """
        Recupera las FAQ más relevantes para la query.

        Nunca levanta: un método que falla aporta un resultado vacío, y si
        fallan ambos se devuelve un SearchResult vacío con relevancia 0.

        Args:
            query: Texto del usuario
            context: {"carrier": ..., "current_step": ...} (ambos opcionales)
        """
        context = context or {}
        carrier = context.get("carrier")
        current_step = context.get("current_step")

        vector_hits = await self._vector_hits(query, carrier)
        lexical_hits = await self._lexical_hits(query, carrier)

        # Fusión por id de ítem
        fused: Dict[str, RetrievalResult] = {}
        for item, similarity in vector_hits:
            if similarity < self.similarity_threshold or item.id in fused:
                continue
            fused[item.id] = RetrievalResult(
                item=item,
                score=min(1.0, similarity * self.vector_weight),
                method=SearchMethod.VECTOR,
            )

        for item, lexical in lexical_hits:
            existing = fused.get(item.id)
            if existing is not None:
                fused[item.id] = RetrievalResult(
                    item=existing.item,
                    score=min(1.0, existing.score + lexical * self.lexical_weight),
                    method=SearchMethod.FUSED,
                )
            elif lexical >= self.similarity_threshold:
                fused[item.id] = RetrievalResult(
                    item=item,
                    score=min(1.0, lexical * self.lexical_weight),
                    method=SearchMethod.LEXICAL,
                )

        # Boosts
        boosted = []
        for result in fused.values():
            factor = 1.0
            if carrier and result.item.carrier == carrier:
                factor += CARRIER_BOOST
            if is_step_relevant(result.item.category, current_step):
                factor += STEP_BOOST
            factor += result.item.priority * PRIORITY_BOOST
            boosted.append(
                RetrievalResult(
                    item=result.item,
                    score=max(0.0, min(1.0, result.score * factor)),
                    method=result.method,
                )
            )

        boosted.sort(key=lambda r: r.score, reverse=True)
        items = boosted[: self.max_results]
        relevance = self.context_relevance(items, carrier, current_step)

        logger.info(
            f"Retrieve: {len(vector_hits)} vector + {len(lexical_hits)} léxicos "
            f"→ {len(items)} resultados (relevancia={relevance:.2f})"
        )
        return SearchResult(items=items, context_relevance=relevance)

    async def _vector_hits(self, query: str, carrier: Optional[str]):
        try:
            vector = await self.embedder.embed(query)
        except Exception as e:
            logger.warning(f"Embedding no disponible, solo búsqueda léxica: {e}")
            return []

        try:
            return await asyncio.to_thread(
                self.store.vector_search, vector, carrier, self.candidate_pool
            )
        except Exception as e:
            logger.warning(f"Búsqueda vectorial falló: {e}", exc_info=True)
            return []

    async def _lexical_hits(self, query: str, carrier: Optional[str]):
        try:
            return await asyncio.to_thread(
                self.store.lexical_search, query, carrier, self.candidate_pool
            )
        except Exception as e:
            logger.warning(f"Búsqueda léxica falló: {e}", exc_info=True)
            return []

    @staticmethod
    def context_relevance(
        results: List[RetrievalResult],
        carrier: Optional[str] = None,
        current_step: Optional[str] = None,
    ) -> float:
        """Score medio más bonus por carrier y por paso, acotado a [0, 1]."""
        if not results:
            return 0.0

        total = len(results)
        relevance = sum(r.score for r in results) / total
        if carrier:
            matches = sum(1 for r in results if r.item.carrier == carrier)
            relevance += (matches / total) * CARRIER_BOOST
        if current_step:
            matches = sum(
                1 for r in results if is_step_relevant(r.item.category, current_step)
            )
            relevance += (matches / total) * STEP_BOOST
        return max(0.0, min(1.0, relevance))

    def format_context(self, results: List[RetrievalResult]) -> str:
        return format_context(results)

    async def update_item_embedding(self, item_id: str) -> List[float]:
        """
        Recalcula el embedding de un ítem (pregunta + respuesta) y lo guarda.

        Raises:
            NotFound: el ítem no existe
            UpstreamUnavailable: el proveedor de embeddings falló
        """
        item = await asyncio.to_thread(self.store.get_item, item_id)
        if item is None:
            raise NotFound(f"Ítem de conocimiento no encontrado: {item_id}")

        vector = await self.embedder.embed(f"{item.question} {item.answer}")
        await asyncio.to_thread(self.store.update_embedding, item_id, vector)
        logger.info(f"Embedding actualizado para {item_id} (dim={len(vector)})")
        return vector
