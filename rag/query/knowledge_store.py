"""
Knowledge Store - Acceso a la base de conocimiento (FAQ) en SQLite.

Este módulo:
1. Lee ítems activos filtrados por carrier / categoría
2. Búsqueda vectorial: similitud coseno con FAISS (Inner Product sobre
   vectores normalizados)
3. Búsqueda léxica: BM25 sobre pregunta + respuesta, más match de keywords
4. Write-back de embeddings actualizados
"""

import json
import logging
import re
import sqlite3
import unicodedata
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import faiss
import numpy as np
from rank_bm25 import BM25Okapi

from agent.models import KnowledgeItem

logger = logging.getLogger(__name__)

# Score fijo cuando alguna keyword del ítem aparece en la query
KEYWORD_MATCH_SCORE = 0.8


# Tokenización (japonés: bigramas de caracteres; latino: palabras)

_CJK_RE = re.compile(r"[\u3040-\u30ff\u3400-\u9fff]+")
_TOKEN_RE = re.compile(r"[\u3040-\u30ff\u3400-\u9fff]+|[a-z0-9]+")


def normalize_text(text: str) -> str:
    """NFKC + lowercase (convierte full-width ＭＮＰ → mnp)."""
    return unicodedata.normalize("NFKC", text).lower().strip()


def tokenize(text: str) -> List[str]:
    tokens: List[str] = []
    for part in _TOKEN_RE.findall(normalize_text(text)):
        if _CJK_RE.fullmatch(part) and len(part) > 1:
            tokens.extend(part[i : i + 2] for i in range(len(part) - 1))
        else:
            tokens.append(part)
    return tokens


def _normalize_rows(vectors: np.ndarray) -> np.ndarray:
    """Normaliza vectores para similitud coseno vía Inner Product."""
    norms = np.linalg.norm(vectors, axis=1, keepdims=True)
    norms[norms == 0] = 1  # Evitar div by zero
    return vectors / norms


class KnowledgeStore:
    """Store SQLite de KnowledgeItems con primitivas de búsqueda."""

    def __init__(self, db_path: Path):
        self.db_path = db_path

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    @staticmethod
    def _row_to_item(row: sqlite3.Row) -> KnowledgeItem:
        d = dict(row)
        return KnowledgeItem(
            id=d["id"],
            category=d["category"],
            subcategory=d["subcategory"],
            question=d["question"],
            answer=d["answer"],
            keywords=json.loads(d["keywords"] or "[]"),
            carrier=d["carrier"],
            priority=d["priority"] or 1,
            embedding=json.loads(d["embedding"]) if d["embedding"] else None,
            is_active=bool(d["is_active"]),
            version=d["version"],
        )

    # Lectura

    def active_items(
        self, carrier: Optional[str] = None, category: Optional[str] = None
    ) -> List[KnowledgeItem]:
        """Ítems activos genéricos o del carrier dado, ordenados por prioridad."""
        sql = "SELECT * FROM knowledge_items WHERE is_active = 1"
        params: list = []
        if carrier:
            sql += " AND (carrier IS NULL OR carrier = ?)"
            params.append(carrier)
        else:
            sql += " AND carrier IS NULL"
        if category:
            sql += " AND category = ?"
            params.append(category)
        sql += " ORDER BY priority DESC, id"

        with self._conn() as conn:
            rows = conn.execute(sql, params).fetchall()
            return [self._row_to_item(r) for r in rows]

    def get_item(self, item_id: str) -> Optional[KnowledgeItem]:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM knowledge_items WHERE id = ?", (item_id,)
            ).fetchone()
            return self._row_to_item(row) if row else None

    # Escritura

    def upsert_item(self, item: KnowledgeItem) -> None:
        """Crea o actualiza un ítem (incrementa version si ya existía)."""
        now = datetime.now().isoformat()
        embedding = json.dumps(item.embedding) if item.embedding else None
        with self._conn() as conn:
            conn.execute(
                """
                INSERT INTO knowledge_items
                    (id, category, subcategory, question, answer, keywords, carrier,
                     priority, embedding, is_active, version, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    category = excluded.category,
                    subcategory = excluded.subcategory,
                    question = excluded.question,
                    answer = excluded.answer,
                    keywords = excluded.keywords,
                    carrier = excluded.carrier,
                    priority = excluded.priority,
                    embedding = COALESCE(excluded.embedding, knowledge_items.embedding),
                    is_active = excluded.is_active,
                    version = knowledge_items.version + 1,
                    updated_at = excluded.updated_at
                """,
                (
                    item.id,
                    item.category,
                    item.subcategory,
                    item.question,
                    item.answer,
                    json.dumps(item.keywords, ensure_ascii=False),
                    item.carrier,
                    item.priority,
                    embedding,
                    int(item.is_active),
                    item.version,
                    now,
                    now,
                ),
            )
            conn.commit()

    def update_embedding(self, item_id: str, embedding: List[float]) -> bool:
        """Guarda el embedding de un ítem. False si el ítem no existe."""
        with self._conn() as conn:
            cursor = conn.execute(
                "UPDATE knowledge_items SET embedding = ?, updated_at = ? WHERE id = ?",
                (json.dumps(embedding), datetime.now().isoformat(), item_id),
            )
            conn.commit()
            return cursor.rowcount > 0

    # Búsqueda vectorial

    def vector_search(
        self, query_vector: List[float], carrier: Optional[str], limit: int
    ) -> List[Tuple[KnowledgeItem, float]]:
        """
        Similitud coseno entre la query y los ítems con embedding.

        Returns:
            Lista de (item, similitud) ordenada descendente, a lo sumo `limit`.
        """
        items = [
            i for i in self.active_items(carrier=carrier) if i.embedding is not None
        ]
        if not items or limit <= 0:
            return []

        dimension = len(query_vector)
        items = [i for i in items if len(i.embedding) == dimension]
        if not items:
            logger.warning(f"Ningún embedding con dimensión {dimension}")
            return []

        matrix = _normalize_rows(
            np.array([i.embedding for i in items], dtype=np.float32)
        )
        index = faiss.IndexFlatIP(dimension)
        index.add(matrix)

        query = _normalize_rows(np.array([query_vector], dtype=np.float32))
        scores, indices = index.search(query, min(limit, len(items)))

        results = []
        for score, idx in zip(scores[0], indices[0]):
            # idx == -1 significa que no hay más vecinos
            if idx == -1:
                continue
            similarity = max(0.0, min(1.0, float(score)))
            results.append((items[int(idx)], similarity))
        return results

    # Búsqueda léxica

    def lexical_search(
        self, query: str, carrier: Optional[str], limit: int
    ) -> List[Tuple[KnowledgeItem, float]]:
        """
        Full-text (BM25 normalizado por el mejor score) + match de keywords.

        El score de cada ítem es min(1, bm25_norm + 0.8·[keyword en query]).
        Solo se devuelven ítems con algún match.
        """
        items = self.active_items(carrier=carrier)
        query_tokens = tokenize(query)
        if not items or not query_tokens:
            return []

        corpus = [tokenize(f"{i.question} {i.answer}") for i in items]
        bm25 = BM25Okapi(corpus)
        raw_scores = bm25.get_scores(query_tokens)
        best = float(max(raw_scores)) if len(raw_scores) else 0.0

        normalized_query = normalize_text(query)
        scored: Dict[str, Tuple[KnowledgeItem, float]] = {}
        for item, raw in zip(items, raw_scores):
            fulltext = float(raw) / best if best > 0 and raw > 0 else 0.0
            keyword = (
                KEYWORD_MATCH_SCORE
                if any(normalize_text(kw) in normalized_query for kw in item.keywords)
                else 0.0
            )
            score = min(1.0, fulltext + keyword)
            if score > 0:
                scored[item.id] = (item, score)

        ranked = sorted(
            scored.values(), key=lambda pair: (pair[1], pair[0].priority), reverse=True
        )
        return ranked[:limit]
