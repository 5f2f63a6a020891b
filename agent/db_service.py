"""
DB Service — Capa de acceso a datos para el agente.

Encapsula TODAS las operaciones SQLite en métodos tipados,
evitando SQL inline disperso en el orquestador, el motor de workflows
y el árbitro de escalamiento. Devuelve dicts planos con las columnas
JSON ya decodificadas.
"""

import json
import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

TICKET_JSON_FIELDS = ("contact_info", "context")
TICKET_UPDATABLE_FIELDS = {
    "status",
    "assigned_agent",
    "estimated_wait_time",
    "queue_position",
    "notes",
    "resolution",
    "feedback",
    "rating",
    "resolved_at",
}


class DBService:
    """Servicio de acceso a datos SQLite para el asistente."""

    def __init__(self, db_path: Path):
        self.db_path = db_path

    # helpers

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @staticmethod
    def _ticket_row(row: Optional[sqlite3.Row]) -> Optional[Dict]:
        if row is None:
            return None
        d = dict(row)
        for field in TICKET_JSON_FIELDS:
            d[field] = json.loads(d[field] or "{}")
        return d

    # Sessions

    def get_session(self, session_id: str) -> Optional[Dict]:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM chat_sessions WHERE id = ?", (session_id,)
            ).fetchone()
            return dict(row) if row else None

    def ensure_session(
        self,
        session_id: str,
        current_carrier: str = None,
        target_carrier: str = None,
    ) -> Dict:
        """Crea la sesión si no existe; actualiza los carriers informados."""
        now = datetime.now().isoformat()
        with self._conn() as conn:
            conn.execute(
                """
                INSERT INTO chat_sessions (id, current_carrier, target_carrier, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    current_carrier = COALESCE(excluded.current_carrier, chat_sessions.current_carrier),
                    target_carrier = COALESCE(excluded.target_carrier, chat_sessions.target_carrier),
                    updated_at = excluded.updated_at
                """,
                (session_id, current_carrier, target_carrier, now, now),
            )
            conn.commit()
            row = conn.execute(
                "SELECT * FROM chat_sessions WHERE id = ?", (session_id,)
            ).fetchone()
            return dict(row)

    # Messages

    def add_message(
        self,
        session_id: str,
        role: str,
        content: str,
        confidence_score: float = None,
    ) -> int:
        """Guarda un mensaje y devuelve su id."""
        with self._conn() as conn:
            cursor = conn.execute(
                """
                INSERT INTO messages (session_id, role, content, confidence_score, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (session_id, role, content, confidence_score, datetime.now().isoformat()),
            )
            conn.commit()
            return cursor.lastrowid

    def get_recent_messages(self, session_id: str, limit: int = 10) -> List[Dict]:
        """Últimos mensajes de la sesión en orden cronológico (más viejo primero)."""
        with self._conn() as conn:
            rows = conn.execute(
                """
                SELECT role, content, confidence_score, created_at FROM messages
                WHERE session_id = ?
                ORDER BY id DESC
                LIMIT ?
                """,
                (session_id, limit),
            ).fetchall()
        return [dict(r) for r in reversed(rows)]

    # Workflow progress

    def get_progress(self, session_id: str) -> Optional[Dict]:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM scenario_progress WHERE session_id = ?", (session_id,)
            ).fetchone()
            if row is None:
                return None
            d = dict(row)
            d["completed_steps"] = json.loads(d["completed_steps"])
            d["collected_data"] = json.loads(d["collected_data"])
            d["completed"] = bool(d["completed"])
            return d

    def upsert_progress(self, progress: Dict[str, Any]) -> None:
        """Crea o reemplaza el progreso de una sesión."""
        with self._conn() as conn:
            conn.execute(
                """
                INSERT INTO scenario_progress
                    (session_id, workflow_id, current_step, completed_steps, collected_data,
                     progress, completed, estimated_completion, last_updated)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(session_id) DO UPDATE SET
                    workflow_id = excluded.workflow_id,
                    current_step = excluded.current_step,
                    completed_steps = excluded.completed_steps,
                    collected_data = excluded.collected_data,
                    progress = excluded.progress,
                    completed = excluded.completed,
                    estimated_completion = excluded.estimated_completion,
                    last_updated = excluded.last_updated
                """,
                (
                    progress["session_id"],
                    progress["workflow_id"],
                    progress["current_step"],
                    json.dumps(progress["completed_steps"], ensure_ascii=False),
                    json.dumps(progress["collected_data"], ensure_ascii=False),
                    progress["progress"],
                    int(progress["completed"]),
                    progress["estimated_completion"],
                    progress["last_updated"],
                ),
            )
            conn.commit()

    def delete_progress(self, session_id: str) -> bool:
        with self._conn() as conn:
            cursor = conn.execute(
                "DELETE FROM scenario_progress WHERE session_id = ?", (session_id,)
            )
            conn.commit()
            return cursor.rowcount > 0

    # Escalation tickets

    def insert_ticket(self, ticket: Dict[str, Any]) -> Dict:
        with self._conn() as conn:
            conn.execute(
                """
                INSERT INTO escalation_tickets
                    (id, session_id, reason, priority, status, assigned_agent,
                     estimated_wait_time, queue_position, contact_info, context,
                     notes, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    ticket["id"],
                    ticket["session_id"],
                    ticket["reason"],
                    ticket["priority"],
                    ticket.get("status", "pending"),
                    ticket.get("assigned_agent"),
                    ticket["estimated_wait_time"],
                    ticket["queue_position"],
                    json.dumps(ticket.get("contact_info") or {}, ensure_ascii=False),
                    json.dumps(ticket.get("context") or {}, ensure_ascii=False, default=str),
                    ticket.get("notes"),
                    ticket["created_at"],
                    ticket["updated_at"],
                ),
            )
            conn.commit()
            row = conn.execute(
                "SELECT * FROM escalation_tickets WHERE id = ?", (ticket["id"],)
            ).fetchone()
            return self._ticket_row(row)

    def get_ticket(self, ticket_id: str) -> Optional[Dict]:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM escalation_tickets WHERE id = ?", (ticket_id,)
            ).fetchone()
            return self._ticket_row(row)

    def latest_ticket_for_session(self, session_id: str) -> Optional[Dict]:
        with self._conn() as conn:
            row = conn.execute(
                """
                SELECT * FROM escalation_tickets
                WHERE session_id = ?
                ORDER BY created_at DESC, rowid DESC
                LIMIT 1
                """,
                (session_id,),
            ).fetchone()
            return self._ticket_row(row)

    def active_ticket_for_session(self, session_id: str) -> Optional[Dict]:
        """Ticket no terminal (ni resolved ni cancelled) de la sesión."""
        with self._conn() as conn:
            row = conn.execute(
                """
                SELECT * FROM escalation_tickets
                WHERE session_id = ? AND status NOT IN ('resolved', 'cancelled')
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (session_id,),
            ).fetchone()
            return self._ticket_row(row)

    def update_ticket(self, ticket_id: str, fields: Dict[str, Any]) -> Optional[Dict]:
        """Actualiza columnas permitidas y devuelve el ticket resultante."""
        unknown = set(fields) - TICKET_UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Campos no actualizables: {sorted(unknown)}")

        assignments = ", ".join(f"{name} = ?" for name in fields)
        params = list(fields.values()) + [datetime.now().isoformat(), ticket_id]
        with self._conn() as conn:
            cursor = conn.execute(
                f"UPDATE escalation_tickets SET {assignments}, updated_at = ? WHERE id = ?",
                params,
            )
            conn.commit()
            if cursor.rowcount == 0:
                return None
            row = conn.execute(
                "SELECT * FROM escalation_tickets WHERE id = ?", (ticket_id,)
            ).fetchone()
            return self._ticket_row(row)

    def list_tickets(
        self,
        status: str = None,
        priority: str = None,
        assigned_agent: str = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[Dict]:
        """Tickets filtrados, más recientes primero."""
        sql = "SELECT * FROM escalation_tickets WHERE 1 = 1"
        params: list = []
        if status:
            sql += " AND status = ?"
            params.append(status)
        if priority:
            sql += " AND priority = ?"
            params.append(priority)
        if assigned_agent:
            sql += " AND assigned_agent = ?"
            params.append(assigned_agent)
        sql += " ORDER BY created_at DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        with self._conn() as conn:
            rows = conn.execute(sql, params).fetchall()
            return [self._ticket_row(r) for r in rows]

    def count_queued_tickets(self) -> int:
        """Tickets en cola (pending o assigned)."""
        with self._conn() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS n FROM escalation_tickets
                WHERE status IN ('pending', 'assigned')
                """
            ).fetchone()
            return row["n"]

    def tickets_since(self, since: datetime) -> List[Dict]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT * FROM escalation_tickets WHERE created_at >= ?",
                (since.isoformat(),),
            ).fetchall()
            return [self._ticket_row(r) for r in rows]

    def count_active_agents(self) -> int:
        """Agentes distintos con tickets asignados o en curso."""
        with self._conn() as conn:
            row = conn.execute(
                """
                SELECT COUNT(DISTINCT assigned_agent) AS n FROM escalation_tickets
                WHERE assigned_agent IS NOT NULL
                  AND status IN ('assigned', 'in_progress')
                """
            ).fetchone()
            return row["n"]
