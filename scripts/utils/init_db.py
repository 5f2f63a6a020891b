"""
Script para inicializar la base de datos SQLite del asistente MNP.

Crea las tablas desde schema.sql y, opcionalmente, carga las FAQ de
knowledge/faqs.json (sin embeddings; se calculan después con
rag/ingest/load_knowledge.py).

Uso:
    python scripts/utils/init_db.py [--force] [--with-knowledge]
"""

import sqlite3
import sys
from pathlib import Path

# Rutas - el script está en scripts/utils/, el proyecto está 2 niveles arriba
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

DEFAULT_DB_PATH = PROJECT_ROOT / "database" / "sqlite" / "mnp_assistant.db"
SCHEMA_PATH = PROJECT_ROOT / "database" / "schema" / "schema.sql"

EXPECTED_TABLES = {
    "knowledge_items",
    "chat_sessions",
    "messages",
    "scenario_progress",
    "escalation_tickets",
}


def init_database(
    db_path: Path = None, force: bool = False, with_knowledge: bool = False
) -> Path:
    """Crea la base de datos con el schema. Devuelve la ruta creada."""
    db_path = Path(db_path or DEFAULT_DB_PATH)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    if db_path.exists():
        if not force:
            print(f"⚠️  La base de datos ya existe en {db_path}")
            response = input("¿Deseas recrearla? Esto borrará todos los datos (y/n): ")
            if response.lower() != "y":
                print("❌ Operación cancelada")
                return db_path
        db_path.unlink()

    print(f"📦 Creando base de datos en {db_path}")
    conn = sqlite3.connect(db_path)
    try:
        with open(SCHEMA_PATH, "r", encoding="utf-8") as f:
            conn.executescript(f.read())
        conn.commit()

        rows = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'"
        ).fetchall()
        tables = {r[0] for r in rows}
    except sqlite3.Error as e:
        print(f"❌ Error al ejecutar schema.sql: {e}")
        conn.rollback()
        raise
    finally:
        conn.close()

    missing = EXPECTED_TABLES - tables
    if missing:
        raise RuntimeError(f"Faltan tablas tras aplicar el schema: {sorted(missing)}")
    print(f"📊 Tablas: {', '.join(sorted(tables))}")

    if with_knowledge:
        from rag.ingest.load_knowledge import ingest

        count = ingest(db_path, with_embeddings=False)
        print(f"📚 {count} FAQ cargadas (sin embeddings)")

    print(f"🎉 Inicialización completada. DB: {db_path}")
    return db_path


if __name__ == "__main__":
    init_database(
        force="--force" in sys.argv, with_knowledge="--with-knowledge" in sys.argv
    )
