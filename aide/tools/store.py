"""
Tool Store: durable persistence for tools the model authored at runtime.

Each generated tool is saved as the exact source text and import list it was
compiled from. At startup the compiler replays every record so that tools
survive restarts. Records are never edited in place: a tool is either stored
or deleted.
"""

from __future__ import annotations

import json
import sqlite3
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import structlog

logger = structlog.get_logger(__name__)


TOOLS_SCHEMA = """
CREATE TABLE IF NOT EXISTS generated_tools (
    name TEXT PRIMARY KEY,
    source_text TEXT NOT NULL,
    imports TEXT NOT NULL DEFAULT '[]',
    created_at REAL NOT NULL
);
"""


@dataclass
class StoredTool:
    """One persisted generated tool."""

    name: str
    source_text: str
    imports: list[str] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)


class ToolStore:
    """
    SQLite-backed store of generated tool sources.

    ``insert`` and ``delete`` report success as a bool rather than raising for
    the expected failures (name already present, name absent) so the compiler
    can roll back its registry change. Connection-level errors still raise.
    """

    def __init__(self, db_path: Path):
        self._db_path = db_path
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: Optional[sqlite3.Connection] = None

    def initialize(self) -> None:
        """Create the database connection and ensure the schema exists."""
        if self._conn is not None:
            return

        self._conn = sqlite3.connect(str(self._db_path))
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(TOOLS_SCHEMA)
        self._conn.commit()
        self._best_effort_chmod(self._db_path, 0o600)

        logger.info("tool_store.initialized", path=str(self._db_path))

    def _require_connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("ToolStore is not initialized. Call initialize() first.")
        return self._conn

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    def insert(self, name: str, source_text: str, imports: list[str]) -> bool:
        """Persist a tool. Returns False when a record with *name* already exists."""
        conn = self._require_connection()
        try:
            conn.execute(
                "INSERT INTO generated_tools (name, source_text, imports, created_at) "
                "VALUES (?, ?, ?, ?)",
                (name, source_text, json.dumps(list(imports)), time.time()),
            )
            conn.commit()
        except sqlite3.IntegrityError:
            conn.rollback()
            logger.warning("tool_store.insert_conflict", name=name)
            return False
        logger.info("tool_store.inserted", name=name, imports=len(imports))
        return True

    def delete(self, name: str) -> bool:
        """Delete a tool's record. Returns False when no record matched."""
        conn = self._require_connection()
        cursor = conn.execute("DELETE FROM generated_tools WHERE name = ?", (name,))
        conn.commit()
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("tool_store.deleted", name=name)
        else:
            logger.warning("tool_store.delete_missing", name=name)
        return deleted

    def get(self, name: str) -> Optional[StoredTool]:
        conn = self._require_connection()
        row = conn.execute(
            "SELECT * FROM generated_tools WHERE name = ?", (name,)
        ).fetchone()
        return self._row_to_tool(row) if row is not None else None

    def list_all(self) -> list[StoredTool]:
        """Every stored tool, oldest first, so replay follows creation order."""
        conn = self._require_connection()
        rows = conn.execute(
            "SELECT * FROM generated_tools ORDER BY created_at ASC, name ASC"
        ).fetchall()
        return [self._row_to_tool(row) for row in rows]

    @staticmethod
    def _row_to_tool(row: sqlite3.Row) -> StoredTool:
        try:
            imports = json.loads(row["imports"] or "[]")
        except json.JSONDecodeError:
            imports = []
        return StoredTool(
            name=row["name"],
            source_text=row["source_text"],
            imports=[str(item) for item in imports],
            created_at=float(row["created_at"]),
        )

    @property
    def stats(self) -> dict[str, Any]:
        conn = self._require_connection()
        row = conn.execute("SELECT COUNT(*) FROM generated_tools").fetchone()
        return {
            "generated_tools": row[0] if row is not None else 0,
            "db_path": str(self._db_path),
        }

    @staticmethod
    def _best_effort_chmod(path: Path, mode: int) -> None:
        if not path.exists():
            return
        try:
            path.chmod(mode)
        except OSError:
            logger.debug("tool_store.chmod_skipped", path=str(path), mode=oct(mode))
