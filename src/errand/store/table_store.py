"""
Thin wrapper around SQLite acting as the table-oriented backing store.

Every operation opens its own connection, so the store can be shared between threads without
local locking; consistency of concurrent writes is left to SQLite.  Columns listed in
``JSON_COLUMNS`` hold JSON text and are decoded on read.
"""

import json
import logging
import sqlite3
from pathlib import Path
from typing import (
    Any,
    Dict,
    List,
    Sequence,
)

from errand.core.errors import StoreError

logger = logging.getLogger(__name__)

JSON_COLUMNS = frozenset({"tags", "related_entities", "metadata"})

_SCHEMA = """
CREATE TABLE IF NOT EXISTS categories (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE
);
CREATE TABLE IF NOT EXISTS todo_list (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    description TEXT NOT NULL,
    title TEXT,
    content TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    due_date TEXT,
    category_id INTEGER REFERENCES categories(id),
    tags TEXT,
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);
CREATE TABLE IF NOT EXISTS shopping_list (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    description TEXT NOT NULL,
    title TEXT,
    content TEXT,
    quantity INTEGER NOT NULL DEFAULT 1,
    status TEXT NOT NULL DEFAULT 'needed',
    category_id INTEGER REFERENCES categories(id),
    tags TEXT,
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);
CREATE TABLE IF NOT EXISTS knowledge_snippets (
    id TEXT PRIMARY KEY,
    topic TEXT NOT NULL,
    content TEXT NOT NULL,
    source TEXT NOT NULL DEFAULT 'user_interaction',
    confidence REAL NOT NULL DEFAULT 0.7,
    related_entities TEXT,
    last_updated TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS interaction_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    query TEXT NOT NULL,
    response TEXT,
    metadata TEXT,
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);
CREATE TABLE IF NOT EXISTS specializations (
    name TEXT PRIMARY KEY,
    instructions TEXT NOT NULL
);
"""

DEFAULT_SPECIALIZATIONS: Dict[str, str] = {
    "general": "You are a general personal assistant. Keep answers short and concrete.",
    "shopping": (
        "You are a shopping assistant. Prefer the shopping_list table, group items by category "
        "and mention quantities when they are greater than one."
    ),
    "planner": (
        "You are a planning assistant. Prefer the todo_list table, order tasks by due date and "
        "call out anything overdue."
    ),
}


def _decode_row(row: sqlite3.Row) -> Dict[str, Any]:
    record = dict(row)
    for key in JSON_COLUMNS.intersection(record):
        value = record[key]
        if isinstance(value, str):
            try:
                record[key] = json.loads(value)
            except json.JSONDecodeError:
                logger.warning("Column '%s' holds invalid JSON, returning raw text", key)
    return record


class TableStore:
    """
    SQLite-backed table store.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def _connect(self) -> sqlite3.Connection:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.path))
        conn.row_factory = sqlite3.Row
        return conn

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    def init_schema(self) -> None:
        """Create the built-in tables and seed the default specializations."""
        conn = self._connect()
        try:
            conn.executescript(_SCHEMA)
            conn.executemany(
                "INSERT OR IGNORE INTO specializations (name, instructions) VALUES (?, ?)",
                DEFAULT_SPECIALIZATIONS.items(),
            )
            conn.commit()
        finally:
            conn.close()
        logger.info("Table store ready at %s", self.path)

    def execute(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        """Run one statement and return its rows (``RETURNING`` rows for writes)."""
        logger.debug("SQL: %s | params=%s", sql, params)
        conn = self._connect()
        try:
            cur = conn.execute(sql, list(params))
            rows = [_decode_row(row) for row in cur.fetchall()]
            conn.commit()
            return rows
        except sqlite3.Error as exc:
            conn.rollback()
            logger.error("Store rejected statement: %s", exc)
            raise StoreError(str(exc)) from exc
        finally:
            conn.close()

    def tables(self) -> List[str]:
        """Return the user-visible table names."""
        rows = self.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%' "
            "ORDER BY name"
        )
        return [row["name"] for row in rows]
