"""Base repository with SQL helpers.

Architecture::

    ┌──────────────────────────────────────────────────────────┐
    │                    BaseRepository                        │
    │                                                          │
    │   conn: sqlite3.Connection (row_factory = sqlite3.Row)   │
    │                                                          │
    │   execute(sql, params)     → cursor                      │
    │   query(sql, params)       → list[dict]                  │
    │   query_one(sql, params)   → dict | None                 │
    │   insert(table, data)      → cursor                      │
    └──────────────────────────────────────────────────────────┘

Usage:
    >>> class MyRepo(BaseRepository):
    ...     def get_by_id(self, id: str):
    ...         return self.query_one(f"SELECT * FROM my_table WHERE id = {self.ph(1)}", (id,))
"""

from __future__ import annotations

import sqlite3
from typing import Any


class BaseRepository:
    """SQL helper base for repositories over a DB-API connection."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def ph(self, count: int) -> str:
        """Placeholder list for *count* bound parameters."""
        return ", ".join("?" for _ in range(count))

    def execute(self, sql: str, params: tuple = ()) -> Any:
        return self.conn.execute(sql, params)

    def query(self, sql: str, params: tuple = ()) -> list[dict[str, Any]]:
        """Execute a SELECT and return rows as dicts."""
        cursor = self.conn.execute(sql, params)
        rows = cursor.fetchall()
        if not rows:
            return []
        try:
            return [dict(row) for row in rows]
        except (TypeError, ValueError):
            columns = [desc[0] for desc in cursor.description]
            return [dict(zip(columns, row, strict=False)) for row in rows]

    def query_one(self, sql: str, params: tuple = ()) -> dict[str, Any] | None:
        results = self.query(sql, params)
        return results[0] if results else None

    def insert(self, table: str, data: dict[str, Any]) -> Any:
        columns = list(data.keys())
        sql = f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({self.ph(len(columns))})"
        return self.conn.execute(sql, tuple(data.values()))

    def commit(self) -> None:
        self.conn.commit()


__all__ = ["BaseRepository"]
