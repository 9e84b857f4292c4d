"""SQLite persistence: the namespaced key-value table behind session storage
and the local log of submitted quiz results."""

import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Generator, Iterable, List, Optional

logger = logging.getLogger(__name__)

DB_PATH = os.getenv("DB_PATH", "data.db")


@contextmanager
def _conn() -> Generator[sqlite3.Connection, None, None]:
    """Open a connection to the current ``DB_PATH`` and close it afterwards."""
    con = sqlite3.connect(DB_PATH)
    con.row_factory = sqlite3.Row
    try:
        yield con
    finally:
        con.close()


def _exec(sql: str, params: Iterable = ()) -> int:
    with _conn() as con:
        cur = con.execute(sql, tuple(params))
        con.commit()
        return cur.rowcount


def _query(sql: str, params: Iterable = ()) -> List[sqlite3.Row]:
    with _conn() as con:
        cur = con.execute(sql, tuple(params))
        return cur.fetchall()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def init() -> None:
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    with _conn() as con:
        con.executescript(
            """
            PRAGMA journal_mode=WAL;

            CREATE TABLE IF NOT EXISTS kv_entries (
              namespace   TEXT NOT NULL,
              key         TEXT NOT NULL,
              value       TEXT NOT NULL,
              updated_at  TEXT NOT NULL,
              PRIMARY KEY (namespace, key)
            );

            CREATE TABLE IF NOT EXISTS quiz_results (
              id          INTEGER PRIMARY KEY AUTOINCREMENT,
              student_id  TEXT,
              topic       TEXT NOT NULL,
              score       INTEGER NOT NULL,
              timestamp   TEXT NOT NULL,
              created_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_quiz_results_student
              ON quiz_results(student_id, topic);
            """
        )
        con.commit()
    logger.debug("Database initialised at %s", DB_PATH)


# ---------------------------------------------------------------------------
# Key-value entries
# ---------------------------------------------------------------------------

def kv_get(namespace: str, key: str) -> Optional[str]:
    rows = _query(
        "SELECT value FROM kv_entries WHERE namespace = ? AND key = ?",
        (namespace, key),
    )
    if not rows:
        return None
    return rows[0]["value"]


def kv_set(namespace: str, key: str, value: str) -> None:
    _exec(
        """
        INSERT INTO kv_entries (namespace, key, value, updated_at)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(namespace, key) DO UPDATE SET
          value = excluded.value,
          updated_at = excluded.updated_at
        """,
        (namespace, key, value, _now()),
    )


def kv_delete(namespace: str, key: str) -> None:
    _exec("DELETE FROM kv_entries WHERE namespace = ? AND key = ?", (namespace, key))


def kv_keys(namespace: str) -> List[str]:
    rows = _query(
        "SELECT key FROM kv_entries WHERE namespace = ? ORDER BY key",
        (namespace,),
    )
    return [row["key"] for row in rows]


class SQLiteKeyValueStore:
    """Key-value collaborator over ``kv_entries`` scoped to one namespace."""

    def __init__(self, namespace: str) -> None:
        if not namespace:
            raise ValueError("namespace must be a non-empty string")
        self.namespace = namespace

    def get(self, key: str) -> Optional[str]:
        return kv_get(self.namespace, key)

    def set(self, key: str, value: str) -> None:
        kv_set(self.namespace, key, value)

    def delete(self, key: str) -> None:
        kv_delete(self.namespace, key)

    def keys(self) -> List[str]:
        return kv_keys(self.namespace)


# ---------------------------------------------------------------------------
# Quiz results
# ---------------------------------------------------------------------------

def record_quiz_result(
    student_id: Optional[str],
    topic: str,
    score: int,
    timestamp: str,
) -> None:
    """Append one completed quiz to ``quiz_results``."""
    _exec(
        "INSERT INTO quiz_results (student_id, topic, score, timestamp) VALUES (?, ?, ?, ?)",
        (student_id, topic, int(score), timestamp),
    )


def list_quiz_results(
    student_id: Optional[str] = None,
    *,
    topic: Optional[str] = None,
    limit: int = 100,
) -> List[Dict[str, Any]]:
    clauses = []
    params: List[Any] = []
    if student_id is not None:
        clauses.append("student_id = ?")
        params.append(student_id)
    if topic is not None:
        clauses.append("topic = ?")
        params.append(topic)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    params.append(int(limit))
    rows = _query(
        f"""
        SELECT student_id, topic, score, timestamp
        FROM quiz_results
        {where}
        ORDER BY id DESC
        LIMIT ?
        """,
        params,
    )
    return [dict(row) for row in rows]
