"""SQLite storage for usage history.

Every ledger entry can be persisted here so spend survives restarts and can
be browsed per model. Uses Python's built-in sqlite3.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any

import config
from schemas.usage import UsageEntry

logger = logging.getLogger(__name__)

DB_PATH: Path = config.DB_PATH

# Thread-local connections (sqlite3 objects can't be shared across threads)
_local = threading.local()
_all_conns: list[sqlite3.Connection] = []
_conns_lock = threading.Lock()


def _get_conn() -> sqlite3.Connection:
    """Get a thread-local SQLite connection."""
    conn = getattr(_local, "conn", None)
    if conn is None or getattr(_local, "db_path", None) != str(DB_PATH):
        Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(DB_PATH), check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        _local.conn = conn
        _local.db_path = str(DB_PATH)
        with _conns_lock:
            _all_conns.append(conn)
    return conn


def reset_storage_connection_for_tests():
    """Close every cached connection so DB_PATH can be repointed."""
    with _conns_lock:
        conns = list(_all_conns)
        _all_conns.clear()
    for conn in conns:
        try:
            conn.close()
        except sqlite3.Error:
            pass
    _local.conn = None
    _local.db_path = None


def init_db():
    """Create tables if they don't exist. Call once at startup."""
    conn = _get_conn()
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS usage_entries (
            id              INTEGER PRIMARY KEY AUTOINCREMENT,
            created_at      TEXT    NOT NULL DEFAULT (datetime('now', 'localtime')),
            timestamp       REAL    NOT NULL,
            provider        TEXT    NOT NULL,
            model           TEXT    NOT NULL,
            kind            TEXT    NOT NULL DEFAULT 'text',
            usage_json      TEXT    NOT NULL DEFAULT '{}',
            cost            REAL    NOT NULL DEFAULT 0,
            saved           REAL    NOT NULL DEFAULT 0,
            cached          INTEGER NOT NULL DEFAULT 0,
            metadata_json   TEXT    NOT NULL DEFAULT '{}'
        );

        CREATE INDEX IF NOT EXISTS idx_usage_entries_model
            ON usage_entries(model);
    """)
    conn.commit()
    logger.info("SQLite database initialized: %s", DB_PATH)


def save_usage_entry(entry: UsageEntry) -> int:
    """Persist one ledger entry. Returns the row id."""
    conn = _get_conn()
    cur = conn.execute(
        """
        INSERT INTO usage_entries (timestamp, provider, model, kind, usage_json, cost, saved, cached, metadata_json)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            entry.timestamp,
            entry.provider,
            entry.model,
            entry.kind.value,
            entry.usage.model_dump_json(),
            entry.cost,
            entry.saved,
            1 if entry.cached else 0,
            json.dumps(entry.metadata, default=str),
        ),
    )
    conn.commit()
    return cur.lastrowid


def list_usage_entries(limit: int = 100, model: str | None = None) -> list[dict[str, Any]]:
    """List recent entries, newest first, optionally for one model."""
    conn = _get_conn()
    if model:
        rows = conn.execute(
            "SELECT * FROM usage_entries WHERE model=? ORDER BY id DESC LIMIT ?",
            (model, limit),
        ).fetchall()
    else:
        rows = conn.execute(
            "SELECT * FROM usage_entries ORDER BY id DESC LIMIT ?",
            (limit,),
        ).fetchall()

    results = []
    for row in rows:
        usage = {}
        metadata = {}
        try:
            usage = json.loads(row["usage_json"])
            metadata = json.loads(row["metadata_json"])
        except json.JSONDecodeError:
            logger.warning("Corrupt JSON in usage entry #%d", row["id"])
        results.append({
            "id": row["id"],
            "created_at": row["created_at"],
            "timestamp": row["timestamp"],
            "provider": row["provider"],
            "model": row["model"],
            "kind": row["kind"],
            "usage": usage,
            "cost": row["cost"],
            "saved": row["saved"],
            "cached": bool(row["cached"]),
            "metadata": metadata,
        })
    return results


def usage_totals() -> dict[str, Any]:
    """Aggregate persisted spend, overall and per model."""
    conn = _get_conn()
    rows = conn.execute(
        """
        SELECT model, COUNT(*) AS calls, SUM(cached) AS cache_hits,
               COALESCE(SUM(cost), 0) AS cost, COALESCE(SUM(saved), 0) AS saved
        FROM usage_entries
        GROUP BY model
        ORDER BY cost DESC
        """
    ).fetchall()
    by_model = {
        r["model"]: {
            "calls": r["calls"],
            "cache_hits": r["cache_hits"] or 0,
            "cost": round(r["cost"], 4),
            "saved": round(r["saved"], 4),
        }
        for r in rows
    }
    return {
        "calls": sum(m["calls"] for m in by_model.values()),
        "total_cost": round(sum(r["cost"] for r in rows), 4),
        "total_saved": round(sum(r["saved"] for r in rows), 4),
        "by_model": by_model,
    }


def clear_usage() -> int:
    """Delete all persisted entries. Returns how many were removed."""
    conn = _get_conn()
    cur = conn.execute("DELETE FROM usage_entries")
    conn.commit()
    return cur.rowcount


def ping() -> dict[str, Any]:
    """Cheap liveness probe for health checks."""
    conn = _get_conn()
    conn.execute("SELECT 1").fetchone()
    return {"db_path": str(DB_PATH)}
