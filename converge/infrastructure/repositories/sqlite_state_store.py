"""
SQLite State Store

Architectural Intent:
- Persistent StateRecord backend using SQLite (stdlib, zero external deps)
- One row per node keyed by node id, plus the create order and serial
- Run history (`runs`) for plan/apply/destroy/pipeline runs
- Uses WAL mode so the status server can read while a run writes

Design Decisions:
- Single database file at configurable path (default: converge.db)
- Auto-creates tables on first use
- A save replaces all node rows in one transaction; the serial is bumped
  on every save
- Timestamps stored as ISO 8601 strings
"""

from __future__ import annotations
import json
import logging
import sqlite3
from datetime import datetime, UTC
from typing import Any, Optional

from converge.domain.entities.resource_node import NodeStatus
from converge.domain.entities.state_record import NodeState, StateRecord

logger = logging.getLogger(__name__)


class SQLiteStateStore:
    """StateStorePort implementation on SQLite."""

    def __init__(self, db_path: str = "converge.db"):
        self._db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None

    def connect(self) -> None:
        """Open database connection and create tables."""
        self._conn = sqlite3.connect(
            self._db_path,
            check_same_thread=False,
        )
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.row_factory = sqlite3.Row
        self._create_tables()
        logger.info("SQLite state store connected: %s", self._db_path)

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def _create_tables(self) -> None:
        """Create tables if they don't exist."""
        assert self._conn is not None
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS nodes (
                node_id TEXT PRIMARY KEY,
                type TEXT NOT NULL,
                status TEXT NOT NULL,
                attributes TEXT NOT NULL DEFAULT '{}',
                remote_attributes TEXT NOT NULL DEFAULT '{}',
                dependencies TEXT NOT NULL DEFAULT '[]',
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS meta (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS runs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                command TEXT NOT NULL,
                started_at TEXT NOT NULL,
                finished_at TEXT NOT NULL,
                outcome TEXT NOT NULL,
                counts TEXT DEFAULT '{}',
                details TEXT DEFAULT ''
            );

            CREATE INDEX IF NOT EXISTS idx_runs_started ON runs(started_at);
        """)

    def _ensure(self) -> sqlite3.Connection:
        if self._conn is None:
            self.connect()
        assert self._conn is not None
        return self._conn

    # -- State ---------------------------------------------------------------

    def load(self) -> StateRecord:
        conn = self._ensure()
        nodes = {}
        for row in conn.execute("SELECT * FROM nodes ORDER BY node_id").fetchall():
            nodes[row["node_id"]] = NodeState(
                node_id=row["node_id"],
                type=row["type"],
                status=NodeStatus[row["status"]],
                attributes=json.loads(row["attributes"]),
                remote_attributes=json.loads(row["remote_attributes"]),
                dependencies=tuple(json.loads(row["dependencies"])),
            )
        meta = {
            row["key"]: row["value"]
            for row in conn.execute("SELECT key, value FROM meta").fetchall()
        }
        return StateRecord(
            nodes=nodes,
            create_order=tuple(
                tuple(batch) for batch in json.loads(meta.get("create_order", "[]"))
            ),
            serial=int(meta.get("serial", "0")),
        )

    def save(self, record: StateRecord) -> StateRecord:
        conn = self._ensure()
        now = datetime.now(UTC).isoformat()
        current = conn.execute("SELECT value FROM meta WHERE key = 'serial'").fetchone()
        serial = max(int(current["value"]) if current else 0, record.serial) + 1
        with conn:
            conn.execute("DELETE FROM nodes")
            conn.executemany(
                """INSERT INTO nodes
                   (node_id, type, status, attributes, remote_attributes, dependencies, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                [
                    (
                        n.node_id,
                        n.type,
                        n.status.name,
                        json.dumps(dict(n.attributes), sort_keys=True),
                        json.dumps(dict(n.remote_attributes), sort_keys=True),
                        json.dumps(list(n.dependencies)),
                        now,
                    )
                    for n in record.nodes.values()
                ],
            )
            conn.executemany(
                "INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)",
                [
                    ("serial", str(serial)),
                    ("create_order", json.dumps([list(b) for b in record.create_order])),
                    ("updated_at", now),
                ],
            )
        logger.debug("Saved state serial %d (%d node(s))", serial, len(record.nodes))
        return StateRecord(
            nodes=dict(record.nodes), create_order=record.create_order, serial=serial
        )

    # -- Runs ----------------------------------------------------------------

    def record_run(
        self,
        command: str,
        started_at: str,
        outcome: str,
        counts: Optional[dict[str, int]] = None,
        details: str = "",
    ) -> int:
        """Record a finished run. Returns the run ID."""
        conn = self._ensure()
        cursor = conn.execute(
            """INSERT INTO runs
               (command, started_at, finished_at, outcome, counts, details)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                command,
                started_at,
                datetime.now(UTC).isoformat(),
                outcome,
                json.dumps(counts or {}, sort_keys=True),
                details,
            ),
        )
        conn.commit()
        return cursor.lastrowid

    def list_runs(self, limit: int = 50) -> list[dict[str, Any]]:
        """Get run history, newest first."""
        conn = self._ensure()
        rows = conn.execute(
            "SELECT * FROM runs ORDER BY id DESC LIMIT ?",
            (limit,),
        ).fetchall()
        runs = []
        for row in rows:
            run = dict(row)
            run["counts"] = json.loads(run["counts"] or "{}")
            runs.append(run)
        return runs
