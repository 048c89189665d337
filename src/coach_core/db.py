from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from loguru import logger

from .errors import PersistenceError
from .settings import settings


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS session_records (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session TEXT NOT NULL,
    kind TEXT NOT NULL,
    payload_json TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS pattern_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session TEXT NOT NULL,
    kind TEXT NOT NULL,
    payload_json TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS outcome_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session TEXT NOT NULL,
    kind TEXT NOT NULL,
    payload_json TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS rule_adaptations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session TEXT NOT NULL,
    kind TEXT NOT NULL,
    payload_json TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS system_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session TEXT NOT NULL,
    kind TEXT NOT NULL,
    payload_json TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_session_records_lookup ON session_records(session, kind, id);
CREATE INDEX IF NOT EXISTS idx_outcome_log_lookup ON outcome_log(session, kind, id);
"""

# Record kinds routed to each table; anything else lands in system_events.
TABLE_BY_KIND = {
    "session_state": "session_records",
    "player_profile": "session_records",
    "pattern": "pattern_log",
    "outcome": "outcome_log",
    "execution": "outcome_log",
    "rule_adaptation": "rule_adaptations",
}


@dataclass
class StoreRecord:
    kind: str
    payload: dict
    session: str = ""
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


@dataclass
class StoreQuery:
    kind: str
    session: str | None = None
    since: str | None = None
    limit: int = 100
    newest_first: bool = True


def get_connection(db_path: Path | None = None) -> sqlite3.Connection:
    path = Path(db_path or settings.db_path)
    if str(path) != ":memory:":
        path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def initialize_database(db_path: Path | None = None) -> None:
    with get_connection(db_path) as conn:
        conn.executescript(SCHEMA_SQL)
        conn.commit()


class SqliteStore:
    """Durable store for session state, patterns, outcomes and rule adaptations."""

    def __init__(self, db_path: Path | None = None, session: str | None = None) -> None:
        self.db_path = Path(db_path or settings.db_path)
        self.session = session or settings.session_name
        self._initialized = False

    def _ensure_schema(self) -> None:
        if self._initialized:
            return
        initialize_database(self.db_path)
        self._initialized = True

    def write(self, record: StoreRecord, replace: bool = False) -> int:
        """Insert a record; with ``replace`` the session's earlier records of that kind are dropped first."""
        table = TABLE_BY_KIND.get(record.kind, "system_events")
        session = record.session or self.session
        try:
            self._ensure_schema()
            with get_connection(self.db_path) as conn:
                if replace:
                    conn.execute(f"DELETE FROM {table} WHERE session = ? AND kind = ?", (session, record.kind))
                cursor = conn.execute(
                    f"INSERT INTO {table} (session, kind, payload_json, created_at) VALUES (?, ?, ?, ?)",
                    (
                        session,
                        record.kind,
                        json.dumps(record.payload, default=str),
                        record.created_at,
                    ),
                )
                conn.commit()
                return int(cursor.lastrowid or 0)
        except (sqlite3.Error, OSError, TypeError, ValueError) as exc:
            raise PersistenceError(f"Failed to write {record.kind} record: {exc}") from exc

    def query(self, query: StoreQuery) -> list[StoreRecord]:
        table = TABLE_BY_KIND.get(query.kind, "system_events")
        clauses = ["kind = ?", "session = ?"]
        params: list = [query.kind, query.session or self.session]
        if query.since:
            clauses.append("created_at > ?")
            params.append(query.since)
        order = "DESC" if query.newest_first else "ASC"
        params.append(max(1, query.limit))

        try:
            self._ensure_schema()
            with get_connection(self.db_path) as conn:
                rows = conn.execute(
                    f"""
                    SELECT session, kind, payload_json, created_at
                    FROM {table}
                    WHERE {' AND '.join(clauses)}
                    ORDER BY id {order}
                    LIMIT ?
                    """,
                    params,
                ).fetchall()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to query {query.kind} records: {exc}") from exc

        records: list[StoreRecord] = []
        for row in rows:
            try:
                payload = json.loads(str(row["payload_json"] or "{}"))
            except json.JSONDecodeError:
                logger.warning("Skipping unreadable {} record from {}", query.kind, row["created_at"])
                continue
            records.append(
                StoreRecord(
                    kind=str(row["kind"]),
                    payload=payload,
                    session=str(row["session"]),
                    created_at=str(row["created_at"]),
                )
            )
        return records

    def write_best_effort(self, record: StoreRecord) -> bool:
        try:
            self.write(record)
            return True
        except PersistenceError as exc:
            logger.warning("Best-effort store write skipped: {}", exc)
            return False
