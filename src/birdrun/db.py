# Copyright (c) Syntropy Systems
"""SQLite work-item state table with WAL mode.

The table records what the scheduler did to each work item. It is a log,
not an authority: an artifact on disk means "done" whatever the table says.
"""

import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from birdrun.models.work import WorkItem, WorkItemRecord

# SQL schema for the birdrun state database
SCHEMA = """
CREATE TABLE IF NOT EXISTS work_items (
    key TEXT PRIMARY KEY,        -- e.g. train:first:3, evaluate:second:2:1
    stage TEXT NOT NULL,         -- first, second
    operation TEXT NOT NULL,     -- train, evaluate
    model_index INTEGER NOT NULL,
    fold_index INTEGER,
    artifact TEXT NOT NULL,      -- Absolute artifact path

    status TEXT NOT NULL,        -- running, done, failed, skipped
    attempt INTEGER DEFAULT 0,
    exit_code INTEGER,
    error_message TEXT,
    log_path TEXT,

    started_at TEXT,
    finished_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_work_items_status ON work_items(status);
"""


def get_connection(db_path: Path) -> sqlite3.Connection:
    """
    Get a database connection with proper settings for concurrent access.

    - isolation_level=None for explicit transaction control
    - WAL mode for concurrent readers/writers
    - busy_timeout to wait for locks instead of failing immediately
    - Row factory for dict-like access
    """
    conn = sqlite3.connect(str(db_path), timeout=5.0, isolation_level=None)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: Path) -> None:
    """Initialize the database with the schema."""
    conn = get_connection(db_path)
    try:
        conn.executescript(SCHEMA)
    finally:
        conn.close()


def utcnow() -> str:
    """Get current UTC time as ISO format string."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _upsert(
    conn: sqlite3.Connection,
    item: WorkItem,
    artifact: Path,
    status: str,
    log_path: Optional[Path] = None,
) -> None:
    conn.execute(
        """
        INSERT INTO work_items
            (key, stage, operation, model_index, fold_index, artifact, status, log_path)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET
            artifact = excluded.artifact,
            status = excluded.status,
            log_path = COALESCE(excluded.log_path, work_items.log_path)
        """,
        (
            item.key,
            item.stage.value,
            item.operation.value,
            item.model_index,
            item.fold_index,
            str(artifact),
            status,
            str(log_path) if log_path is not None else None,
        ),
    )


def mark_running(
    conn: sqlite3.Connection,
    item: WorkItem,
    artifact: Path,
    log_path: Path,
) -> None:
    """Record that an item was dispatched, incrementing its attempt counter."""
    conn.execute("BEGIN IMMEDIATE")
    try:
        _upsert(conn, item, artifact, "running", log_path)
        conn.execute(
            """
            UPDATE work_items
            SET attempt = attempt + 1, started_at = ?, finished_at = NULL,
                exit_code = NULL, error_message = NULL
            WHERE key = ?
            """,
            (utcnow(), item.key),
        )
        conn.execute("COMMIT")
    except Exception:
        conn.execute("ROLLBACK")
        raise


def mark_skipped(conn: sqlite3.Connection, item: WorkItem, artifact: Path) -> None:
    """Record an item whose artifact already existed.

    Rows already marked done keep their history.
    """
    row = conn.execute(
        "SELECT status FROM work_items WHERE key = ?",
        (item.key,),
    ).fetchone()
    if row is not None and row["status"] == "done":
        return
    _upsert(conn, item, artifact, "skipped")


def complete_work_item(
    conn: sqlite3.Connection,
    item: WorkItem,
    exit_code: int,
    error_message: Optional[str] = None,
) -> None:
    """Mark an item as done or failed based on exit code."""
    status = "done" if exit_code == 0 else "failed"
    conn.execute(
        """
        UPDATE work_items
        SET status = ?, exit_code = ?, error_message = ?, finished_at = ?
        WHERE key = ?
        """,
        (status, exit_code, error_message, utcnow(), item.key),
    )


def get_work_item(conn: sqlite3.Connection, key: str) -> Optional[WorkItemRecord]:
    """Get a work item record by key."""
    row = conn.execute(
        "SELECT * FROM work_items WHERE key = ?",
        (key,),
    ).fetchone()

    if row is None:
        return None

    return WorkItemRecord.model_validate(dict(row))


def get_work_items(
    conn: sqlite3.Connection,
    stage: Optional[str] = None,
    status: Optional[str] = None,
) -> list[WorkItemRecord]:
    """Get work item records, optionally filtered."""
    query = "SELECT * FROM work_items WHERE 1=1"
    params: list[str] = []

    if stage:
        query += " AND stage = ?"
        params.append(stage)

    if status:
        query += " AND status = ?"
        params.append(status)

    query += " ORDER BY stage, model_index, fold_index, operation DESC"

    rows = conn.execute(query, params).fetchall()
    return [WorkItemRecord.model_validate(dict(row)) for row in rows]
