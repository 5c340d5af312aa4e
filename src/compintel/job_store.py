"""Durable mirror of workflow job status backed by SQLite."""

from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path
from typing import TYPE_CHECKING, Any, List

if TYPE_CHECKING:
    from .jobs import WorkflowJob

logger = logging.getLogger(__name__)


class JobStatusRepository:
    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    @property
    def path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS job_status (
                    workflow_id TEXT PRIMARY KEY,
                    status TEXT NOT NULL,
                    progress REAL NOT NULL DEFAULT 0,
                    result TEXT,
                    error TEXT,
                    metadata TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )

    def upsert(self, job: "WorkflowJob") -> None:
        """Insert or update the job row; ``created_at`` is written only once.

        Rows are only overwritten by records at least as new as the stored one,
        so out-of-order mirror writes cannot roll a job back.
        """

        record = job.to_dict()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO job_status (
                    workflow_id, status, progress, result, error, metadata, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(workflow_id) DO UPDATE SET
                    status = excluded.status,
                    progress = excluded.progress,
                    result = excluded.result,
                    error = excluded.error,
                    metadata = excluded.metadata,
                    updated_at = excluded.updated_at
                WHERE excluded.updated_at >= job_status.updated_at
                """,
                (
                    record["workflow_id"],
                    record["status"],
                    record["progress"],
                    json.dumps(record["result"]) if record["result"] is not None else None,
                    record["error"],
                    json.dumps(record["metadata"] or {}),
                    record["created_at"],
                    record["updated_at"],
                ),
            )

    def get(self, workflow_id: str) -> dict[str, Any] | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM job_status WHERE workflow_id = ?",
                (workflow_id,),
            ).fetchone()
        return self._row_to_dict(row) if row is not None else None

    def list_recent(self, limit: int = 50) -> List[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM job_status ORDER BY updated_at DESC LIMIT ?",
                (max(1, limit),),
            ).fetchall()
        return [self._row_to_dict(row) for row in rows]

    @staticmethod
    def _row_to_dict(row: sqlite3.Row) -> dict[str, Any]:
        result = row["result"]
        return {
            "workflow_id": row["workflow_id"],
            "status": row["status"],
            "progress": row["progress"],
            "result": json.loads(result) if result is not None else None,
            "error": row["error"],
            "metadata": json.loads(row["metadata"] or "{}"),
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }


__all__ = ["JobStatusRepository"]
