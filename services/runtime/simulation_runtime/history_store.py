from __future__ import annotations

import sqlite3
import threading
from pathlib import Path

from .models import JobSummary
from .utils import ensure_dir


class HistoryStore:
    """Local sqlite copy of job summaries used to warm-start the history list.

    Only non-sensitive fields are stored; parameters and results never touch disk.
    """

    def __init__(self, db_path: Path):
        ensure_dir(db_path.parent)
        self._db_path = db_path
        self._lock = threading.Lock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS job_summaries (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    model_id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    status TEXT NOT NULL,
                    progress REAL NOT NULL,
                    created_at TEXT NOT NULL,
                    completed_at TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_job_summaries_created
                    ON job_summaries(created_at DESC);
                """
            )

    def upsert(self, summary: JobSummary) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO job_summaries(id, name, model_id, kind, status, progress, created_at, completed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    status = excluded.status,
                    progress = excluded.progress,
                    completed_at = excluded.completed_at
                """,
                (
                    summary.jobId,
                    summary.name,
                    summary.modelId,
                    summary.kind.value,
                    summary.status.value,
                    summary.progress,
                    summary.createdAt,
                    summary.completedAt,
                ),
            )

    def replace_all(self, summaries: list[JobSummary]) -> None:
        with self._lock, self._connect() as conn:
            conn.execute("DELETE FROM job_summaries")
            conn.executemany(
                """
                INSERT INTO job_summaries(id, name, model_id, kind, status, progress, created_at, completed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        summary.jobId,
                        summary.name,
                        summary.modelId,
                        summary.kind.value,
                        summary.status.value,
                        summary.progress,
                        summary.createdAt,
                        summary.completedAt,
                    )
                    for summary in summaries
                ],
            )

    def get(self, job_id: str) -> JobSummary | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM job_summaries WHERE id = ?", (job_id,)).fetchone()
        if row is None:
            return None
        return self._summary_from_row(row)

    def list_recent(self, limit: int = 100) -> list[JobSummary]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM job_summaries ORDER BY created_at DESC LIMIT ?", (limit,)
            ).fetchall()
        return [self._summary_from_row(row) for row in rows]

    def delete(self, job_id: str) -> None:
        with self._lock, self._connect() as conn:
            conn.execute("DELETE FROM job_summaries WHERE id = ?", (job_id,))

    def _summary_from_row(self, row: sqlite3.Row) -> JobSummary:
        return JobSummary.model_validate(
            {
                "jobId": row["id"],
                "name": row["name"],
                "modelId": row["model_id"],
                "kind": row["kind"],
                "status": row["status"],
                "progress": row["progress"],
                "createdAt": row["created_at"],
                "completedAt": row["completed_at"],
            }
        )
