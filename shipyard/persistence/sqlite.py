"""SQLite implementation of the run repository."""

from __future__ import annotations

import asyncio
import sqlite3
from pathlib import Path
from typing import Any, Optional

from ..contracts import PipelineRun
from .repository import RunRepository


class SQLiteRunRepository(RunRepository):
    """Persist runs using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
                run_id TEXT PRIMARY KEY,
                source_ref TEXT NOT NULL,
                concurrency_group TEXT NOT NULL,
                status TEXT NOT NULL,
                reason_code TEXT,
                failed_stage TEXT,
                started_at TEXT NOT NULL,
                finished_at TEXT,
                document TEXT NOT NULL
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS runs_group_idx ON runs (concurrency_group)"
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        self._conn.commit()

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    # ------------------------------------------------------------------
    # Repository API
    async def save_run(self, run: PipelineRun) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT OR REPLACE INTO runs (
                run_id, source_ref, concurrency_group, status, reason_code,
                failed_stage, started_at, finished_at, document
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            run.run_id,
            run.source_ref,
            run.concurrency_group,
            run.status.value,
            run.reason_code.value if run.reason_code else None,
            run.failed_stage,
            run.started_at.isoformat(),
            run.finished_at.isoformat() if run.finished_at else None,
            run.model_dump_json(),
        )

    async def get_run(self, run_id: str) -> PipelineRun | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT document FROM runs WHERE run_id = ?", run_id
        )
        if not row:
            return None
        return PipelineRun.model_validate_json(row["document"])

    async def list_runs(self, concurrency_group: Optional[str] = None) -> list[PipelineRun]:
        if concurrency_group is None:
            rows = await asyncio.to_thread(
                self._fetchall, "SELECT document FROM runs ORDER BY started_at"
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT document FROM runs WHERE concurrency_group = ? ORDER BY started_at",
                concurrency_group,
            )
        return [PipelineRun.model_validate_json(row["document"]) for row in rows]
