"""PostgreSQL implementation of the run repository."""

from __future__ import annotations

from typing import Optional

import asyncpg

from ..contracts import PipelineRun
from .repository import RunRepository


class PostgresRunRepository(RunRepository):
    """Persist runs using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
                run_id TEXT PRIMARY KEY,
                source_ref TEXT NOT NULL,
                concurrency_group TEXT NOT NULL,
                status TEXT NOT NULL,
                reason_code TEXT,
                failed_stage TEXT,
                started_at TIMESTAMPTZ NOT NULL,
                finished_at TIMESTAMPTZ,
                document JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS runs_group_idx ON runs (concurrency_group)"
        )

    # ------------------------------------------------------------------
    async def save_run(self, run: PipelineRun) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO runs (
                    run_id, source_ref, concurrency_group, status, reason_code,
                    failed_stage, started_at, finished_at, document
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                ON CONFLICT (run_id) DO UPDATE SET
                    status = EXCLUDED.status,
                    reason_code = EXCLUDED.reason_code,
                    failed_stage = EXCLUDED.failed_stage,
                    finished_at = EXCLUDED.finished_at,
                    document = EXCLUDED.document
                """,
                run.run_id,
                run.source_ref,
                run.concurrency_group,
                run.status.value,
                run.reason_code.value if run.reason_code else None,
                run.failed_stage,
                run.started_at,
                run.finished_at,
                run.model_dump_json(),
            )
        finally:
            await conn.close()

    async def get_run(self, run_id: str) -> PipelineRun | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT document FROM runs WHERE run_id = $1", run_id
            )
        finally:
            await conn.close()
        if not row:
            return None
        return PipelineRun.model_validate_json(row["document"])

    async def list_runs(self, concurrency_group: Optional[str] = None) -> list[PipelineRun]:
        conn = await self._connect()
        try:
            if concurrency_group is None:
                rows = await conn.fetch("SELECT document FROM runs ORDER BY started_at")
            else:
                rows = await conn.fetch(
                    "SELECT document FROM runs WHERE concurrency_group = $1 ORDER BY started_at",
                    concurrency_group,
                )
        finally:
            await conn.close()
        return [PipelineRun.model_validate_json(r["document"]) for r in rows]
