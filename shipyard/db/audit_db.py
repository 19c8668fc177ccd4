from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import NullPool
from sqlmodel import SQLModel

from ..security.context import AuditOutcome, AuditRecord, CredentialSubject
from .models import AuditEntry

logger = logging.getLogger(__name__)


class SQLAuditLog:
    """Audit log persisted through SQLModel.

    Inserts are serialized so row ids follow call order; the id doubles as the
    record's sequence number.
    """

    def __init__(self, database_url: str) -> None:
        engine_args = {}
        if database_url.startswith("sqlite"):
            # pooled aiosqlite connections would outlive short-lived event loops
            engine_args = {
                "connect_args": {"check_same_thread": False},
                "poolclass": NullPool,
            }
        self.engine = create_async_engine(database_url, echo=False, future=True, **engine_args)
        self._lock = asyncio.Lock()
        self._initialized = False

    async def close(self) -> None:
        await self.engine.dispose()

    async def init_db(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        self._initialized = True

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        if not self._initialized:
            await self.init_db()
        async with AsyncSession(self.engine) as session:
            yield session

    @staticmethod
    def _to_record(row: AuditEntry) -> AuditRecord:
        timestamp = row.timestamp
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        return AuditRecord(
            sequence=row.id,
            subject=CredentialSubject(run_id=row.run_id, environment=row.environment),
            requested_scope=frozenset(row.requested_scope or []),
            scope_granted=frozenset(row.scope_granted or []),
            outcome=AuditOutcome(row.outcome),
            reason=row.reason,
            timestamp=timestamp,
        )

    async def record(
        self,
        subject: CredentialSubject,
        outcome: AuditOutcome,
        requested_scope: Iterable[str] = (),
        scope_granted: Iterable[str] = (),
        reason: Optional[str] = None,
    ) -> AuditRecord:
        async with self._lock:
            row = AuditEntry(
                run_id=subject.run_id,
                environment=subject.environment,
                requested_scope=sorted(requested_scope),
                scope_granted=sorted(scope_granted),
                outcome=outcome.value,
                reason=reason,
                timestamp=datetime.now(timezone.utc),
            )
            async with self.session() as session:
                session.add(row)
                await session.commit()
                await session.refresh(row)
        logger.info(
            f"audit #{row.id} subject={subject} outcome={outcome.value} reason={reason}"
        )
        return self._to_record(row)

    async def records(self, subject: Optional[CredentialSubject] = None) -> List[AuditRecord]:
        stmt = select(AuditEntry).order_by(AuditEntry.id)
        if subject is not None:
            stmt = stmt.where(
                AuditEntry.run_id == subject.run_id,
                AuditEntry.environment == subject.environment,
            )
        async with self.session() as session:
            result = await session.execute(stmt)
            rows = result.scalars().all()
        return [self._to_record(row) for row in rows]
