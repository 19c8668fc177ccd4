"""Append-only audit trail of credential issuance decisions."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Protocol

from .context import AuditOutcome, AuditRecord, CredentialSubject

logger = logging.getLogger(__name__)


class AuditLog(Protocol):
    """Protocol for audit backends. Records are never updated or removed."""

    async def record(
        self,
        subject: CredentialSubject,
        outcome: AuditOutcome,
        requested_scope: Iterable[str] = (),
        scope_granted: Iterable[str] = (),
        reason: Optional[str] = None,
    ) -> AuditRecord:
        """Append one record and return it."""

    async def records(self, subject: Optional[CredentialSubject] = None) -> List[AuditRecord]:
        """Return records in append order, optionally for one subject."""


class InMemoryAuditLog:
    """Audit log kept in process memory.

    Sequence numbers and timestamps are assigned while holding the append lock,
    so records for any one subject are stored in chronological order.
    """

    def __init__(self) -> None:
        self._records: List[AuditRecord] = []
        self._lock = asyncio.Lock()

    async def record(
        self,
        subject: CredentialSubject,
        outcome: AuditOutcome,
        requested_scope: Iterable[str] = (),
        scope_granted: Iterable[str] = (),
        reason: Optional[str] = None,
    ) -> AuditRecord:
        async with self._lock:
            entry = AuditRecord(
                sequence=len(self._records) + 1,
                subject=subject,
                requested_scope=frozenset(requested_scope),
                scope_granted=frozenset(scope_granted),
                outcome=outcome,
                reason=reason,
                timestamp=datetime.now(timezone.utc),
            )
            self._records.append(entry)
        logger.info(
            f"audit #{entry.sequence} subject={subject} outcome={outcome.value} "
            f"scope={sorted(entry.scope_granted)} reason={reason}"
        )
        return entry

    async def records(self, subject: Optional[CredentialSubject] = None) -> List[AuditRecord]:
        async with self._lock:
            return [r for r in self._records if subject is None or r.subject == subject]
