from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


class AuditEntry(SQLModel, table=True):
    """One credential issuance decision. Rows are inserted, never updated."""

    id: Optional[int] = Field(default=None, primary_key=True)
    run_id: str = Field(index=True)
    environment: str = Field(index=True)
    requested_scope: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    scope_granted: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    outcome: str
    reason: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
