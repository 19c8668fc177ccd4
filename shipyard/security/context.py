"""Security models for credential issuance."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field


class CredentialSubject(BaseModel):
    """The run and environment a credential is issued for."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    environment: str

    def __str__(self) -> str:
        return f"{self.run_id}:{self.environment}"


class Credential(BaseModel):
    """Short-lived, scoped authorization for one run in one environment.

    Credentials live only in process memory. The signed ``token`` is excluded
    from ``repr`` so a credential can never leak through a log line.
    """

    model_config = ConfigDict(frozen=True)

    subject: CredentialSubject
    scope: FrozenSet[str]
    issued_at: datetime
    expires_at: datetime
    token: str = Field(repr=False, description="Compact JWS signed by the broker")

    @property
    def lifetime_seconds(self) -> float:
        return (self.expires_at - self.issued_at).total_seconds()


class AuditOutcome(str, Enum):
    GRANTED = "granted"
    DENIED = "denied"


class AuditRecord(BaseModel):
    """One immutable entry in the issuance audit trail."""

    model_config = ConfigDict(frozen=True)

    sequence: int
    subject: CredentialSubject
    requested_scope: FrozenSet[str] = frozenset()
    scope_granted: FrozenSet[str] = frozenset()
    outcome: AuditOutcome
    reason: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
