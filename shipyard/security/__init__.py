"""Credential brokering for shipyard rollouts."""

from .audit import AuditLog, InMemoryAuditLog
from .broker import CredentialBroker, build_broker
from .context import AuditOutcome, AuditRecord, Credential, CredentialSubject
from .jws import CredentialSigner
from .keys import KeyProvider, StaticKeyProvider, generate_signing_key
from .policy import PolicyEngine, ScopePolicy
from .tokens import JwksTrustAnchor, RunIdentityProvider, StaticTrustAnchor, TrustAnchor

__all__ = [
    "AuditLog",
    "AuditOutcome",
    "AuditRecord",
    "Credential",
    "CredentialBroker",
    "CredentialSigner",
    "CredentialSubject",
    "InMemoryAuditLog",
    "JwksTrustAnchor",
    "KeyProvider",
    "PolicyEngine",
    "RunIdentityProvider",
    "ScopePolicy",
    "StaticKeyProvider",
    "StaticTrustAnchor",
    "TrustAnchor",
    "build_broker",
    "generate_signing_key",
]
