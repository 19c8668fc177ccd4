from .audit_db import SQLAuditLog
from .models import AuditEntry

__all__ = [
    "AuditEntry",
    "SQLAuditLog",
]
