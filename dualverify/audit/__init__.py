"""Audit trail for verification attempts."""

from .entry import AuditEntry, AuditOutcome, AuditQuery, new_entry
from .log import AuditLog
from .store import AuditStore, InMemoryAuditStore, summarize

__all__ = [
    "AuditEntry",
    "AuditOutcome",
    "AuditQuery",
    "new_entry",
    "AuditLog",
    "AuditStore",
    "InMemoryAuditStore",
    "summarize",
]
