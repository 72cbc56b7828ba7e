"""Persistent storage backends."""

from .database import SQLiteAuditStore

__all__ = ["SQLiteAuditStore"]
