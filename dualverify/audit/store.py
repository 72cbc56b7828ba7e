"""Audit store contract and the in-process implementation."""

from abc import ABC, abstractmethod
from collections import Counter
from collections.abc import Iterable
from datetime import datetime

from .entry import AuditEntry, AuditQuery


def summarize(entries: Iterable[AuditEntry]) -> dict:
    """Aggregate statistics over a set of audit entries."""
    total = 0
    by_outcome: Counter = Counter()
    by_service: Counter = Counter()
    issue_categories: Counter = Counter()
    requests = set()
    scores = []
    latencies = []
    for entry in entries:
        total += 1
        by_outcome[entry.outcome.value] += 1
        by_service[entry.service_name] += 1
        requests.add(entry.request_id)
        latencies.append(entry.latency_ms)
        if entry.overall_score is not None:
            scores.append(entry.overall_score)
        issue_categories.update(entry.issue_categories)

    return {
        "total_attempts": total,
        "total_requests": len(requests),
        "by_outcome": dict(by_outcome),
        "by_service": dict(by_service),
        "average_score": round(sum(scores) / len(scores), 2) if scores else None,
        "average_latency_ms": round(sum(latencies) / len(latencies), 1) if latencies else None,
        "issue_categories": dict(issue_categories),
    }


class AuditStore(ABC):
    """Durable backing store for the audit log."""

    async def init(self) -> None:
        """Prepare the store (create tables, open connections)."""

    async def close(self) -> None:
        """Release resources."""

    @abstractmethod
    async def write_batch(self, entries: list[AuditEntry]) -> int:
        """Persist entries atomically; raise on failure."""

    @abstractmethod
    async def query(self, query: AuditQuery) -> list[AuditEntry]:
        """Matching entries, oldest first, limited to the most recent ``limit``."""

    @abstractmethod
    async def purge_before(self, cutoff: datetime) -> int:
        """Delete entries completed before ``cutoff``. Returns count removed."""

    @abstractmethod
    async def stats(self) -> dict:
        """Aggregate statistics (see ``summarize``)."""


class InMemoryAuditStore(AuditStore):
    """Keeps entries in a list; used in tests and when no database is configured."""

    def __init__(self):
        self._entries: list[AuditEntry] = []

    async def write_batch(self, entries: list[AuditEntry]) -> int:
        self._entries.extend(entries)
        return len(entries)

    async def query(self, query: AuditQuery) -> list[AuditEntry]:
        matched = [e for e in self._entries if query.matches(e)]
        if query.limit is not None:
            matched = matched[-query.limit:] if query.limit > 0 else []
        return matched

    async def purge_before(self, cutoff: datetime) -> int:
        before = len(self._entries)
        self._entries = [e for e in self._entries if e.completed_at >= cutoff]
        return before - len(self._entries)

    async def stats(self) -> dict:
        return summarize(self._entries)

    def __len__(self) -> int:
        return len(self._entries)
