"""Buffered, never-dropping audit log.

Entries go into a bounded queue and are written to the store in batches
by a background task. A failed batch is retried with backoff and, once
retries are exhausted, appended to a local JSONL fallback file and
reported through the alert callback.
"""

import asyncio
import inspect
import json
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from pathlib import Path

from ..config import AuditConfig
from ..logging_config import get_logger
from ..models.verification import utcnow
from .entry import AuditEntry, AuditOutcome, AuditQuery
from .store import AuditStore, InMemoryAuditStore

logger = get_logger(__name__)

AlertCallback = Callable[[str, list[AuditEntry]], Awaitable[None] | None]


class AuditLog:
    """Append-only record of every verification attempt.

    Features:
    - Bounded queue with backpressure: ``record`` waits briefly when full
    - Batched store writes (every ``batch_size`` entries or flush interval)
    - Retry with backoff, then JSONL fallback sink plus alert
    - Retention sweep on its own interval
    """

    def __init__(
        self,
        store: AuditStore | None = None,
        config: AuditConfig | None = None,
        sanitizer: Callable[[str], str] | None = None,
        alert_callback: AlertCallback | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the audit log.

        Args:
            store: Backing store (in-memory when omitted)
            config: Buffering, retry and retention settings
            sanitizer: PII redaction applied to excerpts before anything is queued
            alert_callback: Called with (message, entries) when a batch hits the fallback sink
            clock: Source of "now" for retention sweeps
        """
        # An empty store has len() == 0, so test against None explicitly
        self.store = store if store is not None else InMemoryAuditStore()
        self.config = config or AuditConfig()
        self._sanitize = sanitizer or (lambda text: text)
        self._alert = alert_callback
        self._clock = clock

        self._queue: asyncio.Queue[AuditEntry] = asyncio.Queue(maxsize=self.config.buffer_size)
        self._flush_lock = asyncio.Lock()
        self._batch_ready = asyncio.Event()
        self._flush_task: asyncio.Task | None = None
        self._sweep_task: asyncio.Task | None = None
        self._running = False

        self.fallback_count = 0
        self.written_count = 0

    async def start(self) -> None:
        """Open the store and start the flush and retention tasks."""
        if self._running:
            return
        await self.store.init()
        self._running = True
        self._flush_task = asyncio.create_task(self._flush_loop())
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info("Audit log started (retention %d days)", self.config.retention_days)

    async def stop(self) -> None:
        """Stop background tasks, flush what is queued and close the store."""
        was_running = self._running
        self._running = False
        for task in (self._flush_task, self._sweep_task):
            if task:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._flush_task = None
        self._sweep_task = None

        await self.flush()
        if was_running:
            await self.store.close()

    async def __aenter__(self) -> "AuditLog":
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    async def record(self, entry: AuditEntry) -> None:
        """Queue an entry for persistence.

        Blocks for at most ``record_timeout_seconds`` when the buffer is
        full; after that the entry goes straight to the fallback sink.
        """
        entry = entry.sanitized(self._sanitize, self.config.excerpt_chars)
        try:
            await asyncio.wait_for(
                self._queue.put(entry), timeout=self.config.record_timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Audit buffer full (%d entries); writing %s to fallback sink",
                self._queue.qsize(),
                entry.entry_id,
            )
            await self._divert([entry], "audit buffer full")
            return

        if self._queue.qsize() >= self.config.batch_size:
            self._batch_ready.set()

    async def flush(self) -> int:
        """Write everything currently queued. Returns entries persisted to the store."""
        written = 0
        async with self._flush_lock:
            while not self._queue.empty():
                batch = []
                while len(batch) < self.config.batch_size and not self._queue.empty():
                    batch.append(self._queue.get_nowait())
                if await self._write_with_retry(batch):
                    written += len(batch)
        return written

    async def _write_with_retry(self, batch: list[AuditEntry]) -> bool:
        attempts = self.config.flush_max_retries + 1
        for attempt in range(attempts):
            try:
                await self.store.write_batch(batch)
                self.written_count += len(batch)
                return True
            except Exception:
                logger.warning(
                    "Audit flush failed (attempt %d/%d, %d entries)",
                    attempt + 1,
                    attempts,
                    len(batch),
                    exc_info=True,
                )
                if attempt + 1 < attempts:
                    await asyncio.sleep(self.config.flush_backoff_seconds * (2 ** attempt))

        await self._divert(batch, f"audit store unavailable after {attempts} attempts")
        return False

    async def _divert(self, entries: list[AuditEntry], reason: str) -> None:
        """Append entries to the JSONL fallback sink and alert."""
        path = Path(self.config.fallback_path).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as f:
            for entry in entries:
                f.write(json.dumps(entry.to_dict()) + "\n")
        self.fallback_count += len(entries)
        logger.error("%s: %d audit entries written to %s", reason, len(entries), path)

        if self._alert is not None:
            try:
                outcome = self._alert(reason, entries)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                # Entries are already in the fallback sink
                logger.error("Audit alert callback failed", exc_info=True)

    async def _flush_loop(self) -> None:
        """Flush on batch size or every flush interval, whichever comes first."""
        while self._running:
            try:
                await asyncio.wait_for(
                    self._batch_ready.wait(), timeout=self.config.flush_interval_seconds
                )
            except asyncio.TimeoutError:
                pass
            self._batch_ready.clear()
            try:
                await self.flush()
            except Exception:
                # Entries in this batch may be unaccounted for, so be loud
                logger.critical("Audit flush cycle failed", exc_info=True)

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    async def sweep(self) -> int:
        """Delete entries older than the retention window."""
        cutoff = self._clock() - timedelta(days=self.config.retention_days)
        removed = await self.store.purge_before(cutoff)
        if removed:
            logger.info("Audit retention sweep removed %d entries older than %s", removed, cutoff)
        return removed

    async def _sweep_loop(self) -> None:
        while self._running:
            try:
                await self.sweep()
            except Exception:
                logger.error("Audit retention sweep failed", exc_info=True)
            await asyncio.sleep(self.config.sweep_interval_seconds)

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    async def query(self, query: AuditQuery | None = None, **filters) -> list[AuditEntry]:
        """Matching entries, oldest first. Pending entries are flushed first."""
        if query is None:
            if isinstance(filters.get("outcome"), str):
                filters["outcome"] = AuditOutcome(filters["outcome"])
            query = AuditQuery(**filters)
        await self.flush()
        return await self.store.query(query)

    async def recent(self, limit: int = 50) -> list[AuditEntry]:
        """Most recent entries, newest first."""
        entries = await self.query(AuditQuery(limit=limit))
        return list(reversed(entries))

    async def stats(self) -> dict:
        await self.flush()
        stats = await self.store.stats()
        stats["pending"] = self.pending_count
        stats["fallback_entries"] = self.fallback_count
        return stats

    @property
    def pending_count(self) -> int:
        return self._queue.qsize()
