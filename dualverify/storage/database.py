"""SQLite persistence for audit entries."""

import asyncio
import json
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path

import aiosqlite

from ..audit.entry import AuditEntry, AuditQuery, format_ts
from ..audit.store import AuditStore
from ..logging_config import get_logger

logger = get_logger(__name__)

_COLUMNS = (
    "entry_id, request_id, service_name, source_key, attempt_number, outcome, "
    "started_at, completed_at, prompt_excerpt, response_excerpt, breakdown_json, "
    "overall_score, latency_ms, abort_reason, costs_json"
)


class _ConnectionPool:
    """Simple async SQLite connection pool with WAL mode."""

    def __init__(self, db_path: Path | str, size: int = 3):
        self._db_path = db_path
        self._size = size
        self._pool: asyncio.Queue[aiosqlite.Connection] = asyncio.Queue(maxsize=size)
        self._initialized = False

    async def init(self):
        """Create pool connections with WAL mode."""
        for _ in range(self._size):
            conn = await aiosqlite.connect(self._db_path)
            conn.row_factory = aiosqlite.Row
            # Cursors left open keep a read lock that blocks the next connection
            for pragma in ("PRAGMA busy_timeout=5000", "PRAGMA journal_mode=WAL"):
                cursor = await conn.execute(pragma)
                await cursor.close()
            await conn.commit()
            await self._pool.put(conn)
        self._initialized = True

    @asynccontextmanager
    async def acquire(self):
        """Acquire a connection from the pool."""
        conn = await self._pool.get()
        try:
            yield conn
        finally:
            await self._pool.put(conn)

    async def close(self):
        """Close all pooled connections."""
        while not self._pool.empty():
            conn = await self._pool.get()
            await conn.close()
        self._initialized = False


def _row_to_entry(row: aiosqlite.Row) -> AuditEntry:
    data = dict(row)
    data["breakdown"] = data.pop("breakdown_json", None)
    data["costs"] = data.pop("costs_json", None)
    return AuditEntry.from_dict(data)


class SQLiteAuditStore(AuditStore):
    """aiosqlite-backed audit store.

    Entries are written in batches inside a single transaction; on any
    error the transaction is rolled back and the error re-raised so the
    audit log can retry or divert the batch.
    """

    def __init__(self, db_path: str = "dualverify_audit.db", pool_size: int = 3):
        self.db_path = db_path
        # Each connection to ":memory:" is a separate database
        self.pool_size = 1 if db_path == ":memory:" else pool_size
        self._pool: _ConnectionPool | None = None

    async def init(self) -> None:
        """Connect to the database and create tables if needed."""
        if self._pool is not None and self._pool._initialized:
            return
        if self.db_path != ":memory:":
            Path(self.db_path).expanduser().parent.mkdir(parents=True, exist_ok=True)
        logger.info("Audit database connecting: %s", self.db_path)
        self._pool = _ConnectionPool(self.db_path, size=self.pool_size)
        await self._pool.init()
        async with self._pool.acquire() as conn:
            await self._create_tables(conn)

    async def close(self) -> None:
        if self._pool:
            await self._pool.close()
            self._pool = None

    def _check_pool(self) -> _ConnectionPool:
        """Raises RuntimeError if not connected."""
        if self._pool is None or not self._pool._initialized:
            raise RuntimeError("Audit database not connected. Call init() first.")
        return self._pool

    async def _create_tables(self, conn: aiosqlite.Connection) -> None:
        await conn.executescript("""
            CREATE TABLE IF NOT EXISTS audit_entries (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                entry_id TEXT NOT NULL UNIQUE,
                request_id TEXT NOT NULL,
                service_name TEXT NOT NULL,
                source_key TEXT,
                attempt_number INTEGER NOT NULL,
                outcome TEXT NOT NULL,
                started_at TEXT NOT NULL,
                completed_at TEXT NOT NULL,
                prompt_excerpt TEXT,
                response_excerpt TEXT,
                breakdown_json TEXT,
                overall_score REAL,
                latency_ms REAL DEFAULT 0.0,
                abort_reason TEXT,
                costs_json TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_audit_request ON audit_entries(request_id);
            CREATE INDEX IF NOT EXISTS idx_audit_service ON audit_entries(service_name);
            CREATE INDEX IF NOT EXISTS idx_audit_completed ON audit_entries(completed_at);
        """)
        await conn.commit()

    async def write_batch(self, entries: list[AuditEntry]) -> int:
        """Save multiple audit entries in one transaction."""
        if not entries:
            return 0

        pool = self._check_pool()
        async with pool.acquire() as conn:
            try:
                # OR IGNORE keeps a re-flushed batch from duplicating rows
                await conn.executemany(
                    f"INSERT OR IGNORE INTO audit_entries ({_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    [e.to_row() for e in entries],
                )
                await conn.commit()
                return len(entries)
            except Exception as e:
                await conn.rollback()
                logger.error("DB error in write_batch: %s", e, exc_info=True)
                raise

    async def query(self, query: AuditQuery) -> list[AuditEntry]:
        pool = self._check_pool()
        sql = f"SELECT {_COLUMNS} FROM audit_entries WHERE 1=1"
        params: list = []

        if query.service_name:
            sql += " AND service_name = ?"
            params.append(query.service_name)
        if query.outcome:
            sql += " AND outcome = ?"
            params.append(query.outcome.value)
        if query.request_id:
            sql += " AND request_id = ?"
            params.append(query.request_id)
        if query.since:
            sql += " AND completed_at >= ?"
            params.append(format_ts(query.since))
        if query.until:
            sql += " AND completed_at <= ?"
            params.append(format_ts(query.until))

        sql += " ORDER BY seq DESC"
        if query.limit is not None:
            sql += " LIMIT ?"
            params.append(max(0, query.limit))

        async with pool.acquire() as conn:
            cursor = await conn.execute(sql, params)
            rows = await cursor.fetchall()
        return [_row_to_entry(row) for row in reversed(rows)]

    async def purge_before(self, cutoff: datetime) -> int:
        pool = self._check_pool()
        async with pool.acquire() as conn:
            try:
                cursor = await conn.execute(
                    "DELETE FROM audit_entries WHERE completed_at < ?",
                    (format_ts(cutoff),),
                )
                await conn.commit()
                return cursor.rowcount
            except Exception as e:
                await conn.rollback()
                logger.error("DB error in purge_before: %s", e, exc_info=True)
                raise

    async def stats(self) -> dict:
        """Get audit statistics across all stored entries."""
        pool = self._check_pool()
        async with pool.acquire() as conn:
            cursor = await conn.execute(
                """
                SELECT
                    COUNT(*) as total,
                    COUNT(DISTINCT request_id) as requests,
                    AVG(overall_score) as avg_score,
                    AVG(latency_ms) as avg_latency
                FROM audit_entries
                """
            )
            totals = await cursor.fetchone()

            cursor = await conn.execute(
                "SELECT outcome, COUNT(*) as count FROM audit_entries GROUP BY outcome"
            )
            outcome_rows = await cursor.fetchall()

            cursor = await conn.execute(
                "SELECT service_name, COUNT(*) as count FROM audit_entries GROUP BY service_name"
            )
            service_rows = await cursor.fetchall()

            cursor = await conn.execute(
                "SELECT breakdown_json FROM audit_entries WHERE breakdown_json IS NOT NULL"
            )
            breakdown_rows = await cursor.fetchall()

        issue_categories: dict[str, int] = {}
        for row in breakdown_rows:
            for issue in json.loads(row["breakdown_json"]).get("issues", []):
                category = issue.get("category", "unknown")
                issue_categories[category] = issue_categories.get(category, 0) + 1

        avg_score = totals["avg_score"]
        avg_latency = totals["avg_latency"]
        return {
            "total_attempts": totals["total"],
            "total_requests": totals["requests"],
            "by_outcome": {row["outcome"]: row["count"] for row in outcome_rows},
            "by_service": {row["service_name"]: row["count"] for row in service_rows},
            "average_score": round(avg_score, 2) if avg_score is not None else None,
            "average_latency_ms": round(avg_latency, 1) if avg_latency is not None else None,
            "issue_categories": issue_categories,
        }
