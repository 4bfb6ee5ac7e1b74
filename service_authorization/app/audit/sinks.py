"""
Durable destinations for audit entries.
"""

import asyncio
import json
import os
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional, Sequence

import asyncpg

from shared.logging import get_logger
from shared.errors import ExternalServiceError
from .models import AuditLogEntry, AuditQuery


class AuditSink(ABC):
    """Where flushed audit batches go."""

    async def start(self):
        """Open connections."""

    async def stop(self):
        """Close connections."""

    @abstractmethod
    async def write(self, entries: Sequence[AuditLogEntry]) -> None:
        """Persist a batch; raise on failure so the batch is retried."""

    @abstractmethod
    async def query(self, query: AuditQuery) -> List[AuditLogEntry]:
        """Entries matching ``query``, newest first."""

    @abstractmethod
    async def delete_before(self, cutoff: datetime) -> int:
        """Remove entries older than ``cutoff``; returns how many."""


class MemoryAuditSink(AuditSink):
    """Keeps entries in process memory."""

    def __init__(self):
        self.entries: List[AuditLogEntry] = []

    async def write(self, entries: Sequence[AuditLogEntry]) -> None:
        self.entries.extend(entries)

    async def query(self, query: AuditQuery) -> List[AuditLogEntry]:
        matched = [e for e in self.entries if query.matches(e)]
        matched.sort(key=lambda e: e.timestamp, reverse=True)
        return matched[:query.limit]

    async def delete_before(self, cutoff: datetime) -> int:
        before = len(self.entries)
        self.entries = [e for e in self.entries if e.timestamp >= cutoff]
        return before - len(self.entries)


class JsonLinesAuditSink(AuditSink):
    """Appends one JSON document per entry to a local file."""

    def __init__(self, path: str):
        self.path = path
        self.logger = get_logger("authorization.audit.file")
        self._lock = asyncio.Lock()

    def _append(self, lines: List[str]) -> None:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as handle:
            handle.writelines(lines)

    def _read_all(self) -> List[AuditLogEntry]:
        if not os.path.exists(self.path):
            return []
        entries = []
        with open(self.path, "r", encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if line:
                    entries.append(AuditLogEntry.from_dict(json.loads(line)))
        return entries

    def _rewrite(self, entries: List[AuditLogEntry]) -> None:
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as handle:
            handle.writelines(json.dumps(e.to_dict(), default=str) + "\n" for e in entries)
        os.replace(tmp_path, self.path)

    async def write(self, entries: Sequence[AuditLogEntry]) -> None:
        lines = [json.dumps(e.to_dict(), default=str) + "\n" for e in entries]
        async with self._lock:
            await asyncio.to_thread(self._append, lines)

    async def query(self, query: AuditQuery) -> List[AuditLogEntry]:
        async with self._lock:
            entries = await asyncio.to_thread(self._read_all)
        matched = [e for e in entries if query.matches(e)]
        matched.sort(key=lambda e: e.timestamp, reverse=True)
        return matched[:query.limit]

    async def delete_before(self, cutoff: datetime) -> int:
        async with self._lock:
            entries = await asyncio.to_thread(self._read_all)
            kept = [e for e in entries if e.timestamp >= cutoff]
            if len(kept) != len(entries):
                await asyncio.to_thread(self._rewrite, kept)
        removed = len(entries) - len(kept)
        if removed:
            self.logger.info("Old audit entries removed", count=removed, path=self.path)
        return removed


class PostgresAuditSink(AuditSink):
    """Stores entries in the ``audit_logs`` table."""

    def __init__(self, dsn: str):
        self.dsn = dsn
        self.logger = get_logger("authorization.audit.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Open the pool and create the table."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=1,
                max_size=5,
                command_timeout=30
            )
            await self._create_tables()
            self.logger.info("PostgreSQL audit sink started")

        except Exception as e:
            self.logger.error("Failed to start PostgreSQL audit sink", error=str(e))
            raise ExternalServiceError("postgres", str(e))

    async def stop(self):
        if self.pool:
            await self.pool.close()
            self.logger.info("PostgreSQL audit sink stopped")

    async def _create_tables(self):
        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS audit_logs (
                    id VARCHAR(64) PRIMARY KEY,
                    user_id VARCHAR(255) NOT NULL,
                    action VARCHAR(255) NOT NULL,
                    resource VARCHAR(100) NOT NULL,
                    resource_id VARCHAR(255),
                    result VARCHAR(16) NOT NULL,
                    reason TEXT,
                    context JSONB,
                    ip_address VARCHAR(64),
                    user_agent TEXT,
                    metadata JSONB NOT NULL DEFAULT '{}',
                    timestamp TIMESTAMP WITH TIME ZONE NOT NULL
                );
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_audit_logs_user ON audit_logs(user_id, timestamp DESC);
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_audit_logs_resource ON audit_logs(resource, resource_id);
            """)

    async def write(self, entries: Sequence[AuditLogEntry]) -> None:
        rows = [
            (
                e.id, e.user_id, e.action, e.resource, e.resource_id, e.result.value,
                e.reason,
                json.dumps(e.context, default=str) if e.context is not None else None,
                e.ip_address, e.user_agent,
                json.dumps(e.metadata, default=str),
                e.timestamp,
            )
            for e in entries
        ]
        async with self.pool.acquire() as conn:
            # Retried batches may repeat ids already written.
            await conn.executemany("""
                INSERT INTO audit_logs (
                    id, user_id, action, resource, resource_id, result, reason,
                    context, ip_address, user_agent, metadata, timestamp
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                ON CONFLICT (id) DO NOTHING
            """, rows)

    async def query(self, query: AuditQuery) -> List[AuditLogEntry]:
        clauses = []
        params: list = []

        def add(clause: str, value):
            params.append(value)
            clauses.append(clause.format(n=len(params)))

        if query.user_id is not None:
            add("user_id = ${n}", query.user_id)
        if query.resource is not None:
            add("resource = ${n}", query.resource)
        if query.resource_id is not None:
            add("resource_id = ${n}", query.resource_id)
        if query.action_prefix is not None:
            add("action LIKE ${n}", query.action_prefix.replace("%", r"\%").replace("_", r"\_") + "%")
        if query.result is not None:
            add("result = ${n}", query.result.value)
        if query.since is not None:
            add("timestamp >= ${n}", query.since)
        if query.until is not None:
            add("timestamp <= ${n}", query.until)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(query.limit)
        sql = f"SELECT * FROM audit_logs {where} ORDER BY timestamp DESC LIMIT ${len(params)}"

        async with self.pool.acquire() as conn:
            rows = await conn.fetch(sql, *params)

        return [self._row_to_entry(row) for row in rows]

    async def delete_before(self, cutoff: datetime) -> int:
        async with self.pool.acquire() as conn:
            status = await conn.execute("DELETE FROM audit_logs WHERE timestamp < $1", cutoff)
        removed = int(status.split()[-1])
        self.logger.info("Old audit entries removed", count=removed)
        return removed

    @staticmethod
    def _row_to_entry(row) -> AuditLogEntry:
        return AuditLogEntry.from_dict({
            "id": row["id"],
            "user_id": row["user_id"],
            "action": row["action"],
            "resource": row["resource"],
            "resource_id": row["resource_id"],
            "result": row["result"],
            "reason": row["reason"],
            "context": json.loads(row["context"]) if row["context"] else None,
            "ip_address": row["ip_address"],
            "user_agent": row["user_agent"],
            "metadata": json.loads(row["metadata"]) if row["metadata"] else {},
            "timestamp": row["timestamp"].isoformat(),
        })
