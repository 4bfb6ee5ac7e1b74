"""
Asynchronous, batched audit logger.
"""

import asyncio
import dataclasses
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Deque, Dict, Any, Iterable, List, Optional, Union

from shared.logging import get_logger
from .models import (
    AuditLevel, AuditLogEntry, AuditLogOptions, AuditQuery, AuditResult,
    DEFAULT_SENSITIVE_FIELDS, RequestMeta, redact,
)
from .sinks import AuditSink, MemoryAuditSink


ResultLike = Union[AuditResult, bool, str]

SHUTDOWN_FLUSH_ATTEMPTS = 3


def _as_result(result: ResultLike) -> AuditResult:
    if isinstance(result, bool):
        return AuditResult.GRANTED if result else AuditResult.DENIED
    return AuditResult(result)


class AuditLogger:
    """Queues audit entries and flushes them to a sink in batches.

    ``log_access`` only appends to an in-memory queue and never raises.
    A background task flushes every ``flush_interval`` seconds, and a
    flush is scheduled right away once the queue reaches
    ``max_queue_size``. A batch that fails to write goes back to the front
    of the queue. If the queue grows past ten times ``max_queue_size``
    while the sink is down, the oldest entries are written to the fallback
    log instead of being kept.
    """

    def __init__(
        self,
        sink: Optional[AuditSink] = None,
        enabled: bool = True,
        batch_size: int = 100,
        flush_interval: float = 5.0,
        max_queue_size: int = 1000,
        write_timeout: float = 5.0,
        level: AuditLevel = AuditLevel.DETAILED,
        sensitive_fields: Iterable[str] = DEFAULT_SENSITIVE_FIELDS,
        metrics=None,
    ):
        self.logger = get_logger("authorization.audit")
        self.fallback_logger = get_logger("authorization.audit.fallback")
        self.sink = sink or MemoryAuditSink()
        self.enabled = enabled
        self.batch_size = batch_size
        self.flush_interval = flush_interval
        self.max_queue_size = max_queue_size
        self.hard_queue_limit = max_queue_size * 10
        self.write_timeout = write_timeout
        self.level = AuditLevel(level)
        self.sensitive_fields = tuple(sensitive_fields)
        self.metrics = metrics

        self._queue: Deque[AuditLogEntry] = deque()
        self._flush_lock: Optional[asyncio.Lock] = None
        self._flush_task: Optional[asyncio.Task] = None
        self._pending_flush: Optional[asyncio.Task] = None

    @property
    def queue_size(self) -> int:
        return len(self._queue)

    async def start(self):
        """Open the sink and start the periodic flush task."""
        if not self.enabled:
            return
        await self.sink.start()
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.create_task(self._flush_loop())
        self.logger.info(
            "Audit logger started",
            sink=type(self.sink).__name__,
            batch_size=self.batch_size,
            flush_interval=self.flush_interval
        )

    async def _flush_loop(self):
        while True:
            await asyncio.sleep(self.flush_interval)
            await self.flush_all()

    def log_access(
        self,
        entry: AuditLogEntry,
        request: Optional[RequestMeta] = None,
        options: Optional[AuditLogOptions] = None,
    ) -> Optional[AuditLogEntry]:
        """Enqueue ``entry``; returns the stored form or None when dropped."""
        if not self.enabled:
            return None
        try:
            prepared = self._prepare(entry, request, options)
            self._queue.append(prepared)
            self._enforce_hard_limit()
            self._report_queue_size()
            if len(self._queue) >= self.max_queue_size:
                self._schedule_flush()
            return prepared
        except Exception as e:
            self.fallback_logger.error(
                "Failed to enqueue audit entry",
                error=str(e),
                audit_user_id=getattr(entry, "user_id", None),
                audit_action=getattr(entry, "action", None),
                audit_resource=getattr(entry, "resource", None)
            )
            return None

    def _prepare(
        self,
        entry: AuditLogEntry,
        request: Optional[RequestMeta],
        options: Optional[AuditLogOptions],
    ) -> AuditLogEntry:
        options = options or AuditLogOptions(level=self.level)
        sensitive = self.sensitive_fields + tuple(options.exclude_fields)
        level = AuditLevel(options.level)

        context = entry.context
        if level == AuditLevel.BASIC or not options.include_context:
            context = None
        elif context is not None:
            context = redact(context, sensitive)

        metadata: Dict[str, Any] = dict(entry.metadata)
        ip_address = entry.ip_address
        user_agent = entry.user_agent
        if request is not None:
            ip_address = ip_address or request.ip_address
            user_agent = user_agent or request.user_agent
            if level != AuditLevel.BASIC:
                metadata.setdefault("method", request.method)
                metadata.setdefault("path", request.path)
            if options.include_headers or level == AuditLevel.FULL:
                metadata["headers"] = dict(request.headers)
            if level == AuditLevel.FULL:
                metadata["query"] = dict(request.query)
            if (options.include_body or level == AuditLevel.FULL) and request.body is not None:
                metadata["body"] = request.body

        return dataclasses.replace(
            entry,
            result=_as_result(entry.result),
            context=context,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata=redact(metadata, sensitive),
        )

    def _enforce_hard_limit(self):
        while len(self._queue) > self.hard_queue_limit:
            dropped = self._queue.popleft()
            self.fallback_logger.error("Audit queue overflow", entry=dropped.to_dict())

    def _report_queue_size(self):
        if self.metrics is not None:
            self.metrics.set_gauge("audit_queue_size", len(self._queue))

    def _schedule_flush(self):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        if self._pending_flush is None or self._pending_flush.done():
            self._pending_flush = loop.create_task(self.flush_all())

    async def flush(self) -> int:
        """Write one batch; returns the number of entries written."""
        if self._flush_lock is None:
            self._flush_lock = asyncio.Lock()

        async with self._flush_lock:
            if not self._queue:
                return 0
            batch = [self._queue.popleft() for _ in range(min(self.batch_size, len(self._queue)))]
            try:
                await asyncio.wait_for(self.sink.write(batch), timeout=self.write_timeout)
            except Exception as e:
                self._queue.extendleft(reversed(batch))
                self.fallback_logger.error(
                    "Audit flush failed",
                    error=str(e) or type(e).__name__,
                    batch_size=len(batch),
                    queued=len(self._queue)
                )
                if self.metrics is not None:
                    self.metrics.increment_counter("audit_flush_failures_total")
                return 0
            finally:
                self._report_queue_size()

        if self.metrics is not None:
            self.metrics.increment_counter("audit_entries_flushed_total", len(batch))
        self.logger.debug("Audit batch flushed", count=len(batch))
        return len(batch)

    async def flush_all(self) -> int:
        """Flush batches until the queue is empty or a write fails."""
        total = 0
        while self._queue:
            written = await self.flush()
            if written == 0:
                break
            total += written
        return total

    async def shutdown(self):
        """Stop the flush task and drain the queue."""
        if self._flush_task is not None:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None

        if self._pending_flush is not None and not self._pending_flush.done():
            await self._pending_flush

        for _ in range(SHUTDOWN_FLUSH_ATTEMPTS):
            if not self._queue:
                break
            await self.flush_all()

        if self._queue:
            self.fallback_logger.error("Audit entries undelivered at shutdown", count=len(self._queue))
            while self._queue:
                self.fallback_logger.error("Undelivered audit entry", entry=self._queue.popleft().to_dict())
            self._report_queue_size()

        if self.enabled:
            await self.sink.stop()
        self.logger.info("Audit logger stopped")

    # Convenience recorders

    def log_authentication(
        self,
        user_id: str,
        action: str,
        success: bool,
        reason: Optional[str] = None,
        request: Optional[RequestMeta] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditLogEntry]:
        return self.log_access(AuditLogEntry(
            user_id=user_id,
            action=f"auth_{action}",
            resource="authentication",
            result=_as_result(success),
            reason=reason,
            context=context,
        ), request)

    def log_authorization(
        self,
        user_id: str,
        resource: str,
        action: str,
        allowed: ResultLike,
        reason: Optional[str] = None,
        resource_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        request: Optional[RequestMeta] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditLogEntry]:
        return self.log_access(AuditLogEntry(
            user_id=user_id,
            action=f"authz_{action}",
            resource=resource,
            resource_id=resource_id,
            result=_as_result(allowed),
            reason=reason,
            context=context,
            metadata=dict(metadata or {}),
        ), request)

    def log_resource_operation(
        self,
        user_id: str,
        operation: str,
        resource: str,
        resource_id: Optional[str] = None,
        success: bool = True,
        reason: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        request: Optional[RequestMeta] = None,
    ) -> Optional[AuditLogEntry]:
        return self.log_access(AuditLogEntry(
            user_id=user_id,
            action=f"resource_{operation}",
            resource=resource,
            resource_id=resource_id,
            result=_as_result(success),
            reason=reason,
            context=context,
        ), request)

    def log_security_event(
        self,
        user_id: str,
        event: str,
        reason: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        request: Optional[RequestMeta] = None,
    ) -> Optional[AuditLogEntry]:
        return self.log_access(AuditLogEntry(
            user_id=user_id,
            action=f"security_{event}",
            resource="security",
            result=AuditResult.DENIED,
            reason=reason,
            context=context,
        ), request)

    def log_system_event(
        self,
        action: str,
        success: bool = True,
        reason: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditLogEntry]:
        return self.log_access(AuditLogEntry(
            user_id="system",
            action=f"system_{action}",
            resource="system",
            result=_as_result(success),
            reason=reason,
            context=context,
        ))

    # Reporting

    async def get_audit_logs_for_user(
        self,
        user_id: str,
        limit: int = 100,
        since: Optional[datetime] = None,
    ) -> List[AuditLogEntry]:
        return await self.sink.query(AuditQuery(user_id=user_id, since=since, limit=limit))

    async def get_audit_logs_for_resource(
        self,
        resource: str,
        resource_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditLogEntry]:
        return await self.sink.query(AuditQuery(resource=resource, resource_id=resource_id, limit=limit))

    async def get_security_events(
        self,
        limit: int = 100,
        since: Optional[datetime] = None,
    ) -> List[AuditLogEntry]:
        return await self.sink.query(AuditQuery(action_prefix="security_", since=since, limit=limit))

    async def cleanup_old_logs(self, retention_days: int = 365) -> int:
        """Delete entries older than ``retention_days``."""
        cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
        removed = await self.sink.delete_before(cutoff)
        self.log_system_event("audit_cleanup", context={"removed": removed, "retention_days": retention_days})
        return removed
