"""
Audit logging.

Audit writes are decoupled from the operations they describe: callers hand an
entry to the AuditDispatcher, which queues it (bounded) and returns
immediately. A background task drains the queue into the AuditSink. A slow or
failing sink therefore adds no latency and no failure to the calling request;
write failures and queue overflow are logged at error level instead.
"""

import asyncio
from dataclasses import dataclass, field, replace
from typing import Any, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantguard.config import AuditCategory, AuditOutcome, settings
from tenantguard.core.clock import Clock
from tenantguard.core.logging import get_logger, get_request_id
from tenantguard.models.audit_log import AuditLogs

logger = get_logger(__name__)


@dataclass(frozen=True)
class AuditEntry:
    action: str
    category: str = AuditCategory.AUTHENTICATION
    user_id: str | None = None
    organization_id: str | None = None
    resource_type: str | None = None
    resource_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    outcome: str = AuditOutcome.SUCCESS
    request_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None


class AuditSink(Protocol):
    async def record(self, entry: AuditEntry) -> None: ...


class DatabaseAuditSink:
    """Writes audit entries to the audit_logs table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], clock: Clock) -> None:
        self._session_factory = session_factory
        self._clock = clock

    async def record(self, entry: AuditEntry) -> None:
        async with self._session_factory() as session:
            session.add(
                AuditLogs(
                    category=entry.category,
                    action=entry.action,
                    user_id=entry.user_id,
                    organization_id=entry.organization_id,
                    resource_type=entry.resource_type,
                    resource_id=entry.resource_id,
                    details=entry.details or None,
                    outcome=entry.outcome,
                    request_id=entry.request_id,
                    ip_address=entry.ip_address,
                    user_agent=entry.user_agent,
                    created_at=self._clock.now(),
                )
            )
            await session.commit()


class AuditDispatcher:
    """Fire-and-forget front end for an AuditSink."""

    def __init__(self, sink: AuditSink, maxsize: int | None = None) -> None:
        self._sink = sink
        self._queue: asyncio.Queue[AuditEntry] = asyncio.Queue(
            maxsize=maxsize if maxsize is not None else settings.AUDIT_QUEUE_SIZE
        )
        self._worker: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def record(self, entry: AuditEntry) -> None:
        """Queue an entry without waiting. Never raises."""
        if entry.request_id is None:
            entry = replace(entry, request_id=get_request_id())
        try:
            self._queue.put_nowait(entry)
        except asyncio.QueueFull:
            logger.error(
                "audit_queue_full",
                action=entry.action,
                user_id=entry.user_id,
                resource_id=entry.resource_id,
            )

    def start(self) -> None:
        if not self.running:
            self._worker = asyncio.create_task(self._run(), name="audit-dispatcher")

    async def drain(self) -> None:
        """Wait until every queued entry has been handed to the sink."""
        await self._queue.join()

    async def stop(self, timeout: float = 5.0) -> None:
        """Flush pending entries (bounded by ``timeout``) and stop the worker."""
        if self._worker is None:
            return
        try:
            await asyncio.wait_for(self.drain(), timeout=timeout)
        except TimeoutError:
            logger.error("audit_flush_timeout", pending=self._queue.qsize())
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None

    async def _run(self) -> None:
        while True:
            entry = await self._queue.get()
            try:
                await self._sink.record(entry)
            except Exception as e:
                logger.error(
                    "audit_write_failed",
                    action=entry.action,
                    user_id=entry.user_id,
                    resource_id=entry.resource_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
            finally:
                self._queue.task_done()
