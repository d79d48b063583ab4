"""Dead Letter Queue (DLQ) handler for server actions that exhausted retries.

DLQ storage can be enabled/disabled via configuration. When enabled, failed
jobs are stored for manual inspection through the DLQ endpoint. Entries are
terminal: there is no automatic replay consumer.

Usage:
    from services.execution.dlq import create_dlq_handler

    dlq = create_dlq_handler(database, enabled=settings.dlq_enabled)
    await dlq.add_failed_job(job, "Webhook", reason, retry_count)
"""

import asyncio
from typing import Dict, Any, List, Optional, Protocol, TYPE_CHECKING
from core.logging import get_logger
from .models import ActionJob, DLQEntry

if TYPE_CHECKING:
    from core.database import Database

logger = get_logger(__name__)


class DLQHandlerProtocol(Protocol):
    """Protocol for DLQ handlers (enables duck typing)."""

    async def add_failed_job(self, job: ActionJob, action_type: str, reason: str,
                             retry_count: int, payload: Optional[Dict[str, Any]] = None) -> Optional[DLQEntry]:
        """Add a failed job to the DLQ."""
        ...

    async def list_entries(self, workflow_id: Optional[str] = None, limit: int = 100) -> List[DLQEntry]:
        """List stored entries, newest first."""
        ...

    @property
    def enabled(self) -> bool:
        """Whether DLQ is enabled."""
        ...


class NullDLQHandler:
    """No-op DLQ handler when DLQ is disabled.

    This follows the Null Object pattern - all operations succeed silently.
    """

    @property
    def enabled(self) -> bool:
        return False

    async def add_failed_job(self, job: ActionJob, action_type: str, reason: str,
                             retry_count: int, payload: Optional[Dict[str, Any]] = None) -> Optional[DLQEntry]:
        """No-op: silently succeed without storing anything."""
        logger.debug("DLQ disabled, skipping failed job storage",
                     job_id=job.job_id, node_id=job.node_id, reason=reason)
        return None

    async def list_entries(self, workflow_id: Optional[str] = None, limit: int = 100) -> List[DLQEntry]:
        return []

    async def remove(self, entry_id: str) -> bool:
        return False


class DLQHandler:
    """Active DLQ handler.

    Persists entries through the database when one is given, otherwise keeps
    them in process memory.
    """

    def __init__(self, database: Optional["Database"] = None):
        """Initialize DLQ handler.

        Args:
            database: Database service for persistence, or None for memory
        """
        self.database = database
        self._entries: List[DLQEntry] = []
        self._lock = asyncio.Lock()

    @property
    def enabled(self) -> bool:
        return True

    async def add_failed_job(self, job: ActionJob, action_type: str, reason: str,
                             retry_count: int, payload: Optional[Dict[str, Any]] = None) -> Optional[DLQEntry]:
        """Add a failed job to the Dead Letter Queue.

        Args:
            job: The server action job that failed
            action_type: Action node title (Webhook, Send Email...)
            reason: Last observed error
            retry_count: Number of attempts made
            payload: Request payload at time of failure (defaults to the job)

        Returns:
            The stored DLQEntry, or None if storage failed
        """
        entry = DLQEntry.create(job, action_type, reason, retry_count, payload)
        try:
            if self.database is not None:
                stored = await self.database.add_dlq_entry(entry.to_dict())
                if not stored:
                    logger.error("Failed to add job to DLQ", job_id=job.job_id, reason=reason)
                    return None
            else:
                async with self._lock:
                    self._entries.append(entry)

            logger.info("Job added to DLQ",
                        entry_id=entry.id,
                        workflow_id=job.workflow_id,
                        node_id=job.node_id,
                        action_type=action_type,
                        retry_count=retry_count)
            return entry

        except Exception as e:
            logger.error("Exception adding job to DLQ", job_id=job.job_id, error=str(e))
            return None

    async def list_entries(self, workflow_id: Optional[str] = None, limit: int = 100) -> List[DLQEntry]:
        """List entries, newest first."""
        if self.database is not None:
            records = await self.database.get_dlq_entries(workflow_id=workflow_id, limit=limit)
            return [DLQEntry.from_dict(record.model_dump()) for record in records]

        entries = [e for e in self._entries if workflow_id is None or e.workflow_id == workflow_id]
        return sorted(entries, key=lambda e: e.enqueued_at, reverse=True)[:limit]

    async def remove(self, entry_id: str) -> bool:
        """Remove an entry after manual review."""
        if self.database is not None:
            return await self.database.delete_dlq_entry(entry_id)

        async with self._lock:
            before = len(self._entries)
            self._entries = [e for e in self._entries if e.id != entry_id]
            return len(self._entries) < before


def create_dlq_handler(database: Optional["Database"] = None, enabled: bool = True) -> DLQHandlerProtocol:
    """Factory function to create appropriate DLQ handler.

    Args:
        database: Database service, or None for in-memory storage
        enabled: Whether DLQ should be enabled

    Returns:
        DLQHandler if enabled, NullDLQHandler otherwise
    """
    if enabled:
        logger.info("DLQ enabled", backend="database" if database is not None else "memory")
        return DLQHandler(database)
    else:
        logger.debug("DLQ disabled")
        return NullDLQHandler()
