"""Async database service with SQLModel and SQLAlchemy 2.0."""

import logging
from typing import Dict, Any, Iterable, List, Optional
from sqlmodel import SQLModel, select
from sqlalchemy import update
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool
from contextlib import asynccontextmanager

from core.config import Settings
from models.database import WorkflowRecord, LifecycleEventRecord, DLQRecord, VisitorRecord
from core.logging import get_logger

logger = get_logger(__name__)


class Database:
    """Async database service with SQLModel."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.engine = None
        self.async_session = None

    def _engine_options(self) -> Dict[str, Any]:
        if not self.settings.is_sqlite:
            return {
                "pool_size": self.settings.database_pool_size,
                "max_overflow": self.settings.database_max_overflow,
            }
        if ":memory:" in self.settings.database_url:
            # Every connection would otherwise get its own empty database
            return {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
        return {}

    async def startup(self):
        """Initialize database connection and create tables."""
        try:
            logging.getLogger("aiosqlite").setLevel(logging.WARNING)
            logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
            logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)

            self.engine = create_async_engine(
                self.settings.database_url,
                echo=self.settings.database_echo,
                future=True,
                **self._engine_options()
            )

            self.async_session = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)

            logger.info("Database initialized successfully", url=self.settings.database_url)

        except Exception as e:
            logger.error("Database startup failed", error=str(e))
            raise

    async def shutdown(self):
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()
            logger.info("Database connections closed")

    @asynccontextmanager
    async def get_session(self):
        """Get async database session."""
        if not self.async_session:
            raise RuntimeError("Database not initialized")

        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    # ============================================================================
    # Workflows
    # ============================================================================

    async def save_workflow(self, workflow_id: str, site_id: str, name: str,
                            status: str, data: Dict[str, Any]) -> bool:
        """Save or update a workflow definition."""
        try:
            async with self.get_session() as session:
                existing = await session.get(WorkflowRecord, workflow_id)

                if existing:
                    existing.site_id = site_id
                    existing.name = name
                    existing.status = status
                    existing.data = data
                else:
                    session.add(WorkflowRecord(
                        id=workflow_id,
                        site_id=site_id,
                        name=name,
                        status=status,
                        data=data
                    ))

                await session.commit()
                return True

        except Exception as e:
            logger.error("Failed to save workflow", workflow_id=workflow_id, error=str(e))
            return False

    async def get_workflow(self, workflow_id: str) -> Optional[WorkflowRecord]:
        """Get workflow by ID."""
        try:
            async with self.get_session() as session:
                return await session.get(WorkflowRecord, workflow_id)

        except Exception as e:
            logger.error("Failed to get workflow", workflow_id=workflow_id, error=str(e))
            return None

    async def get_site_workflows(self, site_id: str, status: Optional[str] = None) -> List[WorkflowRecord]:
        """Get workflows for a site, optionally filtered by status."""
        try:
            async with self.get_session() as session:
                stmt = select(WorkflowRecord).where(WorkflowRecord.site_id == site_id)
                if status:
                    stmt = stmt.where(WorkflowRecord.status == status)
                result = await session.execute(stmt.order_by(WorkflowRecord.created_at))
                return list(result.scalars().all())

        except Exception as e:
            logger.error("Failed to get site workflows", site_id=site_id, error=str(e))
            return []

    async def delete_workflow(self, workflow_id: str) -> bool:
        """Delete workflow."""
        try:
            async with self.get_session() as session:
                workflow = await session.get(WorkflowRecord, workflow_id)
                if not workflow:
                    return False
                await session.delete(workflow)
                await session.commit()
                return True

        except Exception as e:
            logger.error("Failed to delete workflow", workflow_id=workflow_id, error=str(e))
            return False

    async def increment_workflow_completions(self, workflow_id: str) -> bool:
        """Atomically bump the completion counter in a single UPDATE."""
        try:
            async with self.get_session() as session:
                stmt = (
                    update(WorkflowRecord)
                    .where(WorkflowRecord.id == workflow_id)
                    .values(completions=WorkflowRecord.completions + 1)
                )
                result = await session.execute(stmt)
                await session.commit()
                return result.rowcount > 0

        except Exception as e:
            logger.error("Failed to increment completions", workflow_id=workflow_id, error=str(e))
            return False

    # ============================================================================
    # Lifecycle Events
    # ============================================================================

    async def add_lifecycle_events(self, events: Iterable[Dict[str, Any]]) -> int:
        """Append lifecycle events. Returns the number of rows written."""
        try:
            records = [LifecycleEventRecord(**event) for event in events]
            if not records:
                return 0
            async with self.get_session() as session:
                session.add_all(records)
                await session.commit()
                return len(records)

        except Exception as e:
            logger.error("Failed to add lifecycle events", error=str(e))
            return 0

    async def get_lifecycle_events(self, workflow_id: str,
                                   start: Optional[float] = None,
                                   end: Optional[float] = None,
                                   kinds: Optional[List[str]] = None) -> List[LifecycleEventRecord]:
        """Query lifecycle events for a workflow in insertion order."""
        try:
            async with self.get_session() as session:
                stmt = select(LifecycleEventRecord).where(LifecycleEventRecord.workflow_id == workflow_id)
                if start is not None:
                    stmt = stmt.where(LifecycleEventRecord.timestamp >= start)
                if end is not None:
                    stmt = stmt.where(LifecycleEventRecord.timestamp <= end)
                if kinds:
                    stmt = stmt.where(LifecycleEventRecord.kind.in_(kinds))
                result = await session.execute(stmt.order_by(LifecycleEventRecord.id))
                return list(result.scalars().all())

        except Exception as e:
            logger.error("Failed to get lifecycle events", workflow_id=workflow_id, error=str(e))
            return []

    # ============================================================================
    # Dead Letter Queue
    # ============================================================================

    async def add_dlq_entry(self, entry: Dict[str, Any]) -> bool:
        """Persist a DLQ entry."""
        try:
            async with self.get_session() as session:
                session.add(DLQRecord(**entry))
                await session.commit()
                return True

        except Exception as e:
            logger.error("Failed to add DLQ entry", entry_id=entry.get("id"), error=str(e))
            return False

    async def get_dlq_entries(self, workflow_id: Optional[str] = None,
                              limit: int = 100) -> List[DLQRecord]:
        """List DLQ entries, newest first."""
        try:
            async with self.get_session() as session:
                stmt = select(DLQRecord)
                if workflow_id:
                    stmt = stmt.where(DLQRecord.workflow_id == workflow_id)
                stmt = stmt.order_by(DLQRecord.enqueued_at.desc()).limit(limit)
                result = await session.execute(stmt)
                return list(result.scalars().all())

        except Exception as e:
            logger.error("Failed to get DLQ entries", error=str(e))
            return []

    async def delete_dlq_entry(self, entry_id: str) -> bool:
        """Remove a DLQ entry after manual review."""
        try:
            async with self.get_session() as session:
                entry = await session.get(DLQRecord, entry_id)
                if not entry:
                    return False
                await session.delete(entry)
                await session.commit()
                return True

        except Exception as e:
            logger.error("Failed to delete DLQ entry", entry_id=entry_id, error=str(e))
            return False

    # ============================================================================
    # Visitors
    # ============================================================================

    async def _get_visitor(self, session, site_id: str, visitor_id: str) -> Optional[VisitorRecord]:
        stmt = select(VisitorRecord).where(
            VisitorRecord.site_id == site_id,
            VisitorRecord.visitor_id == visitor_id
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_visitor_tags(self, site_id: str, visitor_id: str) -> List[str]:
        """Get the tag set of a visitor (empty when unknown)."""
        try:
            async with self.get_session() as session:
                visitor = await self._get_visitor(session, site_id, visitor_id)
                return list(visitor.tags or []) if visitor else []

        except Exception as e:
            logger.error("Failed to get visitor tags", site_id=site_id, visitor_id=visitor_id, error=str(e))
            return []

    async def add_visitor_tag(self, site_id: str, visitor_id: str, tag: str) -> bool:
        """Upsert the visitor and add a tag to its set."""
        async with self.get_session() as session:
            visitor = await self._get_visitor(session, site_id, visitor_id)
            if visitor is None:
                session.add(VisitorRecord(site_id=site_id, visitor_id=visitor_id, tags=[tag]))
            elif tag not in (visitor.tags or []):
                # Reassign so the JSON column is flagged dirty
                visitor.tags = list(visitor.tags or []) + [tag]
            await session.commit()
            return True

    async def remove_visitor_tag(self, site_id: str, visitor_id: str, tag: str) -> bool:
        """Pull a tag from the visitor's set. Returns False when it was not present."""
        async with self.get_session() as session:
            visitor = await self._get_visitor(session, site_id, visitor_id)
            if visitor is None or tag not in (visitor.tags or []):
                return False
            visitor.tags = [t for t in visitor.tags if t != tag]
            await session.commit()
            return True
