"""Append-only lifecycle event recorder with memory or database backend."""

from typing import Iterable, List, Optional, Protocol, TYPE_CHECKING

from core.logging import get_logger
from .models import LifecycleEvent

if TYPE_CHECKING:
    from core.database import Database

logger = get_logger(__name__)


class EventRecorderProtocol(Protocol):
    """Protocol for event recorders (enables duck typing)."""

    async def record(self, event: LifecycleEvent) -> bool:
        ...

    async def record_many(self, events: Iterable[LifecycleEvent]) -> int:
        ...

    async def query(self, workflow_id: str, start: Optional[float] = None,
                    end: Optional[float] = None, kinds: Optional[Iterable[str]] = None) -> List[LifecycleEvent]:
        ...


class MemoryEventRecorder:
    """In-process event log. Events keep insertion order."""

    def __init__(self):
        self.events: List[LifecycleEvent] = []

    async def record(self, event: LifecycleEvent) -> bool:
        self.events.append(event)
        logger.debug("Lifecycle event", kind=event.kind, run_id=event.run_id, node_id=event.node_id)
        return True

    async def record_many(self, events: Iterable[LifecycleEvent]) -> int:
        batch = list(events)
        self.events.extend(batch)
        return len(batch)

    async def query(self, workflow_id: str, start: Optional[float] = None,
                    end: Optional[float] = None, kinds: Optional[Iterable[str]] = None) -> List[LifecycleEvent]:
        wanted = set(kinds) if kinds else None
        return [
            e for e in self.events
            if e.workflow_id == workflow_id
            and (start is None or e.timestamp >= start)
            and (end is None or e.timestamp <= end)
            and (wanted is None or e.kind in wanted)
        ]

    def for_run(self, run_id: str) -> List[LifecycleEvent]:
        return [e for e in self.events if e.run_id == run_id]


class DatabaseEventRecorder:
    """Event log persisted in the lifecycle_events table."""

    def __init__(self, database: "Database"):
        self.database = database

    async def record(self, event: LifecycleEvent) -> bool:
        written = await self.database.add_lifecycle_events([event.to_dict()])
        if not written:
            logger.warning("Lifecycle event not persisted", kind=event.kind, run_id=event.run_id)
        return bool(written)

    async def record_many(self, events: Iterable[LifecycleEvent]) -> int:
        return await self.database.add_lifecycle_events([e.to_dict() for e in events])

    async def query(self, workflow_id: str, start: Optional[float] = None,
                    end: Optional[float] = None, kinds: Optional[Iterable[str]] = None) -> List[LifecycleEvent]:
        records = await self.database.get_lifecycle_events(
            workflow_id, start=start, end=end, kinds=list(kinds) if kinds else None
        )
        return [LifecycleEvent.from_dict(record.model_dump()) for record in records]
