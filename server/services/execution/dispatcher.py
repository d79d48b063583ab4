"""Action dispatcher: run local actions inline, enqueue authoritative ones."""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from constants import LOCAL_ACTION_TITLES, SERVER_ACTION_TITLES
from core.logging import get_logger
from models.nodes import LocalStorageMapping, Node
from services.handlers import LocalActionRenderer, build_template_context, handle_local_action
from .models import ActionJob

if TYPE_CHECKING:
    from .executor import RunContext
    from .worker import JobQueue

logger = get_logger(__name__)


@dataclass
class DispatchOutcome:
    """What happened to one dispatched action.

    ``enqueued`` outcomes are decided later by the execution worker.
    """
    success: bool
    enqueued: bool = False
    job: Optional[ActionJob] = None
    future: Optional[asyncio.Future] = None
    result: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


def collect_local_storage(mappings: List[LocalStorageMapping], local_storage: Dict[str, Any]) -> Dict[str, Any]:
    """Copy mapped localStorage values into payload keys, skipping missing ones."""
    collected: Dict[str, Any] = {}
    for mapping in mappings:
        value = local_storage.get(mapping.local_storage_key)
        if value is not None:
            collected[mapping.payload_key] = value
    return collected


class ActionDispatcher:
    """Routes action nodes to the local renderer or the job queue."""

    def __init__(self, renderer: LocalActionRenderer, queue: Optional["JobQueue"] = None):
        self.renderer = renderer
        self.queue = queue

    async def dispatch(self, ctx: "RunContext", node: Node) -> DispatchOutcome:
        if node.title in SERVER_ACTION_TITLES:
            return await self._enqueue(ctx, node)

        if node.title not in LOCAL_ACTION_TITLES:
            logger.warning("Unknown action type, skipping", node_id=node.id, title=node.title)
            return DispatchOutcome(success=False, error=f"Unknown action: {node.title}")

        context = build_template_context(ctx.run.visitor_id, ctx.run.site_id or "",
                                         ctx.identified_user, ctx.local_storage)
        result = await handle_local_action(node.id, node.typed_settings, context, self.renderer)
        return DispatchOutcome(success=result["success"], result=result, error=result.get("error"))

    async def _enqueue(self, ctx: "RunContext", node: Node) -> DispatchOutcome:
        if self.queue is None:
            return DispatchOutcome(success=False, error="No job queue configured for server actions")

        settings = node.typed_settings
        job = ActionJob(
            workflow_id=ctx.run.workflow_id,
            node_id=node.id,
            site_id=ctx.run.site_id or "",
            visitor_id=ctx.run.visitor_id,
            identified_user=dict(ctx.identified_user),
            local_storage_data=collect_local_storage(settings.local_storage_data, ctx.local_storage),
            run_id=ctx.run.run_id,
        )
        try:
            future = await self.queue.enqueue(job)
        except Exception as e:
            logger.error("Failed to enqueue server action", node_id=node.id, error=str(e))
            return DispatchOutcome(success=False, job=job, error=str(e))

        logger.info("Server action enqueued", job_id=job.job_id, node_id=node.id, title=node.title)
        return DispatchOutcome(success=True, enqueued=True, job=job, future=future)
