"""Server action execution and dead letter queue routes."""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from core.container import container
from core.logging import get_logger
from services.execution.dlq import DLQHandlerProtocol
from services.execution.models import ActionJob
from services.execution.worker import JobQueue

logger = get_logger(__name__)
router = APIRouter(prefix="/api/v1/workflows", tags=["execution"])


class ServerActionRequest(BaseModel):
    """Request from the page-side integration to run an authoritative action."""
    model_config = {"populate_by_name": True}

    workflow_id: str = Field(alias="workflowId", min_length=1)
    node_id: str = Field(alias="nodeId", min_length=1)
    site_id: str = Field(alias="siteId", min_length=1)
    visitor_id: str = Field(alias="visitorId", min_length=1)
    identified_user: Dict[str, Any] = Field(default_factory=dict, alias="identifiedUser")
    local_storage_data: Dict[str, Any] = Field(default_factory=dict, alias="localStorageData")
    run_id: Optional[str] = Field(default=None, alias="runId")


@router.post("/execution/action")
async def execute_action(
    request: ServerActionRequest,
    queue: JobQueue = Depends(lambda: container.job_queue())
):
    """Queue a server action and wait for the worker's result."""
    job = ActionJob(
        workflow_id=request.workflow_id,
        node_id=request.node_id,
        site_id=request.site_id,
        visitor_id=request.visitor_id,
        identified_user=request.identified_user,
        local_storage_data=request.local_storage_data,
        run_id=request.run_id,
    )
    future = await queue.enqueue(job)
    result = await future

    if result.get("dropped"):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=result.get("error"))
    return {
        "success": bool(result.get("success")),
        "job_id": job.job_id,
        "result": result.get("result"),
        "error": result.get("error"),
        "attempts": result.get("attempts", 1),
        "dlq_entry_id": result.get("dlq_entry_id"),
    }


@router.get("/execution/stats")
async def get_execution_stats(
    queue: JobQueue = Depends(lambda: container.job_queue())
):
    return {"success": True, **queue.stats()}


@router.get("/dlq")
async def list_dlq_entries(
    workflow_id: Optional[str] = None,
    limit: int = 100,
    dlq: DLQHandlerProtocol = Depends(lambda: container.dlq())
):
    """Dead letter entries, newest first. Entries are never replayed automatically."""
    entries = await dlq.list_entries(workflow_id=workflow_id, limit=limit)
    return {
        "success": True,
        "enabled": dlq.enabled,
        "entries": [entry.to_dict() for entry in entries],
        "count": len(entries),
    }


@router.delete("/dlq/{entry_id}")
async def delete_dlq_entry(
    entry_id: str,
    dlq: DLQHandlerProtocol = Depends(lambda: container.dlq())
):
    if not await dlq.remove(entry_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"DLQ entry not found: {entry_id}")
    return {"success": True}
