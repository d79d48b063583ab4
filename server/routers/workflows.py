"""Workflow catalog and signal ingestion routes."""

from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, status

from core.container import container
from core.logging import get_logger
from services.catalog import WorkflowCatalog
from services.execution.errors import WorkflowValidationError
from services.triggers import TriggerDetector

logger = get_logger(__name__)
router = APIRouter(prefix="/api/v1/workflows", tags=["workflows"])


@router.get("/site/{site_id}/active")
async def get_active_workflows(
    site_id: str,
    catalog: WorkflowCatalog = Depends(lambda: container.catalog())
):
    """Active workflows of a site, as consumed by the page-side integration."""
    workflows = await catalog.active_for_site(site_id)
    return {
        "success": True,
        "site_id": site_id,
        "workflows": [w.to_dict() for w in workflows],
        "count": len(workflows),
    }


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_workflow(
    payload: Dict[str, Any],
    catalog: WorkflowCatalog = Depends(lambda: container.catalog())
):
    """Validate and store a workflow. Invalid graphs or settings return 422."""
    try:
        workflow = await catalog.save(payload)
    except WorkflowValidationError as e:
        logger.warning("Rejected workflow", errors=len(e.errors))
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": str(e), "errors": e.errors},
        )
    return {"success": True, "workflow": workflow.to_dict()}


@router.post("/signal")
async def ingest_signal(
    payload: Dict[str, Any],
    detector: TriggerDetector = Depends(lambda: container.detector())
):
    """Feed one visitor signal to the trigger detector."""
    runs = await detector.handle(payload)
    return {
        "success": True,
        "runs": [run.to_dict() for run in runs],
    }


@router.post("/signal/timers")
async def arm_signal_timers(
    payload: Dict[str, Any],
    detector: TriggerDetector = Depends(lambda: container.detector())
):
    """Arm Time Spent and Inactivity timers for a visitor page session."""
    armed = await detector.arm_timers(payload)
    return {"success": True, "armed": armed}


@router.get("/{workflow_id}")
async def get_workflow(
    workflow_id: str,
    catalog: WorkflowCatalog = Depends(lambda: container.catalog())
):
    workflow = await catalog.get(workflow_id)
    if workflow is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Workflow not found: {workflow_id}")
    return {
        "success": True,
        "workflow": workflow.to_dict(),
        "completions": catalog.completions(workflow_id),
    }


@router.delete("/{workflow_id}")
async def delete_workflow(
    workflow_id: str,
    catalog: WorkflowCatalog = Depends(lambda: container.catalog())
):
    if not await catalog.delete(workflow_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Workflow not found: {workflow_id}")
    return {"success": True}
