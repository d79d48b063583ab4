"""Lifecycle event ingestion and funnel analytics routes."""

import time
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, field_validator

from constants import LIFECYCLE_EVENT_KINDS
from core.container import container
from core.logging import get_logger
from services.analytics import DEFAULT_TOP_PATHS, FunnelAnalyzer
from services.execution.models import LifecycleEvent
from services.execution.recorder import EventRecorderProtocol

logger = get_logger(__name__)
router = APIRouter(prefix="/api/v1/workflows/analytics", tags=["analytics"])

MAX_BATCH_SIZE = 500


class TrackEventRequest(BaseModel):
    """Lifecycle event as sent by the page-side integration."""
    model_config = {"populate_by_name": True}

    run_id: str = Field(alias="runId", min_length=1)
    workflow_id: str = Field(alias="workflowId", min_length=1)
    kind: str = Field(alias="event")
    site_id: Optional[str] = Field(default=None, alias="siteId")
    visitor_id: Optional[str] = Field(default=None, alias="visitorId")
    node_id: Optional[str] = Field(default=None, alias="nodeId")
    node_title: Optional[str] = Field(default=None, alias="nodeTitle")
    node_type: Optional[str] = Field(default=None, alias="nodeType")
    step_order: int = Field(default=0, alias="stepOrder", ge=0)
    success: Optional[bool] = None
    execution_time_ms: Optional[float] = Field(default=None, alias="executionTime")
    detail: Optional[Dict[str, Any]] = None
    timestamp: Optional[float] = None

    @field_validator("kind")
    @classmethod
    def validate_kind(cls, v: str) -> str:
        if v not in LIFECYCLE_EVENT_KINDS:
            raise ValueError(f"unknown event kind: {v}")
        return v

    def to_event(self) -> LifecycleEvent:
        data = self.model_dump()
        data["timestamp"] = self.timestamp or time.time()
        return LifecycleEvent.from_dict(data)


class TrackBatchRequest(BaseModel):
    events: List[TrackEventRequest] = Field(min_length=1, max_length=MAX_BATCH_SIZE)


def _epoch(value: Optional[datetime]) -> Optional[float]:
    return value.timestamp() if value is not None else None


@router.post("/track")
async def track_event(
    request: TrackEventRequest,
    recorder: EventRecorderProtocol = Depends(lambda: container.recorder())
):
    """Record a single lifecycle event."""
    if not await recorder.record(request.to_event()):
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to record event")
    return {"success": True}


@router.post("/track/batch")
async def track_events(
    request: TrackBatchRequest,
    recorder: EventRecorderProtocol = Depends(lambda: container.recorder())
):
    """Record a batch of lifecycle events."""
    recorded = await recorder.record_many(e.to_event() for e in request.events)
    logger.debug("Tracked event batch", received=len(request.events), recorded=recorded)
    return {"success": True, "recorded": recorded}


@router.get("/{workflow_id}/funnel")
async def get_funnel(
    workflow_id: str,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    top_paths: int = DEFAULT_TOP_PATHS,
    analyzer: FunnelAnalyzer = Depends(lambda: container.analyzer())
):
    """Step counts, conversion, drop-off, timing and top paths for a workflow."""
    funnel = await analyzer.funnel(workflow_id, start=_epoch(start_date), end=_epoch(end_date),
                                   top_paths=top_paths)
    return {"success": True, **funnel}


@router.get("/{workflow_id}")
async def get_summary(
    workflow_id: str,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    analyzer: FunnelAnalyzer = Depends(lambda: container.analyzer())
):
    """Trigger and completion totals with daily, hourly and per-node breakdowns."""
    summary = await analyzer.summary(workflow_id, start=_epoch(start_date), end=_epoch(end_date))
    return {"success": True, **summary}
