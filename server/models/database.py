"""SQLModel database models and tables."""

from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from sqlmodel import SQLModel, Field, Column, DateTime, JSON
from sqlalchemy import UniqueConstraint, func


class WorkflowRecord(SQLModel, table=True):
    """Persisted workflow definitions (nodes and edges stored as JSON)."""

    __tablename__ = "workflows"

    id: str = Field(primary_key=True, max_length=255)
    site_id: str = Field(index=True, max_length=255)
    name: str = Field(default="", max_length=255)
    status: str = Field(default="Draft", max_length=20, index=True)
    data: Dict[str, Any] = Field(sa_column=Column(JSON))
    completions: int = Field(default=0)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), onupdate=func.now())
    )


class LifecycleEventRecord(SQLModel, table=True):
    """Append-only execution event log. Timestamps are epoch seconds."""

    __tablename__ = "lifecycle_events"

    id: Optional[int] = Field(default=None, primary_key=True)
    run_id: str = Field(index=True, max_length=255)
    workflow_id: str = Field(index=True, max_length=255)
    site_id: Optional[str] = Field(default=None, max_length=255)
    visitor_id: Optional[str] = Field(default=None, max_length=255)
    node_id: Optional[str] = Field(default=None, max_length=255)
    node_title: Optional[str] = Field(default=None, max_length=255)
    node_type: Optional[str] = Field(default=None, max_length=50)
    kind: str = Field(max_length=50, index=True)
    step_order: int = Field(default=0)
    success: Optional[bool] = Field(default=None)
    execution_time_ms: Optional[float] = Field(default=None)
    detail: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    timestamp: float = Field(index=True)


class DLQRecord(SQLModel, table=True):
    """Dead letter queue for server actions that exhausted their retries."""

    __tablename__ = "dead_letter_queue"

    id: str = Field(primary_key=True, max_length=255)
    workflow_id: str = Field(index=True, max_length=255)
    node_id: str = Field(max_length=255)
    action_type: str = Field(max_length=100)
    payload: Dict[str, Any] = Field(sa_column=Column(JSON))
    reason: str = Field(default="", max_length=2000)
    retry_count: int = Field(default=0)
    enqueued_at: float = Field(index=True)


class VisitorRecord(SQLModel, table=True):
    """Visitor identity and tag set, unique per site."""

    __tablename__ = "visitors"
    __table_args__ = (UniqueConstraint("site_id", "visitor_id", name="uq_visitor_site"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    site_id: str = Field(index=True, max_length=255)
    visitor_id: str = Field(index=True, max_length=255)
    tags: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), onupdate=func.now())
    )
