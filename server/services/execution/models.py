"""Execution engine state models.

Runs, lifecycle events, server action jobs, retry policies and DLQ entries.
All models are JSON-serializable for Redis/database persistence.
"""

import asyncio
import random
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any, List, Optional

from constants import ACTION_WEBHOOK, ACTION_SEND_EMAIL


class JoinOutcome(str, Enum):
    """Result of one arrival at a Join node.

    WAIT    -> more inbound branches are expected
    RELEASE -> this arrival completed the join, continue past it
    LATE    -> the join already released for this run, no-op
    """
    WAIT = "wait"
    RELEASE = "release"
    LATE = "late"


# =============================================================================
# FREQUENCY KEYS
# =============================================================================

def action_frequency_key(workflow_id: str, node_id: str) -> str:
    """Key for action-level repeat gating."""
    return f"action:{workflow_id}:{node_id}"


def cooldown_key(workflow_id: str, trigger_type: str) -> str:
    """Key for the workflow-level trigger cooldown."""
    return f"cooldown:{workflow_id}:{trigger_type}"


# =============================================================================
# RUNS AND EVENTS
# =============================================================================

@dataclass
class Run:
    """One execution of a workflow for one visitor interaction."""
    run_id: str
    workflow_id: str
    visitor_id: str
    site_id: Optional[str] = None
    session_id: Optional[str] = None
    started_at: float = field(default_factory=time.time)
    completed: bool = False

    @classmethod
    def create(cls, workflow_id: str, visitor_id: str, site_id: Optional[str] = None,
               session_id: Optional[str] = None) -> "Run":
        return cls(
            run_id=f"run_{uuid.uuid4().hex[:16]}",
            workflow_id=workflow_id,
            visitor_id=visitor_id,
            site_id=site_id,
            session_id=session_id,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "workflow_id": self.workflow_id,
            "visitor_id": self.visitor_id,
            "site_id": self.site_id,
            "session_id": self.session_id,
            "started_at": self.started_at,
            "completed": self.completed,
        }


@dataclass
class LifecycleEvent:
    """Immutable record of one traversal step."""
    run_id: str
    workflow_id: str
    kind: str
    node_id: Optional[str] = None
    node_title: Optional[str] = None
    node_type: Optional[str] = None
    step_order: int = 0
    success: Optional[bool] = None
    execution_time_ms: Optional[float] = None
    site_id: Optional[str] = None
    visitor_id: Optional[str] = None
    detail: Optional[Dict[str, Any]] = None
    timestamp: float = field(default_factory=time.time)

    @property
    def occurred_at(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp, tz=timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dict (database row shape)."""
        return {
            "run_id": self.run_id,
            "workflow_id": self.workflow_id,
            "site_id": self.site_id,
            "visitor_id": self.visitor_id,
            "node_id": self.node_id,
            "node_title": self.node_title,
            "node_type": self.node_type,
            "kind": self.kind,
            "step_order": self.step_order,
            "success": self.success,
            "execution_time_ms": self.execution_time_ms,
            "detail": self.detail,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LifecycleEvent":
        return cls(
            run_id=data["run_id"],
            workflow_id=data["workflow_id"],
            kind=data["kind"],
            node_id=data.get("node_id"),
            node_title=data.get("node_title"),
            node_type=data.get("node_type"),
            step_order=data.get("step_order") or 0,
            success=data.get("success"),
            execution_time_ms=data.get("execution_time_ms"),
            site_id=data.get("site_id"),
            visitor_id=data.get("visitor_id"),
            detail=data.get("detail"),
            timestamp=data.get("timestamp") or time.time(),
        )


@dataclass
class JoinState:
    """Arrival counter for one Join node within one run."""
    workflow_id: str
    node_id: str
    run_id: str
    required_count: int
    received_count: int = 0
    timer: Optional[asyncio.Task] = None
    locked: bool = False


# =============================================================================
# SERVER ACTION JOBS
# =============================================================================

@dataclass
class ActionJob:
    """Authoritative action enqueued for the execution worker."""
    workflow_id: str
    node_id: str
    site_id: str
    visitor_id: str
    identified_user: Dict[str, Any] = field(default_factory=dict)
    local_storage_data: Dict[str, Any] = field(default_factory=dict)
    run_id: Optional[str] = None
    job_id: str = field(default_factory=lambda: f"job_{uuid.uuid4().hex[:16]}")
    enqueued_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "workflow_id": self.workflow_id,
            "node_id": self.node_id,
            "site_id": self.site_id,
            "visitor_id": self.visitor_id,
            "identified_user": self.identified_user,
            "local_storage_data": self.local_storage_data,
            "run_id": self.run_id,
            "enqueued_at": self.enqueued_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ActionJob":
        job = cls(
            workflow_id=data["workflow_id"],
            node_id=data["node_id"],
            site_id=data["site_id"],
            visitor_id=data["visitor_id"],
            identified_user=data.get("identified_user") or {},
            local_storage_data=data.get("local_storage_data") or {},
            run_id=data.get("run_id"),
        )
        if data.get("job_id"):
            job.job_id = data["job_id"]
        return job


# =============================================================================
# RETRY POLICY
# =============================================================================

@dataclass
class RetryPolicy:
    """Exponential backoff with jitter for webhook and email delivery.

    Delay formula: min(max_delay_ms, initial_delay_ms * multiplier ^ (attempt - 1)),
    scaled by a uniform factor in [0.85, 1.15] when jitter is enabled.
    """
    max_attempts: int = 5
    initial_delay_ms: float = 1000
    multiplier: float = 2.0
    max_delay_ms: float = 30000
    jitter: bool = True

    def calculate_delay(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """Calculate delay after a failed attempt.

        Args:
            attempt: Failed attempt number (1-indexed)
            rng: Optional random source for the jitter factor

        Returns:
            Delay in milliseconds before the next attempt
        """
        delay = min(self.max_delay_ms, self.initial_delay_ms * (self.multiplier ** (attempt - 1)))
        if self.jitter:
            delay *= (rng or random).uniform(0.85, 1.15)
        return delay

    def delays(self) -> List[float]:
        """Delay sequence for attempts 1..max_attempts."""
        return [self.calculate_delay(attempt) for attempt in range(1, self.max_attempts + 1)]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "initial_delay_ms": self.initial_delay_ms,
            "multiplier": self.multiplier,
            "max_delay_ms": self.max_delay_ms,
            "jitter": self.jitter,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RetryPolicy":
        return cls(
            max_attempts=data.get("max_attempts", 5),
            initial_delay_ms=data.get("initial_delay_ms", 1000),
            multiplier=data.get("multiplier", 2.0),
            max_delay_ms=data.get("max_delay_ms", 30000),
            jitter=data.get("jitter", True),
        )


# Max delay depends on the action class
DEFAULT_RETRY_POLICIES: Dict[str, RetryPolicy] = {
    ACTION_WEBHOOK: RetryPolicy(max_delay_ms=20000),
    ACTION_SEND_EMAIL: RetryPolicy(max_delay_ms=15000),
}


def get_retry_policy(action_title: str, jitter: bool = True) -> RetryPolicy:
    """Get a retry policy for an action title."""
    base = DEFAULT_RETRY_POLICIES.get(action_title, RetryPolicy())
    return RetryPolicy(
        max_attempts=base.max_attempts,
        initial_delay_ms=base.initial_delay_ms,
        multiplier=base.multiplier,
        max_delay_ms=base.max_delay_ms,
        jitter=jitter,
    )


# =============================================================================
# DEAD LETTER QUEUE
# =============================================================================

@dataclass
class DLQEntry:
    """Terminal record of a server action that exhausted its retries.

    Kept for manual review only, nothing replays it automatically.
    """
    id: str
    workflow_id: str
    node_id: str
    action_type: str
    payload: Dict[str, Any]
    reason: str
    retry_count: int
    enqueued_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "node_id": self.node_id,
            "action_type": self.action_type,
            "payload": self.payload,
            "reason": self.reason,
            "retry_count": self.retry_count,
            "enqueued_at": self.enqueued_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DLQEntry":
        return cls(
            id=data["id"],
            workflow_id=data["workflow_id"],
            node_id=data["node_id"],
            action_type=data["action_type"],
            payload=data.get("payload", {}),
            reason=data.get("reason", ""),
            retry_count=data.get("retry_count", 0),
            enqueued_at=data.get("enqueued_at", time.time()),
        )

    @classmethod
    def create(cls, job: ActionJob, action_type: str, reason: str, retry_count: int,
               payload: Optional[Dict[str, Any]] = None) -> "DLQEntry":
        """Factory method to create a DLQ entry from a failed job."""
        return cls(
            id=str(uuid.uuid4()),
            workflow_id=job.workflow_id,
            node_id=job.node_id,
            action_type=action_type,
            payload=payload if payload is not None else job.to_dict(),
            reason=reason,
            retry_count=retry_count,
        )
