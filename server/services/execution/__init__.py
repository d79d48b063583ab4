"""Execution engine package.

Visitor workflow execution with:
- Static step ordering and graph lookups (graph.py)
- Condition evaluation and Branch Split selection (conditions.py)
- Join synchronisation per run (joins.py)
- Frequency gating and workflow cooldowns (frequency.py)
- Lifecycle event recording (recorder.py)
- Retry policies and the dead letter queue (models.py, dlq.py)

The executor, dispatcher and worker modules are imported directly
(services.execution.executor etc.) since they depend on the handlers package.
"""

from .models import (
    JoinOutcome,
    Run,
    LifecycleEvent,
    JoinState,
    ActionJob,
    RetryPolicy,
    DLQEntry,
    action_frequency_key,
    cooldown_key,
    get_retry_policy,
    DEFAULT_RETRY_POLICIES,
)
from .errors import (
    WorkflowEngineError,
    WorkflowValidationError,
    NotFoundError,
    DeliveryError,
    RetriesExhaustedError,
    CustomCodeError,
)
from .graph import WorkflowGraph, compute_step_orders
from .conditions import (
    ConditionEvaluator,
    VisitorEnvironment,
    branch_weights,
    pick_variant,
    select_branch_edge,
    match_text,
)
from .joins import JoinStateTable
from .frequency import FrequencyStore, FrequencyGovernor, VisitorScope
from .recorder import (
    EventRecorderProtocol,
    MemoryEventRecorder,
    DatabaseEventRecorder,
)
from .dlq import (
    DLQHandler,
    NullDLQHandler,
    DLQHandlerProtocol,
    create_dlq_handler,
)

__all__ = [
    # Models
    "JoinOutcome",
    "Run",
    "LifecycleEvent",
    "JoinState",
    "ActionJob",
    "RetryPolicy",
    "DLQEntry",
    "action_frequency_key",
    "cooldown_key",
    "get_retry_policy",
    "DEFAULT_RETRY_POLICIES",
    # Errors
    "WorkflowEngineError",
    "WorkflowValidationError",
    "NotFoundError",
    "DeliveryError",
    "RetriesExhaustedError",
    "CustomCodeError",
    # Graph
    "WorkflowGraph",
    "compute_step_orders",
    # Conditions
    "ConditionEvaluator",
    "VisitorEnvironment",
    "branch_weights",
    "pick_variant",
    "select_branch_edge",
    "match_text",
    # Joins
    "JoinStateTable",
    # Frequency
    "FrequencyStore",
    "FrequencyGovernor",
    "VisitorScope",
    # Recorder
    "EventRecorderProtocol",
    "MemoryEventRecorder",
    "DatabaseEventRecorder",
    # DLQ
    "DLQHandler",
    "NullDLQHandler",
    "DLQHandlerProtocol",
    "create_dlq_handler",
]
