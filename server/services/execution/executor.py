"""Graph executor: walks a workflow graph for one run.

Per node the state machine is:

    Step Entered
      -> Condition: evaluate, Condition Evaluated
           false and not a Join -> Step Failed, path ends
           Join -> arrival counting decides continuation
      -> Action: frequency gate -> Action Skipped
                 else Action Started -> run -> Action Executed / Action Failed
    Step Completed
      -> Branch Split: follow exactly one edge
      -> otherwise: follow every edge concurrently (asyncio.gather)

A path reaching a node without outgoing edges emits Workflow Completed,
at most once per run. Server actions are handed to the job queue; their
Executed/Failed events come from the execution worker.
"""

import asyncio
import random
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from constants import (
    CONDITION_BRANCH_SPLIT,
    CONDITION_JOIN,
    EVENT_ACTION_EXECUTED,
    EVENT_ACTION_FAILED,
    EVENT_ACTION_SKIPPED,
    EVENT_ACTION_STARTED,
    EVENT_CONDITION_EVALUATED,
    EVENT_STEP_COMPLETED,
    EVENT_STEP_ENTERED,
    EVENT_STEP_FAILED,
    EVENT_TRIGGER,
    EVENT_WORKFLOW_COMPLETED,
)
from core.logging import get_logger, run_logging_context
from models.nodes import Node
from .conditions import ConditionEvaluator, VisitorEnvironment, select_branch_edge
from .dispatcher import ActionDispatcher
from .frequency import FrequencyGovernor, VisitorScope
from .graph import WorkflowGraph
from .joins import JoinStateTable
from .models import JoinOutcome, LifecycleEvent, Run
from .recorder import EventRecorderProtocol

logger = get_logger(__name__)


@dataclass
class RunContext:
    """Everything one run needs while traversing."""
    run: Run
    graph: WorkflowGraph
    env: VisitorEnvironment = field(default_factory=VisitorEnvironment)
    identified_user: Dict[str, Any] = field(default_factory=dict)
    local_storage: Dict[str, Any] = field(default_factory=dict)
    # Futures of server action jobs enqueued during this run
    pending_jobs: List[asyncio.Future] = field(default_factory=list)

    @property
    def scope(self) -> VisitorScope:
        return VisitorScope(
            site_id=self.run.site_id or "",
            visitor_id=self.run.visitor_id,
            session_id=self.run.session_id,
        )


class GraphExecutor:
    """Traverses workflow graphs.

    Args:
        recorder: Lifecycle event sink
        governor: Frequency governor for action repeat gating
        joins: Join state table shared by all runs
        dispatcher: Runs local actions and enqueues server actions
        evaluator: Condition evaluator
        rng: Random source for Branch Split selection
    """

    def __init__(self, recorder: EventRecorderProtocol, governor: FrequencyGovernor,
                 joins: JoinStateTable, dispatcher: ActionDispatcher,
                 evaluator: Optional[ConditionEvaluator] = None,
                 rng: Optional[random.Random] = None):
        self.recorder = recorder
        self.governor = governor
        self.joins = joins
        self.dispatcher = dispatcher
        self.evaluator = evaluator or ConditionEvaluator()
        self.rng = rng or random.Random()

    # =========================================================================
    # ENTRY POINT
    # =========================================================================

    async def execute_run(self, ctx: RunContext, trigger: Node) -> Run:
        """Record the Trigger event and traverse from the trigger node."""
        with run_logging_context(ctx.run.run_id, ctx.run.workflow_id, ctx.run.visitor_id):
            logger.info("Run started", trigger=trigger.title)
            await self._record(ctx, trigger, EVENT_TRIGGER, success=True)
            await self._follow_edges(ctx, trigger)
        return ctx.run

    # =========================================================================
    # NODE STATE MACHINE
    # =========================================================================

    async def _visit(self, ctx: RunContext, node: Node) -> None:
        try:
            await self._visit_node(ctx, node)
        except Exception as e:
            # One failing path must not take down sibling branches
            logger.error("Traversal error", run_id=ctx.run.run_id, node_id=node.id, error=str(e))
            await self._record(ctx, node, EVENT_STEP_FAILED, success=False, detail={"error": str(e)})

    async def _visit_node(self, ctx: RunContext, node: Node) -> None:
        await self._record(ctx, node, EVENT_STEP_ENTERED)

        if node.is_condition:
            start = time.time()
            passed = await self.evaluator.evaluate(node, ctx.env, ctx.run.site_id or "", ctx.run.visitor_id)
            await self._record(ctx, node, EVENT_CONDITION_EVALUATED, success=passed,
                               execution_time_ms=_elapsed_ms(start))

            if node.title == CONDITION_JOIN:
                await self._arrive_at_join(ctx, node)
                return

            if not passed:
                await self._record(ctx, node, EVENT_STEP_FAILED, success=False,
                                   detail={"reason": "condition not met"})
                logger.debug("Condition failed, path stopped", run_id=ctx.run.run_id, node_id=node.id)
                return

        elif node.is_action:
            await self._run_action(ctx, node)

        await self._complete_step(ctx, node)

    async def _run_action(self, ctx: RunContext, node: Node) -> None:
        scope = ctx.scope
        if not await self.governor.action_allowed(ctx.run.workflow_id, node, scope):
            await self._record(ctx, node, EVENT_ACTION_SKIPPED, detail={"reason": "frequency"})
            return

        await self._record(ctx, node, EVENT_ACTION_STARTED)
        start = time.time()
        outcome = await self.dispatcher.dispatch(ctx, node)

        if outcome.enqueued:
            # Worker records Executed/Failed once the job finishes
            ctx.pending_jobs.append(outcome.future)
            await self.governor.record_action(ctx.run.workflow_id, node, scope)
            return

        if outcome.success:
            await self._record(ctx, node, EVENT_ACTION_EXECUTED, success=True,
                               execution_time_ms=_elapsed_ms(start))
            await self.governor.record_action(ctx.run.workflow_id, node, scope)
        else:
            await self._record(ctx, node, EVENT_ACTION_FAILED, success=False,
                               execution_time_ms=_elapsed_ms(start), detail={"error": outcome.error})

    async def _arrive_at_join(self, ctx: RunContext, node: Node) -> None:
        timeout = node.typed_settings.join_timeout_seconds

        async def on_timeout():
            await self._complete_step(ctx, node, detail={"released_by": "timeout"})

        outcome = self.joins.arrive(
            ctx.run.workflow_id, node.id, ctx.run.run_id,
            required_count=ctx.graph.inbound_count(node.id),
            timeout_seconds=timeout,
            on_timeout=on_timeout,
        )
        if outcome == JoinOutcome.RELEASE:
            await self._complete_step(ctx, node)
        elif outcome == JoinOutcome.LATE:
            logger.debug("Late join arrival ignored", run_id=ctx.run.run_id, node_id=node.id)

    async def _complete_step(self, ctx: RunContext, node: Node, detail: Optional[Dict[str, Any]] = None) -> None:
        await self._record(ctx, node, EVENT_STEP_COMPLETED, success=True, detail=detail)
        await self._follow_edges(ctx, node)

    # =========================================================================
    # EDGE RESOLUTION
    # =========================================================================

    async def _follow_edges(self, ctx: RunContext, node: Node) -> None:
        edges = ctx.graph.outgoing(node.id)
        if not edges:
            await self._complete_run(ctx, node)
            return

        if node.title == CONDITION_BRANCH_SPLIT:
            chosen = select_branch_edge(node, edges, self.rng)
            edges = [chosen] if chosen else []
            logger.debug("Branch selected", run_id=ctx.run.run_id, node_id=node.id,
                         target=chosen.target if chosen else None)

        targets = [ctx.graph.get_node(edge.target) for edge in edges]
        targets = [t for t in targets if t is not None]

        if len(targets) == 1:
            await self._visit(ctx, targets[0])
        elif targets:
            await asyncio.gather(*(self._visit(ctx, target) for target in targets))

    async def _complete_run(self, ctx: RunContext, node: Node) -> None:
        if ctx.run.completed:
            return
        # Set before awaiting so concurrent sibling paths see it
        ctx.run.completed = True
        await self._record(ctx, node, EVENT_WORKFLOW_COMPLETED, success=True,
                           execution_time_ms=round((time.time() - ctx.run.started_at) * 1000, 2))
        logger.info("Run completed", run_id=ctx.run.run_id, workflow_id=ctx.run.workflow_id)

    # =========================================================================
    # EVENTS
    # =========================================================================

    async def _record(self, ctx: RunContext, node: Node, kind: str, success: Optional[bool] = None,
                      execution_time_ms: Optional[float] = None,
                      detail: Optional[Dict[str, Any]] = None) -> None:
        await self.recorder.record(LifecycleEvent(
            run_id=ctx.run.run_id,
            workflow_id=ctx.run.workflow_id,
            site_id=ctx.run.site_id,
            visitor_id=ctx.run.visitor_id,
            node_id=node.id,
            node_title=node.title,
            node_type=node.kind,
            kind=kind,
            step_order=ctx.graph.step_order(node.id),
            success=success,
            execution_time_ms=execution_time_ms,
            detail=detail,
        ))


def _elapsed_ms(start: float) -> float:
    return round((time.time() - start) * 1000, 2)
