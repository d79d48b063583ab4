"""Trigger Detector - turns visitor signals into workflow runs.

Matching is pure (``match_triggers``). The detector adds the side effects:
the workflow cooldown gate, Run creation and handing the run to the graph
executor. Time Spent and Inactivity triggers are driven by per-visitor
asyncio timers that feed synthetic signals back into ``handle``.
"""

import asyncio
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError

from constants import (
    TRIGGER_PAGE_VIEW,
    TRIGGER_TIME_SPENT,
    TRIGGER_SCROLL_DEPTH,
    TRIGGER_EXIT_INTENT,
    TRIGGER_ELEMENT_CLICK,
    TRIGGER_INACTIVITY,
    TRIGGER_CUSTOM_EVENT,
    TRIGGER_FUNNEL,
    WORKFLOW_STATUS_ACTIVE,
)
from core.logging import get_logger
from models.nodes import Node, Workflow
from services.catalog import WorkflowCatalog
from services.execution.conditions import VisitorEnvironment, match_text
from services.execution.executor import GraphExecutor, RunContext
from services.execution.frequency import FrequencyGovernor, VisitorScope
from services.execution.models import Run
from services.visitors import VisitorService

logger = get_logger(__name__)

SignalType = Literal[
    "page_view", "time_spent", "scroll_depth", "exit_intent",
    "element_click", "inactivity", "custom_event", "funnel",
]

SIGNAL_TRIGGER_TITLES: Dict[str, str] = {
    "page_view": TRIGGER_PAGE_VIEW,
    "time_spent": TRIGGER_TIME_SPENT,
    "scroll_depth": TRIGGER_SCROLL_DEPTH,
    "exit_intent": TRIGGER_EXIT_INTENT,
    "element_click": TRIGGER_ELEMENT_CLICK,
    "inactivity": TRIGGER_INACTIVITY,
    "custom_event": TRIGGER_CUSTOM_EVENT,
    "funnel": TRIGGER_FUNNEL,
}

NEW_VISITORS_SEGMENT = "new-visitors"
RETURNING_VISITORS_SEGMENT = "returning-visitors"


# =============================================================================
# SIGNALS
# =============================================================================

class Signal(BaseModel):
    """One observed visitor interaction."""
    model_config = {"populate_by_name": True, "extra": "ignore"}

    type: SignalType
    site_id: str = Field(alias="siteId", min_length=1)
    visitor_id: str = Field(alias="visitorId", min_length=1)
    session_id: Optional[str] = Field(default=None, alias="sessionId")

    # Visitor environment
    url: str = ""
    referrer: str = ""
    user_agent: str = Field(default="", alias="userAgent")
    is_returning: bool = Field(default=False, alias="isReturning")
    tags: List[str] = Field(default_factory=list)
    identified_user: Dict[str, Any] = Field(default_factory=dict, alias="identifiedUser")
    local_storage: Dict[str, Any] = Field(default_factory=dict, alias="localStorage")

    # Per type payload
    seconds: Optional[float] = None
    percent: Optional[float] = None
    selector: Optional[str] = None
    event_name: Optional[str] = Field(default=None, alias="eventName")
    funnel_id: Optional[str] = Field(default=None, alias="funnelId")
    event_type: Optional[str] = Field(default=None, alias="eventType")
    step_index: Optional[int] = Field(default=None, alias="stepIndex")
    time_spent: Optional[float] = Field(default=None, alias="timeSpent")
    value: Optional[float] = None

    @property
    def trigger_title(self) -> str:
        return SIGNAL_TRIGGER_TITLES[self.type]

    def environment(self) -> VisitorEnvironment:
        return VisitorEnvironment(
            url=self.url,
            referrer=self.referrer,
            user_agent=self.user_agent,
            is_returning=self.is_returning,
        )


# =============================================================================
# MATCHING
# =============================================================================

def _funnel_matches(settings, signal: Signal) -> bool:
    if not signal.funnel_id or not signal.event_type:
        return False
    if settings.funnel_id and settings.funnel_id != signal.funnel_id:
        return False
    if settings.event_type and settings.event_type != signal.event_type:
        return False
    if settings.step_index is not None and signal.step_index is not None:
        if signal.step_index != settings.step_index:
            return False
    # Threshold is configured in minutes
    if settings.time_threshold and settings.time_threshold > 0:
        if signal.time_spent and signal.time_spent < settings.time_threshold * 60:
            return False
    if settings.user_segment and settings.user_segment.strip():
        segments = [s.strip() for s in settings.user_segment.split(",") if s.strip()]
        if not any(
            segment in signal.tags
            or (segment == NEW_VISITORS_SEGMENT and not signal.is_returning)
            or (segment == RETURNING_VISITORS_SEGMENT and signal.is_returning)
            for segment in segments
        ):
            return False
    if signal.value is not None:
        if settings.min_value is not None and signal.value < settings.min_value:
            return False
        if settings.max_value is not None and signal.value > settings.max_value:
            return False
    return True


def trigger_matches(trigger: Node, signal: Signal) -> bool:
    """Whether a trigger node's settings accept the signal."""
    if trigger.title != signal.trigger_title:
        return False

    settings = trigger.typed_settings
    title = trigger.title

    if title == TRIGGER_PAGE_VIEW:
        if not settings.url:
            return True
        env = signal.environment()
        value = env.path if settings.url_match_type in ("startsWith", "endsWith") else signal.url
        if settings.url_match_type == "exact":
            return signal.url == settings.url or env.path == settings.url
        return match_text(value, settings.url, settings.url_match_type)

    if title == TRIGGER_TIME_SPENT:
        return settings.seconds > 0 and (signal.seconds or 0) >= settings.seconds

    if title == TRIGGER_SCROLL_DEPTH:
        return (signal.percent or 0) >= settings.scroll_depth

    if title == TRIGGER_ELEMENT_CLICK:
        return bool(settings.selector) and signal.selector == settings.selector

    if title == TRIGGER_INACTIVITY:
        return (signal.seconds or 0) >= settings.inactivity_seconds

    if title == TRIGGER_EXIT_INTENT:
        return True

    if title == TRIGGER_CUSTOM_EVENT:
        return bool(settings.custom_event_name) and settings.custom_event_name == signal.event_name

    if title == TRIGGER_FUNNEL:
        return _funnel_matches(settings, signal)

    return False


def match_triggers(signal: Signal, workflows: List[Workflow]) -> List[Tuple[Workflow, Node]]:
    """(workflow, trigger) pairs of Active workflows that the signal fires."""
    matches = []
    for workflow in workflows:
        if workflow.status != WORKFLOW_STATUS_ACTIVE:
            continue
        for trigger in workflow.triggers:
            if trigger_matches(trigger, signal):
                matches.append((workflow, trigger))
    return matches


# =============================================================================
# DETECTOR
# =============================================================================

class TriggerDetector:
    """Fires workflow runs for incoming signals.

    Args:
        catalog: Source of active workflows
        governor: Workflow cooldown gate
        executor: Graph executor that runs each fired workflow
        visitors: Optional tag store, used for funnel user segments
    """

    def __init__(self, catalog: WorkflowCatalog, governor: FrequencyGovernor,
                 executor: GraphExecutor, visitors: Optional[VisitorService] = None):
        self.catalog = catalog
        self.governor = governor
        self.executor = executor
        self.visitors = visitors
        self._timers: Dict[Tuple[str, str, str], asyncio.Task] = {}  # (visitor, workflow, trigger) -> task

    async def handle(self, data, workflow_id: Optional[str] = None) -> List[Run]:
        """Process one signal (dict or Signal) and return the runs it started.

        Args:
            data: Signal payload
            workflow_id: Restrict matching to one workflow (timer-driven signals)
        """
        try:
            signal = data if isinstance(data, Signal) else Signal.model_validate(data)
        except ValidationError as e:
            logger.warning("Ignoring invalid signal", errors=e.error_count())
            return []

        if signal.type == "funnel" and self.visitors is not None and not signal.tags:
            tags = await self.visitors.get_tags(signal.site_id, signal.visitor_id)
            signal = signal.model_copy(update={"tags": tags})

        workflows = await self.catalog.active_for_site(signal.site_id)
        if workflow_id is not None:
            workflows = [w for w in workflows if w.id == workflow_id]
        matches = match_triggers(signal, workflows)
        if not matches:
            return []

        scope = VisitorScope(signal.site_id, signal.visitor_id, signal.session_id)
        runs = []
        for workflow, trigger in matches:
            if not await self.governor.try_fire_trigger(workflow, trigger, scope):
                continue
            run = Run.create(workflow.id, signal.visitor_id, site_id=signal.site_id,
                             session_id=signal.session_id)
            ctx = RunContext(
                run=run,
                graph=self.catalog.graph_for(workflow),
                env=signal.environment(),
                identified_user=signal.identified_user,
                local_storage=signal.local_storage,
            )
            runs.append(await self.executor.execute_run(ctx, trigger))
        return runs

    # =========================================================================
    # TIMED TRIGGERS
    # =========================================================================

    async def arm_timers(self, data) -> int:
        """Arm Time Spent and Inactivity timers for a visitor's page session.

        Re-arming replaces existing timers, so calling this on every visitor
        activity resets inactivity countdowns.
        """
        try:
            base = data if isinstance(data, Signal) else Signal.model_validate({"type": "page_view", **data})
        except ValidationError as e:
            logger.warning("Ignoring invalid timer request", errors=e.error_count())
            return 0

        armed = 0
        for workflow in await self.catalog.active_for_site(base.site_id):
            for trigger in workflow.triggers:
                if trigger.title == TRIGGER_TIME_SPENT:
                    delay = trigger.typed_settings.seconds
                    if delay <= 0:
                        continue
                    signal_type = "time_spent"
                elif trigger.title == TRIGGER_INACTIVITY:
                    delay = trigger.typed_settings.inactivity_seconds
                    signal_type = "inactivity"
                else:
                    continue

                key = (base.visitor_id, workflow.id, trigger.id)
                self._cancel(key)
                signal = base.model_copy(update={"type": signal_type, "seconds": delay})
                self._timers[key] = asyncio.create_task(self._fire_later(key, delay, signal))
                armed += 1

        logger.debug("Timed triggers armed", visitor_id=base.visitor_id, count=armed)
        return armed

    def cancel_timers(self, visitor_id: str) -> int:
        """Cancel every pending timer of a visitor (page unload)."""
        keys = [key for key in self._timers if key[0] == visitor_id]
        for key in keys:
            self._cancel(key)
        return len(keys)

    @property
    def pending_timers(self) -> int:
        return len(self._timers)

    async def _fire_later(self, key: Tuple[str, str, str], delay: float, signal: Signal):
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            return
        # Done waiting; drop the entry before running so re-arming is possible
        if self._timers.get(key) is asyncio.current_task():
            del self._timers[key]
        try:
            await self.handle(signal, workflow_id=key[1])
        except Exception as e:
            logger.error("Timed trigger failed", visitor_id=key[0], workflow_id=key[1], error=str(e))

    def _cancel(self, key: Tuple[str, str, str]) -> None:
        task = self._timers.pop(key, None)
        if task is not None and not task.done():
            task.cancel()

    async def shutdown(self):
        """Cancel all pending timers."""
        tasks = list(self._timers.values())
        for task in tasks:
            task.cancel()
        self._timers.clear()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Trigger detector stopped", cancelled=len(tasks))
