"""Funnel analytics over recorded lifecycle events.

Journeys are rebuilt per run id from step-related events. Funnel steps are
keyed by (node title, node type) and ordered by the static step order carried
on each event, so concurrent branches never reorder the funnel.
"""

from collections import Counter, OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from constants import (
    EVENT_ACTION_EXECUTED,
    EVENT_CONDITION_EVALUATED,
    EVENT_STEP_COMPLETED,
    EVENT_STEP_ENTERED,
    EVENT_TRIGGER,
    EVENT_WORKFLOW_COMPLETED,
)
from core.logging import get_logger
from services.execution.models import LifecycleEvent
from services.execution.recorder import EventRecorderProtocol

logger = get_logger(__name__)

FUNNEL_EVENT_KINDS = [
    EVENT_STEP_ENTERED,
    EVENT_STEP_COMPLETED,
    EVENT_CONDITION_EVALUATED,
    EVENT_ACTION_EXECUTED,
    EVENT_WORKFLOW_COMPLETED,
]
CRITICAL_DROP_OFF_PERCENT = 50.0
DEFAULT_TOP_PATHS = 10
RECENT_EVENTS_LIMIT = 50
PATH_SEPARATOR = " → "


def _percent(part: float, whole: float) -> float:
    return round(part / whole * 100, 1) if whole > 0 else 0.0


# =============================================================================
# JOURNEYS
# =============================================================================

@dataclass
class JourneyStep:
    node_id: str
    node_title: str
    node_type: str
    step_order: int
    entered_at: float
    completed: bool = False
    completed_at: Optional[float] = None
    condition_met: Optional[bool] = None
    execution_time_ms: Optional[float] = None


@dataclass
class Journey:
    """One run's path through the workflow."""
    run_id: str
    visitor_id: Optional[str]
    started_at: float
    steps: List[JourneyStep] = field(default_factory=list)
    completed: bool = False
    ended_at: Optional[float] = None

    def step(self, node_id: Optional[str]) -> Optional[JourneyStep]:
        for step in self.steps:
            if step.node_id == node_id:
                return step
        return None

    @property
    def path(self) -> str:
        return PATH_SEPARATOR.join(step.node_title for step in self.steps)


def build_journeys(events: List[LifecycleEvent]) -> List[Journey]:
    """Group events by run id, in timestamp order.

    Runs without any Step Entered (stray executor-less action events) are
    not journeys and are left out.
    """
    journeys: "OrderedDict[str, Journey]" = OrderedDict()

    for event in sorted(events, key=lambda e: e.timestamp):
        journey = journeys.get(event.run_id)
        if journey is None:
            journey = Journey(run_id=event.run_id, visitor_id=event.visitor_id, started_at=event.timestamp)
            journeys[event.run_id] = journey

        if event.kind == EVENT_STEP_ENTERED:
            # A Join is entered once per inbound branch; count the first entry
            if journey.step(event.node_id) is None:
                journey.steps.append(JourneyStep(
                    node_id=event.node_id or "",
                    node_title=event.node_title or "",
                    node_type=event.node_type or "",
                    step_order=event.step_order,
                    entered_at=event.timestamp,
                ))
        elif event.kind in (EVENT_STEP_COMPLETED, EVENT_ACTION_EXECUTED):
            step = journey.step(event.node_id)
            if step is not None:
                step.completed = True
                step.completed_at = event.timestamp
                if event.execution_time_ms is not None:
                    step.execution_time_ms = event.execution_time_ms
        elif event.kind == EVENT_CONDITION_EVALUATED:
            step = journey.step(event.node_id)
            if step is not None:
                step.condition_met = event.success
                step.execution_time_ms = event.execution_time_ms
        elif event.kind == EVENT_WORKFLOW_COMPLETED:
            journey.completed = True
            journey.ended_at = event.timestamp

    return [journey for journey in journeys.values() if journey.steps]


# =============================================================================
# FUNNEL
# =============================================================================

@dataclass
class FunnelStep:
    name: str
    node_title: str
    node_type: str
    step_order: int
    count: int = 0
    completed: int = 0
    success_rate: float = 0.0
    conversion_rate: float = 0.0
    drop_off: float = 0.0
    avg_time_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "node_title": self.node_title,
            "node_type": self.node_type,
            "step_order": self.step_order,
            "count": self.count,
            "completed": self.completed,
            "success_rate": self.success_rate,
            "conversion_rate": self.conversion_rate,
            "drop_off": self.drop_off,
            "avg_time_ms": self.avg_time_ms,
        }


def compute_funnel_steps(journeys: List[Journey]) -> List[FunnelStep]:
    steps: Dict[Tuple[str, str], FunnelStep] = {}
    timing: Dict[Tuple[str, str], List[float]] = {}

    for journey in journeys:
        seen = set()
        for visit in journey.steps:
            key = (visit.node_title, visit.node_type)
            step = steps.get(key)
            if step is None:
                step = FunnelStep(
                    name=f"{visit.node_title} ({visit.node_type})",
                    node_title=visit.node_title,
                    node_type=visit.node_type,
                    step_order=visit.step_order,
                )
                steps[key] = step
            # Same title twice in one run (two Show Modal nodes) counts once
            if key in seen:
                continue
            seen.add(key)
            step.count += 1
            if visit.completed:
                step.completed += 1
            if visit.execution_time_ms:
                timing.setdefault(key, []).append(visit.execution_time_ms)

    ordered = sorted(steps.values(), key=lambda s: (s.step_order, s.name))
    first_count = ordered[0].count if ordered else 0

    for index, step in enumerate(ordered):
        times = timing.get((step.node_title, step.node_type), [])
        step.avg_time_ms = round(sum(times) / len(times), 2) if times else 0.0
        step.success_rate = _percent(step.completed, step.count)
        step.conversion_rate = _percent(step.count, first_count)
        if index > 0:
            previous = ordered[index - 1]
            step.drop_off = _percent(previous.count - step.count, previous.count)
    return ordered


def compute_drop_off_rates(steps: List[FunnelStep]) -> List[Dict[str, Any]]:
    drop_offs = []
    for previous, current in zip(steps, steps[1:]):
        rate = _percent(previous.count - current.count, previous.count)
        drop_offs.append({
            "from_step": previous.name,
            "to_step": current.name,
            "drop_off_count": previous.count - current.count,
            "drop_off_rate": rate,
            "critical": rate > CRITICAL_DROP_OFF_PERCENT,
        })
    return drop_offs


def compute_step_timing(journeys: List[Journey]) -> List[Dict[str, Any]]:
    """Average execution time per node title across all journeys."""
    totals: "OrderedDict[str, List[float]]" = OrderedDict()
    for journey in journeys:
        for step in journey.steps:
            if step.execution_time_ms:
                totals.setdefault(step.node_title, []).append(step.execution_time_ms)

    return [
        {
            "step_name": title,
            "average_time_ms": round(sum(times) / len(times), 2),
            "total_executions": len(times),
        }
        for title, times in totals.items()
    ]


def compute_top_paths(journeys: List[Journey], limit: int = DEFAULT_TOP_PATHS) -> List[Dict[str, Any]]:
    counts: Counter = Counter()
    visitors: Dict[str, List[str]] = {}
    for journey in journeys:
        path = journey.path
        counts[path] += 1
        if journey.visitor_id and journey.visitor_id not in visitors.setdefault(path, []):
            visitors[path].append(journey.visitor_id)

    return [
        {"path": path, "count": count, "visitors": visitors.get(path, [])}
        for path, count in counts.most_common(limit)
    ]


class FunnelAnalyzer:
    """On-demand funnel and summary queries over the event recorder."""

    def __init__(self, recorder: EventRecorderProtocol):
        self.recorder = recorder

    async def funnel(self, workflow_id: str, start: Optional[float] = None, end: Optional[float] = None,
                     top_paths: int = DEFAULT_TOP_PATHS) -> Dict[str, Any]:
        """Funnel data for a workflow within an optional [start, end] epoch range."""
        events = await self.recorder.query(workflow_id, start=start, end=end, kinds=FUNNEL_EVENT_KINDS)
        journeys = build_journeys(events)
        steps = compute_funnel_steps(journeys)

        logger.debug("Funnel computed", workflow_id=workflow_id, events=len(events),
                     runs=len(journeys), steps=len(steps))
        return {
            "workflow_id": workflow_id,
            "total_visitors": steps[0].count if steps else 0,
            "steps": [step.to_dict() for step in steps],
            "drop_off_rates": compute_drop_off_rates(steps),
            "average_time_per_step": compute_step_timing(journeys),
            "path_analysis": compute_top_paths(journeys, top_paths),
            "total_runs": len(journeys),
            "successful_completions": sum(1 for j in journeys if j.completed),
        }

    async def summary(self, workflow_id: str, start: Optional[float] = None,
                      end: Optional[float] = None) -> Dict[str, Any]:
        """Trigger/completion totals with daily, hourly and per-node breakdowns."""
        events = await self.recorder.query(workflow_id, start=start, end=end)
        triggers = sum(1 for e in events if e.kind == EVENT_TRIGGER)
        completions = sum(1 for e in events if e.kind == EVENT_ACTION_EXECUTED)

        newest_first = sorted(events, key=lambda e: e.timestamp, reverse=True)
        return {
            "workflow_id": workflow_id,
            "total_triggers": triggers,
            "total_completions": completions,
            "conversion_rate": _percent(completions, triggers),
            "daily": self._daily(events),
            "hourly": self._hourly(events),
            "node_performance": self._node_performance(events),
            "recent_events": [e.to_dict() for e in newest_first[:RECENT_EVENTS_LIMIT]],
        }

    @staticmethod
    def _daily(events: List[LifecycleEvent]) -> List[Dict[str, Any]]:
        days: Dict[str, Dict[str, Any]] = {}
        for event in events:
            if event.kind not in (EVENT_TRIGGER, EVENT_ACTION_EXECUTED):
                continue
            date = event.occurred_at.date().isoformat()
            day = days.setdefault(date, {"date": date, "triggers": 0, "completions": 0})
            day["triggers" if event.kind == EVENT_TRIGGER else "completions"] += 1
        return sorted(days.values(), key=lambda d: d["date"])

    @staticmethod
    def _hourly(events: List[LifecycleEvent]) -> List[Dict[str, Any]]:
        hours = [{"hour": h, "triggers": 0, "completions": 0, "completion_rate": 0.0} for h in range(24)]
        for event in events:
            if event.kind == EVENT_TRIGGER:
                hours[event.occurred_at.hour]["triggers"] += 1
            elif event.kind == EVENT_ACTION_EXECUTED:
                hours[event.occurred_at.hour]["completions"] += 1
        for hour in hours:
            hour["completion_rate"] = _percent(hour["completions"], hour["triggers"])
        return hours

    @staticmethod
    def _node_performance(events: List[LifecycleEvent]) -> List[Dict[str, Any]]:
        nodes: "OrderedDict[Tuple[str, str], Dict[str, Any]]" = OrderedDict()
        for event in events:
            if event.kind not in (EVENT_TRIGGER, EVENT_ACTION_EXECUTED) or not event.node_id:
                continue
            key = (event.node_id, event.node_title or "")
            node = nodes.setdefault(key, {"node_id": event.node_id, "node_title": event.node_title,
                                          "triggers": 0, "executions": 0})
            node["triggers" if event.kind == EVENT_TRIGGER else "executions"] += 1

        for node in nodes.values():
            if node["triggers"]:
                node["performance"] = _percent(node["executions"], node["triggers"])
            else:
                node["performance"] = 100.0 if node["executions"] else 0.0
        return sorted(nodes.values(), key=lambda n: n["performance"], reverse=True)
