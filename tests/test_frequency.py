from models.nodes import Node, Workflow
from services.execution.frequency import FrequencyGovernor, FrequencyStore, VisitorScope

from factories import SITE_ID, VISITOR_ID, edge, node, workflow_data

SCOPE = VisitorScope(SITE_ID, VISITOR_ID, "session-1")


def capped_workflow(cooldown_seconds):
    return Workflow.model_validate(workflow_data(
        nodes=[
            node("t", "Trigger", "Exit Intent"),
            node("cap", "Condition", "Frequency Cap", cooldownSeconds=cooldown_seconds),
            node("a", "Action", "Show Modal"),
        ],
        edges=[edge("t", "cap"), edge("cap", "a")],
    ))


def action(frequency):
    return Node(id="a", kind="Action", title="Show Modal", settings={"frequency": frequency})


async def test_cooldown_suppresses_until_elapsed(governor, clock):
    workflow = capped_workflow(60)
    trigger = workflow.get_node("t")

    assert await governor.try_fire_trigger(workflow, trigger, SCOPE)
    clock.advance(30)
    assert not await governor.try_fire_trigger(workflow, trigger, SCOPE)
    clock.advance(31)
    assert await governor.try_fire_trigger(workflow, trigger, SCOPE)


async def test_cooldown_is_per_visitor(governor):
    workflow = capped_workflow(60)
    trigger = workflow.get_node("t")

    assert await governor.try_fire_trigger(workflow, trigger, SCOPE)
    assert await governor.try_fire_trigger(workflow, trigger, VisitorScope(SITE_ID, "visitor-2"))


async def test_zero_cooldown_always_fires(governor):
    workflow = capped_workflow(0)
    trigger = workflow.get_node("t")

    assert await governor.try_fire_trigger(workflow, trigger, SCOPE)
    assert await governor.try_fire_trigger(workflow, trigger, SCOPE)


async def test_default_cooldown_without_frequency_cap(cache, clock):
    governor = FrequencyGovernor(FrequencyStore(cache), default_cooldown_seconds=3600, clock=clock)
    workflow = Workflow.model_validate(workflow_data(nodes=[node("t", "Trigger", "Exit Intent")], edges=[]))
    trigger = workflow.get_node("t")

    assert governor.cooldown_seconds(workflow) == 3600
    assert await governor.try_fire_trigger(workflow, trigger, SCOPE)
    clock.advance(3599)
    assert not await governor.try_fire_trigger(workflow, trigger, SCOPE)


async def test_funnel_trigger_fires_once_per_session(governor):
    workflow = Workflow.model_validate(workflow_data(
        nodes=[node("t", "Trigger", "Funnel", funnelId="checkout", eventType="dropoff")], edges=[],
    ))
    trigger = workflow.get_node("t")

    assert await governor.try_fire_trigger(workflow, trigger, SCOPE)
    assert not await governor.try_fire_trigger(workflow, trigger, SCOPE)
    assert await governor.try_fire_trigger(workflow, trigger, VisitorScope(SITE_ID, VISITOR_ID, "session-2"))


async def test_every_trigger_is_never_gated(governor):
    node_ = action("every_trigger")
    await governor.record_action("wf-1", node_, SCOPE)
    assert await governor.action_allowed("wf-1", node_, SCOPE)


async def test_once_per_session(governor):
    node_ = action("once_per_session")

    assert await governor.action_allowed("wf-1", node_, SCOPE)
    await governor.record_action("wf-1", node_, SCOPE)
    assert not await governor.action_allowed("wf-1", node_, SCOPE)
    assert await governor.action_allowed("wf-1", node_, VisitorScope(SITE_ID, VISITOR_ID, "session-2"))


async def test_once_ever(governor):
    node_ = action("once_ever")

    await governor.record_action("wf-1", node_, SCOPE)
    assert not await governor.action_allowed("wf-1", node_, SCOPE)
    assert not await governor.action_allowed("wf-1", node_, VisitorScope(SITE_ID, VISITOR_ID, "session-2"))
    assert await governor.action_allowed("wf-2", node_, SCOPE)


async def test_clearing_the_session_resets_session_gates(governor):
    node_ = action("once_per_session")
    await governor.record_action("wf-1", node_, SCOPE)

    await governor.store.clear_session(SCOPE)

    assert await governor.action_allowed("wf-1", node_, SCOPE)
