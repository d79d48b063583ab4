import asyncio

import pytest
import pytest_asyncio

from models.nodes import Node
from services.triggers import Signal, TriggerDetector, match_triggers, trigger_matches
from services.catalog import validate_workflow

from factories import SITE_ID, VISITOR_ID, edge, node, pricing_workflow_data, workflow_data


def trigger(title, **settings):
    return Node(id="t", kind="Trigger", title=title, settings=settings)


def signal(type_, **fields):
    return Signal.model_validate({"type": type_, "siteId": SITE_ID, "visitorId": VISITOR_ID, **fields})


def single_trigger_workflow(title, workflow_id="wf-1", status="Active", **settings):
    return workflow_data(
        nodes=[node("t", "Trigger", title, **settings), node("a", "Action", "Show Notification", message="Hi")],
        edges=[edge("t", "a")],
        workflow_id=workflow_id,
        status=status,
    )


@pytest.mark.parametrize("settings, url, expected", [
    ({}, "https://shop.example.com/anything", True),
    ({"url": "/pricing"}, "https://shop.example.com/pricing?plan=pro", True),
    ({"url": "/pricing", "urlMatchType": "exact"}, "https://shop.example.com/pricing", True),
    ({"url": "/pricing", "urlMatchType": "exact"}, "https://shop.example.com/pricing/team", False),
    ({"url": "/blog", "urlMatchType": "startsWith"}, "https://shop.example.com/blog/post-1", True),
    ({"url": ".pdf", "urlMatchType": "endsWith"}, "https://shop.example.com/guide.pdf", True),
    ({"url": "/checkout"}, "https://shop.example.com/cart", False),
])
def test_page_view_matching(settings, url, expected):
    assert trigger_matches(trigger("Page View", **settings), signal("page_view", url=url)) is expected


@pytest.mark.parametrize("node_, signal_, expected", [
    (trigger("Time Spent", seconds=30), signal("time_spent", seconds=30), True),
    (trigger("Time Spent", seconds=30), signal("time_spent", seconds=10), False),
    (trigger("Time Spent"), signal("time_spent", seconds=10), False),
    (trigger("Scroll Depth", scrollDepth=50), signal("scroll_depth", percent=75), True),
    (trigger("Scroll Depth", scrollDepth=50), signal("scroll_depth", percent=25), False),
    (trigger("Element Click", selector="#buy"), signal("element_click", selector="#buy"), True),
    (trigger("Element Click", selector="#buy"), signal("element_click", selector="#other"), False),
    (trigger("Element Click"), signal("element_click", selector="#buy"), False),
    (trigger("Inactivity"), signal("inactivity", seconds=30), True),
    (trigger("Inactivity", inactivitySeconds=60), signal("inactivity", seconds=30), False),
    (trigger("Exit Intent"), signal("exit_intent"), True),
    (trigger("Custom Event", customEventName="signup"), signal("custom_event", eventName="signup"), True),
    (trigger("Custom Event", customEventName="signup"), signal("custom_event", eventName="login"), False),
    (trigger("Exit Intent"), signal("page_view"), False),
])
def test_trigger_matching(node_, signal_, expected):
    assert trigger_matches(node_, signal_) is expected


@pytest.mark.parametrize("settings, fields, expected", [
    ({"funnelId": "checkout"}, {"funnelId": "checkout", "eventType": "dropoff"}, True),
    ({"funnelId": "checkout"}, {"funnelId": "onboarding", "eventType": "dropoff"}, False),
    ({"funnelId": "checkout"}, {"funnelId": "checkout"}, False),
    ({"eventType": "conversion"}, {"funnelId": "checkout", "eventType": "dropoff"}, False),
    ({"stepIndex": 2}, {"funnelId": "f", "eventType": "dropoff", "stepIndex": 2}, True),
    ({"stepIndex": 2}, {"funnelId": "f", "eventType": "dropoff", "stepIndex": 1}, False),
    ({"timeThreshold": 5}, {"funnelId": "f", "eventType": "abandonment", "timeSpent": 120}, False),
    ({"timeThreshold": 5}, {"funnelId": "f", "eventType": "abandonment", "timeSpent": 400}, True),
    ({"userSegment": "vip, whales"}, {"funnelId": "f", "eventType": "dropoff", "tags": ["whales"]}, True),
    ({"userSegment": "vip"}, {"funnelId": "f", "eventType": "dropoff", "tags": []}, False),
    ({"userSegment": "new-visitors"}, {"funnelId": "f", "eventType": "dropoff"}, True),
    ({"userSegment": "returning-visitors"}, {"funnelId": "f", "eventType": "dropoff"}, False),
    ({"minValue": 50}, {"funnelId": "f", "eventType": "conversion", "value": 20}, False),
    ({"maxValue": 50}, {"funnelId": "f", "eventType": "conversion", "value": 20}, True),
])
def test_funnel_trigger_filters(settings, fields, expected):
    assert trigger_matches(trigger("Funnel", **settings), signal("funnel", **fields)) is expected


def test_inactive_workflows_never_match():
    workflows = [
        validate_workflow(single_trigger_workflow("Exit Intent", "wf-on")),
        validate_workflow(single_trigger_workflow("Exit Intent", "wf-paused", status="Paused")),
        validate_workflow(single_trigger_workflow("Exit Intent", "wf-draft", status="Draft")),
    ]
    matches = match_triggers(signal("exit_intent"), workflows)
    assert [w.id for w, _ in matches] == ["wf-on"]


def test_signal_accepts_snake_case_names():
    parsed = Signal.model_validate({"type": "page_view", "site_id": SITE_ID, "visitor_id": VISITOR_ID})
    assert parsed.trigger_title == "Page View"


@pytest_asyncio.fixture
async def detector(catalog, governor, executor, visitors):
    detector = TriggerDetector(catalog, governor, executor, visitors)
    yield detector
    await detector.shutdown()


async def test_signal_starts_a_run(detector, catalog, recorder):
    await catalog.save(pricing_workflow_data())

    runs = await detector.handle({
        "type": "page_view", "siteId": SITE_ID, "visitorId": VISITOR_ID,
        "url": "https://shop.example.com/pricing",
    })

    assert len(runs) == 1
    assert runs[0].completed
    events = recorder.for_run(runs[0].run_id)
    assert events[0].kind == "Trigger"
    assert events[0].node_id == "trigger"
    assert events[-1].kind == "Workflow Completed"


async def test_cooldown_suppresses_second_signal(detector, catalog, recorder, clock):
    await catalog.save(pricing_workflow_data())
    data = {"type": "page_view", "siteId": SITE_ID, "visitorId": VISITOR_ID,
            "url": "https://shop.example.com/pricing"}

    assert len(await detector.handle(data)) == 1
    events_before = len(recorder.events)
    assert await detector.handle(data) == []
    assert len(recorder.events) == events_before

    clock.advance(24 * 60 * 60 + 1)
    assert len(await detector.handle(data)) == 1


async def test_every_matching_workflow_fires(detector, catalog):
    await catalog.save(single_trigger_workflow("Exit Intent", "wf-a"))
    await catalog.save(single_trigger_workflow("Exit Intent", "wf-b"))
    await catalog.save(single_trigger_workflow("Exit Intent", "wf-paused", status="Paused"))

    runs = await detector.handle(signal("exit_intent"))

    assert sorted(run.workflow_id for run in runs) == ["wf-a", "wf-b"]


@pytest.mark.parametrize("data", [
    {},
    {"type": "teleport", "siteId": SITE_ID, "visitorId": VISITOR_ID},
    {"type": "exit_intent", "siteId": "", "visitorId": VISITOR_ID},
    {"type": "exit_intent", "siteId": SITE_ID},
])
async def test_invalid_signals_are_ignored(detector, catalog, recorder, data):
    await catalog.save(single_trigger_workflow("Exit Intent"))

    assert await detector.handle(data) == []
    assert recorder.events == []


async def test_funnel_signal_uses_stored_visitor_tags(detector, catalog, visitors):
    await catalog.save(single_trigger_workflow("Funnel", funnelId="checkout", userSegment="vip"))
    data = {"type": "funnel", "siteId": SITE_ID, "visitorId": VISITOR_ID,
            "funnelId": "checkout", "eventType": "dropoff"}

    assert await detector.handle(data) == []
    await visitors.add_tag(SITE_ID, VISITOR_ID, "vip")
    assert len(await detector.handle(data)) == 1


async def test_time_spent_timer_fires_once(detector, catalog, recorder):
    await catalog.save(single_trigger_workflow("Time Spent", seconds=0.01))
    await catalog.save(single_trigger_workflow("Exit Intent", "wf-other"))

    armed = await detector.arm_timers({"siteId": SITE_ID, "visitorId": VISITOR_ID})
    assert armed == 1
    assert detector.pending_timers == 1

    await asyncio.sleep(0.1)

    assert detector.pending_timers == 0
    triggers = [e for e in recorder.events if e.kind == "Trigger"]
    assert [(e.workflow_id, e.node_title) for e in triggers] == [("wf-1", "Time Spent")]


async def test_rearming_resets_inactivity_countdown(detector, catalog, recorder):
    await catalog.save(single_trigger_workflow("Inactivity", inactivitySeconds=0.1))
    data = {"siteId": SITE_ID, "visitorId": VISITOR_ID}

    await detector.arm_timers(data)
    await asyncio.sleep(0.06)
    await detector.arm_timers(data)
    await asyncio.sleep(0.06)

    assert recorder.events == []
    assert detector.pending_timers == 1

    await asyncio.sleep(0.1)
    assert [e.kind for e in recorder.events][0] == "Trigger"


async def test_cancelled_timers_never_fire(detector, catalog, recorder):
    await catalog.save(single_trigger_workflow("Time Spent", seconds=0.01))

    await detector.arm_timers({"siteId": SITE_ID, "visitorId": VISITOR_ID})
    assert detector.cancel_timers(VISITOR_ID) == 1
    await asyncio.sleep(0.03)

    assert recorder.events == []
    assert detector.pending_timers == 0
