import asyncio
import random

import pytest_asyncio

from models.nodes import Workflow
from services.execution.conditions import ConditionEvaluator, VisitorEnvironment
from services.execution.dispatcher import ActionDispatcher
from services.execution.executor import GraphExecutor, RunContext
from services.execution.graph import WorkflowGraph
from services.execution.models import Run
from services.execution.worker import ExecutionWorker, JobQueue

from factories import SITE_ID, VISITOR_ID, edge, node, pricing_workflow_data, workflow_data

PRICING_URL = "https://shop.example.com/pricing"


async def run_workflow(executor, data, env=None, visitor_id=VISITOR_ID, session_id="session-1", **ctx_fields):
    workflow = Workflow.model_validate(data)
    run = Run.create(workflow.id, visitor_id, site_id=SITE_ID, session_id=session_id)
    ctx = RunContext(run=run, graph=WorkflowGraph(workflow), env=env or VisitorEnvironment(), **ctx_fields)
    await executor.execute_run(ctx, workflow.triggers[0])
    return ctx


def trail(recorder, ctx):
    return [(e.kind, e.node_id) for e in recorder.for_run(ctx.run.run_id)]


def is_subsequence(expected, actual):
    remaining = iter(actual)
    return all(item in remaining for item in expected)


def diamond_data(join_settings=None, left="Show Modal", left_settings=None):
    return workflow_data(
        nodes=[
            node("t", "Trigger", "Exit Intent"),
            node("left", "Condition" if left == "URL Path" else "Action", left, **(left_settings or {})),
            node("right", "Action", "Show Banner"),
            node("join", "Condition", "Join", **(join_settings or {})),
            node("end", "Action", "Track Event", eventName="converged"),
        ],
        edges=[edge("t", "left"), edge("t", "right"), edge("left", "join"),
               edge("right", "join"), edge("join", "end")],
    )


async def test_pricing_scenario_event_sequence(executor, recorder, renderer):
    ctx = await run_workflow(executor, pricing_workflow_data(), env=VisitorEnvironment(url=PRICING_URL))
    events = recorder.for_run(ctx.run.run_id)

    executed = [e for e in events if e.kind == "Action Executed"]
    assert len(executed) == 1
    chosen = executed[0].node_id
    assert chosen in ("modal", "banner")
    assert len(renderer.rendered) == 1

    assert is_subsequence([
        ("Trigger", "trigger"),
        ("Step Entered", "url"),
        ("Condition Evaluated", "url"),
        ("Step Entered", "split"),
        ("Step Entered", chosen),
        ("Action Executed", chosen),
        ("Workflow Completed", chosen),
    ], trail(recorder, ctx))

    evaluated = next(e for e in events if e.kind == "Condition Evaluated" and e.node_id == "url")
    assert evaluated.success is True
    assert evaluated.step_order == 2
    assert executed[0].step_order == 4
    assert ctx.run.completed


async def test_failed_condition_stops_the_path(executor, recorder, renderer):
    ctx = await run_workflow(executor, pricing_workflow_data(),
                             env=VisitorEnvironment(url="https://shop.example.com/about"))
    events = trail(recorder, ctx)

    assert ("Step Failed", "url") in events
    assert all(kind != "Action Executed" for kind, _ in events)
    assert all(kind != "Workflow Completed" for kind, _ in events)
    assert renderer.rendered == []

    failed = next(e for e in recorder.for_run(ctx.run.run_id) if e.kind == "Step Failed")
    assert failed.detail == {"reason": "condition not met"}


async def test_branch_split_runs_exactly_one_branch_per_run(executor, recorder):
    for _ in range(30):
        ctx = await run_workflow(executor, pricing_workflow_data(), env=VisitorEnvironment(url=PRICING_URL))
        executed = [node_id for kind, node_id in trail(recorder, ctx) if kind == "Action Executed"]
        assert len(executed) == 1


async def test_join_releases_once_when_both_branches_arrive(executor, recorder):
    ctx = await run_workflow(executor, diamond_data())
    events = trail(recorder, ctx)

    assert events.count(("Condition Evaluated", "join")) == 2
    assert events.count(("Step Completed", "join")) == 1
    assert events.count(("Action Executed", "end")) == 1
    assert events.count(("Workflow Completed", "end")) == 1


async def test_join_timeout_releases_missing_branch(executor, recorder):
    data = diamond_data(join_settings={"joinTimeoutSeconds": 0.01},
                        left="URL Path", left_settings={"url": "/never"})
    ctx = await run_workflow(executor, data, env=VisitorEnvironment(url=PRICING_URL))

    assert ("Step Completed", "join") not in trail(recorder, ctx)
    await asyncio.sleep(0.05)

    events = recorder.for_run(ctx.run.run_id)
    released = [e for e in events if e.kind == "Step Completed" and e.node_id == "join"]
    assert len(released) == 1
    assert released[0].detail == {"released_by": "timeout"}
    assert ("Workflow Completed", "end") in trail(recorder, ctx)


async def test_fan_out_completes_the_run_once(executor, recorder, renderer):
    data = workflow_data(
        nodes=[
            node("t", "Trigger", "Exit Intent"),
            node("a", "Action", "Show Modal"),
            node("b", "Action", "Show Banner"),
            node("c", "Action", "Show Notification", message="Hi"),
        ],
        edges=[edge("t", "a"), edge("t", "b"), edge("t", "c")],
    )
    ctx = await run_workflow(executor, data)
    kinds = [kind for kind, _ in trail(recorder, ctx)]

    assert kinds.count("Action Executed") == 3
    assert kinds.count("Workflow Completed") == 1
    assert len(renderer.rendered) == 3


async def test_once_ever_action_is_skipped_on_later_runs(executor, recorder):
    data = workflow_data(
        nodes=[node("t", "Trigger", "Exit Intent"), node("a", "Action", "Show Modal", frequency="once_ever")],
        edges=[edge("t", "a")],
    )

    first = await run_workflow(executor, data)
    second = await run_workflow(executor, data, session_id="session-2")

    assert ("Action Executed", "a") in trail(recorder, first)
    second_events = recorder.for_run(second.run.run_id)
    skipped = [e for e in second_events if e.kind == "Action Skipped"]
    assert len(skipped) == 1
    assert skipped[0].detail == {"reason": "frequency"}
    assert all(e.kind != "Action Started" for e in second_events)


async def test_failing_local_action_is_recorded(executor, recorder):
    data = workflow_data(
        nodes=[node("t", "Trigger", "Exit Intent"), node("r", "Action", "Redirect URL")],
        edges=[edge("t", "r")],
    )
    ctx = await run_workflow(executor, data)

    failed = [e for e in recorder.for_run(ctx.run.run_id) if e.kind == "Action Failed"]
    assert len(failed) == 1
    assert "redirect" in failed[0].detail["error"].lower()


async def test_server_action_without_queue_fails(executor, recorder):
    data = workflow_data(
        nodes=[node("t", "Trigger", "Exit Intent"), node("tag", "Action", "Add Tag", tagName="vip")],
        edges=[edge("t", "tag")],
    )
    ctx = await run_workflow(executor, data)

    assert ("Action Failed", "tag") in trail(recorder, ctx)
    assert ctx.pending_jobs == []


@pytest_asyncio.fixture
async def queued_executor(settings, catalog, recorder, dlq, visitors, governor, joins, renderer, cache):
    worker = ExecutionWorker(catalog, recorder, dlq, visitors, settings)
    queue = JobQueue(worker, concurrency=2)
    await queue.start()
    yield GraphExecutor(
        recorder=recorder,
        governor=governor,
        joins=joins,
        dispatcher=ActionDispatcher(renderer, queue=queue),
        evaluator=ConditionEvaluator(tag_lookup=visitors.has_tag, cache=cache),
        rng=random.Random(7),
    )
    await queue.stop(drain=True)


async def test_server_action_is_executed_by_the_worker(queued_executor, catalog, recorder, visitors):
    data = workflow_data(
        nodes=[
            node("t", "Trigger", "Exit Intent"),
            node("tag", "Action", "Add Tag", tagName="plan-{{localStorage.plan}}",
                 localStorageData=[{"localStorageKey": "selectedPlan", "payloadKey": "plan"}]),
        ],
        edges=[edge("t", "tag")],
    )
    await catalog.save(data)

    ctx = await run_workflow(queued_executor, data, local_storage={"selectedPlan": "pro", "ignored": 1})
    assert len(ctx.pending_jobs) == 1
    result = await ctx.pending_jobs[0]

    assert result["success"] is True
    assert await visitors.get_tags(SITE_ID, VISITOR_ID) == ["plan-pro"]
    kinds = [kind for kind, _ in trail(recorder, ctx)]
    assert kinds.index("Action Started") < kinds.index("Action Executed")
    assert catalog.completions("wf-1") == 1


async def test_queued_action_outcome_is_recorded_after_step_completed(queued_executor, catalog, recorder):
    data = workflow_data(
        nodes=[node("t", "Trigger", "Exit Intent"), node("tag", "Action", "Add Tag", tagName="lead")],
        edges=[edge("t", "tag")],
    )
    await catalog.save(data)

    ctx = await run_workflow(queued_executor, data)
    await asyncio.gather(*ctx.pending_jobs)

    tag_events = [e for e in recorder.for_run(ctx.run.run_id) if e.node_id == "tag"]
    kinds = [e.kind for e in tag_events]
    assert kinds == ["Step Entered", "Action Started", "Step Completed", "Workflow Completed", "Action Executed"]
    assert {e.step_order for e in tag_events} == {2}


async def test_tag_added_by_one_run_is_seen_by_the_next(queued_executor, catalog, recorder, visitors):
    tagger = workflow_data(
        nodes=[node("t", "Trigger", "Exit Intent"), node("tag", "Action", "Add Tag", tagName="vip")],
        edges=[edge("t", "tag")],
        workflow_id="wf-tagger",
    )
    gated = workflow_data(
        nodes=[
            node("t", "Trigger", "Exit Intent"),
            node("is-vip", "Condition", "Tag", tagName="vip"),
            node("offer", "Action", "Show Modal"),
        ],
        edges=[edge("t", "is-vip"), edge("is-vip", "offer")],
        workflow_id="wf-gated",
    )
    await catalog.save(tagger)

    ctx = await run_workflow(queued_executor, tagger)
    await asyncio.gather(*ctx.pending_jobs)
    gated_ctx = await run_workflow(queued_executor, gated)

    assert ("Action Executed", "offer") in trail(recorder, gated_ctx)
