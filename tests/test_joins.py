import asyncio

from services.execution.joins import JoinStateTable
from services.execution.models import JoinOutcome


async def test_release_after_all_branches_arrive(joins):
    assert joins.arrive("wf", "join", "run-1", required_count=3) == JoinOutcome.WAIT
    assert joins.arrive("wf", "join", "run-1", required_count=3) == JoinOutcome.WAIT
    assert joins.get("wf", "join", "run-1").received_count == 2

    assert joins.arrive("wf", "join", "run-1", required_count=3) == JoinOutcome.RELEASE
    assert joins.is_released("wf", "join", "run-1")
    assert joins.active_count == 0


async def test_arrivals_after_release_are_late(joins):
    joins.arrive("wf", "join", "run-1", required_count=1)

    assert joins.arrive("wf", "join", "run-1", required_count=1) == JoinOutcome.LATE


async def test_runs_are_independent(joins):
    joins.arrive("wf", "join", "run-1", required_count=2)

    assert joins.arrive("wf", "join", "run-2", required_count=2) == JoinOutcome.WAIT
    assert joins.arrive("wf", "join", "run-1", required_count=2) == JoinOutcome.RELEASE
    assert joins.active_count == 1


async def test_timeout_releases_waiting_join(joins):
    released = []

    async def on_timeout():
        released.append("timeout")

    outcome = joins.arrive("wf", "join", "run-1", required_count=2,
                           timeout_seconds=0.01, on_timeout=on_timeout)
    assert outcome == JoinOutcome.WAIT

    await asyncio.sleep(0.05)

    assert released == ["timeout"]
    assert joins.is_released("wf", "join", "run-1")
    assert joins.arrive("wf", "join", "run-1", required_count=2) == JoinOutcome.LATE


async def test_release_cancels_pending_timeout(joins):
    released = []

    async def on_timeout():
        released.append("timeout")

    joins.arrive("wf", "join", "run-1", required_count=2, timeout_seconds=0.02, on_timeout=on_timeout)
    assert joins.arrive("wf", "join", "run-1", required_count=2) == JoinOutcome.RELEASE

    await asyncio.sleep(0.05)
    assert released == []


async def test_only_one_timer_per_join(joins):
    released = []

    async def on_timeout():
        released.append("timeout")

    for _ in range(2):
        joins.arrive("wf", "join", "run-1", required_count=3, timeout_seconds=0.01, on_timeout=on_timeout)

    await asyncio.sleep(0.05)
    assert released == ["timeout"]


async def test_released_keys_are_bounded():
    table = JoinStateTable(max_released=2)
    for run_id in ("a", "b", "c"):
        table.arrive("wf", "join", run_id, required_count=1)

    assert not table.is_released("wf", "join", "a")
    assert table.is_released("wf", "join", "c")
    await table.shutdown()


async def test_shutdown_cancels_timers():
    table = JoinStateTable()
    released = []

    async def on_timeout():
        released.append("timeout")

    table.arrive("wf", "join", "run-1", required_count=2, timeout_seconds=0.01, on_timeout=on_timeout)
    await table.shutdown()
    await asyncio.sleep(0.03)

    assert released == []
    assert table.active_count == 0
