"""Join node synchronization.

A Join continues past itself exactly once per run: when every inbound branch
has arrived, or when its timeout fires first. ``arrive`` does all of its
bookkeeping without awaiting, so concurrent branches on the event loop see a
consistent counter.
"""

import asyncio
from collections import OrderedDict
from typing import Awaitable, Callable, Dict, Optional, Set, Tuple

from core.logging import get_logger
from .models import JoinOutcome, JoinState

logger = get_logger(__name__)

JoinKey = Tuple[str, str, str]

# Released keys remembered for late-arrival detection
MAX_RELEASED_KEYS = 10000


class JoinStateTable:
    """Join states keyed by (workflow_id, node_id, run_id)."""

    def __init__(self, max_released: int = MAX_RELEASED_KEYS):
        self._states: Dict[JoinKey, JoinState] = {}
        self._released: "OrderedDict[JoinKey, None]" = OrderedDict()
        self._timers: Set[asyncio.Task] = set()
        self.max_released = max_released

    def get(self, workflow_id: str, node_id: str, run_id: str) -> Optional[JoinState]:
        return self._states.get((workflow_id, node_id, run_id))

    def is_released(self, workflow_id: str, node_id: str, run_id: str) -> bool:
        return (workflow_id, node_id, run_id) in self._released

    @property
    def active_count(self) -> int:
        return len(self._states)

    def arrive(self, workflow_id: str, node_id: str, run_id: str, required_count: int,
               timeout_seconds: Optional[float] = None,
               on_timeout: Optional[Callable[[], Awaitable[None]]] = None) -> JoinOutcome:
        """Register one branch arriving at a Join.

        Args:
            required_count: Inbound edge count of the join node
            timeout_seconds: Release after this long even if branches are missing
            on_timeout: Continuation awaited when the timeout releases the join

        Returns:
            WAIT, RELEASE or LATE
        """
        key = (workflow_id, node_id, run_id)
        if key in self._released:
            logger.debug("Late arrival at released join", workflow_id=workflow_id, node_id=node_id, run_id=run_id)
            return JoinOutcome.LATE

        state = self._states.get(key)
        if state is None:
            state = JoinState(
                workflow_id=workflow_id,
                node_id=node_id,
                run_id=run_id,
                required_count=max(1, required_count),
            )
            self._states[key] = state

        state.received_count = min(state.received_count + 1, state.required_count)

        if state.received_count >= state.required_count:
            self._release(key)
            logger.debug("Join released", node_id=node_id, run_id=run_id, received=state.received_count)
            return JoinOutcome.RELEASE

        if timeout_seconds and timeout_seconds > 0 and on_timeout is not None and not state.locked:
            state.locked = True
            state.timer = asyncio.create_task(self._fire_timeout(key, timeout_seconds, on_timeout))
            self._timers.add(state.timer)
            state.timer.add_done_callback(self._timers.discard)

        logger.debug("Join waiting", node_id=node_id, run_id=run_id,
                     received=state.received_count, required=state.required_count)
        return JoinOutcome.WAIT

    def _release(self, key: JoinKey) -> None:
        state = self._states.pop(key, None)
        if state is not None and state.timer is not None and state.timer is not asyncio.current_task():
            state.timer.cancel()
        self._released[key] = None
        while len(self._released) > self.max_released:
            self._released.popitem(last=False)

    async def _fire_timeout(self, key: JoinKey, delay: float,
                            on_timeout: Callable[[], Awaitable[None]]) -> None:
        await asyncio.sleep(delay)
        if key not in self._states:
            return
        state = self._states[key]
        self._release(key)
        logger.info("Join released by timeout", node_id=key[1], run_id=key[2],
                    received=state.received_count, required=state.required_count)
        await on_timeout()

    async def shutdown(self) -> None:
        """Cancel every armed timer and drop all state."""
        timers = list(self._timers)
        for timer in timers:
            timer.cancel()
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)
        self._timers.clear()
        self._states.clear()
        self._released.clear()
