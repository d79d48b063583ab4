"""Frequency Governor: action repeat policy and workflow trigger cooldowns.

State lives in a key-value store (CacheService, memory or Redis) scoped per
visitor (durable) and per visitor session. Keys come from
``action_frequency_key`` and ``cooldown_key`` so identical inputs always hit
the same entry.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Optional

from constants import (
    CONDITION_FREQUENCY_CAP,
    DEFAULT_COOLDOWN_SECONDS,
    FREQUENCY_ONCE_EVER,
    FREQUENCY_ONCE_PER_SESSION,
    TRIGGER_FUNNEL,
)
from core.cache import CacheService
from core.logging import get_logger
from models.nodes import Node, Workflow
from .models import action_frequency_key, cooldown_key

logger = get_logger(__name__)


@dataclass(frozen=True)
class VisitorScope:
    """Who the frequency state belongs to."""
    site_id: str
    visitor_id: str
    session_id: Optional[str] = None

    @property
    def durable_prefix(self) -> str:
        return f"freq:{self.site_id}:{self.visitor_id}"

    @property
    def session_prefix(self) -> str:
        return f"{self.durable_prefix}:session:{self.session_id or 'default'}"


class FrequencyStore:
    """Durable and session-scoped views over a CacheService."""

    def __init__(self, cache: CacheService, session_ttl: Optional[int] = 24 * 60 * 60):
        self.cache = cache
        self.session_ttl = session_ttl

    async def get(self, scope: VisitorScope, key: str, session: bool = False):
        prefix = scope.session_prefix if session else scope.durable_prefix
        return await self.cache.get(f"{prefix}:{key}")

    async def set(self, scope: VisitorScope, key: str, value, session: bool = False) -> bool:
        if session:
            return await self.cache.set(f"{scope.session_prefix}:{key}", value, ttl=self.session_ttl)
        return await self.cache.set(f"{scope.durable_prefix}:{key}", value)

    async def clear_session(self, scope: VisitorScope) -> int:
        return await self.cache.clear_pattern(f"{scope.session_prefix}:*")

    async def clear_visitor(self, scope: VisitorScope) -> int:
        return await self.cache.clear_pattern(f"{scope.durable_prefix}:*")


class FrequencyGovernor:
    """Gates action executions and trigger firings.

    Args:
        store: FrequencyStore holding the gate state
        default_cooldown_seconds: Cooldown when a workflow has no Frequency Cap node
        clock: Returns the current time in epoch seconds
    """

    def __init__(self, store: FrequencyStore,
                 default_cooldown_seconds: int = DEFAULT_COOLDOWN_SECONDS,
                 clock: Callable[[], float] = time.time):
        self.store = store
        self.default_cooldown_seconds = default_cooldown_seconds
        self.clock = clock
        self._lock = asyncio.Lock()

    # =========================================================================
    # Workflow-level cooldown
    # =========================================================================

    def cooldown_seconds(self, workflow: Workflow) -> int:
        """Cooldown from the workflow's Frequency Cap node, else the default."""
        for node in workflow.nodes:
            if node.title == CONDITION_FREQUENCY_CAP:
                seconds = node.typed_settings.cooldown_seconds
                if seconds is not None:
                    return seconds
        return self.default_cooldown_seconds

    async def try_fire_trigger(self, workflow: Workflow, trigger: Node, scope: VisitorScope) -> bool:
        """Check the cooldown gate and, when it permits, record the firing.

        Funnel triggers use a once-per-session gate instead of the timed
        cooldown. Check and record happen under one lock so two concurrent
        signals cannot both pass.
        """
        key = cooldown_key(workflow.id, trigger.title)

        async with self._lock:
            if trigger.title == TRIGGER_FUNNEL:
                if await self.store.get(scope, key, session=True):
                    logger.debug("Funnel trigger already shown this session", workflow_id=workflow.id)
                    return False
                await self.store.set(scope, key, True, session=True)
                return True

            cooldown = self.cooldown_seconds(workflow)
            now = self.clock()
            if cooldown > 0:
                last_fired = await self.store.get(scope, key)
                if last_fired is not None and now - float(last_fired) < cooldown:
                    logger.debug("Trigger suppressed by cooldown",
                                 workflow_id=workflow.id,
                                 trigger=trigger.title,
                                 remaining=round(cooldown - (now - float(last_fired)), 1))
                    return False
            await self.store.set(scope, key, now)
            return True

    # =========================================================================
    # Action-level repeat policy
    # =========================================================================

    async def action_allowed(self, workflow_id: str, node: Node, scope: VisitorScope) -> bool:
        """Whether the action may run under its frequency setting."""
        frequency = getattr(node.typed_settings, "frequency", None)
        key = action_frequency_key(workflow_id, node.id)

        if frequency == FREQUENCY_ONCE_PER_SESSION:
            return not await self.store.get(scope, key, session=True)
        if frequency == FREQUENCY_ONCE_EVER:
            return not await self.store.get(scope, key)
        return True

    async def record_action(self, workflow_id: str, node: Node, scope: VisitorScope) -> None:
        """Record a successful execution for future frequency checks."""
        frequency = getattr(node.typed_settings, "frequency", None)
        key = action_frequency_key(workflow_id, node.id)

        if frequency == FREQUENCY_ONCE_PER_SESSION:
            await self.store.set(scope, key, True, session=True)
        elif frequency == FREQUENCY_ONCE_EVER:
            await self.store.set(scope, key, True)
