import os
import random

# Must be set before core.config.Settings is first instantiated
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_ENABLED", "false")
os.environ.setdefault("LOG_FORMAT", "console")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
import pytest_asyncio

from core.cache import CacheService
from core.config import Settings
from services.catalog import WorkflowCatalog
from services.execution.conditions import ConditionEvaluator
from services.execution.dispatcher import ActionDispatcher
from services.execution.dlq import DLQHandler
from services.execution.executor import GraphExecutor
from services.execution.frequency import FrequencyGovernor, FrequencyStore
from services.execution.joins import JoinStateTable
from services.execution.recorder import MemoryEventRecorder
from services.handlers import HeadlessRenderer
from services.visitors import VisitorService

from factories import FakeClock


@pytest.fixture
def settings():
    return Settings(retry_jitter=False)


@pytest_asyncio.fixture
async def cache(settings):
    service = CacheService(settings)
    await service.startup()
    yield service
    await service.shutdown()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def recorder():
    return MemoryEventRecorder()


@pytest.fixture
def visitors(cache):
    return VisitorService(cache=cache)


@pytest.fixture
def catalog():
    return WorkflowCatalog()


@pytest.fixture
def dlq():
    return DLQHandler()


@pytest.fixture
def governor(cache, clock):
    return FrequencyGovernor(FrequencyStore(cache), clock=clock)


@pytest.fixture
def renderer():
    return HeadlessRenderer()


@pytest_asyncio.fixture
async def joins():
    table = JoinStateTable()
    yield table
    await table.shutdown()


@pytest.fixture
def executor(recorder, governor, joins, renderer, visitors, cache):
    return GraphExecutor(
        recorder=recorder,
        governor=governor,
        joins=joins,
        dispatcher=ActionDispatcher(renderer),
        evaluator=ConditionEvaluator(tag_lookup=visitors.has_tag, cache=cache),
        rng=random.Random(7),
    )
