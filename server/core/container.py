"""Dependency injection container for the application."""

from dependency_injector import containers, providers

from core.config import Settings
from core.database import Database
from core.cache import CacheService
from services.analytics import FunnelAnalyzer
from services.catalog import WorkflowCatalog
from services.execution.conditions import ConditionEvaluator
from services.execution.dispatcher import ActionDispatcher
from services.execution.dlq import create_dlq_handler
from services.execution.executor import GraphExecutor
from services.execution.frequency import FrequencyGovernor, FrequencyStore
from services.execution.joins import JoinStateTable
from services.execution.recorder import DatabaseEventRecorder
from services.execution.worker import ExecutionWorker, JobQueue
from services.handlers import HeadlessRenderer
from services.triggers import TriggerDetector
from services.visitors import VisitorService


class Container(containers.DeclarativeContainer):
    """Application dependency injection container."""

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    # Persistence
    database = providers.Singleton(
        Database,
        settings=settings
    )

    # Frequency/cooldown state and tag lookups (Redis when enabled, memory otherwise)
    cache = providers.Singleton(
        CacheService,
        settings=settings
    )

    # Event log and dead letters
    recorder = providers.Singleton(
        DatabaseEventRecorder,
        database=database
    )

    dlq = providers.Singleton(
        create_dlq_handler,
        database=database,
        enabled=settings.provided.dlq_enabled
    )

    # Collaborator stores
    catalog = providers.Singleton(
        WorkflowCatalog,
        database=database
    )

    visitors = providers.Singleton(
        VisitorService,
        database=database,
        cache=cache
    )

    # Execution engine
    frequency_store = providers.Singleton(
        FrequencyStore,
        cache=cache
    )

    governor = providers.Singleton(
        FrequencyGovernor,
        store=frequency_store,
        default_cooldown_seconds=settings.provided.default_cooldown_seconds
    )

    joins = providers.Singleton(
        JoinStateTable
    )

    evaluator = providers.Singleton(
        ConditionEvaluator,
        tag_lookup=visitors.provided.has_tag,
        cache=cache,
        tag_cache_ttl=settings.provided.tag_cache_ttl
    )

    renderer = providers.Singleton(
        HeadlessRenderer
    )

    worker = providers.Singleton(
        ExecutionWorker,
        catalog=catalog,
        recorder=recorder,
        dlq=dlq,
        visitors=visitors,
        settings=settings
    )

    job_queue = providers.Singleton(
        JobQueue,
        worker=worker,
        concurrency=settings.provided.execution_workers
    )

    dispatcher = providers.Singleton(
        ActionDispatcher,
        renderer=renderer,
        queue=job_queue
    )

    executor = providers.Singleton(
        GraphExecutor,
        recorder=recorder,
        governor=governor,
        joins=joins,
        dispatcher=dispatcher,
        evaluator=evaluator
    )

    detector = providers.Singleton(
        TriggerDetector,
        catalog=catalog,
        governor=governor,
        executor=executor,
        visitors=visitors
    )

    analyzer = providers.Factory(
        FunnelAnalyzer,
        recorder=recorder
    )


# Global container instance
container = Container()
