"""Execution worker and job queue for authoritative server actions.

The queue bounds concurrency through its worker count. Each job is handled
by exactly one worker task: resolve the workflow node, substitute
placeholders, run the action (webhook and email under the retry policy),
record the outcome and bump the workflow completion counter.
"""

import asyncio
import random
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx

from constants import (
    ACTION_ADD_TAG,
    ACTION_CUSTOM_CODE,
    ACTION_REMOVE_TAG,
    ACTION_SEND_EMAIL,
    ACTION_WEBHOOK,
    EVENT_ACTION_EXECUTED,
    EVENT_ACTION_FAILED,
    RETRIED_ACTION_TITLES,
    SERVER_ACTION_TITLES,
)
from core.config import Settings
from core.logging import get_logger, log_delivery_attempt, log_execution_time
from models.nodes import Node
from services.catalog import WorkflowCatalog
from services.handlers import (
    build_template_context,
    handle_custom_code,
    handle_send_email,
    handle_tag_action,
    handle_webhook,
)
from services.visitors import VisitorService
from .dlq import DLQHandlerProtocol
from .errors import NotFoundError, RetriesExhaustedError
from .models import ActionJob, LifecycleEvent, get_retry_policy
from .recorder import EventRecorderProtocol

logger = get_logger(__name__)


class ExecutionWorker:
    """Executes one server action job end to end.

    Args:
        catalog: Workflow catalog used to resolve the job's node
        recorder: Lifecycle event sink
        dlq: Dead letter queue for exhausted retries
        visitors: Visitor tag store for tag and custom code actions
        settings: Delivery configuration (HMAC secret, email provider, jitter)
        http_client: Shared httpx client, created on demand when omitted
        sleep: Awaitable sleep used between retry attempts
        rng: Random source for retry jitter
    """

    def __init__(self, catalog: WorkflowCatalog, recorder: EventRecorderProtocol,
                 dlq: DLQHandlerProtocol, visitors: VisitorService, settings: Settings,
                 http_client: Optional[httpx.AsyncClient] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 rng: Optional[random.Random] = None):
        self.catalog = catalog
        self.recorder = recorder
        self.dlq = dlq
        self.visitors = visitors
        self.settings = settings
        self._client = http_client
        self._owns_client = http_client is None
        self._sleep = sleep
        self.rng = rng or random.Random()

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.settings.webhook_timeout)
        return self._client

    async def shutdown(self):
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def execute(self, job: ActionJob) -> Dict[str, Any]:
        """Run a job. Never raises: every outcome is a result dict."""
        try:
            workflow = await self.catalog.require(job.workflow_id)
            node = workflow.get_node(job.node_id)
            if node is None:
                raise NotFoundError(f"Node not found: {job.node_id}")
        except NotFoundError as e:
            logger.warning("Dropping server action job", job_id=job.job_id,
                           workflow_id=job.workflow_id, node_id=job.node_id, error=str(e))
            return {"success": False, "node_id": job.node_id, "error": str(e), "dropped": True}

        if node.title not in SERVER_ACTION_TITLES:
            logger.warning("Unsupported server action", node_id=node.id, title=node.title)
            return {"success": False, "node_id": node.id, "error": f"Unsupported server action: {node.title}"}

        graph = self.catalog.graph_for(workflow)
        context = build_template_context(job.visitor_id, job.site_id, job.identified_user, job.local_storage_data)
        start_time = time.time()

        if node.title in RETRIED_ACTION_TITLES:
            try:
                result = await self._run_with_retry(job, node, context)
            except RetriesExhaustedError as e:
                result = dict(e.result)
                result.update({"success": False, "error": e.last_error, "attempts": e.attempts})
                entry = await self.dlq.add_failed_job(
                    job, node.title, e.last_error, e.attempts,
                    payload={"job": job.to_dict(), "request": result.get("payload")}
                )
                result["dlq_entry_id"] = entry.id if entry else None
        else:
            result = await self._run_once(node, context)

        success = bool(result.get("success"))
        # Direct calls without a run have no Step Entered to attach an event to
        if job.run_id:
            await self.recorder.record(LifecycleEvent(
                run_id=job.run_id,
                workflow_id=workflow.id,
                site_id=job.site_id,
                visitor_id=job.visitor_id,
                node_id=node.id,
                node_title=node.title,
                node_type=node.kind,
                kind=EVENT_ACTION_EXECUTED if success else EVENT_ACTION_FAILED,
                step_order=graph.step_order(node.id),
                success=success,
                execution_time_ms=round((time.time() - start_time) * 1000, 2),
                detail={"job_id": job.job_id, "error": result.get("error"), "attempts": result.get("attempts", 1)},
            ))

        if success:
            await self.catalog.increment_completions(workflow.id)
            log_execution_time(logger, f"server_action:{node.title}", start_time, time.time(),
                               workflow_id=workflow.id, node_id=node.id, visitor_id=job.visitor_id)
        else:
            logger.error("Server action failed", workflow_id=workflow.id, node_id=node.id,
                         title=node.title, error=result.get("error"))
        return result

    async def _run_once(self, node: Node, context: Dict[str, Any]) -> Dict[str, Any]:
        settings = node.typed_settings
        title = node.title

        if title == ACTION_WEBHOOK:
            return await handle_webhook(node.id, settings, context, self.client,
                                        hmac_secret=self.settings.webhook_hmac_secret,
                                        timeout=self.settings.webhook_timeout)
        elif title == ACTION_SEND_EMAIL:
            return await handle_send_email(node.id, settings, context, self.client,
                                           api_key=self.settings.email_api_key,
                                           api_url=self.settings.email_api_url,
                                           sender=self.settings.email_from,
                                           timeout=self.settings.webhook_timeout)
        elif title in (ACTION_ADD_TAG, ACTION_REMOVE_TAG):
            return await handle_tag_action(node.id, settings, context, self.visitors)
        elif title == ACTION_CUSTOM_CODE:
            return await handle_custom_code(node.id, settings, context, self.visitors)

        return {"success": False, "node_id": node.id, "error": f"Unsupported server action: {title}"}

    async def _run_with_retry(self, job: ActionJob, node: Node, context: Dict[str, Any]) -> Dict[str, Any]:
        """Retry every failure identically up to max_attempts.

        Raises:
            RetriesExhaustedError: After the last failed attempt.
        """
        policy = get_retry_policy(node.title, jitter=self.settings.retry_jitter)
        result: Dict[str, Any] = {}

        for attempt in range(1, policy.max_attempts + 1):
            result = await self._run_once(node, context)
            if result.get("success"):
                result["attempts"] = attempt
                return result

            if attempt < policy.max_attempts:
                delay_ms = policy.calculate_delay(attempt, self.rng)
                log_delivery_attempt(logger, node.title, attempt, policy.max_attempts,
                                     error=result.get("error"), retry_in_ms=delay_ms, job_id=job.job_id)
                await self._sleep(delay_ms / 1000)

        log_delivery_attempt(logger, node.title, policy.max_attempts, policy.max_attempts,
                             error=result.get("error"), job_id=job.job_id)
        raise RetriesExhaustedError(result.get("error") or "Unknown error", policy.max_attempts, result)


class JobQueue:
    """asyncio queue consumed by a fixed pool of worker tasks."""

    def __init__(self, worker: ExecutionWorker, concurrency: int = 4):
        self.worker = worker
        self.concurrency = concurrency
        self._queue: "asyncio.Queue[Tuple[ActionJob, asyncio.Future]]" = asyncio.Queue()
        self._tasks: List[asyncio.Task] = []
        self.processed = 0
        self.failed = 0

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def start(self):
        if self._tasks:
            return
        self._tasks = [asyncio.create_task(self._run(i), name=f"action-worker-{i}")
                       for i in range(self.concurrency)]
        logger.info("Job queue started", workers=self.concurrency)

    async def stop(self, drain: bool = True):
        """Stop the worker pool, optionally letting queued jobs finish first."""
        if drain and self._tasks:
            await self._queue.join()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        await self.worker.shutdown()
        logger.info("Job queue stopped", processed=self.processed, failed=self.failed)

    async def enqueue(self, job: ActionJob) -> asyncio.Future:
        """Queue a job. The returned future resolves to the worker's result dict."""
        future = asyncio.get_running_loop().create_future()
        await self._queue.put((job, future))
        logger.debug("Job enqueued", job_id=job.job_id, node_id=job.node_id, pending=self._queue.qsize())
        return future

    async def join(self):
        await self._queue.join()

    async def _run(self, index: int):
        while True:
            job, future = await self._queue.get()
            try:
                result = await self.worker.execute(job)
                self.processed += 1
                if not result.get("success"):
                    self.failed += 1
                if not future.done():
                    future.set_result(result)
            except Exception as e:
                self.failed += 1
                logger.error("Worker crashed on job", worker=index, job_id=job.job_id, error=str(e))
                if not future.done():
                    future.set_exception(e)
            finally:
                self._queue.task_done()

    def stats(self) -> Dict[str, Any]:
        return {
            "workers": len(self._tasks),
            "pending": self._queue.qsize(),
            "processed": self.processed,
            "failed": self.failed,
        }
