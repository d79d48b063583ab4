import json

import httpx
import pytest
import pytest_asyncio

from services.execution.models import ActionJob
from services.execution.worker import ExecutionWorker, JobQueue
from services.handlers import SIGNATURE_HEADER, sign_payload

from factories import SITE_ID, VISITOR_ID, edge, node, webhook_workflow_data, workflow_data


class FlakyEndpoint:
    """MockTransport handler failing the first ``failures`` requests."""

    def __init__(self, failures, status_code=503):
        self.failures = failures
        self.status_code = status_code
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        if len(self.requests) <= self.failures:
            return httpx.Response(self.status_code, text="unavailable")
        return httpx.Response(200, json={"ok": True})


@pytest.fixture
def sleeps():
    return []


@pytest_asyncio.fixture
async def make_worker(catalog, recorder, dlq, visitors, settings, sleeps):
    clients = []

    def factory(handler, settings_=None):
        async def fake_sleep(seconds):
            sleeps.append(seconds)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        clients.append(client)
        return ExecutionWorker(catalog, recorder, dlq, visitors, settings_ or settings,
                               http_client=client, sleep=fake_sleep)

    yield factory
    for client in clients:
        await client.aclose()


def job_for(workflow_id, node_id, **fields):
    return ActionJob(workflow_id=workflow_id, node_id=node_id, site_id=SITE_ID,
                     visitor_id=VISITOR_ID, run_id="run-1", **fields)


async def test_webhook_recovers_after_four_failures(make_worker, catalog, recorder, dlq, sleeps):
    await catalog.save(webhook_workflow_data())
    endpoint = FlakyEndpoint(failures=4)
    worker = make_worker(endpoint)

    result = await worker.execute(job_for("wf-webhook", "hook"))

    assert result["success"] is True
    assert result["attempts"] == 5
    assert len(endpoint.requests) == 5
    assert sleeps == [1.0, 2.0, 4.0, 8.0]
    assert await dlq.list_entries() == []
    assert recorder.events[-1].kind == "Action Executed"
    assert recorder.events[-1].detail["attempts"] == 5
    assert catalog.completions("wf-webhook") == 1


async def test_webhook_dead_letters_after_five_failures(make_worker, catalog, recorder, dlq, sleeps):
    await catalog.save(webhook_workflow_data())
    endpoint = FlakyEndpoint(failures=5, status_code=500)
    worker = make_worker(endpoint)

    result = await worker.execute(job_for("wf-webhook", "hook"))

    assert result["success"] is False
    assert len(endpoint.requests) == 5
    assert len(sleeps) == 4

    entries = await dlq.list_entries()
    assert len(entries) == 1
    assert entries[0].reason == result["error"]
    assert "500" in entries[0].reason
    assert entries[0].retry_count == 5
    assert entries[0].action_type == "Webhook"
    assert result["dlq_entry_id"] == entries[0].id

    assert recorder.events[-1].kind == "Action Failed"
    assert catalog.completions("wf-webhook") == 0


async def test_connection_errors_are_retried(make_worker, catalog, dlq):
    await catalog.save(webhook_workflow_data())
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(204)

    result = await make_worker(handler).execute(job_for("wf-webhook", "hook"))

    assert result["success"] is True
    assert result["attempts"] == 2


async def test_webhook_request_is_templated_and_signed(make_worker, catalog, settings):
    await catalog.save(webhook_workflow_data(
        webhookMethod="put",
        webhookHeaders={"X-Visitor": "{{visitorId}}"},
        webhookBody='{"email": "{{user.email}}", "plan": "{{localStorage.plan}}"}',
    ))
    endpoint = FlakyEndpoint(failures=0)
    signed = settings.model_copy(update={"webhook_hmac_secret": "s3cret"})
    worker = make_worker(endpoint, settings_=signed)

    await worker.execute(job_for("wf-webhook", "hook",
                                 identified_user={"email": "ada@example.com"},
                                 local_storage_data={"plan": "pro"}))

    request = endpoint.requests[0]
    body = json.loads(request.content)
    assert request.method == "PUT"
    assert request.headers["X-Visitor"] == VISITOR_ID
    assert body["visitorId"] == VISITOR_ID
    assert body["email"] == "ada@example.com"
    assert body["plan"] == "pro"
    assert body["localStorageData"] == {"plan": "pro"}
    assert request.headers[SIGNATURE_HEADER] == sign_payload(request.content, "s3cret")


async def test_email_is_simulated_without_provider_key(make_worker, catalog, recorder):
    await catalog.save(workflow_data(
        nodes=[
            node("t", "Trigger", "Exit Intent"),
            node("mail", "Action", "Send Email", emailTo="{{user.email}}",
                 emailSubject="Hi {{user.name}}", emailBody="Visitor {{visitorId}}"),
        ],
        edges=[edge("t", "mail")],
    ))
    endpoint = FlakyEndpoint(failures=0)

    result = await make_worker(endpoint).execute(
        job_for("wf-1", "mail", identified_user={"email": "ada@example.com", "name": "Ada"}))

    assert result["success"] is True
    assert result["result"] == {"simulated": True, "to": ["ada@example.com"]}
    assert result["payload"]["subject"] == "Hi Ada"
    assert endpoint.requests == []


async def test_email_provider_failures_are_retried(make_worker, catalog, settings, sleeps):
    await catalog.save(workflow_data(
        nodes=[node("t", "Trigger", "Exit Intent"),
               node("mail", "Action", "Send Email", emailTo="ada@example.com")],
        edges=[edge("t", "mail")],
    ))
    endpoint = FlakyEndpoint(failures=1)
    keyed = settings.model_copy(update={"email_api_key": "re_test"})

    result = await make_worker(endpoint, settings_=keyed).execute(job_for("wf-1", "mail"))

    assert result["success"] is True
    assert result["attempts"] == 2
    assert endpoint.requests[0].headers["Authorization"] == "Bearer re_test"


async def test_custom_code_runs_once_without_retry(make_worker, catalog, recorder, visitors, sleeps):
    await catalog.save(workflow_data(
        nodes=[node("t", "Trigger", "Exit Intent"),
               node("code", "Action", "Custom Code", customCode='[{"op": "explode"}]')],
        edges=[edge("t", "code")],
    ))

    result = await make_worker(FlakyEndpoint(0)).execute(job_for("wf-1", "code"))

    assert result["success"] is False
    assert "unsupported op" in result["error"]
    assert sleeps == []
    assert recorder.events[-1].kind == "Action Failed"


async def test_missing_workflow_or_node_is_dropped(make_worker, catalog, recorder, dlq):
    worker = make_worker(FlakyEndpoint(0))

    missing_workflow = await worker.execute(job_for("wf-gone", "hook"))
    await catalog.save(webhook_workflow_data())
    missing_node = await worker.execute(job_for("wf-webhook", "gone"))

    assert missing_workflow["dropped"] and missing_node["dropped"]
    assert recorder.events == []
    assert await dlq.list_entries() == []


@pytest_asyncio.fixture
async def queue(make_worker):
    job_queue = JobQueue(make_worker(FlakyEndpoint(0)), concurrency=3)
    await job_queue.start()
    yield job_queue
    await job_queue.stop(drain=True)


async def test_queue_runs_each_job_once(queue, catalog, visitors):
    await catalog.save(workflow_data(
        nodes=[node("t", "Trigger", "Exit Intent"), node("tag", "Action", "Add Tag", tagName="lead")],
        edges=[edge("t", "tag")],
    ))

    futures = [await queue.enqueue(job_for("wf-1", "tag")) for _ in range(10)]
    results = [await f for f in futures]

    assert all(r["success"] for r in results)
    assert queue.stats()["processed"] == 10
    assert queue.stats()["workers"] == 3
    assert await visitors.get_tags(SITE_ID, VISITOR_ID) == ["lead"]


async def test_queue_drains_on_stop(make_worker, catalog):
    await catalog.save(webhook_workflow_data())
    job_queue = JobQueue(make_worker(FlakyEndpoint(0)), concurrency=1)
    await job_queue.start()
    futures = [await job_queue.enqueue(job_for("wf-webhook", "hook")) for _ in range(3)]

    await job_queue.stop(drain=True)

    assert all(f.done() and f.result()["success"] for f in futures)
    assert not job_queue.running
