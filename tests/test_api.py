import pytest
from fastapi.testclient import TestClient

from main import app

from factories import SITE_ID, VISITOR_ID, edge, node, pricing_workflow_data, workflow_data


@pytest.fixture(scope="module")
def client():
    # One client for the module: the app's singletons stay on one event loop
    with TestClient(app) as test_client:
        yield test_client


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "OK"
    assert body["execution"]["running"] is True
    assert body["cache_backend"] == "memory"


def test_create_and_fetch_workflow(client):
    response = client.post("/api/v1/workflows", json=pricing_workflow_data("wf-api-pricing"))
    assert response.status_code == 201
    assert response.json()["workflow"]["siteId"] == SITE_ID

    fetched = client.get("/api/v1/workflows/wf-api-pricing")
    assert fetched.status_code == 200
    assert [n["id"] for n in fetched.json()["workflow"]["nodes"]][:2] == ["trigger", "url"]


def test_invalid_workflow_is_rejected(client):
    data = workflow_data(nodes=[node("t", "Trigger", "Exit Intent")], edges=[edge("t", "ghost")],
                         workflow_id="wf-api-invalid")
    response = client.post("/api/v1/workflows", json=data)

    assert response.status_code == 422
    assert response.json()["detail"]["errors"]
    assert client.get("/api/v1/workflows/wf-api-invalid").status_code == 404


def test_active_workflows_for_site(client):
    client.post("/api/v1/workflows", json=pricing_workflow_data("wf-api-active"))
    client.post("/api/v1/workflows", json={**pricing_workflow_data("wf-api-paused"), "status": "Paused"})

    body = client.get(f"/api/v1/workflows/site/{SITE_ID}/active").json()
    ids = [w["id"] for w in body["workflows"]]

    assert "wf-api-active" in ids
    assert "wf-api-paused" not in ids
    assert body["count"] == len(ids)


def test_delete_workflow(client):
    client.post("/api/v1/workflows", json=pricing_workflow_data("wf-api-delete"))

    assert client.delete("/api/v1/workflows/wf-api-delete").status_code == 200
    assert client.delete("/api/v1/workflows/wf-api-delete").status_code == 404


def test_signal_runs_workflow_and_funnel_reflects_it(client):
    client.post("/api/v1/workflows", json=pricing_workflow_data("wf-api-signal"))

    response = client.post("/api/v1/workflows/signal", json={
        "type": "page_view", "siteId": SITE_ID, "visitorId": "visitor-signal",
        "url": "https://shop.example.com/pricing",
    })
    runs = [r for r in response.json()["runs"] if r["workflow_id"] == "wf-api-signal"]
    assert len(runs) == 1
    assert runs[0]["completed"] is True

    funnel = client.get("/api/v1/workflows/analytics/wf-api-signal/funnel").json()
    assert funnel["total_runs"] == 1
    assert funnel["successful_completions"] == 1
    assert funnel["steps"][0]["node_title"] == "URL Path"


def test_invalid_signal_is_ignored(client):
    response = client.post("/api/v1/workflows/signal", json={"type": "teleport"})

    assert response.status_code == 200
    assert response.json()["runs"] == []


def test_track_events_and_query_funnel(client):
    def event(run_id, kind, node_id, title, node_type, order, ts, **extra):
        return {"runId": run_id, "workflowId": "wf-api-track", "event": kind, "nodeId": node_id,
                "nodeTitle": title, "nodeType": node_type, "stepOrder": order, "timestamp": ts,
                "visitorId": run_id.replace("run", "visitor"), **extra}

    events = []
    for i, converted in enumerate([True, True, False]):
        run_id = f"run-{i}"
        base = 1_700_000_000 + i * 100
        events += [
            event(run_id, "Trigger", "t", "Exit Intent", "Trigger", 1, base),
            event(run_id, "Step Entered", "m", "Show Modal", "Action", 2, base + 1),
        ]
        if converted:
            events += [
                event(run_id, "Action Executed", "m", "Show Modal", "Action", 2, base + 2,
                      success=True, executionTime=12.5),
                event(run_id, "Workflow Completed", "m", "Show Modal", "Action", 2, base + 3, success=True),
            ]

    single = client.post("/api/v1/workflows/analytics/track", json=events[0])
    assert single.status_code == 200
    batch = client.post("/api/v1/workflows/analytics/track/batch", json={"events": events[1:]})
    assert batch.json()["recorded"] == len(events) - 1

    funnel = client.get("/api/v1/workflows/analytics/wf-api-track/funnel").json()
    step = funnel["steps"][0]
    assert (step["count"], step["completed"]) == (3, 2)
    assert step["avg_time_ms"] == 12.5
    assert funnel["successful_completions"] == 2

    summary = client.get("/api/v1/workflows/analytics/wf-api-track").json()
    assert summary["total_triggers"] == 3
    assert summary["total_completions"] == 2


def test_track_rejects_unknown_event_kind(client):
    response = client.post("/api/v1/workflows/analytics/track", json={
        "runId": "run-x", "workflowId": "wf-api-track", "event": "Teleported",
    })
    assert response.status_code == 422


def test_funnel_date_filter(client):
    response = client.get("/api/v1/workflows/analytics/wf-api-track/funnel",
                          params={"start_date": "2030-01-01T00:00:00Z"})
    assert response.json()["total_runs"] == 0


def test_server_action_adds_tag(client):
    client.post("/api/v1/workflows", json=workflow_data(
        nodes=[node("t", "Trigger", "Exit Intent"), node("tag", "Action", "Add Tag", tagName="lead")],
        edges=[edge("t", "tag")],
        workflow_id="wf-api-tag",
    ))

    response = client.post("/api/v1/workflows/execution/action", json={
        "workflowId": "wf-api-tag", "nodeId": "tag", "siteId": SITE_ID, "visitorId": VISITOR_ID,
    })

    assert response.status_code == 200
    assert response.json()["success"] is True
    assert client.get(f"/api/v1/visitor/{SITE_ID}/{VISITOR_ID}/has-tag", params={"tag": "lead"}).json() == {
        "hasTag": True}
    assert "lead" in client.get(f"/api/v1/visitor/{SITE_ID}/{VISITOR_ID}/tags").json()["tags"]
    assert client.get("/api/v1/workflows/wf-api-tag").json()["completions"] == 1


def test_server_action_for_missing_node_is_404(client):
    response = client.post("/api/v1/workflows/execution/action", json={
        "workflowId": "wf-missing", "nodeId": "n", "siteId": SITE_ID, "visitorId": VISITOR_ID,
    })
    assert response.status_code == 404


def test_dlq_listing_and_missing_entry(client):
    body = client.get("/api/v1/workflows/dlq").json()

    assert body["enabled"] is True
    assert body["entries"] == []
    assert client.delete("/api/v1/workflows/dlq/nope").status_code == 404


def test_execution_stats(client):
    body = client.get("/api/v1/workflows/execution/stats").json()

    assert body["workers"] >= 1
    assert body["processed"] >= 1
