import sys, os
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../..")))
import asyncio
import httpx
import pytest
import pytest_asyncio

import scenario_control
from tests.e2e.mock_server import create_mock_server, shutdown_mock_server


@pytest_asyncio.fixture
async def mock_server():
    runner, base_url, hits, requests = await create_mock_server()
    yield {'base_url': base_url, 'hits': hits, 'requests': requests}
    await shutdown_mock_server(runner)


@pytest_asyncio.fixture
async def api_client():
    transport = httpx.ASGITransport(app=scenario_control.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
    await scenario_control._cancel_all_runs()
    scenario_control.runs.clear()


async def wait_for_run(client, run_id, predicate=None, timeout=5.0):
    """Polls a run until predicate(data) holds (default: the run has finished)."""
    predicate = predicate or (lambda data: data["status"] != "running")
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        data = (await client.get(f"/api/runs/{run_id}")).json()
        if predicate(data) or loop.time() > deadline:
            return data
        await asyncio.sleep(0.02)


def run_request(base_url, steps, start=None, **extra):
    payload = {
        "scenario": {"name": "api-test", "startStepId": start or steps[0]["id"], "steps": steps},
        "servers": [{"id": "api", "name": "api", "baseUrl": base_url}],
    }
    payload.update(extra)
    return payload


def req(step_id, endpoint, method="GET", **kwargs):
    data = {"id": step_id, "name": step_id, "type": "request", "serverId": "api", "method": method, "endpoint": endpoint}
    data.update(kwargs)
    return data


@pytest.mark.asyncio
async def test_health_endpoint(api_client):
    resp = await api_client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "healthy", "active_runs": 0}


@pytest.mark.asyncio
async def test_run_chains_responses_into_requests(api_client, mock_server):
    steps = [
        req("login", "/login", method="POST", body={"user": "${params.user}"}, nextStepId="profile"),
        req("profile", "/users/${response.login.data.id}",
            headers=[{"key": "Authorization", "value": "Bearer ${response.login.data.token}"}]),
    ]
    res = await api_client.post("/api/runs", json=run_request(mock_server["base_url"], steps, params={"user": "ann"}))
    assert res.status_code == 200
    run_id = res.json()["runId"]

    data = await wait_for_run(api_client, run_id)

    assert data["status"] == "completed"
    assert data["outcome"] == "COMPLETED"
    assert [(r["stepId"], r["state"]) for r in data["records"]] == [("login", "SUCCESS"), ("profile", "SUCCESS")]
    assert data["records"][1]["request"]["headers"]["Authorization"] == "********"
    assert mock_server["hits"] == {"/login": 1, "/users/42": 1}
    assert mock_server["requests"][0]["body"] == '{"user": "ann"}'
    assert mock_server["requests"][1]["headers"]["Authorization"] == "Bearer tok-42"

    responses = (await api_client.get(f"/api/runs/{run_id}/responses")).json()
    assert responses["profile"]["data"] == {"id": "42", "auth": "Bearer tok-42"}


@pytest.mark.asyncio
async def test_loop_over_response_items(api_client, mock_server):
    steps = [
        req("list", "/items", nextStepId="each"),
        {"id": "each", "type": "loop", "stepIds": ["fetch"],
         "loop": {"type": "forEach", "source": "${response.list.data.items}", "countField": "copies"}},
        req("fetch", "/items/${loop.item.id}", queryParams={"index": "${loop.index}"}),
    ]
    res = await api_client.post("/api/runs", json=run_request(mock_server["base_url"], steps))
    data = await wait_for_run(api_client, res.json()["runId"])

    assert data["status"] == "completed"
    assert mock_server["hits"]["/items/a"] == 2
    assert mock_server["hits"]["/items/b"] == 1
    assert [r["query"]["index"] for r in mock_server["requests"][1:]] == ["0", "0", "1"]
    loop_record = next(r for r in data["records"] if r["stepId"] == "each")
    assert loop_record["iterations"] == 3


@pytest.mark.asyncio
async def test_retries_exhausted_fail_the_run(api_client, mock_server):
    steps = [req("flaky", "/flaky", retryConfig={"maxRetries": 2, "retryDelayMs": 0})]
    res = await api_client.post("/api/runs", json=run_request(mock_server["base_url"], steps))
    data = await wait_for_run(api_client, res.json()["runId"])

    assert data["status"] == "failed"
    assert mock_server["hits"]["/flaky"] == 3
    record = data["records"][0]
    assert record["state"] == "FAILED"
    assert record["attempts"] == 3
    assert record["error"]["code"] == "HTTP_ERROR"
    assert data["error"]["code"] == "HTTP_ERROR"
    retries = [log for log in data["logs"] if log["stepId"] == "flaky" and "Retrying" in log["message"]]
    assert [log["level"] for log in retries] == ["warn", "warn"]
    assert any(log["level"] == "error" and log["stepId"] == "flaky" for log in data["logs"])


@pytest.mark.asyncio
async def test_start_missing_scenario(api_client):
    res = await api_client.post("/api/runs", json={"servers": []})
    assert res.status_code == 400
    assert "scenario" in str(res.json()["detail"])


@pytest.mark.asyncio
async def test_start_invalid_step_definition(api_client):
    payload = {"scenario": {"name": "bad", "startStepId": "x", "steps": [{"id": "x"}]}}
    res = await api_client.post("/api/runs", json=payload)
    assert res.status_code == 400
    assert "type" in str(res.json()["detail"])


@pytest.mark.asyncio
async def test_start_with_invalid_params(api_client, mock_server):
    payload = run_request(mock_server["base_url"], [req("a", "/items")], params={"limit": "ten"})
    payload["scenario"]["parameterSchema"] = [
        {"name": "limit", "type": "number"},
        {"name": "user", "type": "string", "required": True},
    ]
    res = await api_client.post("/api/runs", json=payload)
    assert res.status_code == 422
    violations = {v["path"]: v["message"] for v in res.json()["violations"]}
    assert violations["user"] == "is required"
    assert "expected number" in violations["limit"]
    assert mock_server["hits"] == {}
    assert scenario_control.runs == {}


@pytest.mark.asyncio
async def test_unknown_run_is_404(api_client):
    res = await api_client.get("/api/runs/nope")
    assert res.status_code == 404
    res = await api_client.post("/api/runs/nope/cancel")
    assert res.status_code == 404


@pytest.mark.asyncio
async def test_manual_step_resume(api_client, mock_server):
    steps = [req("a", "/items", executionMode="manual", nextStepId="b"), req("b", "/items/x")]
    res = await api_client.post("/api/runs", json=run_request(mock_server["base_url"], steps))
    run_id = res.json()["runId"]

    data = await wait_for_run(api_client, run_id, lambda d: d["waitingStepId"] == "a")
    assert data["records"][0]["state"] == "WAITING_FOR_INPUT"
    assert mock_server["hits"] == {}

    wrong = await api_client.post(f"/api/runs/{run_id}/resume", json={"stepId": "b"})
    assert wrong.status_code == 409

    ok = await api_client.post(f"/api/runs/{run_id}/resume", json={"stepId": "a"})
    assert ok.status_code == 200

    data = await wait_for_run(api_client, run_id)
    assert data["status"] == "completed"
    assert mock_server["hits"] == {"/items": 1, "/items/x": 1}


@pytest.mark.asyncio
async def test_manual_step_skip(api_client, mock_server):
    steps = [req("a", "/items", executionMode="manual", nextStepId="b"), req("b", "/items/x")]
    res = await api_client.post("/api/runs", json=run_request(mock_server["base_url"], steps))
    run_id = res.json()["runId"]

    await wait_for_run(api_client, run_id, lambda d: d["waitingStepId"] == "a")
    assert (await api_client.post(f"/api/runs/{run_id}/skip")).status_code == 200

    data = await wait_for_run(api_client, run_id)
    assert [(r["stepId"], r["state"]) for r in data["records"]] == [("a", "SKIPPED"), ("b", "SUCCESS")]
    assert mock_server["hits"] == {"/items/x": 1}


@pytest.mark.asyncio
async def test_cancel_in_flight_request(api_client, mock_server):
    steps = [req("slow", "/slow", nextStepId="after"), req("after", "/items")]
    res = await api_client.post("/api/runs", json=run_request(mock_server["base_url"], steps))
    run_id = res.json()["runId"]

    await wait_for_run(api_client, run_id, lambda d: any(r["state"] == "IN_PROGRESS" for r in d["records"]))
    await asyncio.sleep(0.1)
    assert (await api_client.post(f"/api/runs/{run_id}/cancel")).status_code == 200

    data = await wait_for_run(api_client, run_id)
    assert data["status"] == "cancelled"
    assert data["outcome"] == "CANCELLED"
    assert data["records"][0]["state"] == "FAILED"
    assert "/items" not in mock_server["hits"]


@pytest.mark.asyncio
async def test_metrics_report_runs(api_client, mock_server):
    res = await api_client.post("/api/runs", json=run_request(mock_server["base_url"], [req("a", "/items")]))
    await wait_for_run(api_client, res.json()["runId"])

    metrics = await api_client.get("/api/metrics")
    assert metrics.status_code == 200
    data = metrics.json()
    assert data["runs"]["total"] == 1
    assert data["runs"]["active"] == 0
    assert data["runs"]["by_status"] == {"completed": 1}
    assert "cpu_percent" in data["system"]
    assert "bytes_sent" in data["network"]
