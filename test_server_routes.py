"""
A2A HTTP routes through an in-process ASGI transport.
"""
import httpx
import pytest
import pytest_asyncio

from conftest import agent_card, auth_headers
from memesh.db.models import TaskState
from memesh.metrics import METRIC_NAMES
from memesh.server.app import create_app
from memesh.server.rate_limit import RateLimiter


def _send_body(text="hello", **extra):
    return {"message": {"role": "user", "parts": [{"type": "text", "text": text}]}, **extra}


@pytest_asyncio.fixture
async def app(queue, metrics, token):
    limiter = RateLimiter(limits={"send-message": 3})
    return create_app("agent-b", agent_card("agent-b"), queue, rate_limiter=limiter, metrics=metrics)


@pytest_asyncio.fixture
async def client(app):
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app, raise_app_exceptions=False),
        base_url="http://agent-b.test",
        headers=auth_headers(),
    ) as c:
        yield c


# ─────────────────────────────────────────────
# Public routes
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_agent_card_and_health(client):
    card = (await client.get("/a2a/agent-card")).json()
    assert card == {
        "success": True,
        "data": {"id": "agent-b", "name": "Agent agent-b", "version": "0.1.0", "capabilities": {"tasks": True}},
    }
    health = (await client.get("/health")).json()
    assert health["data"] == {"status": "ok", "agentId": "agent-b"}


# ─────────────────────────────────────────────
# send-message
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_send_message_creates_then_continues_task(client, queue):
    created = await client.post("/a2a/send-message", json=_send_body("start"))
    assert created.status_code == 200
    data = created.json()["data"]
    assert data["status"] == "PENDING"

    parts = [
        {"type": "tool_call", "id": "c1", "name": "grep", "input": {"q": "TODO"}},
        {"type": "tool_result", "toolCallId": "c1", "content": "3 matches", "isError": False},
    ]
    cont = await client.post(
        "/a2a/send-message",
        json={"taskId": data["taskId"], "message": {"role": "assistant", "parts": parts}},
    )
    assert cont.json()["data"] == {"taskId": data["taskId"], "status": "PENDING"}

    messages = await queue.get_messages(data["taskId"])
    assert [m.role for m in messages] == ["user", "assistant"]
    assert [p.type for p in messages[1].parts] == ["tool_call", "tool_result"]


@pytest.mark.asyncio
async def test_send_message_to_unknown_task_is_404(client):
    resp = await client.post("/a2a/send-message", json=_send_body(taskId="missing"))
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "TASK_NOT_FOUND"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [
        {},
        {"message": {"role": "user", "parts": []}},
        {"message": {"role": "robot", "parts": [{"type": "text", "text": "x"}]}},
        {"message": {"role": "user", "parts": [{"type": "video", "url": "x"}]}},
        {"message": {"role": "user", "parts": [{"type": "tool_call", "name": "no-id"}]}},
    ],
)
async def test_send_message_schema_errors(client, body):
    resp = await client.post("/a2a/send-message", json=body)
    assert resp.status_code == 400
    payload = resp.json()
    assert payload["success"] is False
    assert payload["error"]["code"] == "VALIDATION_ERROR"
    assert payload["error"]["details"]["errors"]


@pytest.mark.asyncio
async def test_send_message_rate_limited_with_retry_after(client):
    for _ in range(3):
        assert (await client.post("/a2a/send-message", json=_send_body())).status_code == 200

    resp = await client.post("/a2a/send-message", json=_send_body())
    assert resp.status_code == 429
    assert resp.json()["error"]["code"] == "RATE_LIMIT_EXCEEDED"
    assert resp.json()["error"]["retryAfter"] == int(resp.headers["Retry-After"]) == 20


# ─────────────────────────────────────────────
# Tasks
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_get_and_list_tasks(client, queue):
    t1 = await queue.create_task(name="one")
    t2 = await queue.create_task(name="two", priority="high")
    await queue.update_task_status(t1.id, state="CANCELED")

    got = (await client.get(f"/a2a/tasks/{t2.id}")).json()["data"]
    assert got["id"] == t2.id
    assert got["state"] == "PENDING"
    assert got["priority"] == "high"

    listed = (await client.get("/a2a/tasks")).json()["data"]
    assert [t["id"] for t in listed] == [t2.id, t1.id]

    pending = (await client.get("/a2a/tasks", params={"status": "PENDING"})).json()["data"]
    assert [t["id"] for t in pending] == [t2.id]

    paged = (await client.get("/a2a/tasks", params={"limit": 1, "offset": 1})).json()["data"]
    assert [t["id"] for t in paged] == [t1.id]


@pytest.mark.asyncio
async def test_get_unknown_task_is_404(client):
    resp = await client.get("/a2a/tasks/nope")
    assert resp.status_code == 404
    assert resp.json()["error"] == {"code": "TASK_NOT_FOUND", "message": "Task not found: nope"}


@pytest.mark.asyncio
@pytest.mark.parametrize("params", [{"status": "DONE"}, {"limit": "-1"}, {"limit": "20000"}, {"limit": "abc"}])
async def test_list_tasks_rejects_bad_filters(client, params):
    resp = await client.get("/a2a/tasks", params=params)
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_cancel_task(client, queue):
    task = await queue.create_task()
    resp = await client.post(f"/a2a/tasks/{task.id}/cancel", json={"reason": "no longer needed"})
    assert resp.json() == {"success": True, "data": {"taskId": task.id, "status": "CANCELED"}}

    stored = await queue.get_task(task.id)
    assert stored.state == TaskState.CANCELED
    assert stored.error == "no longer needed"

    # Cancel of a terminal task is an illegal transition
    again = await client.post(f"/a2a/tasks/{task.id}/cancel")
    assert again.status_code == 400
    assert again.json()["error"]["code"] == "VALIDATION_ERROR"

    missing = await client.post("/a2a/tasks/missing/cancel")
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_task_result_lifecycle(client, queue):
    task = await queue.create_task()
    early = await client.get(f"/a2a/tasks/{task.id}/result")
    assert early.status_code == 404
    assert early.json()["error"]["code"] == "TASK_RESULT_NOT_FOUND"

    await queue.update_task_status(task.id, state="IN_PROGRESS")
    await queue.update_task_status(task.id, state="COMPLETED", result={"answer": 42})
    done = (await client.get(f"/a2a/tasks/{task.id}/result")).json()["data"]
    assert done["success"] is True
    assert done["result"] == {"answer": 42}
    assert done["executedBy"] == "agent-b"

    unknown = await client.get("/a2a/tasks/nope/result")
    assert unknown.json()["error"]["code"] == "TASK_NOT_FOUND"


# ─────────────────────────────────────────────
# Pipeline
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_trace_headers_continue_incoming_trace(client):
    trace_id = "4bf92f3577b34da6a3ce929d0e0e4736"
    resp = await client.get("/a2a/tasks", headers={"traceparent": f"00-{trace_id}-00f067aa0ba902b7-01"})
    assert resp.headers["X-Trace-Id"] == trace_id
    version, tid, span, flags = resp.headers["traceparent"].split("-")
    assert tid == trace_id
    assert span != "00f067aa0ba902b7"

    fresh = await client.get("/health")
    assert len(fresh.headers["X-Trace-Id"]) == 32


@pytest.mark.asyncio
async def test_non_local_origin_is_rejected(client):
    resp = await client.get("/a2a/agent-card", headers={"Origin": "https://evil.example"})
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "ORIGIN_NOT_ALLOWED"

    ok = await client.get("/a2a/agent-card", headers={"Origin": "http://localhost:5173"})
    assert ok.status_code == 200
    assert ok.headers["access-control-allow-origin"] == "http://localhost:5173"


@pytest.mark.asyncio
async def test_cross_origin_preflight_gets_the_error_envelope(client):
    preflight = {"Access-Control-Request-Method": "POST", "Access-Control-Request-Headers": "authorization"}
    resp = await client.options("/a2a/send-message", headers={"Origin": "https://evil.example", **preflight})
    assert resp.status_code == 403
    assert resp.json() == {
        "success": False,
        "error": {"code": "ORIGIN_NOT_ALLOWED", "message": "Only localhost origins are allowed"},
    }

    ok = await client.options("/a2a/send-message", headers={"Origin": "http://127.0.0.1:3000", **preflight})
    assert ok.status_code == 200
    assert ok.headers["access-control-allow-origin"] == "http://127.0.0.1:3000"
    assert "POST" in ok.headers["access-control-allow-methods"]


@pytest.mark.asyncio
async def test_unhandled_error_becomes_internal_error_envelope(client, queue, monkeypatch):
    async def explode(*args, **kwargs):
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(queue, "list_tasks", explode)
    resp = await client.get("/a2a/tasks")
    assert resp.status_code == 500
    assert resp.json() == {"success": False, "error": {"code": "INTERNAL_ERROR", "message": "Internal server error"}}
    assert "X-Trace-Id" in resp.headers


@pytest.mark.asyncio
async def test_requests_are_counted(client, metrics):
    await client.get("/health")
    labels = {"method": "GET", "path": "/health", "status": "200"}
    assert metrics.get_value(METRIC_NAMES.REQUESTS, labels) == 1
