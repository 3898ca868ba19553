"""
Shared fixtures for the A2A test suite.

Everything runs in-process: stores are in-memory aiosqlite databases and HTTP
calls go through httpx.ASGITransport, so no server process or port is needed
(test_a2a_server.py is the one exception and binds real localhost ports).
"""
import os
import tempfile

# Keep test runs away from the user's data directory; must happen before memesh.config is imported.
os.environ.setdefault("MEMESH_DATA_DIR", tempfile.mkdtemp(prefix="memesh-test-"))

from datetime import datetime, timedelta, timezone

import httpx
import pytest
import pytest_asyncio

from memesh.db.models import AgentCard
from memesh.db.registry import AgentRegistry
from memesh.db.task_queue import TaskQueue
from memesh.metrics import A2AMetrics

TEST_TOKEN = "test-secret-token"


@pytest.fixture
def metrics():
    return A2AMetrics(enabled=True)


@pytest_asyncio.fixture
async def registry(metrics):
    reg = await AgentRegistry.open(":memory:", metrics=metrics)
    yield reg
    await reg.close()


@pytest_asyncio.fixture
async def queue(metrics):
    q = await TaskQueue.open("agent-b", ":memory:", metrics=metrics)
    yield q
    await q.close()


@pytest.fixture
def token(monkeypatch):
    monkeypatch.setenv("MEMESH_A2A_TOKEN", TEST_TOKEN)
    return TEST_TOKEN


def agent_card(agent_id: str) -> AgentCard:
    return AgentCard(id=agent_id, name=f"Agent {agent_id}", version="0.1.0", capabilities={"tasks": True})


def auth_headers(token: str = TEST_TOKEN) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


class AgentRouter(httpx.AsyncBaseTransport):
    """Routes requests to in-process ASGI apps by host name (http://<agent>.test)."""

    def __init__(self, apps: dict) -> None:
        self._transports = {host: httpx.ASGITransport(app=app) for host, app in apps.items()}

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        transport = self._transports.get(request.url.host)
        if transport is None:
            raise httpx.ConnectError(f"No agent at {request.url.host}", request=request)
        return await transport.handle_async_request(request)


# ─────────────────────────────────────────────
# Helpers: back-date rows for stale / timeout tests
# ─────────────────────────────────────────────

def minutes_ago(minutes: float) -> str:
    return (datetime.now(timezone.utc) - timedelta(minutes=minutes)).isoformat(timespec="microseconds")


async def backdate_heartbeat(reg: AgentRegistry, agent_id: str, minutes: float) -> None:
    await reg._db.execute("UPDATE agents SET last_heartbeat = ? WHERE agent_id = ?", (minutes_ago(minutes), agent_id))
    await reg._db.commit()


async def backdate_task(q: TaskQueue, task_id: str, minutes: float) -> None:
    stamp = minutes_ago(minutes)
    await q._db.execute("UPDATE tasks SET created_at = ?, updated_at = ? WHERE id = ?", (stamp, stamp, task_id))
    await q._db.commit()
