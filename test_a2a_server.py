"""
A2AServer lifecycle on real localhost sockets.
"""
import asyncio
import socket

import httpx
import pytest

from conftest import TEST_TOKEN, agent_card, auth_headers
from memesh.errors import ConfigurationError
from memesh.server.a2a_server import A2AServer, bind_first_free_port
from memesh.timeout_checker import TimeoutChecker

PORT_RANGE = (38700, 38760)


def make_server(agent_id, queue, registry, **kwargs):
    kwargs.setdefault("port_range", PORT_RANGE)
    return A2AServer(agent_id, agent_card(agent_id), queue, registry, **kwargs)


@pytest.mark.asyncio
async def test_start_serves_registers_and_stop_deactivates(queue, registry, token):
    server = make_server("agent-b", queue, registry)
    port = await server.start()
    try:
        assert PORT_RANGE[0] <= port <= PORT_RANGE[1]
        assert server.is_running()
        assert server.base_url == f"http://127.0.0.1:{port}"

        entry = await registry.get("agent-b")
        assert entry.status == "active"
        assert entry.port == port
        assert entry.metadata == {"name": "Agent agent-b", "version": "0.1.0"}

        async with httpx.AsyncClient(base_url=server.base_url) as http:
            health = await http.get("/health")
            assert health.json()["data"]["agentId"] == "agent-b"
            tasks = await http.get("/a2a/tasks", headers=auth_headers(TEST_TOKEN))
            assert tasks.json() == {"success": True, "data": []}
    finally:
        await server.stop()

    assert server.is_running() is False
    assert server.get_port() is None
    assert (await registry.get("agent-b")).status == "inactive"
    assert server.timeout_checker.is_running() is False


@pytest.mark.asyncio
async def test_second_server_takes_next_free_port(queue, registry):
    from memesh.db.task_queue import TaskQueue

    other_queue = await TaskQueue.open("agent-c", ":memory:")
    first = make_server("agent-b", queue, registry)
    second = make_server("agent-c", other_queue, registry)
    try:
        p1 = await first.start()
        p2 = await second.start()
        assert p1 != p2
        assert {e.agent_id for e in await registry.list_active()} == {"agent-b", "agent-c"}
    finally:
        await second.stop()
        await first.stop()
        await other_queue.close()


@pytest.mark.asyncio
async def test_heartbeat_loop_refreshes_registry(queue, registry):
    server = make_server("agent-b", queue, registry, heartbeat_interval_ms=30, stale_threshold_ms=60_000)
    await server.start()
    try:
        before = (await registry.get("agent-b")).last_heartbeat
        await asyncio.sleep(0.2)
        after = (await registry.get("agent-b")).last_heartbeat
        assert after > before
    finally:
        await server.stop()


@pytest.mark.asyncio
async def test_stop_before_start_is_noop(queue, registry):
    server = make_server("agent-b", queue, registry)
    await server.stop()
    assert await registry.get("agent-b") is None


def test_bind_skips_occupied_ports():
    blocker = bind_first_free_port("127.0.0.1", PORT_RANGE[0], PORT_RANGE[1])
    try:
        taken = blocker.getsockname()[1]
        sock = bind_first_free_port("127.0.0.1", taken, PORT_RANGE[1])
        try:
            assert sock.getsockname()[1] > taken
        finally:
            sock.close()

        with pytest.raises(OSError):
            bind_first_free_port("127.0.0.1", taken, taken)
    finally:
        blocker.close()


def test_bound_socket_is_listening():
    sock = bind_first_free_port("127.0.0.1", PORT_RANGE[0], PORT_RANGE[1])
    try:
        with socket.create_connection(sock.getsockname(), timeout=1):
            pass
    finally:
        sock.close()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "kwargs",
    [
        {"port_range": (4000, 3000)},
        {"heartbeat_interval_ms": 60_000, "stale_threshold_ms": 30_000},
    ],
)
async def test_inconsistent_configuration_is_rejected(queue, registry, kwargs):
    with pytest.raises(ConfigurationError):
        make_server("agent-b", queue, registry, **kwargs)


@pytest.mark.asyncio
@pytest.mark.parametrize("interval_ms", [0, 60_000])
async def test_timeout_check_interval_must_fit_the_task_timeout(queue, registry, interval_ms):
    checker = TimeoutChecker([queue], task_timeout_ms=5_000)
    with pytest.raises(ConfigurationError):
        make_server("agent-b", queue, registry, timeout_checker=checker, timeout_check_interval_ms=interval_ms)


@pytest.mark.asyncio
async def test_failed_registration_releases_the_port(queue, registry, monkeypatch):
    attempted = []

    async def broken_register(agent_id, base_url, port, metadata=None):
        attempted.append(port)
        raise RuntimeError("registry unavailable")

    monkeypatch.setattr(registry, "register", broken_register)
    server = make_server("agent-b", queue, registry)
    with pytest.raises(RuntimeError, match="registry unavailable"):
        await server.start()

    assert server.is_running() is False
    assert server.get_port() is None
    assert server.timeout_checker.is_running() is False

    # The port it had bound is free again
    sock = bind_first_free_port("127.0.0.1", attempted[0], attempted[0])
    try:
        assert sock.getsockname()[1] == attempted[0]
    finally:
        sock.close()


@pytest.mark.asyncio
async def test_failure_after_registration_deactivates_the_agent(queue, registry, monkeypatch):
    server = make_server("agent-b", queue, registry)

    def broken_start(interval_ms=None):
        raise ConfigurationError("checker misconfigured")

    monkeypatch.setattr(server.timeout_checker, "start", broken_start)
    with pytest.raises(ConfigurationError):
        await server.start()

    assert server.is_running() is False
    assert (await registry.get("agent-b")).status == "inactive"
    # A fresh attempt can bind again
    monkeypatch.delattr(server.timeout_checker, "start")
    await server.start()
    try:
        assert server.is_running()
        assert (await registry.get("agent-b")).status == "active"
    finally:
        await server.stop()
