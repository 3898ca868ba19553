import pytest

from conftest import backdate_heartbeat
from memesh.metrics import METRIC_NAMES


@pytest.mark.asyncio
async def test_register_then_get_returns_active_entry(registry):
    entry = await registry.register("agent-a", "http://127.0.0.1:3000", 3000, metadata={"name": "A"})

    assert entry.agent_id == "agent-a"
    assert entry.status == "active"
    assert entry.metadata == {"name": "A"}

    fetched = await registry.get("agent-a")
    assert fetched.base_url == "http://127.0.0.1:3000"
    assert fetched.port == 3000


@pytest.mark.asyncio
async def test_register_twice_overwrites_single_row(registry):
    await registry.register("agent-a", "http://127.0.0.1:3000", 3000)
    await registry.deactivate("agent-a")
    again = await registry.register("agent-a", "http://127.0.0.1:3005", 3005)

    assert again.status == "active"
    assert again.port == 3005
    assert [e.agent_id for e in await registry.list_all()] == ["agent-a"]


@pytest.mark.asyncio
async def test_unknown_agent_gives_none_false_zero(registry):
    assert await registry.get("ghost") is None
    assert await registry.heartbeat("ghost") is False
    assert await registry.deactivate("ghost") is False
    assert await registry.cleanup_stale() == 0
    assert await registry.delete_stale() == 0


@pytest.mark.asyncio
async def test_heartbeat_refreshes_timestamp_and_reactivates(registry):
    await registry.register("agent-a", "http://127.0.0.1:3000", 3000)
    await backdate_heartbeat(registry, "agent-a", 10)
    assert await registry.cleanup_stale() == 1
    assert (await registry.get("agent-a")).status == "inactive"

    assert await registry.heartbeat("agent-a") is True
    entry = await registry.get("agent-a")
    assert entry.status == "active"


@pytest.mark.asyncio
async def test_cleanup_stale_marks_exactly_expired_agents_and_is_idempotent(registry):
    for agent_id in ("fresh", "old-1", "old-2"):
        await registry.register(agent_id, f"http://127.0.0.1/{agent_id}", 3000)
    await backdate_heartbeat(registry, "old-1", 6)
    await backdate_heartbeat(registry, "old-2", 60)

    assert await registry.cleanup_stale(threshold_ms=5 * 60_000) == 2
    assert [e.agent_id for e in await registry.list_active()] == ["fresh"]

    # Second sweep finds nothing new
    assert await registry.cleanup_stale(threshold_ms=5 * 60_000) == 0
    assert [e.agent_id for e in await registry.list_active()] == ["fresh"]


@pytest.mark.asyncio
async def test_delete_stale_only_removes_long_inactive_agents(registry):
    await registry.register("active-old", "http://x", 1)
    await registry.register("inactive-recent", "http://y", 2)
    await registry.register("inactive-old", "http://z", 3)
    await registry.deactivate("inactive-recent")
    await registry.deactivate("inactive-old")
    await backdate_heartbeat(registry, "inactive-old", 25 * 60)
    await backdate_heartbeat(registry, "active-old", 25 * 60)

    assert await registry.delete_stale() == 1
    remaining = {e.agent_id for e in await registry.list_all()}
    assert remaining == {"active-old", "inactive-recent"}


@pytest.mark.asyncio
async def test_registry_records_heartbeat_and_agent_gauges(registry, metrics):
    await registry.register("agent-a", "http://x", 1)
    await registry.register("agent-b", "http://y", 2)
    await registry.heartbeat("agent-a")
    await registry.heartbeat("ghost")
    await registry.deactivate("agent-b")

    assert metrics.get_value(METRIC_NAMES.HEARTBEAT_SUCCESS, {"agentId": "agent-a"}) == 1
    assert metrics.get_value(METRIC_NAMES.HEARTBEAT_FAILURE, {"agentId": "ghost"}) == 1
    assert metrics.get_value(METRIC_NAMES.AGENTS_ACTIVE) == 1
    assert metrics.get_value(METRIC_NAMES.AGENTS_STALE) == 1
