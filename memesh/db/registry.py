"""
Agent registry: which agent processes exist, where they listen, and whether
they are still alive.

One row per agent id. Every operation is async and goes through a single
asyncio.Lock, so heartbeats, stale sweeps and reads never interleave halfway
through a write. Unknown agent ids give None / False / 0, never an exception.
"""
import asyncio
import json
import logging
from datetime import datetime, timezone, timedelta
from typing import Optional

import aiosqlite

from memesh.config import DELETE_STALE_THRESHOLD_MS, STALE_AGENT_THRESHOLD_MS
from memesh.db.database import init_registry_schema, open_db, registry_db_path
from memesh.db.models import AgentRegistryEntry
from memesh.metrics import A2AMetrics, METRIC_NAMES

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _cutoff(threshold_ms: int) -> str:
    return (datetime.now(timezone.utc) - timedelta(milliseconds=threshold_ms)).isoformat(timespec="microseconds")


def _row_to_entry(row: aiosqlite.Row) -> AgentRegistryEntry:
    return AgentRegistryEntry(
        agent_id=row["agent_id"],
        base_url=row["base_url"],
        port=row["port"],
        status=row["status"],
        last_heartbeat=datetime.fromisoformat(row["last_heartbeat"]),
        registered_at=datetime.fromisoformat(row["registered_at"]),
        metadata=json.loads(row["metadata"]) if row["metadata"] else None,
    )


class AgentRegistry:
    def __init__(self, db: aiosqlite.Connection, metrics: Optional[A2AMetrics] = None) -> None:
        self._db = db
        self._metrics = metrics
        self._lock = asyncio.Lock()

    @classmethod
    async def open(cls, path=None, metrics: Optional[A2AMetrics] = None) -> "AgentRegistry":
        """Open (creating if needed) the registry database at `path`."""
        db = await open_db(path or registry_db_path())
        await init_registry_schema(db)
        return cls(db, metrics=metrics)

    async def close(self) -> None:
        await self._db.close()

    async def register(
        self,
        agent_id: str,
        base_url: str,
        port: int,
        metadata: Optional[dict] = None,
    ) -> AgentRegistryEntry:
        """Upsert an agent and mark it active. Re-registering overwrites the previous entry."""
        now = _now()
        meta_json = json.dumps(metadata) if metadata else None
        async with self._lock:
            await self._db.execute(
                """
                INSERT INTO agents (agent_id, base_url, port, status, last_heartbeat, registered_at, metadata)
                VALUES (?, ?, ?, 'active', ?, ?, ?)
                ON CONFLICT(agent_id) DO UPDATE SET
                    base_url = excluded.base_url,
                    port = excluded.port,
                    status = 'active',
                    last_heartbeat = excluded.last_heartbeat,
                    metadata = excluded.metadata
                """,
                (agent_id, base_url, port, now, now, meta_json),
            )
            await self._db.commit()
            entry = await self._get(agent_id)
        logger.info(f"Agent registered: {agent_id} at {base_url}")
        await self._update_gauges()
        return entry

    async def get(self, agent_id: str) -> Optional[AgentRegistryEntry]:
        async with self._lock:
            return await self._get(agent_id)

    async def _get(self, agent_id: str) -> Optional[AgentRegistryEntry]:
        async with self._db.execute("SELECT * FROM agents WHERE agent_id = ?", (agent_id,)) as cur:
            row = await cur.fetchone()
        return _row_to_entry(row) if row else None

    async def list_active(self) -> list[AgentRegistryEntry]:
        async with self._lock:
            async with self._db.execute(
                "SELECT * FROM agents WHERE status = 'active' ORDER BY registered_at"
            ) as cur:
                rows = await cur.fetchall()
        return [_row_to_entry(r) for r in rows]

    async def list_all(self) -> list[AgentRegistryEntry]:
        async with self._lock:
            async with self._db.execute("SELECT * FROM agents ORDER BY registered_at") as cur:
                rows = await cur.fetchall()
        return [_row_to_entry(r) for r in rows]

    async def heartbeat(self, agent_id: str) -> bool:
        """Refresh last_heartbeat (and reactivate). False if the agent is unknown."""
        async with self._lock:
            async with self._db.execute(
                "UPDATE agents SET last_heartbeat = ?, status = 'active' WHERE agent_id = ?",
                (_now(), agent_id),
            ) as cur:
                updated = cur.rowcount
            await self._db.commit()
        if self._metrics:
            name = METRIC_NAMES.HEARTBEAT_SUCCESS if updated else METRIC_NAMES.HEARTBEAT_FAILURE
            self._metrics.increment_counter(name, {"agentId": agent_id})
        if updated == 0:
            logger.warning(f"Heartbeat from unknown agent: {agent_id}")
            return False
        return True

    async def deactivate(self, agent_id: str) -> bool:
        async with self._lock:
            async with self._db.execute(
                "UPDATE agents SET status = 'inactive' WHERE agent_id = ?", (agent_id,)
            ) as cur:
                updated = cur.rowcount
            await self._db.commit()
        if updated:
            logger.info(f"Agent deactivated: {agent_id}")
            await self._update_gauges()
        return updated > 0

    async def cleanup_stale(self, threshold_ms: Optional[int] = None) -> int:
        """Mark active agents whose heartbeat is older than the threshold as inactive."""
        threshold_ms = STALE_AGENT_THRESHOLD_MS if threshold_ms is None else threshold_ms
        async with self._lock:
            async with self._db.execute(
                "UPDATE agents SET status = 'inactive' WHERE status = 'active' AND last_heartbeat < ?",
                (_cutoff(threshold_ms),),
            ) as cur:
                marked = cur.rowcount
            await self._db.commit()
        if marked > 0:
            logger.info(f"Marked {marked} stale agent(s) inactive (threshold {threshold_ms} ms)")
        await self._update_gauges()
        return marked

    async def delete_stale(self, threshold_ms: Optional[int] = None) -> int:
        """Hard-delete inactive agents that have been silent longer than the threshold."""
        threshold_ms = DELETE_STALE_THRESHOLD_MS if threshold_ms is None else threshold_ms
        async with self._lock:
            async with self._db.execute(
                "DELETE FROM agents WHERE status = 'inactive' AND last_heartbeat < ?",
                (_cutoff(threshold_ms),),
            ) as cur:
                deleted = cur.rowcount
            await self._db.commit()
        if deleted > 0:
            logger.info(f"Deleted {deleted} long-stale agent(s)")
        return deleted

    async def _update_gauges(self) -> None:
        if not self._metrics or not self._metrics.enabled:
            return
        async with self._lock:
            async with self._db.execute(
                "SELECT status, COUNT(*) AS cnt FROM agents GROUP BY status"
            ) as cur:
                counts = {row["status"]: row["cnt"] for row in await cur.fetchall()}
        self._metrics.set_gauge(METRIC_NAMES.AGENTS_ACTIVE, counts.get("active", 0))
        self._metrics.set_gauge(METRIC_NAMES.AGENTS_STALE, counts.get("inactive", 0))
