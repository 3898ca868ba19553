"""
SQLite connection management and schema initialization.
Uses aiosqlite for fully async, non-blocking access.

Two kinds of store exist: one registry database shared by the agents on a
machine, and one task database per agent.
"""
import aiosqlite
import logging
from pathlib import Path

from memesh.config import DATA_DIR

logger = logging.getLogger(__name__)

REGISTRY_DB_NAME = "a2a-registry.db"


def registry_db_path() -> Path:
    return DATA_DIR / REGISTRY_DB_NAME


def task_db_path(agent_id: str) -> Path:
    return DATA_DIR / f"a2a-tasks-{agent_id}.db"


async def open_db(path: str | Path) -> aiosqlite.Connection:
    """Open a connection with WAL journaling and foreign keys enforced."""
    path = str(path)
    if path != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    db = await aiosqlite.connect(path)
    db.row_factory = aiosqlite.Row
    # WAL mode: allows concurrent reads while writing
    await db.execute("PRAGMA journal_mode=WAL")
    await db.execute("PRAGMA foreign_keys=ON")
    await db.execute("PRAGMA busy_timeout=5000")
    logger.info(f"Database opened at {path}")
    return db


async def init_registry_schema(db: aiosqlite.Connection) -> None:
    """Create the agent registry table if it does not already exist (idempotent)."""
    await db.executescript("""
        CREATE TABLE IF NOT EXISTS agents (
            agent_id        TEXT PRIMARY KEY,
            base_url        TEXT NOT NULL,
            port            INTEGER NOT NULL,
            status          TEXT NOT NULL DEFAULT 'active'
                            CHECK (status IN ('active', 'inactive')),
            last_heartbeat  TEXT NOT NULL,
            registered_at   TEXT NOT NULL,
            metadata        TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_agents_status_heartbeat
            ON agents(status, last_heartbeat);
    """)
    await db.commit()
    logger.info("Registry schema initialized.")


async def init_task_schema(db: aiosqlite.Connection) -> None:
    """Create task, message and artifact tables if they do not already exist (idempotent)."""
    await db.executescript("""
        -- ----------------------------------------------------------------
        -- Task: a unit of delegated work owned by this agent
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS tasks (
            id            TEXT PRIMARY KEY,
            agent_id      TEXT NOT NULL,
            state         TEXT NOT NULL DEFAULT 'PENDING',
            priority      TEXT NOT NULL DEFAULT 'normal',
            name          TEXT,
            description   TEXT,
            input         TEXT,
            result        TEXT,
            error         TEXT,
            requester_id  TEXT,
            created_at    TEXT NOT NULL,
            updated_at    TEXT NOT NULL,
            metadata      TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_tasks_state_created
            ON tasks(state, created_at);
        CREATE INDEX IF NOT EXISTS idx_tasks_created
            ON tasks(created_at);

        -- ----------------------------------------------------------------
        -- Message: append-only, parts stored as a JSON array
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS messages (
            id          TEXT PRIMARY KEY,
            task_id     TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
            role        TEXT NOT NULL,
            parts       TEXT NOT NULL,
            created_at  TEXT NOT NULL,
            metadata    TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_messages_task
            ON messages(task_id, created_at);

        -- ----------------------------------------------------------------
        -- Artifact: immutable task output, binary content stored base64
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS artifacts (
            id          TEXT PRIMARY KEY,
            task_id     TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
            type        TEXT NOT NULL,
            name        TEXT,
            content     TEXT NOT NULL,
            encoding    TEXT NOT NULL DEFAULT 'utf-8',
            size        INTEGER NOT NULL,
            created_at  TEXT NOT NULL,
            metadata    TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_artifacts_task
            ON artifacts(task_id, created_at);
    """)
    await db.commit()
    logger.info("Task schema initialized.")
