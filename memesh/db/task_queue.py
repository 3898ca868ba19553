"""
Per-agent task store: tasks, their messages and their artifacts.

State transitions are checked here and only here. Every public method takes
the queue lock, and every write runs inside one transaction, so a reader
never sees a half-applied update and two concurrent status updates cannot
both pass the state-machine check.
"""
import asyncio
import base64
import json
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional, Union

import aiosqlite

from memesh.config import MAX_CONCURRENT_TASKS_PHASE_1, MAX_LIST_LIMIT
from memesh.db.database import init_task_schema, open_db, task_db_path
from memesh.db.models import (
    TERMINAL_STATES,
    Artifact,
    Message,
    MessagePart,
    Task,
    TaskResult,
    TaskState,
    TaskStatus,
    can_transition,
    part_from_dict,
    part_to_dict,
)
from memesh.db.validation import (
    as_list,
    validate_array_size,
    validate_iso_timestamp,
    validate_message_parts,
    validate_positive_integer,
    validate_role,
    validate_task_priorities,
    validate_task_states,
)
from memesh.errors import TaskNotFoundError, ValidationError
from memesh.metrics import A2AMetrics, METRIC_NAMES

logger = logging.getLogger(__name__)

_TERMINAL_METRIC = {
    TaskState.COMPLETED: METRIC_NAMES.TASKS_COMPLETED,
    TaskState.FAILED: METRIC_NAMES.TASKS_FAILED,
    TaskState.CANCELED: METRIC_NAMES.TASKS_CANCELED,
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _dumps(value: Any) -> Optional[str]:
    return None if value is None else json.dumps(value)


def _loads(value: Optional[str]) -> Any:
    if not value:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        logger.error(f"Invalid JSON in task store: {value[:100]!r}")
        return None


def _row_to_task(row: aiosqlite.Row) -> Task:
    return Task(
        id=row["id"],
        agent_id=row["agent_id"],
        state=TaskState(row["state"]),
        priority=row["priority"],
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
        name=row["name"],
        description=row["description"],
        input=_loads(row["input"]),
        result=_loads(row["result"]),
        error=row["error"],
        requester_id=row["requester_id"],
        metadata=_loads(row["metadata"]),
    )


def _row_to_message(row: aiosqlite.Row) -> Message:
    return Message(
        id=row["id"],
        task_id=row["task_id"],
        role=row["role"],
        parts=[part_from_dict(p) for p in json.loads(row["parts"])],
        created_at=datetime.fromisoformat(row["created_at"]),
        metadata=_loads(row["metadata"]),
    )


def _row_to_artifact(row: aiosqlite.Row) -> Artifact:
    content: Union[str, bytes] = row["content"]
    if row["encoding"] == "base64":
        content = base64.b64decode(content)
    return Artifact(
        id=row["id"],
        task_id=row["task_id"],
        type=row["type"],
        content=content,
        encoding=row["encoding"],
        size=row["size"],
        created_at=datetime.fromisoformat(row["created_at"]),
        name=row["name"],
        metadata=_loads(row["metadata"]),
    )


class TaskQueue:
    def __init__(self, agent_id: str, db: aiosqlite.Connection, metrics: Optional[A2AMetrics] = None) -> None:
        self.agent_id = agent_id
        self._db = db
        self._metrics = metrics
        self._lock = asyncio.Lock()

    @classmethod
    async def open(cls, agent_id: str, path=None, metrics: Optional[A2AMetrics] = None) -> "TaskQueue":
        """Open (creating if needed) the task database for `agent_id`."""
        db = await open_db(path or task_db_path(agent_id))
        await init_task_schema(db)
        return cls(agent_id, db, metrics=metrics)

    async def close(self) -> None:
        await self._db.close()

    @asynccontextmanager
    async def _transaction(self):
        try:
            yield self._db
        except BaseException:
            await self._db.rollback()
            raise
        else:
            await self._db.commit()

    # ─────────────────────────────────────────────
    # Tasks
    # ─────────────────────────────────────────────

    async def create_task(
        self,
        name: Optional[str] = None,
        description: Optional[str] = None,
        priority: str = "normal",
        input: Any = None,
        initial_message: Optional[dict] = None,
        requester_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> Task:
        """
        Create a PENDING task. `initial_message` is `{"role": ..., "parts": [...]}`
        and is stored in the same transaction as the task row.
        """
        validate_task_priorities([priority])
        if initial_message is not None:
            role = validate_role(initial_message.get("role"))
            parts = validate_message_parts(initial_message.get("parts"))

        task_id = str(uuid.uuid4())
        now = _now()
        async with self._lock:
            async with self._transaction() as db:
                await db.execute(
                    """
                    INSERT INTO tasks (id, agent_id, state, priority, name, description, input,
                                       requester_id, created_at, updated_at, metadata)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (task_id, self.agent_id, TaskState.PENDING.value, priority, name, description,
                     _dumps(input), requester_id, now, now, _dumps(metadata)),
                )
                if initial_message is not None:
                    await self._insert_message(db, task_id, role, parts, None)
            task = await self._get_task(task_id)
            await self._record_queue_depth()

        logger.info(f"Task created: {task_id} (agent={self.agent_id}, priority={priority})")
        if self._metrics:
            self._metrics.increment_counter(METRIC_NAMES.TASKS_SUBMITTED, {"agentId": self.agent_id})
        return task

    async def get_task(self, task_id: str) -> Optional[Task]:
        """Task with its messages and artifacts, or None."""
        async with self._lock:
            return await self._get_task(task_id)

    async def _get_task(self, task_id: str) -> Optional[Task]:
        async with self._db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)) as cur:
            row = await cur.fetchone()
        if row is None:
            return None
        task = _row_to_task(row)
        task.messages = await self._get_messages(task_id)
        task.artifacts = await self._get_artifacts(task_id)
        return task

    async def list_tasks(
        self,
        state=None,
        priority=None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        created_after: Optional[str] = None,
        created_before: Optional[str] = None,
    ) -> list[TaskStatus]:
        """
        Summaries newest first. `state` and `priority` accept a single value
        or a list; filters are validated before the query is built.
        """
        clauses: list[str] = []
        params: list[Any] = []

        states = as_list(state)
        if states:
            validate_array_size(states, "state filter")
            states = validate_task_states(states)
            clauses.append(f"t.state IN ({','.join('?' * len(states))})")
            params.extend(s.value for s in states)

        priorities = as_list(priority)
        if priorities:
            validate_array_size(priorities, "priority filter")
            priorities = validate_task_priorities(priorities)
            clauses.append(f"t.priority IN ({','.join('?' * len(priorities))})")
            params.extend(priorities)

        if created_after is not None:
            clauses.append("t.created_at >= ?")
            params.append(validate_iso_timestamp(created_after, "createdAfter"))
        if created_before is not None:
            clauses.append("t.created_at <= ?")
            params.append(validate_iso_timestamp(created_before, "createdBefore"))

        query = """
            SELECT t.*,
                   (SELECT COUNT(*) FROM messages m WHERE m.task_id = t.id) AS message_count,
                   (SELECT COUNT(*) FROM artifacts a WHERE a.task_id = t.id) AS artifact_count
            FROM tasks t
        """
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY t.created_at DESC, t.rowid DESC"

        if limit is not None:
            params.append(validate_positive_integer(limit, "limit", MAX_LIST_LIMIT))
        else:
            params.append(-1)
        query += " LIMIT ?"
        if offset is not None:
            query += " OFFSET ?"
            params.append(validate_positive_integer(offset, "offset"))

        async with self._lock:
            async with self._db.execute(query, params) as cur:
                rows = await cur.fetchall()
        return [
            TaskStatus(
                id=r["id"],
                state=TaskState(r["state"]),
                priority=r["priority"],
                created_at=datetime.fromisoformat(r["created_at"]),
                updated_at=datetime.fromisoformat(r["updated_at"]),
                name=r["name"],
                message_count=r["message_count"],
                artifact_count=r["artifact_count"],
            )
            for r in rows
        ]

    async def update_task_status(
        self,
        task_id: str,
        state: Optional[Union[TaskState, str]] = None,
        priority: Optional[str] = None,
        result: Any = None,
        error: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> bool:
        """
        Apply a state change and/or field update.

        Returns False for an unknown task. Raises ValidationError when the
        task is terminal, the transition is not allowed, or moving to
        IN_PROGRESS would exceed the concurrent task limit. On any error the
        stored row is untouched.
        """
        target = validate_task_states([state])[0] if state is not None else None
        if priority is not None:
            validate_task_priorities([priority])

        async with self._lock:
            async with self._db.execute(
                "SELECT state, created_at FROM tasks WHERE id = ?", (task_id,)
            ) as cur:
                row = await cur.fetchone()
            if row is None:
                return False

            current = TaskState(row["state"])
            if current in TERMINAL_STATES:
                raise ValidationError(
                    f"Task {task_id} is already {current.value} and cannot be updated",
                    details={"taskId": task_id, "currentState": current.value},
                )
            if target is not None and not can_transition(current, target):
                raise ValidationError(
                    f"Invalid state transition: {current.value} -> {target.value}",
                    details={"taskId": task_id, "currentState": current.value, "requestedState": target.value},
                )
            if target == TaskState.IN_PROGRESS and current != TaskState.IN_PROGRESS:
                async with self._db.execute(
                    "SELECT COUNT(*) FROM tasks WHERE state = ? AND id != ?",
                    (TaskState.IN_PROGRESS.value, task_id),
                ) as cur:
                    (running,) = await cur.fetchone()
                if running >= MAX_CONCURRENT_TASKS_PHASE_1:
                    raise ValidationError(
                        "Concurrent task limit reached",
                        details={"taskId": task_id, "inProgress": running, "maxConcurrent": MAX_CONCURRENT_TASKS_PHASE_1},
                    )

            updates = ["updated_at = ?"]
            now = _now()
            values: list[Any] = [now]
            if target is not None:
                updates.append("state = ?")
                values.append(target.value)
            if priority is not None:
                updates.append("priority = ?")
                values.append(priority)
            if result is not None:
                updates.append("result = ?")
                values.append(_dumps(result))
            if error is not None:
                updates.append("error = ?")
                values.append(error)
            if metadata is not None:
                updates.append("metadata = ?")
                values.append(_dumps(metadata))
            values.append(task_id)

            async with self._transaction() as db:
                await db.execute(f"UPDATE tasks SET {', '.join(updates)} WHERE id = ?", values)
            await self._record_queue_depth()

        if target is not None and target != current:
            logger.info(f"Task {task_id}: {current.value} -> {target.value}")
            if self._metrics and target in TERMINAL_STATES:
                labels = {"agentId": self.agent_id}
                self._metrics.increment_counter(_TERMINAL_METRIC[target], labels)
                started = datetime.fromisoformat(row["created_at"])
                elapsed_ms = (datetime.fromisoformat(now) - started).total_seconds() * 1000
                self._metrics.record_histogram(METRIC_NAMES.TASK_DURATION_MS, elapsed_ms, labels)
        return True

    async def get_task_result(self, task_id: str) -> Optional[TaskResult]:
        """Outcome of a terminal task; None while it is still pending or running."""
        async with self._lock:
            async with self._db.execute(
                "SELECT id, state, result, error, updated_at FROM tasks WHERE id = ?", (task_id,)
            ) as cur:
                row = await cur.fetchone()
        if row is None:
            return None
        state = TaskState(row["state"])
        if state not in TERMINAL_STATES:
            return None
        return TaskResult(
            task_id=row["id"],
            state=state,
            success=state == TaskState.COMPLETED,
            executed_at=datetime.fromisoformat(row["updated_at"]),
            executed_by=self.agent_id,
            result=_loads(row["result"]),
            error=row["error"],
        )

    async def find_stalled(self, older_than: datetime) -> list[Task]:
        """
        PENDING / IN_PROGRESS tasks created before `older_than`, oldest first.
        Messages and artifacts are not loaded.
        """
        cutoff = older_than.astimezone(timezone.utc).isoformat(timespec="microseconds")
        async with self._lock:
            async with self._db.execute(
                "SELECT * FROM tasks WHERE state IN (?, ?) AND created_at < ? ORDER BY created_at",
                (TaskState.PENDING.value, TaskState.IN_PROGRESS.value, cutoff),
            ) as cur:
                rows = await cur.fetchall()
        return [_row_to_task(r) for r in rows]

    async def count_by_state(self) -> dict[str, int]:
        async with self._lock:
            return await self._count_by_state()

    async def _count_by_state(self) -> dict[str, int]:
        counts = {s.value: 0 for s in TaskState}
        async with self._db.execute("SELECT state, COUNT(*) FROM tasks GROUP BY state") as cur:
            for state, count in await cur.fetchall():
                counts[state] = count
        return counts

    async def delete_task(self, task_id: str) -> bool:
        """Remove a task together with its messages and artifacts."""
        async with self._lock:
            async with self._transaction() as db:
                async with db.execute("DELETE FROM tasks WHERE id = ?", (task_id,)) as cur:
                    deleted = cur.rowcount
            await self._record_queue_depth()
        if deleted:
            logger.info(f"Task deleted: {task_id}")
        return deleted > 0

    # ─────────────────────────────────────────────
    # Messages
    # ─────────────────────────────────────────────

    async def add_message(self, task_id: str, role: str, parts: list, metadata: Optional[dict] = None) -> Message:
        """Append a message. Counts as activity on the task for timeout purposes."""
        validate_role(role)
        parts = validate_message_parts(parts)
        async with self._lock:
            await self._require_open_task(task_id)
            async with self._transaction() as db:
                message = await self._insert_message(db, task_id, role, parts, metadata)
                await db.execute("UPDATE tasks SET updated_at = ? WHERE id = ?", (_now(), task_id))
        logger.debug(f"Message {message.id} appended to task {task_id}")
        return message

    async def get_messages(self, task_id: str) -> list[Message]:
        async with self._lock:
            return await self._get_messages(task_id)

    async def _get_messages(self, task_id: str) -> list[Message]:
        async with self._db.execute(
            "SELECT * FROM messages WHERE task_id = ? ORDER BY created_at, rowid", (task_id,)
        ) as cur:
            rows = await cur.fetchall()
        return [_row_to_message(r) for r in rows]

    async def _insert_message(
        self,
        db: aiosqlite.Connection,
        task_id: str,
        role: str,
        parts: list[MessagePart],
        metadata: Optional[dict],
    ) -> Message:
        message = Message(
            id=str(uuid.uuid4()),
            task_id=task_id,
            role=role,
            parts=list(parts),
            created_at=datetime.now(timezone.utc),
            metadata=metadata,
        )
        await db.execute(
            "INSERT INTO messages (id, task_id, role, parts, created_at, metadata) VALUES (?, ?, ?, ?, ?, ?)",
            (
                message.id,
                task_id,
                role,
                json.dumps([part_to_dict(p) for p in message.parts]),
                message.created_at.isoformat(timespec="microseconds"),
                _dumps(metadata),
            ),
        )
        return message

    # ─────────────────────────────────────────────
    # Artifacts
    # ─────────────────────────────────────────────

    async def add_artifact(
        self,
        task_id: str,
        type: str,
        content: Union[str, bytes],
        name: Optional[str] = None,
        encoding: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> Artifact:
        """
        Attach an output to a task. bytes are stored base64-encoded; a str with
        encoding="base64" is taken to be base64 text already.
        """
        if isinstance(content, bytes):
            raw = content
            encoding = "base64"
        elif isinstance(content, str):
            encoding = encoding or "utf-8"
            if encoding == "base64":
                try:
                    raw = base64.b64decode(content, validate=True)
                except ValueError:
                    raise ValidationError(
                        "Artifact content is not valid base64", details={"field": "content"}
                    ) from None
            elif encoding == "utf-8":
                raw = content.encode("utf-8")
            else:
                raise ValidationError(
                    "Invalid artifact encoding",
                    details={"field": "encoding", "providedEncoding": encoding, "validEncodings": ["utf-8", "base64"]},
                )
        else:
            raise ValidationError(
                "Artifact content must be str or bytes",
                details={"field": "content", "providedType": content.__class__.__name__},
            )

        stored = base64.b64encode(raw).decode("ascii") if encoding == "base64" else content
        artifact = Artifact(
            id=str(uuid.uuid4()),
            task_id=task_id,
            type=type,
            content=raw if encoding == "base64" else content,
            encoding=encoding,
            size=len(raw),
            created_at=datetime.now(timezone.utc),
            name=name,
            metadata=metadata,
        )
        async with self._lock:
            await self._require_open_task(task_id)
            async with self._transaction() as db:
                await db.execute(
                    """
                    INSERT INTO artifacts (id, task_id, type, name, content, encoding, size, created_at, metadata)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (artifact.id, task_id, type, name, stored, encoding, artifact.size,
                     artifact.created_at.isoformat(timespec="microseconds"), _dumps(metadata)),
                )
                await db.execute("UPDATE tasks SET updated_at = ? WHERE id = ?", (_now(), task_id))
        logger.debug(f"Artifact {artifact.id} ({artifact.size} bytes) attached to task {task_id}")
        return artifact

    async def get_artifacts(self, task_id: str) -> list[Artifact]:
        async with self._lock:
            return await self._get_artifacts(task_id)

    async def _get_artifacts(self, task_id: str) -> list[Artifact]:
        async with self._db.execute(
            "SELECT * FROM artifacts WHERE task_id = ? ORDER BY created_at, rowid", (task_id,)
        ) as cur:
            rows = await cur.fetchall()
        return [_row_to_artifact(r) for r in rows]

    # ─────────────────────────────────────────────
    # Helpers (caller holds the lock)
    # ─────────────────────────────────────────────

    async def _require_open_task(self, task_id: str) -> None:
        async with self._db.execute("SELECT state FROM tasks WHERE id = ?", (task_id,)) as cur:
            row = await cur.fetchone()
        if row is None:
            raise TaskNotFoundError(task_id)
        if TaskState(row["state"]) in TERMINAL_STATES:
            raise ValidationError(
                f"Task {task_id} is already {row['state']} and is read-only",
                details={"taskId": task_id, "currentState": row["state"]},
            )

    async def _record_queue_depth(self) -> None:
        if not self._metrics or not self._metrics.enabled:
            return
        counts = await self._count_by_state()
        depth = counts[TaskState.PENDING.value] + counts[TaskState.IN_PROGRESS.value]
        self._metrics.set_gauge(METRIC_NAMES.QUEUE_DEPTH, depth, {"agentId": self.agent_id})
