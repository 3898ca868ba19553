"""
Background sweep that fails tasks left open for too long.

A task is stalled when it is still PENDING or IN_PROGRESS once its age
(time since created_at) exceeds the task timeout. Status changes and new
messages do not extend the deadline. Stalled tasks are moved to FAILED through
the normal update path, so a task that finished in the meantime is left alone.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from memesh.config import TIMEOUT_CHECK_INTERVAL_MS, get_task_timeout_ms
from memesh.db.models import TaskState
from memesh.db.task_queue import TaskQueue
from memesh.errors import ConfigurationError, ValidationError
from memesh.metrics import A2AMetrics, METRIC_NAMES

logger = logging.getLogger(__name__)


class TimeoutChecker:
    def __init__(
        self,
        queues: Iterable[TaskQueue],
        task_timeout_ms: Optional[int] = None,
        metrics: Optional[A2AMetrics] = None,
    ) -> None:
        self._queues = list(queues)
        self.task_timeout_ms = get_task_timeout_ms() if task_timeout_ms is None else task_timeout_ms
        self._metrics = metrics
        self._interval_ms: Optional[int] = None
        self._task: Optional[asyncio.Task] = None
        self._sweeping = False

    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def get_interval(self) -> Optional[int]:
        return self._interval_ms if self.is_running() else None

    def start(self, interval_ms: Optional[int] = None) -> None:
        """Begin periodic sweeps. Calling start() while running is a no-op."""
        if self.is_running():
            logger.debug("Timeout checker already running")
            return
        interval_ms = TIMEOUT_CHECK_INTERVAL_MS if interval_ms is None else interval_ms
        if interval_ms <= 0:
            raise ConfigurationError(f"Timeout check interval must be positive, got {interval_ms} ms")
        if self.task_timeout_ms < interval_ms:
            raise ConfigurationError(
                f"Task timeout ({self.task_timeout_ms} ms) is shorter than the check interval "
                f"({interval_ms} ms); stalled tasks would not be detected in time"
            )
        self._interval_ms = interval_ms
        self._task = asyncio.create_task(self._run())
        logger.info(f"Timeout checker started (interval={interval_ms} ms, timeout={self.task_timeout_ms} ms)")

    async def stop(self) -> None:
        task, self._task = self._task, None
        self._interval_ms = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Timeout checker stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval_ms / 1000)
            if self._sweeping:
                logger.warning("Previous timeout sweep still running, skipping this tick")
                continue
            try:
                await self.check_once()
            except Exception:
                logger.exception("Timeout sweep failed")

    async def check_once(self) -> int:
        """Run one sweep over every queue. Returns how many tasks were timed out."""
        if self._sweeping:
            return 0
        self._sweeping = True
        try:
            cutoff = datetime.now(timezone.utc) - timedelta(milliseconds=self.task_timeout_ms)
            timed_out = 0
            for queue in self._queues:
                for task in await queue.find_stalled(cutoff):
                    if await self._expire(queue, task.id, task.state, task.created_at):
                        timed_out += 1
            if timed_out:
                logger.info(f"Timeout sweep failed {timed_out} stalled task(s)")
            return timed_out
        finally:
            self._sweeping = False

    async def _expire(self, queue: TaskQueue, task_id: str, state: TaskState, created_at: datetime) -> bool:
        age_ms = int((datetime.now(timezone.utc) - created_at).total_seconds() * 1000)
        try:
            updated = await queue.update_task_status(
                task_id,
                state=TaskState.FAILED,
                error=f"Task timed out after {age_ms} ms (limit {self.task_timeout_ms} ms, was {state.value})",
            )
        except ValidationError:
            # Reached a terminal state between the scan and the update
            logger.debug(f"Task {task_id} finished before it could be timed out")
            return False
        if updated:
            logger.warning(f"Task {task_id} on agent {queue.agent_id} timed out ({state.value})")
            if self._metrics:
                self._metrics.increment_counter(METRIC_NAMES.TASKS_TIMEOUT, {"agentId": queue.agent_id})
        return updated
