"""
A2AServer: one agent's HTTP endpoint plus its background jobs.

start() binds the first free port in the configured range, serves the app
with uvicorn on that socket, registers the agent, and starts the heartbeat
loop and the timeout checker. stop() undoes all of it. If any step after the
bind fails, start() stops what it already started before re-raising, so the
port is released and no background job is left behind.
"""
import asyncio
import errno
import logging
import os
import socket
from typing import Optional, Union

import uvicorn

from memesh.config import (
    HEARTBEAT_INTERVAL_MS,
    HOST,
    PORT_RANGE_MAX,
    PORT_RANGE_MIN,
    STALE_AGENT_THRESHOLD_MS,
    TIMEOUT_CHECK_INTERVAL_MS,
)
from memesh.db.models import AgentCard
from memesh.db.registry import AgentRegistry
from memesh.db.task_queue import TaskQueue
from memesh.errors import ConfigurationError
from memesh.metrics import A2AMetrics
from memesh.server.app import create_app
from memesh.server.rate_limit import RateLimiter
from memesh.timeout_checker import TimeoutChecker

logger = logging.getLogger(__name__)


def bind_first_free_port(host: str, port_min: int, port_max: int) -> socket.socket:
    """
    Bind a listening socket on the first port in [port_min, port_max] that is free.

    There is no separate availability probe: the bind itself is the test, so a
    port taken by another process between attempts just moves us to the next one.
    """
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    for port in range(port_min, port_max + 1):
        sock = socket.socket(family, socket.SOCK_STREAM)
        try:
            if os.name != "nt":
                # On Windows SO_REUSEADDR lets two listeners share a port
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((host, port))
            sock.listen(128)
            sock.setblocking(False)
            return sock
        except OSError as e:
            sock.close()
            if e.errno in (errno.EADDRINUSE, errno.EACCES):
                continue
            raise
    raise OSError(errno.EADDRINUSE, f"No free port in range {port_min}-{port_max} on {host}")


class A2AServer:
    def __init__(
        self,
        agent_id: str,
        agent_card: Union[AgentCard, dict],
        task_queue: TaskQueue,
        registry: AgentRegistry,
        metrics: Optional[A2AMetrics] = None,
        rate_limiter: Optional[RateLimiter] = None,
        host: str = HOST,
        port_range: tuple[int, int] = (PORT_RANGE_MIN, PORT_RANGE_MAX),
        heartbeat_interval_ms: int = HEARTBEAT_INTERVAL_MS,
        stale_threshold_ms: int = STALE_AGENT_THRESHOLD_MS,
        timeout_check_interval_ms: int = TIMEOUT_CHECK_INTERVAL_MS,
        timeout_checker: Optional[TimeoutChecker] = None,
    ) -> None:
        if port_range[0] > port_range[1]:
            raise ConfigurationError(f"Invalid port range {port_range[0]}-{port_range[1]}")
        if stale_threshold_ms < heartbeat_interval_ms:
            raise ConfigurationError(
                f"Stale agent threshold ({stale_threshold_ms} ms) is shorter than the heartbeat "
                f"interval ({heartbeat_interval_ms} ms); live agents would be marked inactive"
            )
        timeout_checker = timeout_checker or TimeoutChecker([task_queue], metrics=metrics)
        if timeout_check_interval_ms <= 0:
            raise ConfigurationError(f"Timeout check interval must be positive, got {timeout_check_interval_ms} ms")
        if timeout_checker.task_timeout_ms < timeout_check_interval_ms:
            raise ConfigurationError(
                f"Task timeout ({timeout_checker.task_timeout_ms} ms) is shorter than the check interval "
                f"({timeout_check_interval_ms} ms); stalled tasks would not be detected in time"
            )
        self.agent_id = agent_id
        self.agent_card = AgentCard.from_dict(agent_card) if isinstance(agent_card, dict) else agent_card
        self.task_queue = task_queue
        self.registry = registry
        self.metrics = metrics
        self.host = host
        self.port_range = port_range
        self.heartbeat_interval_ms = heartbeat_interval_ms
        self.stale_threshold_ms = stale_threshold_ms
        self.timeout_check_interval_ms = timeout_check_interval_ms
        self.timeout_checker = timeout_checker
        self.app = create_app(agent_id, self.agent_card, task_queue, rate_limiter=rate_limiter, metrics=metrics)

        self._port: Optional[int] = None
        self._sock: Optional[socket.socket] = None
        self._uvicorn: Optional[uvicorn.Server] = None
        self._serve_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None

    @property
    def base_url(self) -> Optional[str]:
        if self._port is None:
            return None
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"http://{host}:{self._port}"

    def get_port(self) -> Optional[int]:
        return self._port

    def is_running(self) -> bool:
        return self._serve_task is not None and not self._serve_task.done()

    async def start(self) -> int:
        """Bind, serve, register. Returns the bound port."""
        if self.is_running():
            return self._port

        self._sock = bind_first_free_port(self.host, *self.port_range)
        self._port = self._sock.getsockname()[1]
        try:
            await self._start_on_socket(self._sock)
        except BaseException:
            logger.error(f"A2A server for {self.agent_id} failed to start on port {self._port}, rolling back")
            await self.stop()
            raise
        logger.info(f"A2A server for {self.agent_id} listening on {self.base_url}")
        return self._port

    async def _start_on_socket(self, sock: socket.socket) -> None:
        config = uvicorn.Config(self.app, log_config=None, access_log=False, lifespan="on")
        self._uvicorn = uvicorn.Server(config)
        self._serve_task = asyncio.create_task(self._uvicorn.serve(sockets=[sock]))
        while not self._uvicorn.started:
            if self._serve_task.done():
                # serve() exited during startup; surface its exception
                self._serve_task.result()
                raise RuntimeError(f"A2A server for {self.agent_id} exited during startup")
            await asyncio.sleep(0.01)

        await self.registry.register(
            self.agent_id,
            self.base_url,
            self._port,
            metadata={"name": self.agent_card.name, "version": self.agent_card.version},
        )
        self.timeout_checker.start(self.timeout_check_interval_ms)
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def serve_forever(self) -> None:
        """Block until the HTTP server exits (e.g. on SIGINT), then clean up."""
        try:
            if self._serve_task is not None:
                await self._serve_task
        finally:
            await self.stop()

    async def stop(self) -> None:
        if self._sock is None:
            return
        heartbeat, self._heartbeat_task = self._heartbeat_task, None
        if heartbeat is not None:
            heartbeat.cancel()
            try:
                await heartbeat
            except asyncio.CancelledError:
                pass
        await self.timeout_checker.stop()

        if self._uvicorn is not None:
            self._uvicorn.should_exit = True
        serve_task, self._serve_task = self._serve_task, None
        if serve_task is not None and not serve_task.done():
            await serve_task
        self._uvicorn = None
        # Already closed when uvicorn shut down cleanly
        sock, self._sock = self._sock, None
        sock.close()

        await self.registry.deactivate(self.agent_id)
        logger.info(f"A2A server for {self.agent_id} stopped (port {self._port})")
        self._port = None

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval_ms / 1000)
            try:
                await self.registry.heartbeat(self.agent_id)
                await self.registry.cleanup_stale(self.stale_threshold_ms)
            except Exception:
                logger.exception(f"Heartbeat for {self.agent_id} failed")
