import argparse
import asyncio
import json
import logging
import socket

from memesh.config import AGENT_ID, HOST, LOG_LEVEL, PORT_RANGE_MAX, PORT_RANGE_MIN, VERSION, get_config_dict
from memesh.db.models import AgentCard
from memesh.db.registry import AgentRegistry
from memesh.db.task_queue import TaskQueue
from memesh.metrics import A2AMetrics
from memesh.server.a2a_server import A2AServer
from memesh.tracing import TraceContextFilter

logger = logging.getLogger("memesh")


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s [trace=%(trace_id)s]: %(message)s",
    )
    for handler in logging.getLogger().handlers:
        handler.addFilter(TraceContextFilter())


async def _run(args: argparse.Namespace) -> None:
    metrics = A2AMetrics.from_env()
    registry = await AgentRegistry.open(metrics=metrics)
    queue = await TaskQueue.open(args.agent_id, metrics=metrics)
    card = AgentCard(
        id=args.agent_id,
        name=args.name or args.agent_id,
        description=args.description,
        version=VERSION,
        capabilities={"sendMessage": True, "tasks": True, "cancel": True},
    )
    server = A2AServer(
        args.agent_id,
        card,
        queue,
        registry,
        metrics=metrics,
        host=args.host,
        port_range=(args.port_min, args.port_max),
    )
    try:
        port = await server.start()
        card.endpoints = {"baseUrl": server.base_url}
        logger.info(f"Agent {args.agent_id} serving A2A on port {port}")
        await server.serve_forever()
    finally:
        await server.stop()
        await queue.close()
        await registry.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Run a MeMesh A2A agent endpoint")
    parser.add_argument("--agent-id", default=AGENT_ID or f"agent-{socket.gethostname()}", help="Agent id to register")
    parser.add_argument("--name", default=None, help="Display name in the agent card")
    parser.add_argument("--description", default=None, help="Description in the agent card")
    parser.add_argument("--host", default=HOST, help="Bind host")
    parser.add_argument("--port-min", type=int, default=PORT_RANGE_MIN, help="Lowest port to try")
    parser.add_argument("--port-max", type=int, default=PORT_RANGE_MAX, help="Highest port to try")
    parser.add_argument("--log-level", default=LOG_LEVEL, help="Logging level")
    parser.add_argument("--show-config", action="store_true", help="Print effective configuration and exit")
    args = parser.parse_args()

    if args.show_config:
        print(json.dumps(get_config_dict(), indent=2))
        return

    _configure_logging(args.log_level.upper())
    try:
        asyncio.run(_run(args))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")


if __name__ == "__main__":
    main()
