"""
A2A HTTP surface.

create_app() builds one FastAPI application per agent. Every response uses
the ServiceResponse envelope:

    {"success": true,  "data": ...}
    {"success": false, "error": {"code": ..., "message": ..., "details"?: ...}}
"""
import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated, Any, Literal, Optional, Union

import pydantic
from fastapi import Depends, FastAPI, Query, Request
from pydantic import BaseModel, ConfigDict, Field

from memesh.config import VERSION
from memesh.db.models import AgentCard
from memesh.db.task_queue import TaskQueue
from memesh.errors import A2AError, ErrorCode, TaskNotFoundError, ValidationError
from memesh.metrics import A2AMetrics
from memesh.server import middleware
from memesh.server.auth import require_auth, rate_limit
from memesh.server.rate_limit import CANCEL_TASK, GET_TASK, LIST_TASKS, SEND_MESSAGE, RateLimiter

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────
# Request bodies
# ─────────────────────────────────────────────

class TextPartBody(BaseModel):
    type: Literal["text"]
    text: str


class ImagePartBody(BaseModel):
    type: Literal["image"]
    source: dict[str, Any]


class ToolCallPartBody(BaseModel):
    type: Literal["tool_call"]
    id: str
    name: str
    input: Any = None


class ToolResultPartBody(BaseModel):
    type: Literal["tool_result"]
    toolCallId: str
    content: Any = None
    isError: Optional[bool] = None


PartBody = Annotated[
    Union[TextPartBody, ImagePartBody, ToolCallPartBody, ToolResultPartBody],
    Field(discriminator="type"),
]


class MessageBody(BaseModel):
    role: Literal["user", "assistant"]
    parts: list[PartBody] = Field(min_length=1)


class AgentCardRef(BaseModel):
    model_config = ConfigDict(extra="allow")
    id: str


class SendMessageBody(BaseModel):
    taskId: Optional[str] = None
    message: MessageBody
    agentCard: Optional[AgentCardRef] = None


class CancelTaskBody(BaseModel):
    reason: Optional[str] = None


def json_body(model: type[BaseModel]):
    """
    Parse the request body into `model` as a dependency, so it runs after
    authentication. An empty body is treated as `{}`.
    """

    async def dependency(request: Request) -> BaseModel:
        raw = await request.body()
        try:
            return model.model_validate_json(raw if raw.strip() else b"{}")
        except pydantic.ValidationError as e:
            errors = json.loads(e.json(include_url=False))
            if any(err.get("type") == "json_invalid" for err in errors):
                raise A2AError(
                    "Request body is not valid JSON", code=ErrorCode.INVALID_JSON, status_code=400
                ) from None
            raise ValidationError("Invalid request body", details={"errors": errors}) from None

    return dependency


def ok(data: Any) -> dict[str, Any]:
    return {"success": True, "data": data}


# ─────────────────────────────────────────────
# Application factory
# ─────────────────────────────────────────────

def create_app(
    agent_id: str,
    agent_card: Union[AgentCard, dict],
    task_queue: TaskQueue,
    rate_limiter: Optional[RateLimiter] = None,
    metrics: Optional[A2AMetrics] = None,
) -> FastAPI:
    if isinstance(agent_card, dict):
        agent_card = AgentCard.from_dict(agent_card)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.rate_limiter.start_cleanup()
        logger.info(f"A2A routes ready for agent {agent_id}")
        yield
        await app.state.rate_limiter.stop_cleanup()

    app = FastAPI(
        title=f"MeMesh A2A ({agent_id})",
        description="Agent-to-agent task protocol endpoint.",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.agent_id = agent_id
    app.state.agent_card = agent_card
    app.state.task_queue = task_queue
    app.state.rate_limiter = rate_limiter or RateLimiter(metrics=metrics)
    app.state.metrics = metrics

    middleware.install(app)

    # ─────────────────────────────────────────────
    # Public
    # ─────────────────────────────────────────────

    @app.get("/a2a/agent-card")
    async def get_agent_card():
        return ok(agent_card.to_dict())

    @app.get("/health")
    async def health():
        return ok({"status": "ok", "agentId": agent_id})

    # ─────────────────────────────────────────────
    # Authenticated
    # ─────────────────────────────────────────────

    @app.post("/a2a/send-message", dependencies=[Depends(require_auth), Depends(rate_limit(SEND_MESSAGE))])
    async def send_message(request: Request, body: SendMessageBody = Depends(json_body(SendMessageBody))):
        parts = [p.model_dump(exclude_none=True) for p in body.message.parts]
        if body.taskId is None:
            task = await task_queue.create_task(
                name="Incoming A2A Task",
                priority="normal",
                initial_message={"role": body.message.role, "parts": parts},
                requester_id=request.state.agent_id,
            )
            task_id, state = task.id, task.state
        else:
            await task_queue.add_message(body.taskId, body.message.role, parts)
            task = await task_queue.get_task(body.taskId)
            task_id, state = task.id, task.state
        logger.info(f"send-message from {request.state.agent_id}: task {task_id} is {state.value}")
        return ok({"taskId": task_id, "status": state.value})

    @app.get("/a2a/tasks", dependencies=[Depends(require_auth), Depends(rate_limit(LIST_TASKS))])
    async def list_tasks(
        status: Optional[list[str]] = Query(None),
        priority: Optional[list[str]] = Query(None),
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        created_after: Optional[str] = Query(None, alias="createdAfter"),
        created_before: Optional[str] = Query(None, alias="createdBefore"),
    ):
        tasks = await task_queue.list_tasks(
            state=status,
            priority=priority,
            limit=limit,
            offset=offset,
            created_after=created_after,
            created_before=created_before,
        )
        return ok([t.to_dict() for t in tasks])

    @app.get("/a2a/tasks/{task_id}", dependencies=[Depends(require_auth), Depends(rate_limit(GET_TASK))])
    async def get_task(task_id: str):
        task = await task_queue.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return ok(task.to_dict())

    @app.get("/a2a/tasks/{task_id}/result", dependencies=[Depends(require_auth), Depends(rate_limit(GET_TASK))])
    async def get_task_result(task_id: str):
        result = await task_queue.get_task_result(task_id)
        if result is None:
            if await task_queue.get_task(task_id) is None:
                raise TaskNotFoundError(task_id)
            raise A2AError(
                f"Result not available yet for task {task_id}",
                code=ErrorCode.TASK_RESULT_NOT_FOUND,
                status_code=404,
                details={"taskId": task_id},
            )
        return ok(result.to_dict())

    @app.post("/a2a/tasks/{task_id}/cancel", dependencies=[Depends(require_auth), Depends(rate_limit(CANCEL_TASK))])
    async def cancel_task(
        request: Request,
        task_id: str,
        body: CancelTaskBody = Depends(json_body(CancelTaskBody)),
    ):
        updated = await task_queue.update_task_status(task_id, state="CANCELED", error=body.reason)
        if not updated:
            raise TaskNotFoundError(task_id)
        logger.info(f"Task {task_id} canceled by {request.state.agent_id}")
        return ok({"taskId": task_id, "status": "CANCELED"})

    return app
