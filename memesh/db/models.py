"""
Data models (dataclasses) for the A2A stack.
These are plain Python objects used across the storage, server and client layers.
`to_dict()` renders the camelCase wire form, `from_dict()` parses it back.
"""
import base64
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union


class TaskState(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELED = "CANCELED"


TERMINAL_STATES = frozenset({TaskState.COMPLETED, TaskState.FAILED, TaskState.CANCELED})

# Allowed moves between distinct states. A non-terminal state may also be
# "updated" to itself for field-only changes.
ALLOWED_TRANSITIONS: dict[TaskState, frozenset[TaskState]] = {
    TaskState.PENDING: frozenset({TaskState.IN_PROGRESS, TaskState.CANCELED, TaskState.FAILED}),
    TaskState.IN_PROGRESS: frozenset({TaskState.COMPLETED, TaskState.FAILED, TaskState.CANCELED}),
    TaskState.COMPLETED: frozenset(),
    TaskState.FAILED: frozenset(),
    TaskState.CANCELED: frozenset(),
}

TASK_PRIORITIES = ("low", "normal", "high", "urgent")
MESSAGE_ROLES = ("user", "assistant")


def can_transition(current: TaskState, target: TaskState) -> bool:
    if current in TERMINAL_STATES:
        return False
    return target == current or target in ALLOWED_TRANSITIONS[current]


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


# ─────────────────────────────────────────────
# Message parts (closed tagged union on "type")
# ─────────────────────────────────────────────

@dataclass(frozen=True)
class TextPart:
    text: str
    type: str = field(default="text", init=False)


@dataclass(frozen=True)
class ImagePart:
    source: Any  # {"type": "url"|"base64", ...} as sent by the caller
    type: str = field(default="image", init=False)


@dataclass(frozen=True)
class ToolCallPart:
    id: str
    name: str
    input: Any
    type: str = field(default="tool_call", init=False)


@dataclass(frozen=True)
class ToolResultPart:
    tool_call_id: str
    content: Any
    is_error: Optional[bool] = None
    type: str = field(default="tool_result", init=False)


MessagePart = Union[TextPart, ImagePart, ToolCallPart, ToolResultPart]


class UnknownPartError(ValueError):
    pass


def part_to_dict(part: MessagePart) -> dict[str, Any]:
    if isinstance(part, TextPart):
        return {"type": "text", "text": part.text}
    if isinstance(part, ImagePart):
        return {"type": "image", "source": part.source}
    if isinstance(part, ToolCallPart):
        return {"type": "tool_call", "id": part.id, "name": part.name, "input": part.input}
    if isinstance(part, ToolResultPart):
        out = {"type": "tool_result", "toolCallId": part.tool_call_id, "content": part.content}
        if part.is_error is not None:
            out["isError"] = part.is_error
        return out
    raise UnknownPartError(f"Unsupported message part: {type(part).__name__}")


def part_from_dict(data: dict[str, Any]) -> MessagePart:
    kind = data.get("type")
    if kind == "text":
        return TextPart(text=data["text"])
    if kind == "image":
        return ImagePart(source=data["source"])
    if kind == "tool_call":
        return ToolCallPart(id=data["id"], name=data["name"], input=data.get("input"))
    if kind == "tool_result":
        return ToolResultPart(
            tool_call_id=data["toolCallId"],
            content=data.get("content"),
            is_error=data.get("isError"),
        )
    raise UnknownPartError(f"Unknown message part type: {kind!r}")


# ─────────────────────────────────────────────
# Registry
# ─────────────────────────────────────────────

@dataclass
class AgentRegistryEntry:
    agent_id: str
    base_url: str
    port: int
    status: str               # active | inactive
    last_heartbeat: datetime
    registered_at: datetime
    metadata: Optional[dict] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "agentId": self.agent_id,
            "baseUrl": self.base_url,
            "port": self.port,
            "status": self.status,
            "lastHeartbeat": _iso(self.last_heartbeat),
            "registeredAt": _iso(self.registered_at),
            "metadata": self.metadata,
        }


@dataclass
class AgentCard:
    id: str
    name: str
    description: Optional[str] = None
    version: Optional[str] = None
    capabilities: dict = field(default_factory=dict)
    endpoints: dict = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"id": self.id, "name": self.name, "capabilities": self.capabilities}
        if self.description is not None:
            out["description"] = self.description
        if self.version is not None:
            out["version"] = self.version
        if self.endpoints:
            out["endpoints"] = self.endpoints
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AgentCard":
        return cls(
            id=data["id"],
            name=data.get("name", data["id"]),
            description=data.get("description"),
            version=data.get("version"),
            capabilities=data.get("capabilities") or {},
            endpoints=data.get("endpoints") or {},
        )


# ─────────────────────────────────────────────
# Tasks
# ─────────────────────────────────────────────

@dataclass
class Message:
    id: str
    task_id: str
    role: str            # user | assistant
    parts: list[MessagePart]
    created_at: datetime
    metadata: Optional[dict] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "taskId": self.task_id,
            "role": self.role,
            "parts": [part_to_dict(p) for p in self.parts],
            "createdAt": _iso(self.created_at),
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        return cls(
            id=data["id"],
            task_id=data["taskId"],
            role=data["role"],
            parts=[part_from_dict(p) for p in data.get("parts", [])],
            created_at=_dt(data["createdAt"]),
            metadata=data.get("metadata"),
        )


@dataclass
class Artifact:
    id: str
    task_id: str
    type: str
    content: Union[str, bytes]
    encoding: str        # utf-8 | base64
    size: int
    created_at: datetime
    name: Optional[str] = None
    metadata: Optional[dict] = None

    def to_dict(self) -> dict[str, Any]:
        content = self.content
        if isinstance(content, bytes):
            content = base64.b64encode(content).decode("ascii")
        return {
            "id": self.id,
            "taskId": self.task_id,
            "type": self.type,
            "name": self.name,
            "content": content,
            "encoding": self.encoding,
            "size": self.size,
            "createdAt": _iso(self.created_at),
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Artifact":
        content = data["content"]
        if data.get("encoding") == "base64":
            content = base64.b64decode(content)
        return cls(
            id=data["id"],
            task_id=data["taskId"],
            type=data["type"],
            content=content,
            encoding=data.get("encoding", "utf-8"),
            size=data.get("size", len(content)),
            created_at=_dt(data["createdAt"]),
            name=data.get("name"),
            metadata=data.get("metadata"),
        )


@dataclass
class Task:
    id: str
    agent_id: str
    state: TaskState
    priority: str
    created_at: datetime
    updated_at: datetime
    name: Optional[str] = None
    description: Optional[str] = None
    input: Any = None
    result: Any = None
    error: Optional[str] = None
    requester_id: Optional[str] = None
    metadata: Optional[dict] = None
    messages: list[Message] = field(default_factory=list)
    artifacts: list[Artifact] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "agentId": self.agent_id,
            "state": self.state.value,
            "priority": self.priority,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
            "name": self.name,
            "description": self.description,
            "input": self.input,
            "result": self.result,
            "error": self.error,
            "requesterId": self.requester_id,
            "metadata": self.metadata,
            "messages": [m.to_dict() for m in self.messages],
            "artifacts": [a.to_dict() for a in self.artifacts],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        return cls(
            id=data["id"],
            agent_id=data["agentId"],
            state=TaskState(data["state"]),
            priority=data.get("priority", "normal"),
            created_at=_dt(data["createdAt"]),
            updated_at=_dt(data["updatedAt"]),
            name=data.get("name"),
            description=data.get("description"),
            input=data.get("input"),
            result=data.get("result"),
            error=data.get("error"),
            requester_id=data.get("requesterId"),
            metadata=data.get("metadata"),
            messages=[Message.from_dict(m) for m in data.get("messages", [])],
            artifacts=[Artifact.from_dict(a) for a in data.get("artifacts", [])],
        )


@dataclass
class TaskStatus:
    """Summary row returned by list_tasks."""
    id: str
    state: TaskState
    priority: str
    created_at: datetime
    updated_at: datetime
    name: Optional[str] = None
    message_count: int = 0
    artifact_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "state": self.state.value,
            "priority": self.priority,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
            "name": self.name,
            "messageCount": self.message_count,
            "artifactCount": self.artifact_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskStatus":
        return cls(
            id=data["id"],
            state=TaskState(data["state"]),
            priority=data.get("priority", "normal"),
            created_at=_dt(data["createdAt"]),
            updated_at=_dt(data["updatedAt"]),
            name=data.get("name"),
            message_count=data.get("messageCount", 0),
            artifact_count=data.get("artifactCount", 0),
        )


@dataclass
class TaskResult:
    task_id: str
    state: TaskState
    success: bool
    executed_at: datetime
    executed_by: str
    result: Any = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "taskId": self.task_id,
            "state": self.state.value,
            "success": self.success,
            "executedAt": _iso(self.executed_at),
            "executedBy": self.executed_by,
        }
        if self.result is not None:
            out["result"] = self.result
        if self.error is not None:
            out["error"] = self.error
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskResult":
        return cls(
            task_id=data["taskId"],
            state=TaskState(data["state"]),
            success=data["success"],
            executed_at=_dt(data["executedAt"]),
            executed_by=data["executedBy"],
            result=data.get("result"),
            error=data.get("error"),
        )
