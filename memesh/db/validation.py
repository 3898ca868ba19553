"""
Input validation for task queue queries and writes.

Filter arrays are size-capped and enum values whitelisted before any SQL is
built, so a caller cannot blow up a query with a huge IN (...) list.
"""
from datetime import datetime, timezone
from typing import Any, Iterable, Sequence

from memesh.config import MAX_FILTER_ARRAY_SIZE
from memesh.db.models import (
    MESSAGE_ROLES,
    TASK_PRIORITIES,
    ImagePart,
    MessagePart,
    TextPart,
    ToolCallPart,
    ToolResultPart,
    TaskState,
    UnknownPartError,
    part_from_dict,
)
from memesh.errors import ValidationError

_VALID_STATES = {s.value for s in TaskState}
_PART_TYPES = (TextPart, ImagePart, ToolCallPart, ToolResultPart)


def as_list(value: Any) -> list:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set, frozenset)):
        return list(value)
    return [value]


def validate_array_size(items: Sequence, field_name: str, max_size: int = MAX_FILTER_ARRAY_SIZE) -> None:
    if len(items) > max_size:
        raise ValidationError(
            f"Too many items in {field_name}",
            details={"field": field_name, "providedCount": len(items), "maxAllowed": max_size},
        )


def validate_task_states(states: Iterable[Any]) -> list[TaskState]:
    out = []
    for state in states:
        raw = state.value if isinstance(state, TaskState) else state
        if raw not in _VALID_STATES:
            raise ValidationError(
                "Invalid task state",
                details={"field": "state", "providedState": str(raw), "validStates": sorted(_VALID_STATES)},
            )
        out.append(TaskState(raw))
    return out


def validate_task_priorities(priorities: Iterable[Any]) -> list[str]:
    out = []
    for priority in priorities:
        if priority not in TASK_PRIORITIES:
            raise ValidationError(
                "Invalid task priority",
                details={"field": "priority", "providedPriority": str(priority), "validPriorities": list(TASK_PRIORITIES)},
            )
        out.append(priority)
    return out


def validate_positive_integer(value: Any, field_name: str, max_value: int | None = None) -> int:
    """Non-negative integer no larger than `max_value`. bool is rejected."""
    if isinstance(value, bool) or not isinstance(value, int) or value < 0 or (max_value is not None and value > max_value):
        raise ValidationError(
            f"Invalid {field_name}",
            details={"field": field_name, "providedValue": repr(value), "constraints": {"min": 0, "max": max_value}},
        )
    return value


def validate_iso_timestamp(value: Any, field_name: str) -> str:
    """Parse an ISO-8601 timestamp and normalize it to the stored UTC form."""
    if not isinstance(value, str):
        raise ValidationError(f"Invalid {field_name}", details={"field": field_name, "reason": "expected ISO-8601 string"})
    try:
        # fromisoformat() on older interpreters does not accept a trailing "Z"
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(
            f"Invalid {field_name}",
            details={"field": field_name, "providedValue": value, "reason": "expected ISO-8601 timestamp"},
        ) from None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def validate_role(role: Any) -> str:
    if role not in MESSAGE_ROLES:
        raise ValidationError(
            "Invalid message role",
            details={"field": "role", "providedRole": str(role), "validRoles": list(MESSAGE_ROLES)},
        )
    return role


def validate_message_parts(parts: Any) -> list[MessagePart]:
    """Accept part objects or their wire dicts; reject empty lists and unknown tags."""
    if not isinstance(parts, (list, tuple)) or not parts:
        raise ValidationError("Message must contain at least one part", details={"field": "parts"})
    out: list[MessagePart] = []
    for index, part in enumerate(parts):
        if isinstance(part, dict):
            try:
                part = part_from_dict(part)
            except (KeyError, TypeError, UnknownPartError) as e:
                raise ValidationError(
                    f"Invalid message part at index {index}",
                    details={"field": "parts", "index": index, "reason": str(e)},
                ) from None
        elif not isinstance(part, _PART_TYPES):
            raise ValidationError(
                f"Invalid message part at index {index}",
                details={"field": "parts", "index": index, "reason": f"unsupported type {type(part).__name__}"},
            )
        out.append(part)
    return out
