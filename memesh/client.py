"""
A2AClient: call other agents' A2A endpoints.

Targets are addressed by agent id and resolved through the AgentRegistry on
every call. Transient failures (network errors, 429 and 5xx by default) are
retried with exponential backoff and full jitter; a 429 that carries
retryAfter waits that long instead. Everything else fails on the first try.
"""
import logging
from typing import Any, Iterable, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_random_exponential,
)
from tenacity.wait import wait_base

from memesh.config import (
    RETRY_BASE_DELAY_MS_BOUNDS,
    RETRY_MAX_ATTEMPTS_BOUNDS,
    RETRY_TIMEOUT_MS_BOUNDS,
    clamp_env_int,
    get_a2a_token,
)
from memesh.db.models import AgentCard, Task, TaskResult, TaskStatus, part_to_dict
from memesh.db.registry import AgentRegistry
from memesh.errors import A2AClientError, ErrorCode
from memesh.tracing import create_trace_context, get_trace_context, inject_trace_context

logger = logging.getLogger(__name__)

DEFAULT_RETRYABLE_STATUS_CODES = (429, 500, 502, 503, 504)
MAX_BACKOFF_SECONDS = 30.0


class _BackoffWait(wait_base):
    """Honour the server's retryAfter (capped) when present, else randomized exponential backoff."""

    def __init__(self, base_delay: float) -> None:
        self._backoff = wait_random_exponential(multiplier=base_delay, max=MAX_BACKOFF_SECONDS)

    def __call__(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, A2AClientError) and exc.retry_after:
            return min(float(exc.retry_after), MAX_BACKOFF_SECONDS)
        return self._backoff(retry_state)


def _retry_after_header(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("retry-after")
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None


class A2AClient:
    def __init__(
        self,
        registry: AgentRegistry,
        token: Optional[str] = None,
        max_retries: Optional[int] = None,
        base_delay: Optional[float] = None,
        timeout: Optional[float] = None,
        retryable_status_codes: Iterable[int] = DEFAULT_RETRYABLE_STATUS_CODES,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        `base_delay` and `timeout` are in seconds. Unset retry knobs come from
        A2A_RETRY_MAX_ATTEMPTS, A2A_RETRY_INITIAL_DELAY_MS and A2A_RETRY_TIMEOUT_MS
        (clamped to safe bounds); explicit arguments are used as given.
        """
        self.registry = registry
        self._token = token
        self.max_retries = clamp_env_int("A2A_RETRY_MAX_ATTEMPTS", RETRY_MAX_ATTEMPTS_BOUNDS) if max_retries is None else max_retries
        self.base_delay = (
            clamp_env_int("A2A_RETRY_INITIAL_DELAY_MS", RETRY_BASE_DELAY_MS_BOUNDS) / 1000
            if base_delay is None else base_delay
        )
        self.timeout = clamp_env_int("A2A_RETRY_TIMEOUT_MS", RETRY_TIMEOUT_MS_BOUNDS) / 1000 if timeout is None else timeout
        self.retryable_status_codes = frozenset(retryable_status_codes)
        self._http = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout), transport=transport)

    async def __aenter__(self) -> "A2AClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # ─────────────────────────────────────────────
    # Operations
    # ─────────────────────────────────────────────

    async def send_message(self, target_agent_id: str, request: dict[str, Any]) -> dict[str, Any]:
        """
        POST /a2a/send-message. `request` is `{"message": {"role", "parts"},
        "taskId"?, "agentCard"?}`; parts may be dicts or part objects.
        Returns `{"taskId", "status"}`.
        """
        body = dict(request)
        message = dict(body.get("message") or {})
        message["parts"] = [p if isinstance(p, dict) else part_to_dict(p) for p in message.get("parts", [])]
        body["message"] = message
        if isinstance(body.get("agentCard"), AgentCard):
            body["agentCard"] = body["agentCard"].to_dict()
        return await self._call(target_agent_id, "POST", "/a2a/send-message", json=body)

    async def get_task(self, target_agent_id: str, task_id: str) -> Task:
        data = await self._call(target_agent_id, "GET", f"/a2a/tasks/{task_id}")
        return Task.from_dict(data)

    async def list_tasks(
        self,
        target_agent_id: str,
        status=None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> list[TaskStatus]:
        params: dict[str, Any] = {}
        if status is not None:
            params["status"] = status
        if limit is not None:
            params["limit"] = limit
        if offset is not None:
            params["offset"] = offset
        data = await self._call(target_agent_id, "GET", "/a2a/tasks", params=params)
        return [TaskStatus.from_dict(t) for t in data]

    async def get_agent_card(self, target_agent_id: str) -> AgentCard:
        data = await self._call(target_agent_id, "GET", "/a2a/agent-card")
        return AgentCard.from_dict(data)

    async def cancel_task(self, target_agent_id: str, task_id: str, reason: Optional[str] = None) -> None:
        body = {"reason": reason} if reason else {}
        await self._call(target_agent_id, "POST", f"/a2a/tasks/{task_id}/cancel", json=body)

    async def get_task_result(self, target_agent_id: str, task_id: str) -> TaskResult:
        data = await self._call(target_agent_id, "GET", f"/a2a/tasks/{task_id}/result")
        return TaskResult.from_dict(data)

    async def list_available_agents(self) -> list[str]:
        """Ids of active agents known to the registry. No network call."""
        return [entry.agent_id for entry in await self.registry.list_active()]

    # ─────────────────────────────────────────────
    # Transport
    # ─────────────────────────────────────────────

    def _is_retryable(self, exc: BaseException) -> bool:
        if not isinstance(exc, A2AClientError):
            return False
        if exc.code == ErrorCode.NETWORK_ERROR:
            return True
        return exc.status_code in self.retryable_status_codes

    async def _resolve(self, agent_id: str) -> str:
        entry = await self.registry.get(agent_id)
        if entry is None or entry.status != "active":
            raise A2AClientError(ErrorCode.AGENT_NOT_FOUND, f"Agent not found: {agent_id}")
        return entry.base_url.rstrip("/")

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        token = self._token or get_a2a_token()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        current = get_trace_context()
        span = current.child() if current else create_trace_context()
        return inject_trace_context(headers, span)

    async def _call(self, agent_id: str, method: str, path: str, **kwargs: Any) -> Any:
        # Resolution failures are local and never retried
        base_url = await self._resolve(agent_id)
        url = f"{base_url}{path}"
        headers = self._headers()

        retrying = AsyncRetrying(
            retry=retry_if_exception(self._is_retryable),
            stop=stop_after_attempt(self.max_retries + 1),
            wait=_BackoffWait(self.base_delay),
            before_sleep=lambda state: logger.warning(
                f"{method} {path} on {agent_id} failed ({state.outcome.exception()}), "
                f"retry {state.attempt_number}/{self.max_retries}"
            ),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._send(method, url, headers, **kwargs)
        raise RuntimeError("Request retry loop exited unexpectedly")

    async def _send(self, method: str, url: str, headers: dict[str, str], **kwargs: Any) -> Any:
        try:
            response = await self._http.request(method, url, headers=headers, **kwargs)
        except httpx.TransportError as e:
            raise A2AClientError(ErrorCode.NETWORK_ERROR, f"{type(e).__name__}: {e}") from e

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if response.is_success and isinstance(payload, dict) and payload.get("success") is True:
            return payload.get("data")

        error = payload.get("error") if isinstance(payload, dict) else None
        if isinstance(error, dict):
            raise A2AClientError(
                error.get("code") or ErrorCode.HTTP_ERROR,
                error.get("message") or f"HTTP {response.status_code}",
                status_code=response.status_code,
                details=error.get("details"),
                retry_after=error.get("retryAfter") or _retry_after_header(response),
            )
        if not response.is_success:
            raise A2AClientError(
                ErrorCode.HTTP_ERROR,
                f"HTTP {response.status_code}",
                status_code=response.status_code,
                retry_after=_retry_after_header(response),
            )
        raise A2AClientError(
            ErrorCode.INVALID_RESPONSE,
            "Response is not a ServiceResponse envelope",
            status_code=response.status_code,
        )
