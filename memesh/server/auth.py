"""
Bearer-token authentication and rate limiting as FastAPI dependencies.

Routes declare them in order, auth first:

    @router.post("/a2a/send-message",
                 dependencies=[Depends(require_auth), Depends(rate_limit(SEND_MESSAGE))])
"""
import hashlib
import hmac
import json
import logging
from typing import Optional

from fastapi import Request

from memesh.config import get_a2a_token
from memesh.errors import A2AError, AuthError, ErrorCode, RateLimitExceeded

logger = logging.getLogger(__name__)


def constant_time_compare(a: str, b: str) -> bool:
    """
    Compare two secrets without leaking where they differ.

    Both sides are hashed first so the digests always have the same length
    and compare_digest never short-circuits on a length mismatch.
    """
    da = hashlib.sha256(a.encode("utf-8")).digest()
    db = hashlib.sha256(b.encode("utf-8")).digest()
    return hmac.compare_digest(da, db)


def token_identity(token: str) -> str:
    return f"token-{hashlib.sha256(token.encode('utf-8')).hexdigest()[:12]}"


def _bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("authorization")
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def _agent_card_id(request: Request) -> Optional[str]:
    """agentCard.id from a JSON body, if the request has one."""
    if request.method not in ("POST", "PUT", "PATCH"):
        return None
    raw = await request.body()
    if not raw:
        return None
    try:
        body = json.loads(raw)
    except ValueError:
        # Reported as INVALID_JSON once the route parses the body
        return None
    card = body.get("agentCard") if isinstance(body, dict) else None
    if isinstance(card, dict) and isinstance(card.get("id"), str) and card["id"]:
        return card["id"]
    return None


async def require_auth(request: Request) -> str:
    """Validate the bearer token and attach the caller's id to request.state.agent_id."""
    expected = get_a2a_token()
    if not expected:
        logger.error("MEMESH_A2A_TOKEN not configured")
        raise A2AError(
            "Server authentication is not configured",
            code=ErrorCode.TOKEN_NOT_CONFIGURED,
            status_code=500,
        )

    token = _bearer_token(request)
    if token is None:
        raise AuthError("Authentication token required", code=ErrorCode.AUTH_MISSING)
    if not constant_time_compare(token, expected):
        logger.warning(f"Rejected invalid token from {request.client.host if request.client else 'unknown'}")
        raise AuthError("Invalid authentication token", code=ErrorCode.AUTH_INVALID)

    agent_id = await _agent_card_id(request) or token_identity(token)
    request.state.agent_id = agent_id
    return agent_id


def rate_limit(endpoint: str):
    """Dependency factory: consume one token from the caller's bucket for `endpoint`."""

    async def dependency(request: Request) -> None:
        limiter = request.app.state.rate_limiter
        agent_id = getattr(request.state, "agent_id", None)
        if agent_id is None:
            logger.error("[Rate Limit] Missing agent id on authenticated request")
            raise A2AError("Internal server error")
        result = limiter.check_limit(agent_id, endpoint)
        if not result.allowed:
            raise RateLimitExceeded(
                limit=result.limit,
                retry_after=result.retry_after,
                agent_id=agent_id,
                endpoint=endpoint,
            )

    return dependency
