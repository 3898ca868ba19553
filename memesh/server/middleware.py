"""
HTTP pipeline around the A2A routes: the localhost origin guard, CORS, trace
context, the error boundary, and the exception handlers that render every
failure into the ServiceResponse envelope.

Outermost first, a request passes

    origin guard -> CORS -> tracing -> error boundary -> routes

and each route then runs its dependencies: auth, rate limit, body parsing.
The origin guard sits outside CORS so a cross-origin preflight gets the 403
envelope instead of Starlette's plain-text 400.
"""
import json
import logging
import re
import time

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

from memesh.errors import A2AError, ErrorCode, RateLimitExceeded
from memesh.metrics import METRIC_NAMES
from memesh.tracing import TRACE_ID_HEADER, TRACEPARENT_HEADER, format_traceparent, server_span_for, trace_context

logger = logging.getLogger(__name__)

LOCAL_ORIGIN_REGEX = r"^https?://(localhost|127\.0\.0\.1|\[::1\])(:\d+)?$"
_LOCAL_ORIGIN = re.compile(LOCAL_ORIGIN_REGEX)


def error_response(status_code: int, error: dict, headers: dict | None = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": error}, headers=headers)


# ─────────────────────────────────────────────
# Exception handlers
# ─────────────────────────────────────────────

async def a2a_error_handler(request: Request, exc: A2AError) -> JSONResponse:
    headers = None
    if isinstance(exc, RateLimitExceeded):
        headers = {"Retry-After": str(exc.retry_after)}
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: [{exc.code}] {exc.message}")
    return error_response(exc.status_code, exc.to_dict(), headers)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    if any(e.get("type") == "json_invalid" for e in errors):
        return error_response(400, {"code": ErrorCode.INVALID_JSON, "message": "Request body is not valid JSON"})
    # errors() may carry exception objects in ctx; round-trip through str
    details = json.loads(json.dumps({"errors": errors}, default=str))
    return error_response(400, {"code": ErrorCode.VALIDATION_ERROR, "message": "Invalid request", "details": details})


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code = "NOT_FOUND" if exc.status_code == 404 else ErrorCode.HTTP_ERROR
    return error_response(exc.status_code, {"code": code, "message": str(exc.detail)}, getattr(exc, "headers", None))


# ─────────────────────────────────────────────
# Middleware
# ─────────────────────────────────────────────

def install(app: FastAPI) -> None:
    """Wire the pipeline. Starlette runs the last-added middleware outermost."""
    app.add_exception_handler(A2AError, a2a_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)

    @app.middleware("http")
    async def error_boundary(request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.exception(f"Unhandled error on {request.method} {request.url.path}")
            return error_response(500, {"code": ErrorCode.INTERNAL_ERROR, "message": "Internal server error"})

    @app.middleware("http")
    async def tracing(request: Request, call_next):
        ctx = server_span_for(request.headers)
        request.state.trace = ctx
        started = time.perf_counter()
        with trace_context(ctx):
            response = await call_next(request)
        response.headers[TRACEPARENT_HEADER] = format_traceparent(ctx)
        response.headers[TRACE_ID_HEADER] = ctx.trace_id

        metrics = getattr(request.app.state, "metrics", None)
        if metrics is not None:
            route = request.scope.get("route")
            labels = {
                "method": request.method,
                "path": getattr(route, "path", request.url.path),
                "status": str(response.status_code),
            }
            metrics.increment_counter(METRIC_NAMES.REQUESTS, labels)
            logger.debug(f"{request.method} {labels['path']} -> {response.status_code} "
                         f"in {(time.perf_counter() - started) * 1000:.1f} ms")
        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origin_regex=LOCAL_ORIGIN_REGEX,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", TRACEPARENT_HEADER, "baggage"],
        expose_headers=[TRACEPARENT_HEADER, TRACE_ID_HEADER, "Retry-After"],
    )

    @app.middleware("http")
    async def local_origin_only(request: Request, call_next):
        origin = request.headers.get("origin")
        if origin and not _LOCAL_ORIGIN.match(origin):
            logger.warning(f"Rejected request from non-local origin {origin!r}")
            return error_response(
                403, {"code": ErrorCode.ORIGIN_NOT_ALLOWED, "message": "Only localhost origins are allowed"}
            )
        return await call_next(request)
