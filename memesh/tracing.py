"""
W3C trace-context propagation for A2A calls.

The current TraceContext lives in a ContextVar, so each request handled by the
server (each asyncio Task) sees its own trace without any explicit plumbing.
Header format: ``traceparent: 00-<32 hex trace id>-<16 hex span id>-<flags>``.
"""
import logging
import re
import secrets
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field, replace
from typing import Iterator, Mapping, Optional

TRACEPARENT_HEADER = "traceparent"
BAGGAGE_HEADER = "baggage"
TRACE_ID_HEADER = "X-Trace-Id"

_TRACEPARENT_RE = re.compile(r"^([0-9a-f]{2})-([0-9a-f]{32})-([0-9a-f]{16})-([0-9a-f]{2})$")
_INVALID_TRACE_ID = "0" * 32
_INVALID_SPAN_ID = "0" * 16


@dataclass(frozen=True)
class TraceContext:
    trace_id: str
    span_id: str
    parent_span_id: Optional[str] = None
    sampled: bool = True
    baggage: Mapping[str, str] = field(default_factory=dict)

    def child(self) -> "TraceContext":
        """New span in the same trace; this span becomes the parent."""
        return replace(self, span_id=generate_span_id(), parent_span_id=self.span_id)


_current_trace: ContextVar[Optional[TraceContext]] = ContextVar("current_trace", default=None)


def generate_trace_id() -> str:
    return secrets.token_hex(16)


def generate_span_id() -> str:
    return secrets.token_hex(8)


def create_trace_context(sampled: bool = True, baggage: Optional[Mapping[str, str]] = None) -> TraceContext:
    return TraceContext(
        trace_id=generate_trace_id(),
        span_id=generate_span_id(),
        sampled=sampled,
        baggage=dict(baggage or {}),
    )


def get_trace_context() -> Optional[TraceContext]:
    return _current_trace.get()


@contextmanager
def trace_context(ctx: TraceContext) -> Iterator[TraceContext]:
    """Make `ctx` the current trace for the duration of the block."""
    token = _current_trace.set(ctx)
    try:
        yield ctx
    finally:
        _current_trace.reset(token)


def format_traceparent(ctx: TraceContext) -> str:
    flags = "01" if ctx.sampled else "00"
    return f"00-{ctx.trace_id}-{ctx.span_id}-{flags}"


def parse_traceparent(value: Optional[str]) -> Optional[TraceContext]:
    """
    Parse a traceparent header value.

    Returns None for anything malformed, for the all-zero ids W3C Trace Context
    declares invalid, and for the reserved version ``ff``. The returned
    context carries the caller's span id as `span_id`; callers derive a child
    span from it.
    """
    if not value:
        return None
    match = _TRACEPARENT_RE.match(value.strip().lower())
    if not match:
        return None
    version, trace_id, span_id, flags = match.groups()
    if version == "ff" or trace_id == _INVALID_TRACE_ID or span_id == _INVALID_SPAN_ID:
        return None
    return TraceContext(trace_id=trace_id, span_id=span_id, sampled=bool(int(flags, 16) & 0x01))


def parse_baggage(value: Optional[str]) -> dict[str, str]:
    baggage: dict[str, str] = {}
    if not value:
        return baggage
    for item in value.split(","):
        key, sep, val = item.strip().partition("=")
        if sep and key:
            # Drop W3C baggage properties (";prop=...")
            baggage[key.strip()] = val.split(";", 1)[0].strip()
    return baggage


def format_baggage(baggage: Mapping[str, str]) -> str:
    return ",".join(f"{k}={v}" for k, v in baggage.items())


def extract_trace_context(headers: Mapping[str, str]) -> Optional[TraceContext]:
    """Read the incoming trace from HTTP headers (case-insensitive mapping expected)."""
    ctx = parse_traceparent(headers.get(TRACEPARENT_HEADER))
    if ctx is None:
        return None
    baggage = parse_baggage(headers.get(BAGGAGE_HEADER))
    if baggage:
        ctx = replace(ctx, baggage=baggage)
    return ctx


def inject_trace_context(headers: dict[str, str], ctx: TraceContext) -> dict[str, str]:
    """Return a copy of `headers` carrying `ctx`."""
    out = dict(headers)
    out[TRACEPARENT_HEADER] = format_traceparent(ctx)
    if ctx.baggage:
        out[BAGGAGE_HEADER] = format_baggage(ctx.baggage)
    return out


def server_span_for(headers: Mapping[str, str]) -> TraceContext:
    """Continue the caller's trace if it sent one, otherwise start a new trace."""
    incoming = extract_trace_context(headers)
    if incoming is None:
        return create_trace_context()
    return incoming.child()


class TraceContextFilter(logging.Filter):
    """Stamps trace_id / span_id of the current trace onto every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        ctx = _current_trace.get()
        record.trace_id = ctx.trace_id if ctx else "-"
        record.span_id = ctx.span_id if ctx else "-"
        return True
