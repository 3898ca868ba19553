"""
Counters, gauges and histograms for the A2A stack.

A2AMetrics wraps its own prometheus_client CollectorRegistry, so every
instance is independent and nothing is registered globally. It is built once
at startup and handed to the components that record into it. Invalid values
(NaN, +/-inf, negative counter increments or observations) are logged and
dropped, never raised.
"""
import logging
import math
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

from memesh.config import metrics_enabled

logger = logging.getLogger(__name__)

# Task durations are recorded in milliseconds
DURATION_MS_BUCKETS = (10, 50, 100, 500, 1_000, 5_000, 30_000, 60_000, 300_000, 1_800_000, float("inf"))


class METRIC_NAMES:
    TASKS_SUBMITTED = "a2a_tasks_submitted"
    TASKS_COMPLETED = "a2a_tasks_completed"
    TASKS_FAILED = "a2a_tasks_failed"
    TASKS_TIMEOUT = "a2a_tasks_timeout"
    TASKS_CANCELED = "a2a_tasks_canceled"
    TASK_DURATION_MS = "a2a_task_duration_ms"
    QUEUE_DEPTH = "a2a_queue_depth"
    HEARTBEAT_SUCCESS = "a2a_heartbeat_success"
    HEARTBEAT_FAILURE = "a2a_heartbeat_failure"
    AGENTS_ACTIVE = "a2a_agents_active"
    AGENTS_STALE = "a2a_agents_stale"
    REQUESTS = "a2a_http_requests"
    RATE_LIMITED = "a2a_http_rate_limited"


@dataclass(frozen=True)
class MetricValue:
    type: str  # counter | gauge | histogram
    value: float
    labels: Mapping[str, str] = field(default_factory=dict)
    timestamp: float = 0.0
    count: int = 0  # histogram observations
    sum: float = 0.0  # histogram total


_KINDS = {"counter": Counter, "gauge": Gauge, "histogram": Histogram}


class A2AMetrics:
    def __init__(self, enabled: Optional[bool] = None) -> None:
        self.enabled = metrics_enabled() if enabled is None else enabled
        self._reset()
        if self.enabled:
            logger.info("[A2A Metrics] Metrics collection enabled")

    @classmethod
    def from_env(cls) -> "A2AMetrics":
        """Fresh instance honouring A2A_METRICS_ENABLED."""
        return cls()

    def _reset(self) -> None:
        self.registry = CollectorRegistry()
        self._collectors: dict[str, tuple[str, tuple[str, ...], object]] = {}
        self._last: dict[str, float] = {}  # histogram key -> last observation

    @staticmethod
    def _key(name: str, labels: Mapping[str, str]) -> str:
        if not labels:
            return name
        label_str = ",".join(f"{k}={labels[k]}" for k in sorted(labels))
        return f"{name}{{{label_str}}}"

    def _child(self, kind: str, name: str, labels: Mapping[str, str]):
        """The labelled child of `name`, creating the collector on first use."""
        labelnames = tuple(sorted(labels))
        entry = self._collectors.get(name)
        if entry is None:
            kwargs = {"registry": self.registry}
            if kind == "histogram":
                kwargs["buckets"] = DURATION_MS_BUCKETS
            collector = _KINDS[kind](name, f"MeMesh A2A {kind} {name}", labelnames, **kwargs)
            entry = self._collectors[name] = (kind, labelnames, collector)
        existing_kind, existing_labels, collector = entry
        if existing_kind != kind or existing_labels != labelnames:
            logger.error(
                f"[A2A Metrics] {name} is a {existing_kind} with labels {list(existing_labels)}, "
                f"cannot record it as a {kind} with labels {list(labelnames)}"
            )
            return None
        return collector.labels(**labels) if labelnames else collector

    def increment_counter(self, name: str, labels: Optional[Mapping[str, str]] = None, value: float = 1) -> None:
        if not self.enabled:
            return
        labels = {k: str(v) for k, v in (labels or {}).items()}
        if not math.isfinite(value):
            logger.error(f"[A2A Metrics] Counter increment must be finite: {name}={value} {labels}")
            return
        if value < 0:
            logger.error(f"[A2A Metrics] Counter increment must be non-negative: {name}={value} {labels}")
            return
        child = self._child("counter", name, labels)
        if child is not None:
            child.inc(value)

    def set_gauge(self, name: str, value: float, labels: Optional[Mapping[str, str]] = None) -> None:
        if not self.enabled:
            return
        labels = {k: str(v) for k, v in (labels or {}).items()}
        if not math.isfinite(value):
            logger.error(f"[A2A Metrics] Gauge value must be finite: {name}={value} {labels}")
            return
        child = self._child("gauge", name, labels)
        if child is not None:
            child.set(value)

    def record_histogram(self, name: str, value: float, labels: Optional[Mapping[str, str]] = None) -> None:
        if not self.enabled:
            return
        labels = {k: str(v) for k, v in (labels or {}).items()}
        if not math.isfinite(value):
            logger.error(f"[A2A Metrics] Histogram value must be finite: {name}={value} {labels}")
            return
        if value < 0:
            logger.error(f"[A2A Metrics] Histogram value must be non-negative: {name}={value} {labels}")
            return
        child = self._child("histogram", name, labels)
        if child is not None:
            child.observe(value)
            self._last[self._key(name, labels)] = value

    def get_value(self, name: str, labels: Optional[Mapping[str, str]] = None) -> Optional[float]:
        """Counter total, gauge value or last histogram observation; None if never recorded."""
        entry = self._collectors.get(name)
        if entry is None:
            return None
        labels = {k: str(v) for k, v in (labels or {}).items()}
        kind = entry[0]
        if kind == "histogram":
            return self._last.get(self._key(name, labels))
        sample = f"{name}_total" if kind == "counter" else name
        return self.registry.get_sample_value(sample, labels)

    def get_snapshot(self) -> Mapping[str, MetricValue]:
        """Read-only copy built from the registry; later recordings do not show up in it."""
        now = time.time()
        snapshot: dict[str, MetricValue] = {}
        histograms: dict[str, dict] = {}
        for family in self.registry.collect():
            for sample in family.samples:
                if family.type == "counter" and sample.name.endswith("_total"):
                    key = self._key(family.name, sample.labels)
                    snapshot[key] = MetricValue("counter", sample.value, dict(sample.labels), now)
                elif family.type == "gauge":
                    key = self._key(family.name, sample.labels)
                    snapshot[key] = MetricValue("gauge", sample.value, dict(sample.labels), now)
                elif family.type == "histogram" and sample.name.endswith(("_count", "_sum")):
                    key = self._key(family.name, sample.labels)
                    histograms.setdefault(key, {"labels": dict(sample.labels)})[sample.name.rsplit("_", 1)[1]] = sample.value
        for key, h in histograms.items():
            snapshot[key] = MetricValue(
                "histogram",
                self._last.get(key, 0.0),
                h["labels"],
                now,
                count=int(h.get("count", 0)),
                sum=h.get("sum", 0.0),
            )
        return MappingProxyType(snapshot)

    def clear(self) -> None:
        self._reset()
        logger.debug("[A2A Metrics] All metrics cleared")

    def set_enabled(self, enabled: bool) -> None:
        self.enabled = enabled
        logger.info(f"[A2A Metrics] Metrics collection {'enabled' if enabled else 'disabled'}")
