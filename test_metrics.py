import math

import pytest
from prometheus_client import generate_latest

from memesh.metrics import A2AMetrics, METRIC_NAMES


def test_counter_accumulates_per_label_set():
    m = A2AMetrics(enabled=True)
    m.increment_counter(METRIC_NAMES.TASKS_SUBMITTED, {"agentId": "a"})
    m.increment_counter(METRIC_NAMES.TASKS_SUBMITTED, {"agentId": "a"}, value=2)
    m.increment_counter(METRIC_NAMES.TASKS_SUBMITTED, {"agentId": "b"})

    assert m.get_value(METRIC_NAMES.TASKS_SUBMITTED, {"agentId": "a"}) == 3
    assert m.get_value(METRIC_NAMES.TASKS_SUBMITTED, {"agentId": "b"}) == 1
    assert m.get_value(METRIC_NAMES.TASKS_SUBMITTED) is None


def test_label_order_does_not_change_identity():
    m = A2AMetrics(enabled=True)
    m.increment_counter("x", {"b": "2", "a": "1"})
    m.increment_counter("x", {"a": "1", "b": "2"})
    assert list(m.get_snapshot()) == ["x{a=1,b=2}"]
    assert m.get_value("x", {"b": "2", "a": "1"}) == 2


@pytest.mark.parametrize("bad", [math.nan, math.inf, -math.inf, -1])
def test_counter_rejects_non_finite_and_negative(bad):
    m = A2AMetrics(enabled=True)
    m.increment_counter("c", value=1)
    m.increment_counter("c", value=bad)
    assert m.get_value("c") == 1


@pytest.mark.parametrize("bad", [math.nan, math.inf, -math.inf])
def test_gauge_rejects_non_finite_but_allows_negative(bad):
    m = A2AMetrics(enabled=True)
    m.set_gauge("g", 5)
    m.set_gauge("g", bad)
    assert m.get_value("g") == 5
    m.set_gauge("g", -3)
    assert m.get_value("g") == -3


def test_histogram_keeps_count_sum_and_last_value():
    m = A2AMetrics(enabled=True)
    for v in (10, 20, 30):
        m.record_histogram(METRIC_NAMES.TASK_DURATION_MS, v)
    m.record_histogram(METRIC_NAMES.TASK_DURATION_MS, -5)
    m.record_histogram(METRIC_NAMES.TASK_DURATION_MS, math.nan)

    value = m.get_snapshot()[METRIC_NAMES.TASK_DURATION_MS]
    assert value.type == "histogram"
    assert value.count == 3
    assert value.sum == 60
    assert value.value == 30


def test_snapshot_is_read_only_and_detached():
    m = A2AMetrics(enabled=True)
    m.increment_counter("c")
    snap = m.get_snapshot()

    with pytest.raises(TypeError):
        snap["c"] = None
    with pytest.raises(AttributeError):
        snap["c"].value = 99

    m.increment_counter("c")
    assert snap["c"].value == 1
    assert m.get_value("c") == 2


def test_disabled_instance_records_nothing():
    m = A2AMetrics(enabled=False)
    m.increment_counter("c")
    m.set_gauge("g", 1)
    m.record_histogram("h", 1)
    assert len(m.get_snapshot()) == 0

    m.set_enabled(True)
    m.increment_counter("c")
    assert m.get_value("c") == 1


def test_from_env_honours_flag(monkeypatch):
    monkeypatch.setenv("A2A_METRICS_ENABLED", "false")
    assert A2AMetrics.from_env().enabled is False
    monkeypatch.setenv("A2A_METRICS_ENABLED", "true")
    assert A2AMetrics.from_env().enabled is True


def test_clear_and_separate_instances_do_not_share_state():
    a = A2AMetrics(enabled=True)
    b = A2AMetrics(enabled=True)
    a.increment_counter("c")
    assert b.get_value("c") is None
    a.clear()
    assert a.get_value("c") is None


def test_values_live_in_a_private_prometheus_registry():
    m = A2AMetrics(enabled=True)
    m.increment_counter(METRIC_NAMES.REQUESTS, {"method": "GET", "path": "/health", "status": "200"})
    m.set_gauge(METRIC_NAMES.QUEUE_DEPTH, 4, {"agentId": "a"})

    labels = {"method": "GET", "path": "/health", "status": "200"}
    assert m.registry.get_sample_value(f"{METRIC_NAMES.REQUESTS}_total", labels) == 1
    assert m.registry.get_sample_value(METRIC_NAMES.QUEUE_DEPTH, {"agentId": "a"}) == 4

    exposition = generate_latest(m.registry).decode()
    assert f"{METRIC_NAMES.QUEUE_DEPTH}{{agentId=\"a\"}} 4.0" in exposition


def test_conflicting_kind_or_labels_are_dropped():
    m = A2AMetrics(enabled=True)
    m.increment_counter("jobs", {"agentId": "a"})
    m.set_gauge("jobs", 3, {"agentId": "a"})
    m.increment_counter("jobs", {"queue": "q"})
    assert m.get_value("jobs", {"agentId": "a"}) == 1
    assert list(m.get_snapshot()) == ["jobs{agentId=a}"]
