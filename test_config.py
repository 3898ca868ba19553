import json
import sys

import pytest

from memesh import cli
from memesh.config import (
    RETRY_MAX_ATTEMPTS_BOUNDS,
    TASK_TIMEOUT_MAX_MS,
    TASK_TIMEOUT_MIN_MS,
    TASK_TIMEOUT_MS,
    clamp_env_int,
    get_a2a_token,
    get_task_timeout_ms,
    load_config_file,
    metrics_enabled,
    resolve_data_dir,
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        (None, TASK_TIMEOUT_MS),
        ("", TASK_TIMEOUT_MS),
        ("abc", TASK_TIMEOUT_MS),
        ("-10", TASK_TIMEOUT_MS),
        ("1000", TASK_TIMEOUT_MIN_MS),
        ("120000", 120_000),
        (str(48 * 60 * 60_000), TASK_TIMEOUT_MAX_MS),
    ],
)
def test_task_timeout_env(monkeypatch, raw, expected):
    if raw is None:
        monkeypatch.delenv("MEMESH_A2A_TASK_TIMEOUT", raising=False)
    else:
        monkeypatch.setenv("MEMESH_A2A_TASK_TIMEOUT", raw)
    assert get_task_timeout_ms() == expected


@pytest.mark.parametrize("raw, expected", [(None, 3), ("0", 0), ("5", 5), ("-1", 0), ("99", 10), ("x", 3)])
def test_clamp_env_int(monkeypatch, raw, expected):
    if raw is None:
        monkeypatch.delenv("A2A_RETRY_MAX_ATTEMPTS", raising=False)
    else:
        monkeypatch.setenv("A2A_RETRY_MAX_ATTEMPTS", raw)
    assert clamp_env_int("A2A_RETRY_MAX_ATTEMPTS", RETRY_MAX_ATTEMPTS_BOUNDS) == expected


def test_token_is_read_at_call_time(monkeypatch):
    monkeypatch.delenv("MEMESH_A2A_TOKEN", raising=False)
    assert get_a2a_token() is None
    monkeypatch.setenv("MEMESH_A2A_TOKEN", "")
    assert get_a2a_token() is None
    monkeypatch.setenv("MEMESH_A2A_TOKEN", "rotated")
    assert get_a2a_token() == "rotated"


@pytest.mark.parametrize("raw, expected", [("true", True), ("1", True), ("false", False), ("0", False), ("No", False)])
def test_metrics_flag(monkeypatch, raw, expected):
    monkeypatch.setenv("A2A_METRICS_ENABLED", raw)
    assert metrics_enabled() is expected


def test_cli_show_config(monkeypatch, capsys):
    monkeypatch.setattr(sys, "argv", ["memesh-a2a", "--show-config"])
    cli.main()
    shown = json.loads(capsys.readouterr().out)
    assert shown["HOST"]
    assert shown["PORT_RANGE_MIN"] <= shown["PORT_RANGE_MAX"]
    assert "STALE_AGENT_THRESHOLD_MS" in shown


def test_data_dir_env_override(monkeypatch, tmp_path):
    monkeypatch.setenv("MEMESH_DATA_DIR", str(tmp_path))
    assert resolve_data_dir() == tmp_path


def test_data_dir_falls_back_without_env(monkeypatch):
    monkeypatch.delenv("MEMESH_DATA_DIR", raising=False)
    resolved = resolve_data_dir()
    assert resolved.name in {"data", ".memesh"}


def test_config_file_loading(tmp_path):
    assert load_config_file(tmp_path / "missing.json") == {}

    good = tmp_path / "config.json"
    good.write_text(json.dumps({"HOST": "127.0.0.2", "LOG_LEVEL": "debug"}), encoding="utf-8")
    assert load_config_file(good) == {"HOST": "127.0.0.2", "LOG_LEVEL": "debug"}

    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")
    assert load_config_file(broken) == {}

    not_an_object = tmp_path / "list.json"
    not_an_object.write_text("[1, 2]", encoding="utf-8")
    assert load_config_file(not_an_object) == {}
