"""
tests/test_logger.py — Pytest tests for the JSONL structured logger.
"""

from __future__ import annotations

import json
from pathlib import Path

from allergen_slm.core.logger import SLMLogger, configure_logger, get_logger


def _records(log_dir: Path) -> list[dict]:
    [path] = sorted(log_dir.glob("slm_*.jsonl"))
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_entries_are_jsonl(tmp_path: Path) -> None:
    log = SLMLogger(tmp_path)
    log.info("session", "load_start", {"model_path": "qwen.gguf"})
    log.perf("generate", "prediction_done", latency_ms=812.12345, data={"label": "milk"})
    log.close()

    records = _records(tmp_path)
    assert records[0]["event"] == "startup"
    assert records[1] == {
        "timestamp_iso": records[1]["timestamp_iso"],
        "level": "INFO",
        "phase": "session",
        "event": "load_start",
        "data": {"model_path": "qwen.gguf"},
    }
    assert records[2]["level"] == "PERF"
    assert records[2]["latency_ms"] == 812.123


def test_writes_after_close_reopen_file(tmp_path: Path) -> None:
    log = SLMLogger(tmp_path)
    log.close()
    log.warn("service", "ingredients_truncated", {"length": 3000})
    log.close()
    assert _records(tmp_path)[-1]["level"] == "WARN"


def test_configure_logger_replaces_singleton(tmp_path: Path) -> None:
    configure_logger(tmp_path / "a")
    first = get_logger()
    assert get_logger() is first
    configure_logger(tmp_path / "b")
    second = get_logger()
    assert second is not first
    assert second.log_dir == tmp_path / "b"
