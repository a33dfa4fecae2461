"""
allergen_slm/core/logger.py — JSONL structured logger for Allergen SLM.

SLMLogger appends one JSON object per line to ``<log_dir>/slm_{date}.jsonl``
and opens a new file when the UTC date changes. WARN/ERROR entries are also
mirrored to stderr through stdlib :mod:`logging`. Writes are serialised with
a :class:`threading.Lock`.

The log directory is ``logs`` unless ``ALLERGEN_SLM_LOG_DIR`` is set or
:func:`configure_logger` is called before the first :func:`get_logger`.

Usage::

    from allergen_slm.core.logger import get_logger
    log = get_logger()
    log.info("session", "load_start", {"model_path": "qwen.gguf"})
    log.perf("generate", "prediction_done", latency_ms=812.0, data={"tokens": 4})
"""

from __future__ import annotations

import json
import logging
import os
import platform
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

# ── stdlib mirror logger (stderr for WARN+) ──────────────────
_stdlib = logging.getLogger("allergen_slm.events")
if not _stdlib.handlers:
    _handler = logging.StreamHandler(sys.stderr)
    _handler.setFormatter(logging.Formatter("[%(levelname)s] %(name)s — %(message)s"))
    _stdlib.addHandler(_handler)
_stdlib.setLevel(logging.INFO)
_stdlib.propagate = False

_DEFAULT_LOG_DIR = "logs"

# ── Singleton storage ─────────────────────────────────────────
_instance: Optional["SLMLogger"] = None
_instance_lock = threading.Lock()
_log_dir: Optional[Path] = None


class SLMLogger:
    """
    JSONL structured logger.

    Fields written per entry::

        {
          "timestamp_iso": "2026-10-18T09:12:01.532811+00:00",
          "level": "PERF",
          "phase": "generate",
          "event": "prediction_done",
          "data": {"prompt_tokens": 212, "generated_tokens": 4},
          "latency_ms": 812.0
        }

    ``latency_ms`` is omitted when ``None``. Use :func:`get_logger` instead of
    instantiating directly.

    Args:
        log_dir: Directory that receives the daily ``slm_*.jsonl`` files.
    """

    def __init__(self, log_dir: Path) -> None:
        self._log_dir = log_dir
        self._lock = threading.Lock()
        self._file: Optional[Any] = None
        self._current_date: str = ""
        with self._lock:
            self._rotate_if_needed(datetime.now(tz=timezone.utc))
        self._write_startup()

    @property
    def log_dir(self) -> Path:
        """Directory the JSONL files are written to."""
        return self._log_dir

    # ──────────────────────────────────────────
    # Public logging methods
    # ──────────────────────────────────────────

    def debug(self, phase: str, event: str, data: Optional[dict] = None) -> None:
        """Write a DEBUG-level entry (file only)."""
        self._write("DEBUG", phase, event, data)

    def info(self, phase: str, event: str, data: Optional[dict] = None) -> None:
        """
        Write an INFO-level structured log entry.

        Args:
            phase: Subsystem (``'session'``, ``'generate'``, ``'service'``, …).
            event: Short event identifier (e.g. ``'load_start'``).
            data: Optional dict of additional key-value context.
        """
        self._write("INFO", phase, event, data)

    def warn(self, phase: str, event: str, data: Optional[dict] = None) -> None:
        """Write a WARN-level entry and mirror it to stderr."""
        self._write("WARN", phase, event, data)
        _stdlib.warning("[%s] %s | %s", phase, event, data or {})

    def error(self, phase: str, event: str, data: Optional[dict] = None) -> None:
        """Write an ERROR-level entry and mirror it to stderr."""
        self._write("ERROR", phase, event, data)
        _stdlib.error("[%s] %s | %s", phase, event, data or {})

    def perf(
        self,
        phase: str,
        event: str,
        latency_ms: float,
        data: Optional[dict] = None,
    ) -> None:
        """
        Write a PERF-level entry for latency tracking.

        Args:
            phase: Subsystem the measurement belongs to.
            event: What was measured (e.g. ``'model_loaded'``).
            latency_ms: Measured latency in milliseconds.
            data: Optional additional context dict.
        """
        self._write("PERF", phase, event, data, latency_ms=latency_ms)

    def flush(self) -> None:
        """Flush the underlying file buffer."""
        with self._lock:
            if self._file and not self._file.closed:
                self._file.flush()

    def close(self) -> None:
        """Close the current log file; the next write reopens it."""
        with self._lock:
            if self._file and not self._file.closed:
                self._file.close()
            self._file = None
            self._current_date = ""

    # ──────────────────────────────────────────
    # Internal helpers
    # ──────────────────────────────────────────

    def _write(
        self,
        level: str,
        phase: str,
        event: str,
        data: Optional[dict],
        latency_ms: Optional[float] = None,
    ) -> None:
        now = datetime.now(tz=timezone.utc)
        record: dict[str, Any] = {
            "timestamp_iso": now.isoformat(),
            "level": level,
            "phase": phase,
            "event": event,
            "data": data or {},
        }
        if latency_ms is not None:
            record["latency_ms"] = round(latency_ms, 3)

        line = json.dumps(record, ensure_ascii=False, separators=(",", ":"), default=str)

        with self._lock:
            self._rotate_if_needed(now)
            if self._file and not self._file.closed:
                self._file.write(line + "\n")

    def _rotate_if_needed(self, now: datetime) -> None:
        """Open a new log file if the calendar date has changed. Caller holds the lock."""
        today = now.strftime("%Y-%m-%d")
        if today != self._current_date or self._file is None:
            if self._file and not self._file.closed:
                self._file.close()
            self._current_date = today
            self._log_dir.mkdir(parents=True, exist_ok=True)
            log_path = self._log_dir / f"slm_{today}.jsonl"
            self._file = open(log_path, "a", encoding="utf-8", buffering=1)

    def _write_startup(self) -> None:
        self.info(
            phase="system",
            event="startup",
            data={
                "python_version": sys.version,
                "platform": platform.platform(),
                "hostname": platform.node(),
            },
        )


# ──────────────────────────────────────────────────────────────
# Singleton accessor
# ──────────────────────────────────────────────────────────────

def configure_logger(log_dir: Path | str) -> None:
    """
    Set the directory used by the singleton logger.

    Takes effect immediately: an already-created logger is closed and the
    next :func:`get_logger` call creates one writing to *log_dir*.
    """
    global _instance, _log_dir
    with _instance_lock:
        if _instance is not None:
            _instance.close()
            _instance = None
        _log_dir = Path(log_dir)


def get_logger() -> SLMLogger:
    """
    Return the singleton :class:`SLMLogger` instance.

    The first call creates the instance; later calls return the same object
    without taking the creation lock.
    """
    global _instance
    if _instance is None:
        with _instance_lock:
            if _instance is None:
                log_dir = _log_dir or Path(
                    os.environ.get("ALLERGEN_SLM_LOG_DIR", _DEFAULT_LOG_DIR)
                )
                _instance = SLMLogger(log_dir)
    return _instance
