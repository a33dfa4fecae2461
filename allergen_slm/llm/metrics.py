"""
allergen_slm/llm/metrics.py — Latency/throughput taps for one generation call.

Phase taps (monotonic clock)::

    start ─► prefill complete ─► first surviving token ─► generation complete

Derived figures, all integer milliseconds or tokens/second:

* ``ttft_ms``                  first token − start, ``-1`` if no token survived
* ``input_tokens_per_second``  prompt·1000 / (prefill − start), ``-1`` if that is 0
* ``output_tokens_per_second`` generated·1000 / (end − start), ``-1`` if either is 0
* ``total_elapsed_ms``         end − start

Metrics are diagnostic only: nothing here raises into the generation loop.
Process memory snapshots (psutil) used by the benchmark runner live here too.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass
from typing import Callable, Optional

import psutil

UNSET = -1


@dataclass(frozen=True)
class MetricsRecord:
    """Immutable metrics of one generation call; ``-1`` marks "not measurable"."""

    ttft_ms: int = UNSET
    input_tokens_per_second: int = UNSET
    output_tokens_per_second: int = UNSET
    total_elapsed_ms: int = UNSET
    prompt_token_count: int = 0
    generated_token_count: int = 0

    @classmethod
    def sentinel(cls) -> "MetricsRecord":
        """Record attached to failed calls: every timing field ``-1``."""
        return cls()

    def as_log_data(self) -> dict[str, int]:
        return asdict(self)


class MetricsRecorder:
    """
    Collects phase timestamps for one call and derives a :class:`MetricsRecord`.

    Args:
        clock: Monotonic clock returning seconds; ``time.monotonic`` by default.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._start: Optional[float] = None
        self._prefill_end: Optional[float] = None
        self._first_token: Optional[float] = None
        self._end: Optional[float] = None

    def start(self) -> None:
        self._start = self._clock()

    def prefill_complete(self) -> None:
        self._prefill_end = self._clock()

    def first_token(self) -> None:
        """Tap the first surviving token; later calls are ignored."""
        if self._first_token is None:
            self._first_token = self._clock()

    def generation_complete(self) -> None:
        self._end = self._clock()

    @property
    def saw_first_token(self) -> bool:
        return self._first_token is not None

    def finish(self, prompt_token_count: int, generated_token_count: int) -> MetricsRecord:
        """
        Derive the record. Taps generation-complete if it was not tapped yet.
        A recorder that was never started yields :meth:`MetricsRecord.sentinel`.
        """
        if self._start is None:
            return MetricsRecord.sentinel()
        if self._end is None:
            self.generation_complete()

        total_ms = self._elapsed_ms(self._end)

        ttft_ms = UNSET
        if self._first_token is not None:
            ttft_ms = self._elapsed_ms(self._first_token)

        itps = UNSET
        if self._prefill_end is not None:
            prefill_ms = self._elapsed_ms(self._prefill_end)
            if prefill_ms > 0:
                itps = (prompt_token_count * 1000) // prefill_ms

        otps = UNSET
        if total_ms > 0 and generated_token_count > 0:
            otps = (generated_token_count * 1000) // total_ms

        return MetricsRecord(
            ttft_ms=ttft_ms,
            input_tokens_per_second=itps,
            output_tokens_per_second=otps,
            total_elapsed_ms=total_ms,
            prompt_token_count=prompt_token_count,
            generated_token_count=generated_token_count,
        )

    def _elapsed_ms(self, ts: Optional[float]) -> int:
        if ts is None or self._start is None:
            return 0
        return max(0, int((ts - self._start) * 1000))


# ── Process memory ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class MemorySnapshot:
    """Process and system memory in KiB."""

    rss_kb: int
    vms_kb: int
    available_system_kb: int

    def delta(self, before: "MemorySnapshot") -> "MemorySnapshot":
        """``self − before`` field by field."""
        return MemorySnapshot(
            rss_kb=self.rss_kb - before.rss_kb,
            vms_kb=self.vms_kb - before.vms_kb,
            available_system_kb=self.available_system_kb - before.available_system_kb,
        )


def capture_memory() -> MemorySnapshot:
    """Snapshot this process's RSS/VMS and the system's available memory."""
    mem = psutil.Process().memory_info()
    return MemorySnapshot(
        rss_kb=mem.rss // 1024,
        vms_kb=mem.vms // 1024,
        available_system_kb=psutil.virtual_memory().available // 1024,
    )
