"""
allergen_slm/evaluation/runner.py — Batch benchmark of one loaded model over a
dataset.

For every item: health check, process memory before/after, one
``predict_allergens`` call, wire parsing and scoring. Failed attempts (unhealthy
session or ``ERROR:`` payload) are retried with tenacity; an item that fails
every attempt is recorded with its last error and an empty prediction.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Iterable, Optional

from tenacity import (
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from allergen_slm.core.logger import get_logger
from allergen_slm.evaluation.dataset import FoodItem
from allergen_slm.evaluation.scoring import EvaluatedPrediction, calculate_metrics
from allergen_slm.llm.metrics import MemorySnapshot, capture_memory
from allergen_slm.service import AllergenPredictor, ParsedResult, parse_result

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3

ProgressCallback = Callable[[int, int, EvaluatedPrediction], None]


class PredictionAttemptError(RuntimeError):
    """One benchmark attempt did not produce a usable label."""


class BenchmarkRunner:
    """
    Runs a dataset through an :class:`AllergenPredictor`.

    Args:
        predictor: Predictor with its model already loaded.
        model_name: Name recorded on every result row.
        max_attempts: Attempts per item before it is recorded as failed.
        wait: tenacity wait strategy between attempts.
        memory_reader: Returns a :class:`MemorySnapshot`; psutil by default.
    """

    def __init__(
        self,
        predictor: AllergenPredictor,
        model_name: str,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        wait: Optional[wait_base] = None,
        memory_reader: Callable[[], MemorySnapshot] = capture_memory,
    ) -> None:
        self._predictor = predictor
        self._model_name = model_name
        self._max_attempts = max_attempts
        self._wait = wait if wait is not None else wait_exponential(multiplier=1, min=2, max=10)
        self._memory_reader = memory_reader

    def run(
        self,
        items: Iterable[FoodItem],
        progress: Optional[ProgressCallback] = None,
    ) -> list[EvaluatedPrediction]:
        """Benchmark every item in order and return one result per item."""
        items = list(items)
        results: list[EvaluatedPrediction] = []
        log = get_logger()
        log.info("benchmark", "run_start", {"model": self._model_name, "items": len(items)})

        for index, item in enumerate(items, start=1):
            result = self.run_item(item)
            results.append(result)
            if progress is not None:
                progress(index, len(items), result)

        failures = sum(1 for r in results if r.error)
        log.info("benchmark", "run_complete", {
            "model": self._model_name,
            "items": len(results),
            "failures": failures,
        })
        return results

    def run_item(self, item: FoodItem) -> EvaluatedPrediction:
        """Benchmark one item with retries."""
        attempts = 0
        retrying = Retrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=self._wait,
            retry=retry_if_exception_type(PredictionAttemptError),
        )
        try:
            for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    parsed, latency_ms, mem_delta = self._attempt(item)
        except RetryError as exc:
            error = str(exc.last_attempt.exception())
            logger.warning("All %d attempts failed for %s: %s", attempts, item.display_name, error)
            get_logger().error("benchmark", "item_failed", {
                "model": self._model_name,
                "item": item.id,
                "attempts": attempts,
                "error": error,
            })
            return self._record(item, "", None, 0, 0, attempts, error)

        return self._record(item, parsed.label or "none", parsed, latency_ms, mem_delta.rss_kb, attempts, "")

    def _attempt(self, item: FoodItem) -> tuple[ParsedResult, int, MemorySnapshot]:
        if not self._predictor.is_model_healthy():
            raise PredictionAttemptError("Model is unhealthy")

        before = self._memory_reader()
        t0 = time.monotonic()
        wire = self._predictor.predict_allergens(item.ingredients)
        latency_ms = int((time.monotonic() - t0) * 1000)
        after = self._memory_reader()

        parsed = parse_result(wire)
        if parsed.is_error:
            raise PredictionAttemptError(parsed.payload)
        return parsed, latency_ms, after.delta(before)

    def _record(
        self,
        item: FoodItem,
        predicted: str,
        parsed: Optional[ParsedResult],
        latency_ms: int,
        rss_delta_kb: int,
        attempts: int,
        error: str,
    ) -> EvaluatedPrediction:
        metrics = calculate_metrics(item.allergens_mapped, predicted, item.ingredients)
        return EvaluatedPrediction(
            item_id=item.id,
            name=item.name,
            model=self._model_name,
            ingredients=item.ingredients,
            ground_truth=item.allergens_mapped,
            predicted=predicted,
            metrics=metrics,
            latency_ms=latency_ms,
            ttft_ms=parsed.ttft_ms if parsed else -1,
            itps=parsed.itps if parsed else -1,
            otps=parsed.otps if parsed else -1,
            oet_ms=parsed.oet_ms if parsed else -1,
            rss_delta_kb=rss_delta_kb,
            attempts=attempts,
            error=error,
        )
