"""
allergen_slm/evaluation/scoring.py — Quality, safety and efficiency metrics
for allergen predictions.

Per prediction: confusion counts over the nine categories, precision, recall,
F1, accuracy, exact match, Hamming loss and false-negative rate, plus safety
signals (hallucinated allergens with no supporting ingredient word,
over-predictions, abstention). Aggregates: micro and macro averages, rates and
efficiency means.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from statistics import fmean
from typing import Iterable, Sequence

from allergen_slm.core.allergens import ALLERGENS, INGREDIENT_KEYWORDS, NONE_LABEL

TOTAL_CATEGORIES = len(ALLERGENS)

_NON_LETTER = re.compile(r"[^a-z ]")


@dataclass(frozen=True)
class PredictionMetrics:
    """Scores of one prediction against its ground truth."""

    tp: int
    fp: int
    fn: int
    tn: int
    precision: float
    recall: float
    f1: float
    accuracy: float
    exact_match: bool
    hamming_loss: float
    fnr: float
    hallucinated: tuple[str, ...]
    over_predicted: tuple[str, ...]
    is_abstention_case: bool
    is_abstention_correct: bool

    @property
    def has_hallucination(self) -> bool:
        return bool(self.hallucinated)

    @property
    def has_over_prediction(self) -> bool:
        return bool(self.over_predicted)


@dataclass
class EvaluatedPrediction:
    """One benchmarked item: labels, scores, timings and memory delta."""

    item_id: str
    name: str
    model: str
    ingredients: str
    ground_truth: str
    predicted: str
    metrics: PredictionMetrics
    latency_ms: int
    ttft_ms: int
    itps: int
    otps: int
    oet_ms: int
    rss_delta_kb: int = 0
    attempts: int = 1
    error: str = ""

    def as_row(self) -> dict[str, object]:
        m = self.metrics
        return {
            "id": self.item_id,
            "name": self.name,
            "model": self.model,
            "ingredients": self.ingredients,
            "ground_truth": self.ground_truth,
            "predicted": self.predicted,
            "tp": m.tp,
            "fp": m.fp,
            "fn": m.fn,
            "tn": m.tn,
            "precision": round(m.precision, 4),
            "recall": round(m.recall, 4),
            "f1": round(m.f1, 4),
            "accuracy": round(m.accuracy, 4),
            "exact_match": m.exact_match,
            "hamming_loss": round(m.hamming_loss, 4),
            "fnr": round(m.fnr, 4),
            "hallucinated": ", ".join(m.hallucinated),
            "over_predicted": ", ".join(m.over_predicted),
            "abstention_case": m.is_abstention_case,
            "abstention_correct": m.is_abstention_correct,
            "latency_ms": self.latency_ms,
            "ttft_ms": self.ttft_ms,
            "itps": self.itps,
            "otps": self.otps,
            "oet_ms": self.oet_ms,
            "rss_delta_kb": self.rss_delta_kb,
            "attempts": self.attempts,
            "error": self.error,
        }


@dataclass(frozen=True)
class AggregateMetrics:
    """Averages over a set of :class:`EvaluatedPrediction`."""

    sample_count: int = 0
    total_tp: int = 0
    total_fp: int = 0
    total_fn: int = 0
    total_tn: int = 0
    micro_precision: float = 0.0
    micro_recall: float = 0.0
    micro_f1: float = 0.0
    macro_precision: float = 0.0
    macro_recall: float = 0.0
    macro_f1: float = 0.0
    exact_match_ratio: float = 0.0
    avg_hamming_loss: float = 0.0
    avg_fnr: float = 0.0
    hallucination_rate: float = 0.0
    over_prediction_rate: float = 0.0
    abstention_accuracy: float = 0.0
    avg_latency_ms: float = 0.0
    avg_ttft_ms: float = 0.0
    avg_itps: float = 0.0
    avg_otps: float = 0.0
    avg_oet_ms: float = 0.0
    avg_rss_delta_kb: float = 0.0


def parse_allergens(label: str) -> frozenset[str]:
    """Split a label on ``,``/``;`` into a set; ``none`` or blank is empty."""
    if not label or not label.strip() or label.strip().lower() == NONE_LABEL:
        return frozenset()
    parts = (p.strip() for p in re.split(r"[,;]", label.lower()))
    return frozenset(p for p in parts if p and p != NONE_LABEL)


def parse_ingredient_words(ingredients: str) -> frozenset[str]:
    """Lowercase words longer than two letters."""
    words = _NON_LETTER.sub(" ", ingredients.lower()).split()
    return frozenset(w for w in words if len(w) > 2)


def detect_hallucinations(predicted: Iterable[str], ingredient_words: frozenset[str]) -> tuple[str, ...]:
    """Predicted categories with no supporting keyword among the ingredient words."""
    hallucinated = []
    for allergen in sorted(predicted):
        keywords = INGREDIENT_KEYWORDS.get(allergen)
        if keywords is None:
            continue
        if not any(kw in word for kw in keywords for word in ingredient_words):
            hallucinated.append(allergen)
    return tuple(hallucinated)


def _ratio(num: float, den: float) -> float:
    return num / den if den > 0 else 0.0


def calculate_metrics(
    ground_truth: str,
    predicted: str,
    ingredients: str,
    total_categories: int = TOTAL_CATEGORIES,
) -> PredictionMetrics:
    """Score one prediction."""
    truth = parse_allergens(ground_truth)
    pred = parse_allergens(predicted)

    tp = len(truth & pred)
    fp = len(pred - truth)
    fn = len(truth - pred)
    tn = max(0, total_categories - tp - fp - fn)

    precision = _ratio(tp, tp + fp)
    recall = _ratio(tp, tp + fn)
    f1 = _ratio(2 * precision * recall, precision + recall)

    return PredictionMetrics(
        tp=tp,
        fp=fp,
        fn=fn,
        tn=tn,
        precision=precision,
        recall=recall,
        f1=f1,
        accuracy=_ratio(tp + tn, total_categories),
        exact_match=truth == pred,
        hamming_loss=_ratio(fp + fn, total_categories),
        fnr=_ratio(fn, tp + fn),
        hallucinated=detect_hallucinations(pred, parse_ingredient_words(ingredients)),
        over_predicted=tuple(sorted(pred - truth)),
        is_abstention_case=not truth,
        is_abstention_correct=not truth and not pred,
    )


def _mean(values: Sequence[float]) -> float:
    return fmean(values) if values else 0.0


def aggregate_metrics(results: Sequence[EvaluatedPrediction]) -> AggregateMetrics:
    """Micro/macro averages, safety rates and efficiency means over *results*."""
    if not results:
        return AggregateMetrics()

    ms = [r.metrics for r in results]
    total_tp = sum(m.tp for m in ms)
    total_fp = sum(m.fp for m in ms)
    total_fn = sum(m.fn for m in ms)
    total_tn = sum(m.tn for m in ms)

    micro_p = _ratio(total_tp, total_tp + total_fp)
    micro_r = _ratio(total_tp, total_tp + total_fn)
    abstention = [m for m in ms if m.is_abstention_case]
    n = len(results)

    return AggregateMetrics(
        sample_count=n,
        total_tp=total_tp,
        total_fp=total_fp,
        total_fn=total_fn,
        total_tn=total_tn,
        micro_precision=micro_p,
        micro_recall=micro_r,
        micro_f1=_ratio(2 * micro_p * micro_r, micro_p + micro_r),
        macro_precision=_mean([m.precision for m in ms]),
        macro_recall=_mean([m.recall for m in ms]),
        macro_f1=_mean([m.f1 for m in ms]),
        exact_match_ratio=sum(m.exact_match for m in ms) / n,
        avg_hamming_loss=_mean([m.hamming_loss for m in ms]),
        avg_fnr=_mean([m.fnr for m in ms]),
        hallucination_rate=sum(m.has_hallucination for m in ms) / n,
        over_prediction_rate=sum(m.has_over_prediction for m in ms) / n,
        abstention_accuracy=_ratio(sum(m.is_abstention_correct for m in abstention), len(abstention)),
        avg_latency_ms=_mean([r.latency_ms for r in results]),
        avg_ttft_ms=_mean([r.ttft_ms for r in results if r.ttft_ms > 0]),
        avg_itps=_mean([r.itps for r in results if r.itps > 0]),
        avg_otps=_mean([r.otps for r in results if r.otps >= 0]),
        avg_oet_ms=_mean([r.oet_ms for r in results if r.oet_ms > 0]),
        avg_rss_delta_kb=_mean([r.rss_delta_kb for r in results]),
    )
