"""
tests/test_evaluation.py — Pytest tests for dataset loading, scoring, the
benchmark runner and result export.
"""

from __future__ import annotations

from dataclasses import fields
from pathlib import Path
from unittest.mock import MagicMock

import pandas as pd
import pytest
from tenacity import wait_none

from allergen_slm.evaluation.dataset import FoodItem, load_dataset
from allergen_slm.evaluation.report import export_results, summary_frame
from allergen_slm.evaluation.runner import BenchmarkRunner
from allergen_slm.evaluation.scoring import (
    AggregateMetrics,
    aggregate_metrics,
    calculate_metrics,
    parse_allergens,
)
from allergen_slm.llm.metrics import MemorySnapshot


# ──────────────────────────────────────────────────────────────
# Scoring
# ──────────────────────────────────────────────────────────────

def test_parse_allergens() -> None:
    assert parse_allergens("none") == frozenset()
    assert parse_allergens("") == frozenset()
    assert parse_allergens("Milk, egg; tree nut") == {"milk", "egg", "tree nut"}


def test_perfect_prediction() -> None:
    m = calculate_metrics("egg, milk", "milk, egg", "eggs, whole milk, sugar")
    assert (m.tp, m.fp, m.fn, m.tn) == (2, 0, 0, 7)
    assert m.precision == m.recall == m.f1 == m.accuracy == 1.0
    assert m.exact_match
    assert m.hamming_loss == 0.0
    assert not m.has_hallucination


def test_partial_prediction() -> None:
    m = calculate_metrics("milk, wheat", "milk, soy", "wheat flour, milk")
    assert (m.tp, m.fp, m.fn, m.tn) == (1, 1, 1, 6)
    assert m.precision == 0.5
    assert m.recall == 0.5
    assert m.fnr == 0.5
    assert m.hamming_loss == pytest.approx(2 / 9)
    assert m.over_predicted == ("soy",)
    assert m.hallucinated == ("soy",)


def test_keyword_supports_prediction() -> None:
    m = calculate_metrics("none", "soy", "sugar, soya lecithin")
    assert m.hallucinated == ()
    assert m.over_predicted == ("soy",)
    assert m.is_abstention_case
    assert not m.is_abstention_correct


def test_correct_abstention() -> None:
    m = calculate_metrics("none", "none", "sugar, water, salt")
    assert m.is_abstention_correct
    assert m.exact_match
    assert m.precision == 0.0
    assert m.accuracy == 1.0


def _evaluated(truth: str, pred: str, ingredients: str, ttft: int = 100, latency: int = 500):
    from allergen_slm.evaluation.scoring import EvaluatedPrediction

    return EvaluatedPrediction(
        item_id="1",
        name="x",
        model="m",
        ingredients=ingredients,
        ground_truth=truth,
        predicted=pred,
        metrics=calculate_metrics(truth, pred, ingredients),
        latency_ms=latency,
        ttft_ms=ttft,
        itps=200,
        otps=10,
        oet_ms=latency,
    )


def test_aggregate_metrics() -> None:
    results = [
        _evaluated("milk", "milk", "milk"),
        _evaluated("egg", "none", "egg", ttft=-1),
        _evaluated("none", "none", "sugar"),
    ]
    agg = aggregate_metrics(results)
    assert agg.sample_count == 3
    assert (agg.total_tp, agg.total_fp, agg.total_fn) == (1, 0, 1)
    assert agg.micro_precision == 1.0
    assert agg.micro_recall == 0.5
    assert agg.exact_match_ratio == pytest.approx(2 / 3)
    assert agg.abstention_accuracy == 1.0
    assert agg.avg_ttft_ms == 100.0
    assert agg.avg_latency_ms == 500.0


def test_aggregate_empty() -> None:
    assert aggregate_metrics([]).sample_count == 0


# ──────────────────────────────────────────────────────────────
# Dataset
# ──────────────────────────────────────────────────────────────

def test_load_csv_dataset(tmp_path: Path) -> None:
    path = tmp_path / "foods.csv"
    pd.DataFrame(
        {
            "Data ID": ["1", "2", "3"],
            "Product Name": ["Bread", "Water", "Empty"],
            "Ingredients": ["wheat flour, water, salt", "water", ""],
            "Allergens": ["en:gluten", "", ""],
            "Allergens_Mapped": ["wheat", "none", "none"],
        }
    ).to_csv(path, index=False)
    items = load_dataset(path)
    assert [i.name for i in items] == ["Bread", "Water"]
    assert items[0].allergens_mapped == "wheat"
    assert items[0].has_allergens
    assert not items[1].has_allergens


def test_load_dataset_rejects_unknown_format(tmp_path: Path) -> None:
    path = tmp_path / "foods.json"
    path.write_text("[]", encoding="utf-8")
    with pytest.raises(ValueError):
        load_dataset(path)


def test_load_dataset_requires_ingredients(tmp_path: Path) -> None:
    path = tmp_path / "foods.csv"
    pd.DataFrame({"name": ["x"]}).to_csv(path, index=False)
    with pytest.raises(ValueError):
        load_dataset(path)


# ──────────────────────────────────────────────────────────────
# Runner
# ──────────────────────────────────────────────────────────────

def _memory_reader():
    snaps = iter([MemorySnapshot(1000, 0, 0), MemorySnapshot(1200, 0, 0)] * 10)
    return lambda: next(snaps)


def test_runner_scores_each_item() -> None:
    predictor = MagicMock()
    predictor.is_model_healthy.return_value = True
    predictor.predict_allergens.return_value = "TTFT_MS=90;ITPS=300;OTPS=12;OET_MS=700|milk"
    runner = BenchmarkRunner(predictor, "Qwen", wait=wait_none(), memory_reader=_memory_reader())
    results = runner.run([FoodItem(id="1", name="Cheese", ingredients="milk, salt", allergens_mapped="milk")])
    [r] = results
    assert r.predicted == "milk"
    assert r.metrics.exact_match
    assert (r.ttft_ms, r.itps, r.otps, r.oet_ms) == (90, 300, 12, 700)
    assert r.rss_delta_kb == 200
    assert r.attempts == 1
    assert r.error == ""


def test_runner_retries_error_results() -> None:
    predictor = MagicMock()
    predictor.is_model_healthy.return_value = True
    predictor.predict_allergens.side_effect = [
        "TTFT_MS=-1;ITPS=-1;OTPS=-1;OET_MS=-1|ERROR: DecodeError: status 1",
        "TTFT_MS=50;ITPS=100;OTPS=5;OET_MS=300|egg",
    ]
    runner = BenchmarkRunner(predictor, "Qwen", wait=wait_none(), memory_reader=_memory_reader())
    r = runner.run_item(FoodItem(id="2", name="Cake", ingredients="egg", allergens_mapped="egg"))
    assert r.predicted == "egg"
    assert r.attempts == 2


def test_runner_records_exhausted_retries() -> None:
    predictor = MagicMock()
    predictor.is_model_healthy.return_value = False
    runner = BenchmarkRunner(predictor, "Qwen", max_attempts=3, wait=wait_none(), memory_reader=_memory_reader())
    r = runner.run_item(FoodItem(id="3", name="Nuts", ingredients="almonds", allergens_mapped="tree nut"))
    assert r.attempts == 3
    assert r.error == "Model is unhealthy"
    assert r.predicted == ""
    assert r.metrics.fn == 1
    predictor.predict_allergens.assert_not_called()


# ──────────────────────────────────────────────────────────────
# Export
# ──────────────────────────────────────────────────────────────

def test_export_csv(tmp_path: Path) -> None:
    results = {"Qwen 2.5 1.5B": [_evaluated("milk", "milk", "milk")]}
    out = export_results(results, {k: aggregate_metrics(v) for k, v in results.items()}, tmp_path, fmt="csv")
    assert (out / "summary.csv").exists()
    frame = pd.read_csv(out / "Qwen 2.5 1.5B.csv")
    assert frame.loc[0, "predicted"] == "milk"


def test_export_xlsx(tmp_path: Path) -> None:
    pytest.importorskip("openpyxl")
    results = {"Gemma 2B": [_evaluated("egg", "egg", "eggs")]}
    out = export_results(results, {k: aggregate_metrics(v) for k, v in results.items()}, tmp_path)
    sheets = pd.read_excel(out, sheet_name=None)
    assert set(sheets) == {"Gemma 2B", "Summary"}


def test_export_unknown_format(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        export_results({}, {}, tmp_path, fmt="json")


def test_summary_frame_has_one_column_per_metric() -> None:
    results = [_evaluated("milk", "milk", "milk"), _evaluated("egg", "none", "egg")]
    frame = summary_frame({"Phi-3.5 Mini": aggregate_metrics(results)})
    assert list(frame.columns) == ["model"] + [f.name for f in fields(AggregateMetrics)]
    assert frame.loc[0, "micro_recall"] == 0.5
