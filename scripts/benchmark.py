"""
scripts/benchmark.py — Dataset benchmark across registered models.

Loads each model in turn, labels every item of the dataset, scores the
predictions against the ground truth and exports per-model sheets plus a
summary. Prints p50/p95 latency and the headline quality figures per model.
Requires the models to be downloaded (run setup_model.py first).

Usage:
    python scripts/benchmark.py --dataset data/foodpreprocessed.xlsx
    python scripts/benchmark.py --dataset data/foods.csv --models qwen2.5-1.5b gemma-2b --format csv
"""

from __future__ import annotations

import argparse
import logging
import statistics
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from allergen_slm.core.config import load_config  # noqa: E402
from allergen_slm.core.registry import MODELS, get_model_by_id  # noqa: E402
from allergen_slm.evaluation.dataset import load_dataset  # noqa: E402
from allergen_slm.evaluation.report import export_results  # noqa: E402
from allergen_slm.evaluation.runner import BenchmarkRunner  # noqa: E402
from allergen_slm.evaluation.scoring import (  # noqa: E402
    AggregateMetrics,
    EvaluatedPrediction,
    aggregate_metrics,
)
from allergen_slm.llm.session import ModelSession  # noqa: E402
from allergen_slm.service import AllergenPredictor  # noqa: E402

logger = logging.getLogger(__name__)


def _setup_logging(level: str = "INFO") -> None:
    """Configure logging for the benchmark script."""
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        stream=sys.stdout,
    )


def _percentile(values: list[int], pct: float) -> float:
    if not values:
        return 0.0
    if len(values) == 1:
        return float(values[0])
    cuts = statistics.quantiles(values, n=100, method="inclusive")
    return cuts[int(pct) - 1]


def _report(model: str, results: list[EvaluatedPrediction], agg: AggregateMetrics) -> None:
    latencies = [r.latency_ms for r in results if not r.error]
    logger.info("─── %s ─────────────────────────────", model)
    logger.info("  Items:          %d (%d failed)", agg.sample_count, sum(1 for r in results if r.error))
    logger.info("  Micro F1:       %.3f", agg.micro_f1)
    logger.info("  Exact match:    %.1f%%", agg.exact_match_ratio * 100)
    logger.info("  Hallucination:  %.1f%%", agg.hallucination_rate * 100)
    logger.info("  Latency p50:    %.0f ms", _percentile(latencies, 50))
    logger.info("  Latency p95:    %.0f ms", _percentile(latencies, 95))
    logger.info("  Avg TTFT:       %.0f ms", agg.avg_ttft_ms)
    logger.info("  Avg OTPS:       %.1f tok/s", agg.avg_otps)


def run_benchmark(
    dataset: Path,
    model_ids: list[str],
    out_dir: Path,
    fmt: str,
    limit: int | None,
    config_path: str | None,
) -> bool:
    """
    Benchmark every model in *model_ids* over *dataset* and export the results.

    Returns:
        True if at least one model was benchmarked.
    """
    cfg = load_config(config_path)
    items = load_dataset(dataset)
    if limit is not None:
        items = items[:limit]
    logger.info("Benchmarking %d items across %d models", len(items), len(model_ids))

    results_by_model: dict[str, list[EvaluatedPrediction]] = {}
    aggregates: dict[str, AggregateMetrics] = {}

    for model_id in model_ids:
        info = get_model_by_id(model_id)
        model_path = str(info.path_in(cfg.engine.resolved_model_dir)) if info else model_id
        name = info.display_name if info else model_id

        predictor = AllergenPredictor(cfg, session=ModelSession(cfg.engine))
        if not predictor.load_model(None, model_path):
            logger.error("Skipping %s: model could not be loaded from %s", name, model_path)
            continue
        try:
            runner = BenchmarkRunner(predictor, name)
            results = runner.run(
                items,
                progress=lambda i, n, r: logger.info("[%d/%d] %s → %s", i, n, r.name, r.predicted or r.error),
            )
        finally:
            predictor.unload_model()

        agg = aggregate_metrics(results)
        results_by_model[name] = results
        aggregates[name] = agg
        _report(name, results, agg)

    if not results_by_model:
        logger.error("No model could be benchmarked")
        return False

    path = export_results(results_by_model, aggregates, out_dir, fmt=fmt)
    logger.info("Results written to %s", path)
    return True


def main() -> None:
    parser = argparse.ArgumentParser(description="Allergen labelling benchmark")
    parser.add_argument("--dataset", required=True, help="CSV or XLSX dataset")
    parser.add_argument(
        "--models",
        nargs="+",
        default=[m.id for m in MODELS],
        help="Registered model ids or model paths",
    )
    parser.add_argument("--out-dir", default="results", help="Export directory")
    parser.add_argument("--format", choices=["xlsx", "csv"], default="xlsx")
    parser.add_argument("--limit", type=int, default=None, help="Only the first N items")
    parser.add_argument("--config", default=None, help="Path to a YAML config file")
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args()

    _setup_logging(args.log_level)
    ok = run_benchmark(
        Path(args.dataset),
        args.models,
        Path(args.out_dir),
        args.format,
        args.limit,
        args.config,
    )
    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
