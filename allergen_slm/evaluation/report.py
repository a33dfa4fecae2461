"""
allergen_slm/evaluation/report.py — Export benchmark results.

XLSX (default): one sheet per model with its prediction rows, plus a
``Summary`` sheet with one row of aggregates per model. CSV: the same tables as
``<model>.csv`` files and ``summary.csv`` in the output directory.
"""

from __future__ import annotations

import logging
import re
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Mapping, Sequence

import pandas as pd

from allergen_slm.evaluation.scoring import AggregateMetrics, EvaluatedPrediction

logger = logging.getLogger(__name__)

SUMMARY_SHEET = "Summary"
_MAX_SHEET_NAME = 31
_INVALID_SHEET_CHARS = re.compile(r"[\[\]:*?/\\]")


def _sheet_name(model: str, used: set[str]) -> str:
    base = _INVALID_SHEET_CHARS.sub("_", model)[:_MAX_SHEET_NAME] or "model"
    name, n = base, 2
    while name in used or name == SUMMARY_SHEET:
        suffix = f"_{n}"
        name = base[: _MAX_SHEET_NAME - len(suffix)] + suffix
        n += 1
    used.add(name)
    return name


def results_frame(results: Sequence[EvaluatedPrediction]) -> pd.DataFrame:
    return pd.DataFrame([r.as_row() for r in results])


def summary_frame(aggregates: Mapping[str, AggregateMetrics]) -> pd.DataFrame:
    rows = []
    for model, agg in aggregates.items():
        row = {"model": model}
        row.update({k: round(v, 4) if isinstance(v, float) else v for k, v in asdict(agg).items()})
        rows.append(row)
    return pd.DataFrame(rows)


def export_results(
    results_by_model: Mapping[str, Sequence[EvaluatedPrediction]],
    aggregates: Mapping[str, AggregateMetrics],
    out_dir: Path | str,
    fmt: str = "xlsx",
) -> Path:
    """
    Write the results of every model and the summary.

    Args:
        results_by_model: Model name → its prediction rows.
        aggregates: Model name → its aggregate metrics.
        out_dir: Output directory (created if missing).
        fmt: ``"xlsx"`` (needs openpyxl) or ``"csv"``.

    Returns:
        The workbook path for XLSX, the timestamped directory for CSV.

    Raises:
        ValueError: If *fmt* is unknown.
    """
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")

    if fmt == "xlsx":
        path = out_dir / f"AllergenPrediction_{stamp}.xlsx"
        used: set[str] = set()
        with pd.ExcelWriter(path, engine="openpyxl") as writer:
            for model, results in results_by_model.items():
                results_frame(results).to_excel(writer, sheet_name=_sheet_name(model, used), index=False)
            summary_frame(aggregates).to_excel(writer, sheet_name=SUMMARY_SHEET, index=False)
    elif fmt == "csv":
        path = out_dir / f"AllergenPrediction_{stamp}"
        path.mkdir(parents=True, exist_ok=True)
        used = set()
        for model, results in results_by_model.items():
            results_frame(results).to_csv(path / f"{_sheet_name(model, used)}.csv", index=False)
        summary_frame(aggregates).to_csv(path / "summary.csv", index=False)
    else:
        raise ValueError(f"Unknown export format: {fmt!r} (use 'xlsx' or 'csv')")

    logger.info("Results exported to %s", path)
    return path
