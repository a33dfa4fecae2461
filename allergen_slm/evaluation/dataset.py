"""
allergen_slm/evaluation/dataset.py — Food-product datasets with ground-truth
allergen labels.

Expected columns (case-insensitive, spaces/underscores ignored): ``id``,
``name``, ``ingredients``, ``allergens`` (raw label text) and
``allergens_mapped`` (label in the nine categories). CSV and XLSX are read with
pandas; XLSX needs openpyxl.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import pandas as pd

from allergen_slm.core.allergens import NONE_LABEL

logger = logging.getLogger(__name__)

_COLUMN_ALIASES: dict[str, tuple[str, ...]] = {
    "id": ("id", "dataid", "productid"),
    "name": ("name", "productname", "product"),
    "ingredients": ("ingredients", "ingredientstext", "ingredient"),
    "allergens_raw": ("allergens", "allergensraw", "allergenstags"),
    "allergens_mapped": ("allergensmapped", "mappedallergens", "label", "groundtruth"),
    "link": ("link", "url"),
}


@dataclass(frozen=True)
class FoodItem:
    """One product of the evaluation dataset."""

    id: str = ""
    name: str = ""
    ingredients: str = ""
    allergens_raw: str = ""
    allergens_mapped: str = ""
    link: str = ""

    @property
    def display_name(self) -> str:
        return f"{self.id}. {self.name}"

    @property
    def has_allergens(self) -> bool:
        return bool(self.allergens_mapped) and self.allergens_mapped != NONE_LABEL


def _normalise_header(header: object) -> str:
    return str(header).lower().replace(" ", "").replace("_", "")


def _read_frame(path: Path) -> pd.DataFrame:
    suffix = path.suffix.lower()
    if suffix in {".xlsx", ".xls"}:
        return pd.read_excel(path, dtype=str)
    if suffix == ".csv":
        return pd.read_csv(path, dtype=str, keep_default_na=False)
    raise ValueError(f"Unsupported dataset format: {path.suffix!r} (use .csv or .xlsx)")


def load_dataset(path: Path | str) -> list[FoodItem]:
    """
    Read a dataset file into :class:`FoodItem` objects.

    Rows without ingredients are skipped.

    Raises:
        FileNotFoundError: If *path* does not exist.
        ValueError: If the format is unsupported or no ingredients column exists.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Dataset not found: {path}")

    df = _read_frame(path).fillna("")
    headers = {_normalise_header(col): col for col in df.columns}
    columns: dict[str, str] = {}
    for field, aliases in _COLUMN_ALIASES.items():
        for alias in aliases:
            if alias in headers:
                columns[field] = headers[alias]
                break
    if "ingredients" not in columns:
        raise ValueError(f"Dataset {path} has no ingredients column (columns: {list(df.columns)})")

    items: list[FoodItem] = []
    for idx, row in df.iterrows():
        values = {field: str(row[col]).strip() for field, col in columns.items()}
        if not values.get("ingredients"):
            continue
        values.setdefault("id", str(idx + 1))
        items.append(FoodItem(**values))

    logger.info("Loaded %d food items from %s", len(items), path)
    return items
