"""
allergen_slm/core/allergens.py — The nine allergen categories and the
vocabulary around them.
"""

from __future__ import annotations

ALLERGENS: tuple[str, ...] = (
    "milk",
    "egg",
    "peanut",
    "tree nut",
    "wheat",
    "soy",
    "fish",
    "shellfish",
    "sesame",
)
"""Canonical category names, in the order the prompt lists them."""

NONE_LABEL = "none"

SYNONYMS: dict[str, str] = {
    "tree-nut": "tree nut",
    "treenut": "tree nut",
    "tree nuts": "tree nut",
    "treenuts": "tree nut",
    "eggs": "egg",
    "peanuts": "peanut",
    "soya": "soy",
    "soybean": "soy",
    "soybeans": "soy",
    "shellfishes": "shellfish",
    "fishes": "fish",
}
"""Model spellings mapped onto canonical categories (applied after lowercasing)."""

INGREDIENT_KEYWORDS: dict[str, frozenset[str]] = {
    "milk": frozenset({"milk", "cream", "butter", "cheese", "yogurt", "whey", "casein", "lait", "dairy"}),
    "egg": frozenset({"egg", "oeuf", "albumin", "mayonnaise"}),
    "peanut": frozenset({"peanut", "groundnut", "arachide"}),
    "tree nut": frozenset({
        "nut", "hazelnut", "almond", "walnut", "cashew", "pecan",
        "pistachio", "macadamia", "noisette", "mandeln",
    }),
    "wheat": frozenset({"wheat", "flour", "gluten", "oat", "rye"}),
    "soy": frozenset({"soy", "soya", "soja", "lecithin", "tofu"}),
    "fish": frozenset({"fish", "salmon", "tuna", "cod", "anchov", "poisson"}),
    "shellfish": frozenset({"shellfish", "shrimp", "crab", "lobster", "prawn", "crevette"}),
    "sesame": frozenset({"sesame", "tahini", "sesamum"}),
}
"""Ingredient-word stems whose presence supports a predicted category."""
