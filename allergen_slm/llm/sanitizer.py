"""
allergen_slm/llm/sanitizer.py — OutputSanitizer: raw generated text → allergen label.

Passes, in order:

1. cut at the first turn end/start marker of the prompt family
2. trim whitespace and trailing ``. , ; :``
3. collapse runs of spaces
4. empty or instruction-echo text → ``"none"``
5. lowercase
6. item normalization: split on commas, keep letters and spaces, drop empty
   items, drop ``none`` when real items exist, de-duplicate

Strict mode additionally maps spellings onto the nine canonical categories,
discards anything else and sorts the result.

The label is always ``"none"`` or a lowercase comma-separated list such as
``"egg, milk, wheat"``; sanitizing a label again returns it unchanged.
"""

from __future__ import annotations

import logging
import re
from typing import Optional

from allergen_slm.core.allergens import ALLERGENS, NONE_LABEL, SYNONYMS
from allergen_slm.llm.prompt_templates import PromptTemplate

logger = logging.getLogger(__name__)

# Phrases that only appear when the model echoes its instructions.
LEAKAGE_PHRASES: tuple[str, ...] = (
    "analyze",
    "identify",
    "rules",
    "list:",
    "valid allergens",
    "examples:",
)

_EDGE_WHITESPACE = " \t\r\n"
_TRAILING_PUNCT = ".,;:"
_NON_LETTER = re.compile(r"[^a-z ]+")
_MULTI_SPACE = re.compile(r" {2,}")

# Longest category first so "tree nut" is preferred over a shorter overlap.
_CATEGORY_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = tuple(
    (name, re.compile(rf"\b{re.escape(name)}s?\b"))
    for name in sorted(ALLERGENS, key=len, reverse=True)
)


class OutputSanitizer:
    """
    Normalizes raw model output into a canonical label.

    Args:
        strict: Keep only the nine allergen categories (with spelling
            variants mapped) and sort them.
    """

    def __init__(self, strict: bool = True) -> None:
        self.strict = strict

    def sanitize(self, raw: Optional[str], template: Optional[PromptTemplate] = None) -> str:
        """
        Return the label for *raw*. Never raises; anomalies give ``"none"``.
        """
        try:
            return self._sanitize(raw or "", template)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Sanitizer fell back to 'none': %s", exc)
            return NONE_LABEL

    # ──────────────────────────────────────────
    # Passes
    # ──────────────────────────────────────────

    def _sanitize(self, text: str, template: Optional[PromptTemplate]) -> str:
        if template is not None:
            text = _cut_at_markers(text, template.turn_markers)

        text = text.replace("\r", " ").replace("\n", " ").replace("\t", " ")
        text = _trim(text)
        text = _MULTI_SPACE.sub(" ", text)

        lowered = text.lower()
        if not lowered or any(phrase in lowered for phrase in LEAKAGE_PHRASES):
            return NONE_LABEL

        items = self._normalize_items(lowered)
        label = ", ".join(items)
        # normalization can spell out a leakage phrase ("valid_allergens")
        if not label or any(phrase in label for phrase in LEAKAGE_PHRASES):
            return NONE_LABEL
        return label

    def _normalize_items(self, text: str) -> list[str]:
        items: list[str] = []
        for part in text.split(","):
            item = " ".join(_NON_LETTER.sub(" ", part).split())
            if not item or item == NONE_LABEL:
                continue
            candidates = _to_categories(part, item) if self.strict else [item]
            for candidate in candidates:
                if candidate not in items:
                    items.append(candidate)
        if self.strict:
            items.sort()
        return items


def sanitize(raw: Optional[str], template: Optional[PromptTemplate] = None, strict: bool = True) -> str:
    """Module-level shortcut for :meth:`OutputSanitizer.sanitize`."""
    return OutputSanitizer(strict=strict).sanitize(raw, template)


def _cut_at_markers(text: str, markers: tuple[str, ...]) -> str:
    positions = [pos for pos in (text.find(m) for m in markers if m) if pos >= 0]
    return text[: min(positions)] if positions else text


def _trim(text: str) -> str:
    prev = None
    while prev != text:
        prev = text
        text = text.strip(_EDGE_WHITESPACE).rstrip(_TRAILING_PUNCT)
    return text


def _to_categories(raw_part: str, item: str) -> list[str]:
    """Map one list item onto canonical categories (possibly none)."""
    compact = raw_part.strip(_EDGE_WHITESPACE + _TRAILING_PUNCT)
    for key in (compact, item):
        if key in SYNONYMS:
            return [SYNONYMS[key]]
    if item in ALLERGENS:
        return [item]
    found: list[str] = []
    remaining = item
    for name, pattern in _CATEGORY_PATTERNS:
        if pattern.search(remaining):
            found.append(name)
            remaining = pattern.sub(" ", remaining)
    return found
