"""
allergen_slm/llm/prompt_templates.py — Model-family prompt templates for
allergen labelling.

A :class:`PromptTemplate` is chosen once per model load from the model
identifier (file path or hub id) and cached on the session. Every family shares
the same instruction preamble; families differ only in their turn markers and
the stop markers the generation loop watches for.

Known limitation: the ingredient text is embedded verbatim. Text containing a
family's turn markers changes the turn structure the model sees.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from allergen_slm.core.allergens import ALLERGENS

logger = logging.getLogger(__name__)


class PromptFamily(Enum):
    """Turn format a model was instruction-tuned on."""

    DEFAULT = "default"
    """ChatML (``<|im_start|>`` / ``<|im_end|>``) — Qwen and most GGUF chat models."""

    ALT_TURN_FORMAT = "alt_turn_format"
    """Gemma turn format (``<start_of_turn>`` / ``<end_of_turn>``, no system role)."""


@dataclass(frozen=True)
class PromptTemplate:
    """
    Turn markers and stop markers of one prompt family.

    Attributes:
        family: The family tag.
        system_preamble: Instruction block listing the allergen categories,
            output rules and worked examples.
        stop_markers: Markers that end generation, in priority order.
        turn_start_marker: Token sequence opening a turn.
        turn_end_marker: Token sequence closing a turn.
        system_role: Role name of the system turn, or ``None`` when the family
            has no system role and the preamble goes into the user turn.
        assistant_role: Role name of the model's turn.
    """

    family: PromptFamily
    system_preamble: str
    stop_markers: tuple[str, ...]
    turn_start_marker: str
    turn_end_marker: str
    system_role: Optional[str] = "system"
    assistant_role: str = "assistant"

    @property
    def is_default(self) -> bool:
        return self.family is PromptFamily.DEFAULT

    @property
    def turn_markers(self) -> tuple[str, str]:
        """``(turn_end_marker, turn_start_marker)``, the order sanitization cuts at."""
        return self.turn_end_marker, self.turn_start_marker


SYSTEM_PREAMBLE: str = (
    "You identify allergens. "
    f"Valid allergens: {', '.join(ALLERGENS)}.\n"
    "Format: output ONLY allergen names (comma-separated) or 'none'.\n"
    "Examples:\n"
    "Input: sugar, water → Output: none\n"
    "Input: milk, sugar → Output: milk\n"
    "Input: egg, wheat, milk → Output: egg, wheat, milk"
)

DEFAULT_TEMPLATE = PromptTemplate(
    family=PromptFamily.DEFAULT,
    system_preamble=SYSTEM_PREAMBLE,
    stop_markers=("<|im_end|>", "\n"),
    turn_start_marker="<|im_start|>",
    turn_end_marker="<|im_end|>",
)

ALT_TURN_TEMPLATE = PromptTemplate(
    family=PromptFamily.ALT_TURN_FORMAT,
    system_preamble=SYSTEM_PREAMBLE,
    # A start marker in the output means the model began a new turn itself.
    stop_markers=("<end_of_turn>", "<start_of_turn>", "\n"),
    turn_start_marker="<start_of_turn>",
    turn_end_marker="<end_of_turn>",
    system_role=None,
    assistant_role="model",
)

# (lower-case identifier substrings, template), checked in order.
_FAMILY_MARKERS: tuple[tuple[tuple[str, ...], PromptTemplate], ...] = (
    (("gemma",), ALT_TURN_TEMPLATE),
)


def select(model_identifier: str) -> PromptTemplate:
    """
    Choose the prompt template for *model_identifier*.

    Case-insensitive substring match of each family's markers against the
    identifier; :data:`DEFAULT_TEMPLATE` when none matches. Pure: the same
    identifier always yields the same template.
    """
    ident = (model_identifier or "").lower()
    for markers, template in _FAMILY_MARKERS:
        if any(marker in ident for marker in markers):
            return template
    return DEFAULT_TEMPLATE


def render(template: PromptTemplate, ingredients: str) -> str:
    """
    Build the full prompt text for *ingredients*.

    Layout: system turn (or preamble at the head of the user turn), user turn
    carrying the literal ingredients, then the opener of the assistant turn.
    """
    start, end = template.turn_start_marker, template.turn_end_marker
    user_body = f"Input: {ingredients} → Output:"

    parts: list[str] = []
    if template.system_role is not None:
        parts.append(f"{start}{template.system_role}\n{template.system_preamble}{end}\n")
    else:
        user_body = f"{template.system_preamble}\n\n{user_body}"
    parts.append(f"{start}user\n{user_body}{end}\n")
    parts.append(f"{start}{template.assistant_role}\n")

    prompt = "".join(parts)
    logger.debug("Rendered %s prompt (%d chars)", template.family.value, len(prompt))
    return prompt
