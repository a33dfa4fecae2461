"""
allergen_slm/llm/generator.py — GenerationController: tokenize → prefill →
greedy decode loop with racing stop conditions.

Per call::

    clear context ─► two-pass tokenize ─► context-window check ─► prefill decode
        └─► loop ≤ max_output_tokens:
              scores ─► greedy argmax ─► EOG? ─► piece ─► stop markers? ─► decode(token)

Errors before any output exists raise (:class:`TokenizationError`,
:class:`ContextOverflowError`, :class:`DecodeError`). A decode failure after
the prefill only ends the loop early: the text accumulated so far is returned.
Running out of ``max_output_tokens`` is a normal result.
"""

from __future__ import annotations

import codecs
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

import numpy as np

from allergen_slm.core.errors import (
    ContextOverflowError,
    DecodeError,
    ModelNotLoadedError,
    TokenizationError,
)
from allergen_slm.llm.metrics import MetricsRecorder
from allergen_slm.llm.prompt_templates import PromptTemplate
from allergen_slm.llm.session import ModelSession

logger = logging.getLogger(__name__)

DEFAULT_RESERVED_MARGIN = 100


class StopReason(Enum):
    """Why the decode loop ended."""

    EOG = "eog"
    END_MARKER = "end_marker"
    START_MARKER = "start_marker"
    NEWLINE = "newline"
    DECODE_FAILED = "decode_failed"
    TOKEN_TO_TEXT_FAILED = "token_to_text_failed"
    LENGTH = "length"


_MARKER_STOPS = frozenset({StopReason.END_MARKER, StopReason.START_MARKER, StopReason.NEWLINE})


@dataclass(frozen=True)
class GenerationOutput:
    """Raw result of one generation call."""

    text: str
    prompt_token_count: int
    generated_token_count: int
    stop_reason: StopReason


def greedy_select(scores: Sequence[float] | np.ndarray) -> int:
    """
    Index of the highest score.

    Left-to-right scan keeping the first index that strictly beats the best so
    far, so ties go to the lowest index. NaN scores never win.
    """
    arr = np.asarray(scores, dtype=np.float64)
    if arr.size == 0:
        raise ValueError("Empty score vector")
    arr = np.where(np.isnan(arr), -np.inf, arr)
    return int(np.argmax(arr))


def find_stop(text: str, template: PromptTemplate) -> Optional[tuple[StopReason, int]]:
    """
    Check *text* against the template's stop markers.

    The reason is that of the first marker present in priority order; the cut
    position is the earliest occurrence of any present marker.

    Returns:
        ``(reason, cut_index)`` or ``None`` when no marker is present.
    """
    reason: Optional[StopReason] = None
    cut: Optional[int] = None
    for marker in template.stop_markers:
        pos = text.find(marker)
        if pos < 0:
            continue
        if reason is None:
            reason = _reason_for(marker, template)
        cut = pos if cut is None else min(cut, pos)
    if reason is None or cut is None:
        return None
    return reason, cut


def _reason_for(marker: str, template: PromptTemplate) -> StopReason:
    if marker == template.turn_end_marker:
        return StopReason.END_MARKER
    if marker == template.turn_start_marker:
        return StopReason.START_MARKER
    return StopReason.NEWLINE


class GenerationController:
    """
    Drives one greedy generation against a loaded :class:`ModelSession`.

    Args:
        reserved_margin: Tokens of the context window kept free for output;
            prompts of ``context_window_size - reserved_margin`` tokens or more
            are rejected.
    """

    def __init__(self, reserved_margin: int = DEFAULT_RESERVED_MARGIN) -> None:
        self._reserved_margin = reserved_margin

    def generate(
        self,
        session: ModelSession,
        prompt: str,
        max_output_tokens: int,
        recorder: Optional[MetricsRecorder] = None,
    ) -> GenerationOutput:
        """
        Generate the answer to *prompt*.

        Args:
            session: A loaded session.
            prompt: Fully rendered prompt text.
            max_output_tokens: Upper bound on generated tokens.
            recorder: Metrics taps; a started recorder is created when omitted.

        Raises:
            ModelNotLoadedError: If the session has no model/context.
            TokenizationError: If the engine reports a negative token count.
            ContextOverflowError: If the prompt does not leave the reserved margin.
            DecodeError: If the prefill decode fails.
        """
        if recorder is None:
            recorder = MetricsRecorder()
            recorder.start()

        model, ctx = session.handle, session.context_handle
        if not session.loaded or model is None or ctx is None:
            raise ModelNotLoadedError("Model not loaded")

        template = session.template
        ctx.clear()

        tokens = self._tokenize(session, prompt)
        n_prompt = len(tokens)

        limit = session.context_window_size - self._reserved_margin
        if n_prompt >= limit:
            raise ContextOverflowError(
                f"Prompt has {n_prompt} tokens; limit is {limit} "
                f"(context {session.context_window_size} - margin {self._reserved_margin})"
            )

        status = ctx.decode(tokens)
        if status != 0:
            raise DecodeError(f"Prefill decode failed with status {status}")
        recorder.prefill_complete()
        logger.debug("Prefill complete: %d tokens", n_prompt)

        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        text = ""
        generated = 0
        stop_reason = StopReason.LENGTH

        for _ in range(max_output_tokens):
            token = greedy_select(ctx.scores_for_last_position())

            if model.is_end_of_generation(token):
                stop_reason = StopReason.EOG
                break

            recorder.first_token()

            try:
                piece = model.token_to_text(token)
            except ValueError as exc:
                logger.warning("Token to text failed: %s", exc)
                stop_reason = StopReason.TOKEN_TO_TEXT_FAILED
                break
            text += decoder.decode(piece)
            generated += 1

            stop = find_stop(text, template)
            if stop is not None:
                stop_reason, cut = stop
                text = text[:cut]
                break

            status = ctx.decode([token])
            if status != 0:
                logger.warning("Decode failed at step %d (status %d); keeping partial output",
                               generated, status)
                stop_reason = StopReason.DECODE_FAILED
                break

        if stop_reason not in _MARKER_STOPS:
            text += decoder.decode(b"", final=True)

        recorder.generation_complete()
        logger.debug("Generation stopped (%s) after %d tokens", stop_reason.value, generated)
        return GenerationOutput(
            text=text,
            prompt_token_count=n_prompt,
            generated_token_count=generated,
            stop_reason=stop_reason,
        )

    @staticmethod
    def _tokenize(session: ModelSession, prompt: str) -> list[int]:
        """
        Two-pass tokenization: size query without a buffer, then fill a buffer
        of exactly that size.
        """
        model = session.handle
        assert model is not None
        first = model.tokenize(prompt, True, True)
        required = -first if first < 0 else first
        if required == 0:
            raise TokenizationError("Prompt produced no tokens")

        buffer = [0] * required
        count = model.tokenize(prompt, True, True, buffer)
        if count < 0:
            raise TokenizationError(f"Tokenization failed (count {count}, buffer {required})")
        return buffer[:count]
