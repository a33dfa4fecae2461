"""
tests/test_generator.py — Unit tests for the greedy decode loop.

Every test drives GenerationController against the scripted fake engine from
conftest.py; no model is loaded.
"""

from __future__ import annotations

import math

import pytest

from allergen_slm.core.errors import (
    ContextOverflowError,
    DecodeError,
    ModelNotLoadedError,
    TokenizationError,
)
from allergen_slm.core.config import EngineConfig
from allergen_slm.llm import prompt_templates
from allergen_slm.llm.generator import GenerationController, StopReason, find_stop, greedy_select
from allergen_slm.llm.metrics import MetricsRecorder
from allergen_slm.llm.session import ModelSession

from conftest import FakeBackend, FakeContext, FakeModel, loaded_session, scripted_engine

PROMPT = "<|im_start|>user\nInput: milk, sugar → Output:<|im_end|>\n<|im_start|>assistant\n"


def _generate(pieces, max_tokens=40, model_path="models/qwen-fake.gguf", **ctx_kwargs):
    model, ctx = scripted_engine(pieces, **ctx_kwargs)
    session = loaded_session(FakeBackend(model, ctx), model_path)
    out = GenerationController().generate(session, PROMPT, max_tokens)
    return out, model, ctx


# ──────────────────────────────────────────────────────────────
# greedy_select
# ──────────────────────────────────────────────────────────────

def test_greedy_select_picks_highest_score() -> None:
    assert greedy_select([0.1, 2.5, -1.0, 2.4]) == 1


def test_greedy_select_ties_go_to_lowest_index() -> None:
    assert greedy_select([1.0, 3.0, 3.0, 3.0]) == 1


def test_greedy_select_ignores_nan() -> None:
    assert greedy_select([math.nan, 0.5, math.nan]) == 1


def test_greedy_select_rejects_empty_vector() -> None:
    with pytest.raises(ValueError):
        greedy_select([])


# ──────────────────────────────────────────────────────────────
# find_stop
# ──────────────────────────────────────────────────────────────

def test_find_stop_none_without_markers() -> None:
    assert find_stop("milk, egg", prompt_templates.DEFAULT_TEMPLATE) is None


def test_find_stop_reason_by_priority_cut_at_earliest() -> None:
    reason, cut = find_stop("milk\nextra<|im_end|>", prompt_templates.DEFAULT_TEMPLATE)
    assert reason is StopReason.END_MARKER
    assert cut == 4


def test_find_stop_start_marker_only_for_alt_family() -> None:
    text = "soy<start_of_turn>user"
    assert find_stop(text, prompt_templates.DEFAULT_TEMPLATE) is None
    reason, cut = find_stop(text, prompt_templates.ALT_TURN_TEMPLATE)
    assert reason is StopReason.START_MARKER
    assert cut == 3


# ──────────────────────────────────────────────────────────────
# Tokenization and prefill
# ──────────────────────────────────────────────────────────────

def test_two_pass_tokenization() -> None:
    out, model, ctx = _generate(["milk"])
    n = len(PROMPT.split())
    assert model.tokenize_calls == [(None, True, True), (n, True, True)]
    assert out.prompt_token_count == n
    assert len(ctx.decode_calls[0]) == n


def test_negative_fill_count_raises_tokenization_error() -> None:
    model = FakeModel({1: b"milk"}, fill_result=-3)
    session = loaded_session(FakeBackend(model, FakeContext([1])))
    with pytest.raises(TokenizationError):
        GenerationController().generate(session, PROMPT, 10)


def test_zero_token_prompt_raises_tokenization_error() -> None:
    model = FakeModel({1: b"milk"}, prompt_tokens=0)
    session = loaded_session(FakeBackend(model, FakeContext([1])))
    with pytest.raises(TokenizationError):
        GenerationController().generate(session, PROMPT, 10)


@pytest.mark.parametrize("n_prompt, overflow", [(1947, False), (1948, True), (5000, True)])
def test_context_window_margin(n_prompt: int, overflow: bool) -> None:
    model = FakeModel({1: b"milk"}, prompt_tokens=n_prompt)
    session = loaded_session(FakeBackend(model, FakeContext([1], n_ctx=2048)))
    controller = GenerationController(reserved_margin=100)
    if overflow:
        with pytest.raises(ContextOverflowError):
            controller.generate(session, PROMPT, 10)
    else:
        assert controller.generate(session, PROMPT, 10).text == "milk"


def test_prefill_failure_raises_decode_error() -> None:
    model, ctx = scripted_engine(["milk"], fail_calls=(0,))
    session = loaded_session(FakeBackend(model, ctx))
    recorder = MetricsRecorder()
    recorder.start()
    with pytest.raises(DecodeError):
        GenerationController().generate(session, PROMPT, 10, recorder)
    assert not recorder.saw_first_token


def test_unloaded_session_raises() -> None:
    session = ModelSession(EngineConfig())
    with pytest.raises(ModelNotLoadedError):
        GenerationController().generate(session, PROMPT, 10)


# ──────────────────────────────────────────────────────────────
# Decode loop stop conditions
# ──────────────────────────────────────────────────────────────

def test_stops_on_end_of_generation() -> None:
    out, _, _ = _generate(["milk", ", egg"])
    assert out.text == "milk, egg"
    assert out.stop_reason is StopReason.EOG
    assert out.generated_token_count == 2


def test_immediate_eog_produces_empty_text() -> None:
    out, _, _ = _generate([])
    assert out.text == ""
    assert out.generated_token_count == 0
    assert out.stop_reason is StopReason.EOG


def test_newline_stops_and_truncates() -> None:
    out, _, _ = _generate(["milk", "\n", "Input: more"])
    assert out.text == "milk"
    assert out.stop_reason is StopReason.NEWLINE
    assert out.generated_token_count == 2


def test_end_marker_stops_and_truncates() -> None:
    out, _, _ = _generate(["egg", "<|im_end|>"])
    assert out.text == "egg"
    assert out.stop_reason is StopReason.END_MARKER


def test_start_marker_stops_alt_family() -> None:
    out, _, _ = _generate(["soy", "<start_of_turn>", "user"], model_path="models/gemma-2-2b-it.gguf")
    assert out.text == "soy"
    assert out.stop_reason is StopReason.START_MARKER


def test_start_marker_is_plain_text_for_default_family() -> None:
    out, _, _ = _generate(["soy", "<start_of_turn>"])
    assert out.text == "soy<start_of_turn>"
    assert out.stop_reason is StopReason.EOG


def test_marker_inside_one_piece_uses_priority_reason() -> None:
    out, _, _ = _generate(["milk\n<|im_end|>"])
    assert out.text == "milk"
    assert out.stop_reason is StopReason.END_MARKER


def test_mid_generation_decode_failure_keeps_partial_text() -> None:
    # call 0 is the prefill; call 2 decodes the second generated token
    out, _, _ = _generate(["milk", ", egg", ", soy"], fail_calls=(2,))
    assert out.text == "milk, egg"
    assert out.stop_reason is StopReason.DECODE_FAILED
    assert out.generated_token_count == 2


def test_token_to_text_failure_stops_loop() -> None:
    model = FakeModel({1: b"milk"}, bad_tokens=(2,))
    session = loaded_session(FakeBackend(model, FakeContext([1, 2, 1])))
    out = GenerationController().generate(session, PROMPT, 10)
    assert out.text == "milk"
    assert out.stop_reason is StopReason.TOKEN_TO_TEXT_FAILED


def test_exhausting_max_output_tokens_is_success() -> None:
    out, _, _ = _generate(["a", "b", "c", "d", "e"], max_tokens=3)
    assert out.text == "abc"
    assert out.stop_reason is StopReason.LENGTH
    assert out.generated_token_count == 3


def test_multibyte_character_split_across_tokens() -> None:
    model = FakeModel({1: b"cr\xc3", 2: b"\xa8me"})
    session = loaded_session(FakeBackend(model, FakeContext([1, 2])))
    out = GenerationController().generate(session, PROMPT, 10)
    assert out.text == "crème"


def test_context_cleared_before_every_call() -> None:
    model, ctx = scripted_engine(["milk"])
    session = loaded_session(FakeBackend(model, ctx))
    controller = GenerationController()
    first = controller.generate(session, PROMPT, 10)
    second = controller.generate(session, PROMPT, 10)
    assert ctx.clear_count == 2
    assert first.text == second.text == "milk"
