"""
tests/test_config.py — Pytest tests for YAML configuration loading and the model registry.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from allergen_slm.core.config import AllergenSLMConfig, load_config
from allergen_slm.core.registry import (
    BASELINE_MODEL_ID,
    MODELS,
    get_baseline_model,
    get_model_by_filename,
    get_model_by_id,
)
from allergen_slm.llm import prompt_templates
from allergen_slm.llm.prompt_templates import PromptFamily


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "cfg.yaml"
    path.write_text(text, encoding="utf-8")
    return path


def test_explicit_file(tmp_path: Path) -> None:
    cfg = load_config(_write(tmp_path, "engine:\n  n_ctx: 4096\ngeneration:\n  max_output_tokens: 64\n"))
    assert cfg.engine.n_ctx == 4096
    assert cfg.generation.max_output_tokens == 64
    assert cfg.generation.reserved_context_margin == 100


def test_env_var(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ALLERGEN_SLM_CONFIG", str(_write(tmp_path, "engine:\n  backend: transformers\n")))
    assert load_config().engine.backend == "transformers"


def test_missing_explicit_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.yaml")


def test_project_config_matches_defaults() -> None:
    assert load_config() == AllergenSLMConfig()


@pytest.mark.parametrize(
    "yaml_text",
    [
        "engine:\n  backend: onnx\n",
        "engine:\n  quantization: fp4\n",
        "engine:\n  n_ctx: 0\n",
        "generation:\n  max_output_tokens: 0\n",
        "generation:\n  max_output_tokens: 513\n",
        "generation:\n  reserved_context_margin: -1\n",
        "engine:\n  n_ctx: 100\ngeneration:\n  reserved_context_margin: 100\n",
        "generation:\n  max_ingredient_chars: 0\n",
        "engine:\n  unknown_key: 1\n",
        "- not\n- a mapping\n",
    ],
)
def test_invalid_values(tmp_path: Path, yaml_text: str) -> None:
    with pytest.raises(ValueError):
        load_config(_write(tmp_path, yaml_text))


# ──────────────────────────────────────────────────────────────
# Registry
# ──────────────────────────────────────────────────────────────

def test_registry_ids_unique() -> None:
    ids = [m.id for m in MODELS]
    assert len(ids) == len(set(ids))


def test_baseline_model() -> None:
    assert get_baseline_model().id == BASELINE_MODEL_ID == "qwen2.5-1.5b"


def test_lookup() -> None:
    assert get_model_by_id("gemma-2b").file_name == "gemma-2-2b-it-Q4_K_M.gguf"
    assert get_model_by_id("missing") is None
    assert get_model_by_filename("/sdcard/models/qwen2.5-3b-instruct-q4_k_m.gguf").id == "qwen2.5-3b"


def test_only_gemma_uses_alt_turn_format() -> None:
    for model in MODELS:
        family = prompt_templates.select(model.file_name).family
        expected = PromptFamily.ALT_TURN_FORMAT if model.id.startswith("gemma") else PromptFamily.DEFAULT
        assert family is expected, model.id
