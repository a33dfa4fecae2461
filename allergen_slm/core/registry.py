"""
allergen_slm/core/registry.py — Catalogue of the GGUF models used for
allergen labelling benchmarks.

Each entry names the Hugging Face repository and file the model is fetched
from by ``scripts/setup_model.py``. ``qwen2.5-1.5b`` is the baseline.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional


@dataclass(frozen=True)
class ModelInfo:
    """A registered model."""

    id: str
    display_name: str
    file_name: str
    parameters: str
    quantization: str
    size_gb: float
    repo_id: str

    @property
    def label(self) -> str:
        """Display label, e.g. ``'Qwen 2.5 1.5B (Baseline) (1.5B)'``."""
        return f"{self.display_name} ({self.parameters})"

    def path_in(self, model_dir: Path) -> Path:
        """Return where this model's file lives inside *model_dir*."""
        return model_dir / self.file_name


MODELS: tuple[ModelInfo, ...] = (
    ModelInfo(
        id="llama-3.2-1b",
        display_name="Llama 3.2 1B",
        file_name="Llama-3.2-1B-Instruct-Q4_K_M.gguf",
        parameters="1B",
        quantization="Q4_K_M",
        size_gb=0.8,
        repo_id="bartowski/Llama-3.2-1B-Instruct-GGUF",
    ),
    ModelInfo(
        id="llama-3.2-3b",
        display_name="Llama 3.2 3B",
        file_name="Llama-3.2-3B-Instruct-Q4_K_M.gguf",
        parameters="3B",
        quantization="Q4_K_M",
        size_gb=2.0,
        repo_id="bartowski/Llama-3.2-3B-Instruct-GGUF",
    ),
    ModelInfo(
        id="qwen2.5-1.5b",
        display_name="Qwen 2.5 1.5B (Baseline)",
        file_name="qwen2.5-1.5b-instruct-q4_k_m.gguf",
        parameters="1.5B",
        quantization="Q4_K_M",
        size_gb=1.0,
        repo_id="Qwen/Qwen2.5-1.5B-Instruct-GGUF",
    ),
    ModelInfo(
        id="qwen2.5-3b",
        display_name="Qwen 2.5 3B",
        file_name="qwen2.5-3b-instruct-q4_k_m.gguf",
        parameters="3B",
        quantization="Q4_K_M",
        size_gb=2.0,
        repo_id="Qwen/Qwen2.5-3B-Instruct-GGUF",
    ),
    ModelInfo(
        id="phi-3-mini",
        display_name="Phi-3 Mini 4K",
        file_name="Phi-3-mini-4k-instruct-q4.gguf",
        parameters="3.8B",
        quantization="Q4",
        size_gb=2.4,
        repo_id="microsoft/Phi-3-mini-4k-instruct-gguf",
    ),
    ModelInfo(
        id="phi-3.5-mini",
        display_name="Phi-3.5 Mini",
        file_name="Phi-3.5-mini-instruct-Q4_K_M.gguf",
        parameters="3.8B",
        quantization="Q4_K_M",
        size_gb=2.4,
        repo_id="bartowski/Phi-3.5-mini-instruct-GGUF",
    ),
    ModelInfo(
        id="gemma-2b",
        display_name="Gemma 2B",
        file_name="gemma-2-2b-it-Q4_K_M.gguf",
        parameters="2B",
        quantization="Q4_K_M",
        size_gb=1.4,
        repo_id="bartowski/gemma-2-2b-it-GGUF",
    ),
)

BASELINE_MODEL_ID = "qwen2.5-1.5b"


def get_model_by_id(model_id: str) -> Optional[ModelInfo]:
    """Return the registered model with *model_id*, or ``None``."""
    return next((m for m in MODELS if m.id == model_id), None)


def get_model_by_filename(file_name: str) -> Optional[ModelInfo]:
    """Return the registered model stored as *file_name* (basename match), or ``None``."""
    base = Path(file_name).name
    return next((m for m in MODELS if m.file_name == base), None)


def get_baseline_model() -> ModelInfo:
    """Return the baseline model entry."""
    model = get_model_by_id(BASELINE_MODEL_ID)
    assert model is not None
    return model
