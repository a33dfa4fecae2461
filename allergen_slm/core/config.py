"""
allergen_slm/core/config.py — Typed configuration loader for Allergen SLM.

Loads ``config/allergen_slm.yaml`` and validates all values into frozen
dataclasses. Downstream modules take these dataclasses; never read YAML directly.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

_BACKENDS = {"auto", "llama_cpp", "transformers"}
_QUANTIZATIONS = {"nf4", "int8", "none"}


# ──────────────────────────────────────────────
# Dataclass hierarchy — mirrors allergen_slm.yaml
# ──────────────────────────────────────────────


@dataclass(frozen=True)
class EngineConfig:
    """Inference engine and context parameters."""

    backend: str = "auto"
    model_dir: str = "models"
    default_model: str = "qwen2.5-1.5b"
    n_ctx: int = 2048
    n_batch: int = 512
    n_threads: int = 4
    n_gpu_layers: int = 0
    # transformers backend only
    quantization: str = "none"
    device_map: str = "cpu"

    @property
    def resolved_model_dir(self) -> Path:
        """Return the model directory as a Path, expanding ``~``."""
        return Path(os.path.expanduser(self.model_dir))


@dataclass(frozen=True)
class GenerationConfig:
    """Decode-loop and labelling parameters."""

    max_output_tokens: int = 40
    reserved_context_margin: int = 100
    max_ingredient_chars: int = 2000
    strict_labels: bool = True


@dataclass(frozen=True)
class LoggingConfig:
    """Logging configuration."""

    level: str = "INFO"
    log_dir: str = "logs"


@dataclass(frozen=True)
class AllergenSLMConfig:
    """Root configuration object."""

    engine: EngineConfig = field(default_factory=EngineConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


# ──────────────────────────────────────────────
# Loader
# ──────────────────────────────────────────────


def load_config(config_path: Path | str | None = None) -> AllergenSLMConfig:
    """
    Load, validate, and return an :class:`AllergenSLMConfig`.

    The search order for the config file is:

    1. *config_path* argument (if provided)
    2. ``ALLERGEN_SLM_CONFIG`` environment variable
    3. ``config/allergen_slm.yaml`` in the project root
    4. Built-in defaults (no file required)

    Args:
        config_path: Optional path to a YAML file.

    Returns:
        A fully populated, frozen :class:`AllergenSLMConfig`.

    Raises:
        ValueError: If a YAML field has an invalid type or value.
        FileNotFoundError: If an explicitly given path does not exist.
    """
    resolved_path: Path | None = None

    if config_path is not None:
        resolved_path = Path(config_path)
        if not resolved_path.exists():
            raise FileNotFoundError(f"Config file not found: {resolved_path}")
    elif "ALLERGEN_SLM_CONFIG" in os.environ:
        resolved_path = Path(os.environ["ALLERGEN_SLM_CONFIG"])
        if not resolved_path.exists():
            raise FileNotFoundError(
                f"ALLERGEN_SLM_CONFIG points to missing file: {resolved_path}"
            )
    else:
        here = Path(__file__).resolve()
        candidate = here.parent.parent.parent / "config" / "allergen_slm.yaml"
        if candidate.exists():
            resolved_path = candidate

    raw: dict = {}
    if resolved_path is not None:
        logger.info("Loading config from: %s", resolved_path)
        with resolved_path.open("r", encoding="utf-8") as fh:
            loaded = yaml.safe_load(fh) or {}
        if not isinstance(loaded, dict):
            raise ValueError(f"Config file must be a YAML mapping, got: {type(loaded)}")
        raw = loaded
    else:
        logger.info("No config file found — using built-in defaults")

    try:
        engine_cfg = EngineConfig(**(raw.get("engine") or {}))
        gen_cfg = GenerationConfig(**(raw.get("generation") or {}))
        log_cfg = LoggingConfig(**(raw.get("logging") or {}))
    except TypeError as exc:
        raise ValueError(f"Invalid config value: {exc}") from exc

    _validate_config(engine_cfg, gen_cfg)

    config = AllergenSLMConfig(engine=engine_cfg, generation=gen_cfg, logging=log_cfg)
    logger.debug("Config loaded: %s", config)
    return config


def _validate_config(engine: EngineConfig, generation: GenerationConfig) -> None:
    """
    Validate cross-field constraints.

    Raises:
        ValueError: If any configured value violates a hard constraint.
    """
    if engine.backend not in _BACKENDS:
        raise ValueError(
            f"engine.backend must be one of {sorted(_BACKENDS)}, got '{engine.backend}'"
        )
    if engine.quantization not in _QUANTIZATIONS:
        raise ValueError(
            f"engine.quantization must be 'nf4', 'int8', or 'none', got '{engine.quantization}'"
        )
    if engine.n_ctx <= 0 or engine.n_batch <= 0 or engine.n_threads <= 0:
        raise ValueError("engine.n_ctx, engine.n_batch and engine.n_threads must be positive")
    if not (1 <= generation.max_output_tokens <= 512):
        raise ValueError(
            f"generation.max_output_tokens must be in [1, 512], got {generation.max_output_tokens}"
        )
    if generation.reserved_context_margin < 0:
        raise ValueError("generation.reserved_context_margin must be non-negative")
    if generation.reserved_context_margin >= engine.n_ctx:
        raise ValueError(
            "generation.reserved_context_margin must be smaller than engine.n_ctx "
            f"({generation.reserved_context_margin} >= {engine.n_ctx})"
        )
    if generation.max_ingredient_chars <= 0:
        raise ValueError("generation.max_ingredient_chars must be positive")
