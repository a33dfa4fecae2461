"""
allergen_slm/llm/hf_backend.py — torch/transformers engine exposing the same
primitives as llama.cpp.

Loads a causal LM checkpoint (local directory or hub identifier) with
``AutoModelForCausalLM`` and drives it one forward pass at a time, keeping the
``past_key_values`` cache as the decode state. Optional bitsandbytes
quantization follows the same fallback ladder as the GPU loader:

1. NF4 4-bit  (``engine.quantization: nf4``)
2. 8-bit      (``engine.quantization: int8`` or NF4 config creation failure)
3. none       (default, or bitsandbytes not installed)

torch and transformers are imported lazily so the rest of the package (and the
test-suite) never pays their import cost.
"""

from __future__ import annotations

import gc
import time
from typing import Any, Optional, Sequence, Tuple

import numpy as np

from allergen_slm.core.config import EngineConfig
from allergen_slm.core.logger import get_logger
from allergen_slm.llm.backend import ContextHandle, InferenceBackend, ModelHandle

# Turn-end tokens treated as end-of-generation when the vocabulary has them.
_EOG_TOKEN_STRINGS: tuple[str, ...] = ("<|im_end|>", "<end_of_turn>", "<|eot_id|>", "<|end|>")

# Piece prefixes marking a leading space (SentencePiece / byte-level BPE).
_SPACE_MARKERS: tuple[str, ...] = ("▁", "Ġ")

# Minimum free VRAM (GB) required to place the model on the GPU.
_MIN_VRAM_GB: float = 2.0


class HFModel(ModelHandle):
    """A transformers model and tokenizer pair."""

    def __init__(self, model: Any, tokenizer: Any, identifier: str) -> None:
        self.model = model
        self.tokenizer = tokenizer
        self.identifier = identifier
        self._eog_ids = _collect_eog_ids(model, tokenizer)

    @property
    def n_vocab(self) -> int:
        return int(self.model.config.vocab_size)

    def tokenize(
        self,
        text: str,
        add_special: bool,
        parse_special: bool,
        buffer: Optional[list[int]] = None,
    ) -> int:
        ids = self.tokenizer(
            text,
            add_special_tokens=add_special,
            split_special_tokens=not parse_special,
        )["input_ids"]
        if buffer is None or len(buffer) < len(ids):
            return -len(ids)
        buffer[: len(ids)] = ids
        return len(ids)

    def is_end_of_generation(self, token: int) -> bool:
        return token in self._eog_ids

    def token_to_text(self, token: int) -> bytes:
        piece = self.tokenizer.convert_ids_to_tokens(token)
        if piece is None:
            raise ValueError(f"Token id {token} is outside the vocabulary")
        text = self.tokenizer.convert_tokens_to_string([piece])
        # SentencePiece drops the leading space of a lone piece.
        if piece.startswith(_SPACE_MARKERS) and not text.startswith(" "):
            text = " " + text
        return text.encode("utf-8")

    def describe(self) -> dict[str, Any]:
        return {
            "vocab_size": self.n_vocab,
            "architecture": type(self.model).__name__,
            "dtype": str(getattr(self.model, "dtype", "?")),
        }

    def free(self) -> None:
        self.model = None
        self.tokenizer = None


class HFContext(ContextHandle):
    """Incremental decode state over ``past_key_values``."""

    def __init__(self, model: HFModel, n_ctx: int) -> None:
        self._model = model
        self._n_ctx = n_ctx
        self._past: Any = None
        self._n_past = 0
        self._last_scores: Optional[np.ndarray] = None

    @property
    def n_ctx(self) -> int:
        return self._n_ctx

    def decode(self, tokens: Sequence[int]) -> int:
        import torch  # type: ignore

        if not tokens or self._n_past + len(tokens) > self._n_ctx:
            return 1
        model = self._model.model
        try:
            device = next(model.parameters()).device
        except StopIteration:
            device = torch.device("cpu")
        input_ids = torch.tensor([list(tokens)], dtype=torch.long, device=device)
        try:
            with torch.no_grad():
                out = model(input_ids=input_ids, past_key_values=self._past, use_cache=True)
        except (RuntimeError, ValueError) as exc:
            get_logger().error("engine", "hf_decode_failed", {"error": str(exc)})
            return -1
        self._past = out.past_key_values
        self._n_past += len(tokens)
        self._last_scores = out.logits[0, -1].float().cpu().numpy()
        return 0

    def scores_for_last_position(self) -> np.ndarray:
        if self._last_scores is None:
            raise RuntimeError("No decoded position yet")
        return self._last_scores.copy()

    def clear(self) -> None:
        self._past = None
        self._n_past = 0
        self._last_scores = None

    def free(self) -> None:
        self.clear()
        self._model = None  # type: ignore[assignment]


class TransformersBackend(InferenceBackend):
    """HF transformers engine."""

    name = "transformers"

    def load_model(self, model_path: str, config: EngineConfig) -> Optional[HFModel]:
        log = get_logger()
        import torch  # type: ignore
        from transformers import AutoModelForCausalLM, AutoTokenizer  # type: ignore

        device_map = _check_hardware(config, log)
        bnb_config, quant_label = _build_quant_config(config.quantization, log)

        load_kwargs: dict = {
            "device_map": device_map,
            "torch_dtype": torch.float32 if device_map == "cpu" else torch.float16,
            "low_cpu_mem_usage": True,
        }
        if bnb_config is not None:
            load_kwargs["quantization_config"] = bnb_config

        log.info(
            "engine",
            "hf_model_loading",
            {"model_path": model_path, "quant": quant_label, "device_map": device_map},
        )
        t0 = time.monotonic()
        try:
            tokenizer = AutoTokenizer.from_pretrained(model_path, use_fast=True)
            model = AutoModelForCausalLM.from_pretrained(model_path, **load_kwargs)
        except (OSError, ValueError) as exc:
            log.error("engine", "hf_model_open_failed", {"model_path": model_path, "error": str(exc)})
            return None
        model.eval()
        log.perf(
            "engine",
            "hf_model_loaded",
            latency_ms=(time.monotonic() - t0) * 1000.0,
            data={"model_path": model_path, "quant": quant_label},
        )
        return HFModel(model, tokenizer, model_path)

    def new_context(self, model: ModelHandle, config: EngineConfig) -> Optional[HFContext]:
        assert isinstance(model, HFModel)
        max_pos = getattr(model.model.config, "max_position_embeddings", None) or config.n_ctx
        return HFContext(model, min(config.n_ctx, int(max_pos)))

    def shutdown(self) -> None:
        try:
            import torch  # type: ignore

            if torch.cuda.is_available():
                torch.cuda.empty_cache()
        except ImportError:
            pass
        gc.collect()


# ── Private helpers ───────────────────────────────────────────────────────────

def _collect_eog_ids(model: Any, tokenizer: Any) -> frozenset[int]:
    """EOS id(s) from the tokenizer and generation config, plus known turn-end tokens."""
    ids: set[int] = set()
    if tokenizer.eos_token_id is not None:
        ids.add(int(tokenizer.eos_token_id))
    gen_eos = getattr(getattr(model, "generation_config", None), "eos_token_id", None)
    if isinstance(gen_eos, int):
        ids.add(gen_eos)
    elif isinstance(gen_eos, (list, tuple)):
        ids.update(int(t) for t in gen_eos)
    vocab = tokenizer.get_vocab()
    for marker in _EOG_TOKEN_STRINGS:
        if marker in vocab:
            ids.add(int(vocab[marker]))
    return frozenset(ids)


def _check_hardware(config: EngineConfig, log) -> str:  # type: ignore[no-untyped-def]
    """
    Resolve ``device_map``: the configured value, downgraded to ``'cpu'`` when
    no CUDA device is present or free VRAM is below the threshold.
    """
    if config.device_map == "cpu":
        return "cpu"
    import torch  # type: ignore

    if not torch.cuda.is_available():
        log.info("engine", "vram_check", {"cuda": False, "device_map": "cpu"})
        return "cpu"
    free_bytes, total_bytes = torch.cuda.mem_get_info(device=0)
    free_gb = free_bytes / (1024 ** 3)
    if free_gb < _MIN_VRAM_GB:
        log.warn(
            "engine",
            "vram_insufficient",
            {
                "free_gb": round(free_gb, 2),
                "total_gb": round(total_bytes / (1024 ** 3), 2),
                "threshold_gb": _MIN_VRAM_GB,
                "fallback": "device_map=cpu",
            },
        )
        return "cpu"
    return config.device_map


def _build_quant_config(quantization: str, log) -> Tuple[Optional[object], str]:  # type: ignore[no-untyped-def]
    """
    Build a ``BitsAndBytesConfig`` for *quantization*.

    Returns:
        ``(config, label)`` where *label* is ``'nf4_4bit'``, ``'int8'`` or
        ``'none'``.
    """
    if quantization == "none":
        return None, "none"
    try:
        import bitsandbytes  # noqa: F401
        import torch  # type: ignore
        from transformers import BitsAndBytesConfig  # type: ignore
    except ImportError as exc:
        log.warn("engine", "bitsandbytes_unavailable", {"error": str(exc), "fallback": "none"})
        return None, "none"

    if quantization == "nf4":
        try:
            config = BitsAndBytesConfig(
                load_in_4bit=True,
                bnb_4bit_quant_type="nf4",
                bnb_4bit_compute_dtype=torch.float16,
                bnb_4bit_use_double_quant=True,
            )
            return config, "nf4_4bit"
        except (ValueError, TypeError) as exc:
            log.warn("engine", "quant_4bit_failed", {"error": str(exc), "fallback": "int8"})
    return BitsAndBytesConfig(load_in_8bit=True), "int8"
