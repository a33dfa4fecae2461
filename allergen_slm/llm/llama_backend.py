"""
allergen_slm/llm/llama_backend.py — llama.cpp engine via llama-cpp-python.

Uses the low-level ctypes bindings (``llama_cpp.llama_*``) rather than the
high-level ``Llama`` wrapper: the generation loop needs the raw primitives
(two-pass tokenize, batch decode, last-position logits, EOG classification,
token → piece) to run its own greedy selection and stop conditions.

``llama_cpp`` is imported on :meth:`LlamaCppBackend.init`, never at module
import time.
"""

from __future__ import annotations

import ctypes
import logging
from typing import Any, Optional, Sequence

import numpy as np

from allergen_slm.core.config import EngineConfig
from allergen_slm.llm.backend import ContextHandle, InferenceBackend, ModelHandle

logger = logging.getLogger(__name__)

# Longest piece llama.cpp renders for a single token in practice.
_PIECE_BUF_SIZE = 256


def _first_attr(lib: Any, *names: str) -> Any:
    """Return the first binding in *names* that this llama-cpp-python build exports."""
    for name in names:
        fn = getattr(lib, name, None)
        if fn is not None:
            return fn
    raise AttributeError(f"llama_cpp exports none of: {', '.join(names)}")


class LlamaModel(ModelHandle):
    """``llama_model*`` plus its ``llama_vocab*``."""

    def __init__(self, lib: Any, model_ptr: Any, identifier: str) -> None:
        self._lib = lib
        self._model = model_ptr
        self._vocab = lib.llama_model_get_vocab(model_ptr)
        self._n_vocab = int(lib.llama_vocab_n_tokens(self._vocab))
        self.identifier = identifier

    @property
    def raw(self) -> Any:
        """The underlying ``llama_model*``."""
        return self._model

    @property
    def n_vocab(self) -> int:
        return self._n_vocab

    def tokenize(
        self,
        text: str,
        add_special: bool,
        parse_special: bool,
        buffer: Optional[list[int]] = None,
    ) -> int:
        data = text.encode("utf-8")
        if buffer is None:
            out, n_max = None, 0
        else:
            out = (self._lib.llama_token * len(buffer))()
            n_max = len(buffer)
        n = int(
            self._lib.llama_tokenize(
                self._vocab, data, len(data), out, n_max, add_special, parse_special
            )
        )
        if buffer is not None and n > 0:
            buffer[:n] = out[:n]
        return n

    def is_end_of_generation(self, token: int) -> bool:
        return bool(self._lib.llama_vocab_is_eog(self._vocab, token))

    def token_to_text(self, token: int) -> bytes:
        buf = ctypes.create_string_buffer(_PIECE_BUF_SIZE)
        n = int(self._lib.llama_token_to_piece(self._vocab, token, buf, _PIECE_BUF_SIZE, 0, False))
        if n < 0:
            raise ValueError(f"llama_token_to_piece failed for token {token} ({n})")
        return buf.raw[:n]

    def describe(self) -> dict[str, Any]:
        info: dict[str, Any] = {"vocab_size": self._n_vocab}
        desc = ctypes.create_string_buffer(256)
        if int(self._lib.llama_model_desc(self._model, desc, 256)) > 0:
            info["description"] = desc.value.decode("utf-8", errors="replace")
        return info

    def free(self) -> None:
        _first_attr(self._lib, "llama_model_free", "llama_free_model")(self._model)
        self._model = None


class LlamaContext(ContextHandle):
    """``llama_context*`` with chunked batch decode."""

    def __init__(self, lib: Any, ctx_ptr: Any, n_vocab: int, n_batch: int) -> None:
        self._lib = lib
        self._ctx = ctx_ptr
        self._n_vocab = n_vocab
        self._n_batch = n_batch

    @property
    def n_ctx(self) -> int:
        return int(self._lib.llama_n_ctx(self._ctx))

    def decode(self, tokens: Sequence[int]) -> int:
        # llama_decode rejects batches larger than n_batch; split long prompts.
        for start in range(0, len(tokens), self._n_batch):
            chunk = tokens[start:start + self._n_batch]
            arr = (self._lib.llama_token * len(chunk))(*chunk)
            batch = self._lib.llama_batch_get_one(arr, len(chunk))
            status = int(self._lib.llama_decode(self._ctx, batch))
            if status != 0:
                return status
        return 0

    def scores_for_last_position(self) -> np.ndarray:
        ptr = self._lib.llama_get_logits_ith(self._ctx, -1)
        return np.ctypeslib.as_array(ptr, shape=(self._n_vocab,)).copy()

    def clear(self) -> None:
        lib = self._lib
        if hasattr(lib, "llama_memory_clear"):
            lib.llama_memory_clear(lib.llama_get_memory(self._ctx), True)
        else:
            _first_attr(lib, "llama_kv_self_clear", "llama_kv_cache_clear")(self._ctx)

    def free(self) -> None:
        self._lib.llama_free(self._ctx)
        self._ctx = None


class LlamaCppBackend(InferenceBackend):
    """llama.cpp engine for GGUF model files (CPU by default, ``n_gpu_layers=0``)."""

    name = "llama_cpp"

    def __init__(self) -> None:
        self._lib: Any = None

    def init(self) -> None:
        """
        Import llama-cpp-python and initialise the ggml backend.

        Raises:
            ImportError: If llama-cpp-python is not installed.
        """
        if self._lib is not None:
            return
        import llama_cpp  # type: ignore

        llama_cpp.llama_backend_init()
        self._lib = llama_cpp
        logger.info("llama.cpp backend initialised (llama-cpp-python %s)",
                    getattr(llama_cpp, "__version__", "?"))

    def load_model(self, model_path: str, config: EngineConfig) -> Optional[LlamaModel]:
        lib = self._lib
        params = lib.llama_model_default_params()
        params.n_gpu_layers = config.n_gpu_layers
        load = _first_attr(lib, "llama_model_load_from_file", "llama_load_model_from_file")
        model_ptr = load(model_path.encode("utf-8"), params)
        if not model_ptr:
            return None
        return LlamaModel(lib, model_ptr, model_path)

    def new_context(self, model: ModelHandle, config: EngineConfig) -> Optional[LlamaContext]:
        assert isinstance(model, LlamaModel)
        lib = self._lib
        params = lib.llama_context_default_params()
        params.n_ctx = config.n_ctx
        params.n_batch = config.n_batch
        params.n_threads = config.n_threads
        params.n_threads_batch = config.n_threads
        create = _first_attr(lib, "llama_init_from_model", "llama_new_context_with_model")
        ctx_ptr = create(model.raw, params)
        if not ctx_ptr:
            return None
        return LlamaContext(lib, ctx_ptr, model.n_vocab, config.n_batch)

    def shutdown(self) -> None:
        if self._lib is None:
            return
        self._lib.llama_backend_free()
        self._lib = None
