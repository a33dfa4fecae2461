"""
allergen_slm/llm/backend.py — Engine primitives consumed by the generation loop.

The controller never talks to llama.cpp or transformers directly. A backend
opens a :class:`ModelHandle` (vocabulary side: tokenize, end-of-generation
classification, token → text) and a :class:`ContextHandle` on top of it
(decode state: decode a batch, read the scores of the last position).

Concrete engines:

* :class:`~allergen_slm.llm.llama_backend.LlamaCppBackend` — GGUF files
* :class:`~allergen_slm.llm.hf_backend.TransformersBackend` — HF checkpoints
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional, Sequence

import numpy as np

from allergen_slm.core.config import EngineConfig


class ModelHandle(ABC):
    """A loaded model: weights plus vocabulary."""

    identifier: str = ""

    @abstractmethod
    def tokenize(
        self,
        text: str,
        add_special: bool,
        parse_special: bool,
        buffer: Optional[list[int]] = None,
    ) -> int:
        """
        Tokenize *text* into *buffer*.

        When *buffer* is ``None`` or too small, nothing is written and the
        negated required size is returned. Otherwise the first ``n`` slots of
        *buffer* are filled and ``n`` is returned.
        """

    @abstractmethod
    def is_end_of_generation(self, token: int) -> bool:
        """True if *token* marks the end of generation (EOS, EOT, …)."""

    @abstractmethod
    def token_to_text(self, token: int) -> bytes:
        """
        Return the raw text fragment for *token*.

        Raises:
            ValueError: If the engine cannot render the token.
        """

    @property
    @abstractmethod
    def n_vocab(self) -> int:
        """Vocabulary size (length of every score vector)."""

    def describe(self) -> dict[str, Any]:
        """Diagnostic key/values for ``get_model_info``."""
        return {"vocab_size": self.n_vocab}

    @abstractmethod
    def free(self) -> None:
        """Release the model weights."""


class ContextHandle(ABC):
    """Decode state of one model: KV cache plus the logits of the last decode."""

    @property
    @abstractmethod
    def n_ctx(self) -> int:
        """Context window size in tokens."""

    @abstractmethod
    def decode(self, tokens: Sequence[int]) -> int:
        """
        Append *tokens* to the decode state and evaluate them.

        Returns:
            Engine status, ``0`` on success.
        """

    @abstractmethod
    def scores_for_last_position(self) -> np.ndarray:
        """Dense score vector over the vocabulary for the last decoded position."""

    @abstractmethod
    def clear(self) -> None:
        """Drop every decoded position so the next decode starts at position 0."""

    @abstractmethod
    def free(self) -> None:
        """Release the context."""


class InferenceBackend(ABC):
    """Factory and process-level resources of one inference engine."""

    name: str = "abstract"

    def init(self) -> None:
        """Acquire process-level backend resources (no-op by default)."""

    @abstractmethod
    def load_model(self, model_path: str, config: EngineConfig) -> Optional[ModelHandle]:
        """Open the model at *model_path*; ``None`` if it cannot be opened or parsed."""

    @abstractmethod
    def new_context(self, model: ModelHandle, config: EngineConfig) -> Optional[ContextHandle]:
        """Create a decode context for *model*; ``None`` on failure."""

    def shutdown(self) -> None:
        """Release process-level backend resources (no-op by default)."""


def resolve_backend_name(requested: str, model_path: str) -> str:
    """
    Map ``engine.backend`` to a concrete backend name.

    ``auto`` picks ``llama_cpp`` for ``.gguf`` files and ``transformers`` for
    everything else (local checkpoint directories or hub identifiers).
    """
    if requested != "auto":
        return requested
    return "llama_cpp" if model_path.lower().endswith(".gguf") else "transformers"


def create_backend(requested: str, model_path: str) -> InferenceBackend:
    """
    Instantiate the backend for *model_path*.

    Engine libraries are imported lazily by the backends themselves, so this
    never imports llama.cpp or torch.

    Raises:
        ValueError: If *requested* names no known backend.
    """
    name = resolve_backend_name(requested, model_path)
    if name == "llama_cpp":
        from allergen_slm.llm.llama_backend import LlamaCppBackend

        return LlamaCppBackend()
    if name == "transformers":
        from allergen_slm.llm.hf_backend import TransformersBackend

        return TransformersBackend()
    raise ValueError(f"Unknown inference backend: {requested!r}")
