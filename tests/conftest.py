"""
tests/conftest.py — Scripted fake inference engine shared by the test suites.

No model is ever loaded. :class:`FakeModel` tokenizes by whitespace and maps
token ids to fixed text pieces; :class:`FakeContext` replays a script of token
ids by returning one-hot score vectors, and can be told to fail chosen decode
calls.
"""

from __future__ import annotations

from typing import Optional, Sequence

import numpy as np
import pytest

from allergen_slm.core.config import AllergenSLMConfig, EngineConfig
from allergen_slm.core.logger import configure_logger
from allergen_slm.llm.backend import ContextHandle, InferenceBackend, ModelHandle
from allergen_slm.llm.session import ModelSession

EOG_TOKEN = 0
N_VOCAB = 64


class FakeModel(ModelHandle):
    """Vocabulary side of the fake engine."""

    def __init__(
        self,
        pieces: dict[int, bytes],
        identifier: str = "qwen-fake.gguf",
        prompt_tokens: Optional[int] = None,
        fill_result: Optional[int] = None,
        bad_tokens: Sequence[int] = (),
    ) -> None:
        self.identifier = identifier
        self._pieces = pieces
        self._prompt_tokens = prompt_tokens
        self._fill_result = fill_result
        self._bad_tokens = set(bad_tokens)
        self.tokenize_calls: list[tuple[Optional[int], bool, bool]] = []
        self.freed = False
        self.release_log: list[str] = []

    def tokenize(self, text, add_special, parse_special, buffer=None):
        n = self._prompt_tokens if self._prompt_tokens is not None else len(text.split())
        self.tokenize_calls.append((None if buffer is None else len(buffer), add_special, parse_special))
        if buffer is None or len(buffer) < n:
            return -n
        if self._fill_result is not None:
            return self._fill_result
        for i in range(n):
            buffer[i] = (i % (N_VOCAB - 1)) + 1
        return n

    def is_end_of_generation(self, token):
        return token == EOG_TOKEN

    def token_to_text(self, token):
        if token in self._bad_tokens:
            raise ValueError(f"cannot render token {token}")
        return self._pieces.get(token, b"")

    @property
    def n_vocab(self):
        return N_VOCAB

    def describe(self):
        return {"vocab_size": N_VOCAB, "description": "fake 1M Q4"}

    def free(self):
        self.freed = True
        self.release_log.append("model")


class FakeContext(ContextHandle):
    """Decode side of the fake engine: replays *script* one token per step."""

    def __init__(
        self,
        script: Sequence[int],
        n_ctx: int = 2048,
        fail_calls: Sequence[int] = (),
    ) -> None:
        self._script = list(script)
        self._n_ctx = n_ctx
        self._fail_calls = set(fail_calls)
        self.decode_calls: list[list[int]] = []
        self.clear_count = 0
        self.freed = False
        self.release_log: list[str] = []
        self._step = 0

    @property
    def n_ctx(self):
        return self._n_ctx

    def decode(self, tokens):
        call = len(self.decode_calls)
        self.decode_calls.append(list(tokens))
        if call in self._fail_calls:
            return 1
        if call > 0:
            self._step += 1
        return 0

    def scores_for_last_position(self):
        token = self._script[self._step] if self._step < len(self._script) else EOG_TOKEN
        scores = np.zeros(N_VOCAB, dtype=np.float32)
        scores[token] = 10.0
        return scores

    def clear(self):
        self.clear_count += 1
        self.decode_calls.clear()
        self._step = 0

    def free(self):
        self.freed = True
        self.release_log.append("context")


class FakeBackend(InferenceBackend):
    """
    Hands out the prepared model/context, ``None`` to simulate failures, or
    raises ``load_error`` / ``context_error`` when set.

    ``release_log`` is shared with the model and context and records the
    order in which ``free``/``shutdown`` ran.
    """

    name = "fake"

    def __init__(
        self,
        model: FakeModel,
        context: FakeContext,
        fail_load: bool = False,
        fail_context: bool = False,
        load_error: Optional[Exception] = None,
        context_error: Optional[Exception] = None,
    ) -> None:
        self.model = model
        self.context = context
        self.fail_load = fail_load
        self.fail_context = fail_context
        self.load_error = load_error
        self.context_error = context_error
        self.shutdown_count = 0
        self.load_count = 0
        self.release_log: list[str] = []
        model.release_log = self.release_log
        context.release_log = self.release_log

    def load_model(self, model_path, config):
        self.load_count += 1
        if self.load_error is not None:
            raise self.load_error
        return None if self.fail_load else self.model

    def new_context(self, model, config):
        if self.context_error is not None:
            raise self.context_error
        return None if self.fail_context else self.context

    def shutdown(self):
        self.shutdown_count += 1
        self.release_log.append("backend")


def scripted_engine(pieces: Sequence[str], **context_kwargs) -> tuple[FakeModel, FakeContext]:
    """
    Build a model/context pair that generates *pieces* in order, then EOG.

    Token ``i + 1`` renders ``pieces[i]``.
    """
    vocab = {i + 1: piece.encode("utf-8") for i, piece in enumerate(pieces)}
    model = FakeModel(vocab)
    context = FakeContext([i + 1 for i in range(len(pieces))], **context_kwargs)
    return model, context


def loaded_session(
    backend: FakeBackend,
    model_path: str = "models/qwen-fake.gguf",
    config: Optional[EngineConfig] = None,
) -> ModelSession:
    session = ModelSession(config or EngineConfig(), backend_factory=lambda name, path: backend)
    session.load(model_path)
    return session


@pytest.fixture(autouse=True)
def _isolated_logs(tmp_path, monkeypatch):
    """Send JSONL logs to a per-test directory."""
    monkeypatch.delenv("ALLERGEN_SLM_CONFIG", raising=False)
    configure_logger(tmp_path / "logs")
    yield


@pytest.fixture
def default_config() -> AllergenSLMConfig:
    return AllergenSLMConfig()
