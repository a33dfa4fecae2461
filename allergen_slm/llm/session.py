"""
allergen_slm/llm/session.py — ModelSession: owned model/context handles and
their load/unload state machine.

States::

    UNLOADED ──load()──► LOADING ──► LOADED ──unload()──► UNLOADED
                            │
                            └── ModelLoadError / ContextCreationError ──► UNLOADED

``load()`` is a no-op when already loaded; ``unload()`` is a no-op when already
unloaded. A failed load releases whatever it acquired before raising. The
prompt template is chosen from the model identifier once per load and cached.

The session is not safe for concurrent generation: a decode mutates the
context in place. Callers serialise ``load``/``unload``/generation (see
:class:`~allergen_slm.service.AllergenPredictor`).
"""

from __future__ import annotations

import threading
import time
from enum import Enum
from typing import Any, Callable, Optional

from allergen_slm.core.config import EngineConfig
from allergen_slm.core.errors import ContextCreationError, ModelLoadError
from allergen_slm.core.logger import get_logger
from allergen_slm.llm import prompt_templates
from allergen_slm.llm.backend import (
    ContextHandle,
    InferenceBackend,
    ModelHandle,
    create_backend,
)
from allergen_slm.llm.metrics import capture_memory
from allergen_slm.llm.prompt_templates import PromptTemplate

BackendFactory = Callable[[str, str], InferenceBackend]


class SessionState(Enum):
    """Lifecycle state of a :class:`ModelSession`."""

    UNLOADED = "UNLOADED"
    LOADING = "LOADING"
    LOADED = "LOADED"


class ModelSession:
    """
    Holds one loaded model and its inference context.

    Invariant: ``context_handle`` is not ``None`` iff the session is
    ``LOADED`` and ``handle`` is not ``None``.

    Args:
        config: Engine configuration (backend, context window, batch, threads).
        backend_factory: ``(backend_name, model_path) → InferenceBackend``;
            defaults to :func:`~allergen_slm.llm.backend.create_backend`.
    """

    def __init__(
        self,
        config: EngineConfig,
        backend_factory: Optional[BackendFactory] = None,
    ) -> None:
        self._cfg = config
        self._backend_factory = backend_factory or create_backend
        self._lock = threading.RLock()
        self._state = SessionState.UNLOADED
        self._backend: Optional[InferenceBackend] = None
        self._handle: Optional[ModelHandle] = None
        self._context: Optional[ContextHandle] = None
        self._model_identifier: str = ""
        self._template: PromptTemplate = prompt_templates.DEFAULT_TEMPLATE

    # ──────────────────────────────────────────
    # State
    # ──────────────────────────────────────────

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def loaded(self) -> bool:
        return self._state is SessionState.LOADED

    @property
    def handle(self) -> Optional[ModelHandle]:
        return self._handle

    @property
    def context_handle(self) -> Optional[ContextHandle]:
        return self._context

    @property
    def model_identifier(self) -> str:
        return self._model_identifier

    @property
    def template(self) -> PromptTemplate:
        """Prompt template selected at load time."""
        return self._template

    @property
    def context_window_size(self) -> int:
        if self._context is not None:
            return self._context.n_ctx
        return self._cfg.n_ctx

    @property
    def batch_size(self) -> int:
        return self._cfg.n_batch

    @property
    def thread_count(self) -> int:
        return self._cfg.n_threads

    @property
    def backend_name(self) -> str:
        return self._backend.name if self._backend is not None else ""

    # ──────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────

    def load(self, model_path: str) -> None:
        """
        Open *model_path* and create an inference context for it.

        Idempotent: returns immediately when the session is already loaded.
        Any failure leaves the session ``UNLOADED`` with the model handle and
        backend resources released.

        Raises:
            ModelLoadError: If the engine is unavailable or the model cannot be
                opened or parsed.
            ContextCreationError: If the context cannot be created. The model
                handle is released first.
        """
        log = get_logger()
        with self._lock:
            if self._state is SessionState.LOADED:
                log.info("session", "load_noop", {"model": self._model_identifier})
                return

            self._state = SessionState.LOADING
            log.info("session", "load_start", {"model_path": model_path, "backend": self._cfg.backend})
            t0 = time.monotonic()

            backend: Optional[InferenceBackend] = None
            handle: Optional[ModelHandle] = None
            loaded = False
            try:
                try:
                    backend = self._backend_factory(self._cfg.backend, model_path)
                    backend.init()
                except Exception as exc:  # noqa: BLE001
                    log.error("session", "backend_unavailable", {"error": str(exc)})
                    raise ModelLoadError(f"Inference backend unavailable: {exc}") from exc

                try:
                    handle = backend.load_model(model_path, self._cfg)
                except Exception as exc:  # noqa: BLE001
                    log.error("session", "model_open_raised", {"kind": type(exc).__name__, "error": str(exc)})
                    raise ModelLoadError(f"Failed to load model from {model_path!r}: {exc}") from exc
                if handle is None:
                    log.error("session", "model_load_failed", {"model_path": model_path})
                    raise ModelLoadError(f"Failed to load model from {model_path!r}")

                try:
                    context = backend.new_context(handle, self._cfg)
                except Exception as exc:  # noqa: BLE001
                    log.error("session", "context_create_raised", {"kind": type(exc).__name__, "error": str(exc)})
                    raise ContextCreationError(f"Failed to create context for {model_path!r}: {exc}") from exc
                if context is None:
                    log.error("session", "context_creation_failed", {"model_path": model_path})
                    raise ContextCreationError(f"Failed to create context for {model_path!r}")

                self._backend = backend
                self._handle = handle
                self._context = context
                self._model_identifier = model_path
                self._template = prompt_templates.select(model_path)
                self._state = SessionState.LOADED
                loaded = True
            finally:
                if not loaded:
                    _release_partial(handle, backend)
                    self._state = SessionState.UNLOADED

            log.perf(
                "session",
                "model_loaded",
                latency_ms=(time.monotonic() - t0) * 1000.0,
                data={
                    "model_path": model_path,
                    "backend": backend.name,
                    "family": self._template.family.value,
                    "n_ctx": context.n_ctx,
                    "rss_kb": capture_memory().rss_kb,
                },
            )

    def unload(self) -> None:
        """
        Release the context, then the model, then backend resources.

        Safe to call when nothing is loaded.
        """
        log = get_logger()
        with self._lock:
            if self._state is SessionState.UNLOADED and self._handle is None:
                log.info("session", "unload_noop", {"reason": "model_not_loaded"})
                return

            log.info("session", "unload_start", {"model": self._model_identifier})
            if self._context is not None:
                self._context.free()
                self._context = None
            if self._handle is not None:
                self._handle.free()
                self._handle = None
            if self._backend is not None:
                self._backend.shutdown()
                self._backend = None

            self._model_identifier = ""
            self._template = prompt_templates.DEFAULT_TEMPLATE
            self._state = SessionState.UNLOADED
            log.info("session", "unload_complete", {})

    def health_check(self) -> bool:
        """True iff both the model handle and the context are present."""
        return self._handle is not None and self._context is not None

    def describe(self) -> dict[str, Any]:
        """Diagnostic key/values of the loaded model."""
        if not self.health_check():
            return {"loaded": False}
        assert self._handle is not None
        info: dict[str, Any] = {
            "loaded": True,
            "model": self._model_identifier,
            "backend": self.backend_name,
            "family": self._template.family.value,
            "context_size": self.context_window_size,
            "batch_size": self.batch_size,
            "threads": self.thread_count,
        }
        info.update(self._handle.describe())
        return info


def _release_partial(handle: Optional[ModelHandle], backend: Optional[InferenceBackend]) -> None:
    """Free what a failed load acquired; release errors are logged, not raised."""
    log = get_logger()
    if handle is not None:
        try:
            handle.free()
        except Exception as exc:  # noqa: BLE001
            log.warn("session", "partial_free_failed", {"what": "model", "error": str(exc)})
    if backend is not None:
        try:
            backend.shutdown()
        except Exception as exc:  # noqa: BLE001
            log.warn("session", "partial_free_failed", {"what": "backend", "error": str(exc)})


# ──────────────────────────────────────────────────────────────
# Process-wide session
# ──────────────────────────────────────────────────────────────

_instance: Optional[ModelSession] = None
_instance_lock = threading.Lock()


def get_session(config: Optional[EngineConfig] = None) -> ModelSession:
    """
    Return the process-wide :class:`ModelSession`, creating it on first use.

    *config* only matters for the first call; later calls return the existing
    session unchanged.
    """
    global _instance
    if _instance is None:
        with _instance_lock:
            if _instance is None:
                _instance = ModelSession(config or EngineConfig())
    return _instance
