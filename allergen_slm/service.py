"""
allergen_slm/service.py — Host-facing allergen prediction surface.

:class:`AllergenPredictor` wires the pipeline::

    ingredients ─► PromptTemplate (cached on the session) ─► prompt
        ─► GenerationController (+ MetricsRecorder) ─► raw text
        ─► OutputSanitizer ─► label ─► wire string

and exposes it through the calls a host application makes: ``load_model``,
``predict_allergens``, ``get_model_info``, ``unload_model``,
``is_model_healthy`` and ``clear_context``.

Wire format of ``predict_allergens``::

    TTFT_MS=<int>;ITPS=<int>;OTPS=<int>;OET_MS=<int>|<label-or-error>

Error results start with ``ERROR: `` and carry ``-1`` in all four fields.
Every path returns a well-formed string; no exception leaves this module.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from allergen_slm.core.config import AllergenSLMConfig, load_config
from allergen_slm.core.errors import AllergenSLMError, ModelNotLoadedError
from allergen_slm.core.logger import get_logger
from allergen_slm.llm import prompt_templates
from allergen_slm.llm.generator import GenerationController
from allergen_slm.llm.metrics import UNSET, MetricsRecord, MetricsRecorder
from allergen_slm.llm.sanitizer import OutputSanitizer
from allergen_slm.llm.session import ModelSession, get_session

ERROR_MARKER = "ERROR: "

_METRIC_KEYS: tuple[str, ...] = ("TTFT_MS", "ITPS", "OTPS", "OET_MS")


class GenerationRequest(BaseModel):
    """One labelling request."""

    ingredients_text: str
    max_output_tokens: int = Field(default=40, ge=1, le=512)

    @field_validator("ingredients_text", mode="before")
    @classmethod
    def coerce_text(cls, v: Any) -> str:
        """Accept ``None`` as empty text and stringify other scalars."""
        if v is None:
            return ""
        return v if isinstance(v, str) else str(v)


@dataclass(frozen=True)
class GenerationResult:
    """
    Outcome of one prediction.

    Attributes:
        metrics: Timing record (all ``-1`` on failure).
        label: Sanitized label, ``None`` on failure.
        error_kind: Error class name on failure.
        error_message: Human-readable error text on failure.
        stop_reason: Why the decode loop ended (successful calls only).
    """

    metrics: MetricsRecord
    label: Optional[str] = None
    error_kind: Optional[str] = None
    error_message: str = ""
    stop_reason: Optional[str] = None

    @classmethod
    def failure(cls, exc: Exception) -> "GenerationResult":
        kind = exc.kind if isinstance(exc, AllergenSLMError) else type(exc).__name__
        return cls(metrics=MetricsRecord.sentinel(), error_kind=kind, error_message=str(exc))

    @property
    def is_error(self) -> bool:
        return self.error_kind is not None

    def encode(self) -> str:
        """Render the wire string."""
        if self.is_error:
            return encode_result(MetricsRecord.sentinel(), f"{ERROR_MARKER}{self.error_kind}: {self.error_message}")
        return encode_result(self.metrics, self.label or "none")


@dataclass(frozen=True)
class ParsedResult:
    """A wire string split back into its parts."""

    ttft_ms: int
    itps: int
    otps: int
    oet_ms: int
    payload: str

    @property
    def is_error(self) -> bool:
        return self.payload.startswith(ERROR_MARKER)

    @property
    def label(self) -> Optional[str]:
        return None if self.is_error else self.payload


def encode_result(metrics: MetricsRecord, payload: str) -> str:
    """Join *metrics* and *payload* into the wire format."""
    return (
        f"TTFT_MS={metrics.ttft_ms};ITPS={metrics.input_tokens_per_second};"
        f"OTPS={metrics.output_tokens_per_second};OET_MS={metrics.total_elapsed_ms}|{payload}"
    )


def parse_result(wire: str) -> ParsedResult:
    """
    Split a wire string: once on the first ``|``, the metrics segment on ``;``,
    each field on ``=``. Missing or non-integer fields read as ``-1``; a string
    without ``|`` is treated as payload only.
    """
    meta, sep, payload = wire.partition("|")
    if not sep:
        meta, payload = "", wire
    values = dict.fromkeys(_METRIC_KEYS, UNSET)
    for field in meta.split(";"):
        key, eq, raw = field.partition("=")
        key = key.strip()
        if not eq or key not in values:
            continue
        try:
            values[key] = int(raw.strip())
        except ValueError:
            values[key] = UNSET
    return ParsedResult(
        ttft_ms=values["TTFT_MS"],
        itps=values["ITPS"],
        otps=values["OTPS"],
        oet_ms=values["OET_MS"],
        payload=payload,
    )


class AllergenPredictor:
    """
    Allergen labelling over one :class:`ModelSession`.

    All public calls share one lock: at most one generation runs at a time and
    load/unload never overlap a generation.

    Args:
        config: Full configuration; :func:`load_config` when omitted.
        session: Session to drive; the process-wide session when omitted.
    """

    def __init__(
        self,
        config: Optional[AllergenSLMConfig] = None,
        session: Optional[ModelSession] = None,
    ) -> None:
        self._cfg = config or load_config()
        self._session = session or get_session(self._cfg.engine)
        self._controller = GenerationController(self._cfg.generation.reserved_context_margin)
        self._sanitizer = OutputSanitizer(strict=self._cfg.generation.strict_labels)
        self._lock = threading.Lock()

    @property
    def session(self) -> ModelSession:
        return self._session

    # ──────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────

    def load_model(self, asset_handle: Optional[Path | str], model_path: str) -> bool:
        """
        Load the model at *model_path*.

        Args:
            asset_handle: Directory relative model paths are resolved against,
                or ``None``.
            model_path: GGUF file, checkpoint directory or hub identifier.

        Returns:
            ``True`` once the session is loaded; ``False`` if loading failed
            (the session is back to ``UNLOADED``).
        """
        path = model_path
        if asset_handle is not None and not Path(model_path).is_absolute():
            candidate = Path(asset_handle) / model_path
            if candidate.exists():
                path = str(candidate)
        with self._lock:
            try:
                self._session.load(path)
            except AllergenSLMError as exc:
                get_logger().error("service", "load_model_failed", {"kind": exc.kind, "error": str(exc)})
                return False
            except Exception as exc:  # noqa: BLE001
                get_logger().error("service", "load_model_crashed", {"kind": type(exc).__name__, "error": str(exc)})
                return False
        return True

    def unload_model(self) -> None:
        with self._lock:
            self._session.unload()

    def is_model_healthy(self) -> bool:
        return self._session.health_check()

    def clear_context(self) -> None:
        """No-op: every generation already starts from an empty context."""
        get_logger().info("service", "clear_context_noop", {})

    def get_model_info(self) -> str:
        """Multi-line diagnostic text about the loaded model."""
        info = self._session.describe()
        if not info.get("loaded"):
            return "Model not loaded"
        lines = ["Model loaded: Yes"]
        lines.append(f"Model: {info['model']}")
        lines.append(f"Backend: {info['backend']}")
        lines.append(f"Prompt family: {info['family']}")
        lines.append(f"Context size: {info['context_size']}")
        lines.append(f"Vocab size: {info['vocab_size']}")
        if "description" in info:
            lines.append(f"Description: {info['description']}")
        return "\n".join(lines) + "\n"

    # ──────────────────────────────────────────
    # Prediction
    # ──────────────────────────────────────────

    def predict_allergens(self, ingredients: str) -> str:
        """Label *ingredients* and return the wire string."""
        return self.predict(ingredients).encode()

    def predict(self, ingredients: Optional[str]) -> GenerationResult:
        """Label *ingredients*; the structured form of :meth:`predict_allergens`."""
        log = get_logger()
        with self._lock:
            recorder = MetricsRecorder()
            recorder.start()
            try:
                request = GenerationRequest(
                    ingredients_text=self._truncate(ingredients),
                    max_output_tokens=self._cfg.generation.max_output_tokens,
                )
                if not self._session.loaded:
                    raise ModelNotLoadedError("Model not loaded")
                template = self._session.template
                prompt = prompt_templates.render(template, request.ingredients_text)
                output = self._controller.generate(
                    self._session, prompt, request.max_output_tokens, recorder
                )
            except AllergenSLMError as exc:
                log.error("service", "prediction_failed", {"kind": exc.kind, "error": str(exc)})
                return GenerationResult.failure(exc)
            except Exception as exc:  # noqa: BLE001
                log.error("service", "prediction_crashed", {"kind": type(exc).__name__, "error": str(exc)})
                return GenerationResult.failure(exc)

            label = self._sanitizer.sanitize(output.text, template)
            metrics = recorder.finish(output.prompt_token_count, output.generated_token_count)

        data: dict[str, Any] = metrics.as_log_data()
        data.update({"label": label, "raw": output.text, "stop_reason": output.stop_reason.value})
        log.perf("generate", "prediction_done", latency_ms=float(metrics.total_elapsed_ms), data=data)
        return GenerationResult(metrics=metrics, label=label, stop_reason=output.stop_reason.value)

    def _truncate(self, ingredients: Optional[str]) -> Optional[str]:
        limit = self._cfg.generation.max_ingredient_chars
        if ingredients is not None and len(ingredients) > limit:
            get_logger().warn(
                "service", "ingredients_truncated", {"length": len(ingredients), "limit": limit}
            )
            return ingredients[:limit]
        return ingredients
