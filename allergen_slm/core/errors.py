"""
allergen_slm/core/errors.py — Error kinds raised by the model session and the
generation loop.

Load-time errors are turned into a ``False`` return by the host surface;
generation errors are encoded into an error-labelled wire result. Nothing in
this hierarchy is allowed to cross :class:`~allergen_slm.service.AllergenPredictor`.
"""

from __future__ import annotations


class AllergenSLMError(RuntimeError):
    """Base class for every error kind the controller can produce."""

    @property
    def kind(self) -> str:
        """Short error-kind name used in the wire format (the class name)."""
        return type(self).__name__


class ModelNotLoadedError(AllergenSLMError):
    """Raised when a generation is requested while the session is not loaded."""


class TokenizationError(AllergenSLMError):
    """Raised when the engine reports a negative token count for the prompt."""


class ContextOverflowError(AllergenSLMError):
    """
    Raised when the prompt leaves less than the reserved margin of the
    context window for generated tokens.
    """


class DecodeError(AllergenSLMError):
    """Raised when the prefill decode returns a nonzero engine status."""


class ModelLoadError(AllergenSLMError):
    """
    Raised when the model file cannot be opened or parsed.

    Run ``python scripts/setup_model.py`` while online to download a
    registered GGUF model into the local model directory.
    """


class ContextCreationError(AllergenSLMError):
    """Raised when the inference context cannot be created for a loaded model."""
