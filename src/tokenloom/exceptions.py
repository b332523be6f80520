"""Exception hierarchy for tokenloom.

All exceptions derive from TokenloomError, enabling broad catch patterns
at the application boundary while allowing fine-grained handling internally.

Two families are exposed to callers:

- :class:`ModelLoadError` — raised by backend adapters while acquiring a
  model, a context or a grammar.
- :class:`GenerationError` — raised by the generation core. Configuration
  errors (:class:`InvalidParamsError`) are raised eagerly at construction;
  resource errors terminate the current generation; control errors
  (:class:`SessionBusyError`, :class:`GenerationCancelledError`) are normal
  operational outcomes.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from tokenloom.session.types import GenerationResult


class TokenloomError(Exception):
    """Base exception for all tokenloom errors."""


class ModelLoadError(TokenloomError):
    """The backend could not load the model weights."""


class ContextLoadError(ModelLoadError):
    """The backend loaded the model but could not create an inference context."""


class GrammarLoadError(ModelLoadError):
    """A constraining grammar could not be parsed or loaded by the backend."""


class GenerationError(TokenloomError):
    """Base class for errors raised by the generation core.

    Args:
        message: Human-readable description.
        stage: Pipeline stage that failed (``"priming"``, ``"forward_pass"``,
            ``"sampling"``, ``"decode"``, ``"callback"``) or ``None`` when the
            error is not tied to a running generation.
    """

    def __init__(self, message: str, stage: str | None = None) -> None:
        super().__init__(message)
        self.stage = stage

    def __str__(self) -> str:
        message = super().__str__()
        if self.stage is None:
            return message
        return f"[{self.stage}] {message}"


class InvalidParamsError(GenerationError):
    """Sampling parameters or runtime configuration failed validation.

    Raised at construction time (SampleParams, RuntimeConfig, ContextWindow,
    GenerationSession), never in the middle of a generation.
    """


class ContextOverflowError(GenerationError):
    """A token batch cannot fit in the context window even after rotation.

    The caller must split the input into batches no larger than
    ``max_size - keep_prefix``.
    """


class SessionBusyError(GenerationError):
    """A generation was requested while the session was already generating."""


class BackendFailureError(GenerationError):
    """The compute backend or detokenizer failed during a generation step."""


class SamplingError(GenerationError):
    """The sampler received logits it cannot select a token from.

    Raised for empty or multi-dimensional logits, or logits with no finite
    value.
    """


class GenerationCancelledError(GenerationError):
    """Generation stopped because cancellation was requested.

    Attributes:
        result: The partial result, holding every token generated before the
            cancellation was observed.
    """

    def __init__(self, message: str, result: GenerationResult, stage: str | None = None) -> None:
        super().__init__(message, stage=stage)
        self.result = result
