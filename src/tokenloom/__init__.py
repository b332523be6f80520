"""tokenloom: context and sampling engine for local LLM inference.

Maintains a rolling token context with prefix-preserving rotation, runs
autoregressive generation against a pluggable compute backend, and turns
raw logits into tokens with llama.cpp-style sampling (temperature, top-k,
top-p, tail-free, locally typical, Mirostat v1/v2, repetition penalties),
streaming each token to a callback.
"""

from __future__ import annotations

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("tokenloom")
except PackageNotFoundError:
    __version__ = "0.0.0"

from tokenloom.config import RuntimeConfig, load_config, resolve_config, validate_overrides
from tokenloom.context import ContextWindow, RotationEvent
from tokenloom.exceptions import (
    BackendFailureError,
    ContextLoadError,
    ContextOverflowError,
    GenerationCancelledError,
    GenerationError,
    GrammarLoadError,
    InvalidParamsError,
    ModelLoadError,
    SamplingError,
    SessionBusyError,
    TokenloomError,
)
from tokenloom.params import MirostatMode, SampleParams
from tokenloom.sampling import SampleResult, SamplerState, TokenSampler
from tokenloom.session import GenerationResult, GenerationSession, SessionState, StopReason

__all__ = [
    "BackendFailureError",
    "ContextLoadError",
    "ContextOverflowError",
    "ContextWindow",
    "GenerationCancelledError",
    "GenerationError",
    "GenerationResult",
    "GenerationSession",
    "GrammarLoadError",
    "InvalidParamsError",
    "MirostatMode",
    "ModelLoadError",
    "RotationEvent",
    "RuntimeConfig",
    "SampleParams",
    "SampleResult",
    "SamplerState",
    "SamplingError",
    "SessionBusyError",
    "SessionState",
    "StopReason",
    "TokenSampler",
    "TokenloomError",
    "__version__",
    "load_config",
    "resolve_config",
    "validate_overrides",
]
