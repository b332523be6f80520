"""Configuration system for tokenloom.

Uses pydantic-settings for declarative, layered configuration:
init kwargs -> environment variables (TOKENLOOM_*) -> .env file -> field defaults.

Sampling parameters live in a nested :class:`~tokenloom.params.SampleParams`
model and are set from the environment with a double underscore, e.g.
``TOKENLOOM_SAMPLING__TEMPERATURE=0.2``.

Per-request overrides are applied via resolve_config() which creates a new
config instance without mutating the defaults. Infrastructure fields are
protected from per-request override.
"""

from __future__ import annotations

from typing import Any

from pydantic import Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from tokenloom.exceptions import InvalidParamsError
from tokenloom.params import SampleParams, format_validation_error

# Top-level fields that can be overridden per request. Every SampleParams
# field is overridable as well, addressed by its flat name.
_PER_REQUEST_FIELDS: frozenset[str] = frozenset(
    {
        "max_new_tokens",
        "stop_tokens",
        "log_level",
        "diagnostic_mode",
    }
)

_SAMPLING_FIELDS: frozenset[str] = frozenset(SampleParams.model_fields.keys())

# All known top-level config field names (populated after class definition).
_ALL_FIELDS: frozenset[str] = frozenset()


class RuntimeConfig(BaseSettings):
    """Configuration for a tokenloom runtime.

    Resolution order: init kwargs -> env vars (TOKENLOOM_*) -> .env file -> defaults.

    Fields are divided into two groups:
    - **Infrastructure**: backend selection, window geometry, threading —
      NOT overridable per request.
    - **Per-request**: generation limits, logging, and every sampling
      parameter — overridable via :func:`resolve_config`.
    """

    model_config = SettingsConfigDict(
        env_prefix="TOKENLOOM_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- Backend (NOT per-request overridable) ---

    backend: str = Field(
        default="mock",
        description="Registered backend adapter name ('mock', 'llama_cpp', ...)",
    )
    model_path: str = Field(
        default="",
        description="Model file handed to the backend adapter (empty for the mock backend)",
    )
    thread_count: int = Field(
        default=4,
        ge=1,
        description="Worker threads forwarded to the compute backend",
    )
    use_accelerator: bool = Field(
        default=False,
        description="Forwarded to the backend: offload layers to a GPU/accelerator",
    )

    # --- Context window (NOT per-request overridable) ---

    context_size: int = Field(
        default=2048,
        ge=1,
        description="Maximum number of tokens held in the context window",
    )
    keep_prefix_tokens: int = Field(
        default=0,
        ge=0,
        description="Leading tokens that survive every rotation (e.g. system prompt)",
    )
    eviction_count: int = Field(
        default=0,
        ge=0,
        description="Tokens discarded per rotation (0 = half of the rotatable region)",
    )
    batch_size: int = Field(
        default=512,
        ge=1,
        description="Maximum tokens per forward pass while priming the prompt",
    )

    # --- Generation (per-request overridable) ---

    max_new_tokens: int = Field(
        default=256,
        ge=1,
        description="Upper bound on generated tokens per request",
    )
    stop_tokens: list[int] = Field(
        default_factory=list,
        description="Token ids that end generation once emitted",
    )

    # --- Logging (per-request overridable) ---

    log_level: str = Field(
        default="summary",
        description="Per-token logging verbosity: 'none', 'summary', 'full'",
    )
    diagnostic_mode: bool = Field(
        default=False,
        description="Store all token records in memory for analysis",
    )

    # --- Sampling (per-request overridable, flat keys) ---

    sampling: SampleParams = Field(
        default_factory=SampleParams,
        description="Default sampling parameters",
    )

    @model_validator(mode="after")
    def _check_window(self) -> RuntimeConfig:
        if self.keep_prefix_tokens > self.context_size:
            raise ValueError(
                f"keep_prefix_tokens ({self.keep_prefix_tokens}) must not exceed "
                f"context_size ({self.context_size})"
            )
        if self.log_level not in ("none", "summary", "full"):
            raise ValueError(
                f"log_level must be 'none', 'summary' or 'full', got {self.log_level!r}"
            )
        return self


# Populate _ALL_FIELDS now that the class is defined.
_ALL_FIELDS = frozenset(RuntimeConfig.model_fields.keys())


def load_config(**kwargs: Any) -> RuntimeConfig:
    """Build a RuntimeConfig from kwargs, the environment and ``.env``.

    Raises:
        InvalidParamsError: If any resolved value fails validation.
    """
    try:
        return RuntimeConfig(**kwargs)
    except ValidationError as exc:
        raise InvalidParamsError(f"Invalid configuration: {format_validation_error(exc)}") from exc


def validate_overrides(overrides: dict[str, Any]) -> None:
    """Validate override keys without creating a config.

    Called when a request is accepted to reject bad keys early, before a
    session is built for it.

    Args:
        overrides: Flat mapping of field names to values.

    Raises:
        InvalidParamsError: If any key is unknown or non-overridable.
    """
    for key in overrides:
        if key in _SAMPLING_FIELDS or key in _PER_REQUEST_FIELDS:
            continue
        if key in _ALL_FIELDS:
            raise InvalidParamsError(
                f"Field '{key}' is an infrastructure field and cannot be overridden per request"
            )
        raise InvalidParamsError(f"Unknown config field: '{key}'")


def resolve_config(
    defaults: RuntimeConfig,
    overrides: dict[str, Any] | None,
) -> RuntimeConfig:
    """Create a new config instance merging defaults with per-request overrides.

    Sampling fields are addressed by their flat name (``{"top_k": 10}``) and
    merged into the nested ``sampling`` model.

    Args:
        defaults: The base configuration.
        overrides: Per-request overrides.

    Returns:
        *defaults* itself when there is nothing to override, otherwise a new
        validated RuntimeConfig.

    Raises:
        InvalidParamsError: If any key is unknown, non-overridable, or the
            merged values fail validation.
    """
    if not overrides:
        return defaults

    validate_overrides(overrides)

    # model_copy(update=...) skips validation, so string "10" would not be
    # coerced to int 10. model_validate runs the full validator.
    merged = defaults.model_dump()
    sampling = dict(merged["sampling"])
    for key, value in overrides.items():
        if key in _SAMPLING_FIELDS:
            sampling[key] = value
        else:
            merged[key] = value
    merged["sampling"] = sampling

    try:
        return RuntimeConfig.model_validate(merged)
    except ValidationError as exc:
        raise InvalidParamsError(f"Invalid overrides: {format_validation_error(exc)}") from exc
