"""Sampling parameters value object.

``SampleParams`` is an immutable, validated pydantic model. Every field has
a llama.cpp-compatible default and a "disabled" value documented alongside
it. Constructing one with invalid values, directly or through
``from_dict()`` / ``from_json()``, raises
:class:`~tokenloom.exceptions.InvalidParamsError` chained from the pydantic
``ValidationError``.
"""

from __future__ import annotations

import math
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from tokenloom.exceptions import InvalidParamsError


class MirostatMode(str, Enum):
    """Which Mirostat variant replaces the filter pipeline, if any."""

    OFF = "off"
    V1 = "v1"
    V2 = "v2"


# Numeric aliases accepted on input (llama.cpp uses 0/1/2).
_MIROSTAT_ALIASES: dict[Any, str] = {0: "off", 1: "v1", 2: "v2", "0": "off", "1": "v1", "2": "v2"}


def format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(item) for item in err["loc"]) or "<root>"
        parts.append(f"{loc}: {err['msg']}")
    return "; ".join(parts)


class SampleParams(BaseModel):
    """Validated sampling configuration.

    Exactly one of two pipelines runs per token: the filter pipeline
    (top-k, top-p, tail-free, typical) or Mirostat. Penalties, logit bias,
    temperature and softmax apply to both.
    """

    model_config = ConfigDict(
        frozen=True, extra="forbid", use_enum_values=False, ser_json_inf_nan="constants"
    )

    temperature: float = Field(
        default=0.8,
        ge=0.0,
        description="Logit divisor; 0 selects the argmax deterministically",
    )
    top_k: int = Field(default=40, ge=0, description="Keep the k most probable tokens (0 disables)")
    top_p: float = Field(default=0.95, ge=0.0, le=1.0, description="Nucleus threshold (1 disables)")
    tfs_z: float = Field(default=1.0, gt=0.0, le=1.0, description="Tail-free threshold (1 disables)")
    typical_p: float = Field(
        default=1.0, gt=0.0, le=1.0, description="Locally-typical mass (1 disables)"
    )
    repeat_penalty: float = Field(
        default=1.1, ge=1.0, description="Divisor for logits of recent tokens (1 disables)"
    )
    repeat_last_n: int = Field(
        default=64, ge=0, description="Size of the penalty window (0 disables penalties)"
    )
    frequency_penalty: float = Field(default=0.0, description="Subtracted once per occurrence")
    presence_penalty: float = Field(default=0.0, description="Subtracted once if present")
    penalty_stage: Literal["pre_temperature", "post_temperature"] = Field(
        default="pre_temperature",
        description="Apply penalties and logit bias before or after temperature scaling",
    )
    logit_bias: dict[int, float] = Field(
        default_factory=dict, description="Additive per-token logit bias"
    )
    min_keep: int = Field(default=1, ge=1, description="Minimum candidates every filter keeps")
    mirostat: MirostatMode = Field(default=MirostatMode.OFF, description="off, v1 or v2")
    mirostat_tau: float = Field(default=5.0, description="Target surprise in bits")
    mirostat_eta: float = Field(default=0.1, description="Learning rate for mu")
    mirostat_m: int = Field(
        default=100, ge=2, description="Tokens used to estimate the Zipf exponent (v1)"
    )
    seed: int | None = Field(default=None, description="RNG seed; None draws one from the OS")

    def __init__(self, **data: Any) -> None:
        try:
            super().__init__(**data)
        except ValidationError as exc:
            raise InvalidParamsError(
                f"Invalid sampling parameters: {format_validation_error(exc)}"
            ) from exc

    @field_validator("logit_bias")
    @classmethod
    def _check_logit_bias(cls, value: dict[int, float]) -> dict[int, float]:
        # -inf bans a token and +inf forces it; NaN has no meaning.
        for token, delta in value.items():
            if math.isnan(delta):
                raise ValueError(f"logit_bias for token {token} is NaN")
        return value

    @field_validator("mirostat", mode="before")
    @classmethod
    def _coerce_mirostat(cls, value: Any) -> Any:
        if isinstance(value, bool):
            return value
        return _MIROSTAT_ALIASES.get(value, value)

    @model_validator(mode="after")
    def _check_mirostat(self) -> SampleParams:
        if self.mirostat is not MirostatMode.OFF:
            if self.mirostat_tau <= 0:
                raise ValueError(
                    f"mirostat_tau must be > 0 when mirostat is on, got {self.mirostat_tau}"
                )
            if self.mirostat_eta <= 0:
                raise ValueError(
                    f"mirostat_eta must be > 0 when mirostat is on, got {self.mirostat_eta}"
                )
        return self

    @property
    def greedy(self) -> bool:
        """True when temperature is zero and sampling reduces to argmax."""
        return self.temperature == 0.0

    @property
    def uses_mirostat(self) -> bool:
        return self.mirostat is not MirostatMode.OFF

    @property
    def penalties_enabled(self) -> bool:
        """True when any penalty can change a logit."""
        if self.repeat_last_n == 0:
            return False
        return (
            self.repeat_penalty != 1.0
            or self.frequency_penalty != 0.0
            or self.presence_penalty != 0.0
        )

    def initial_mu(self) -> float:
        """Starting value of the Mirostat control variable (``2 * tau``)."""
        return 2.0 * self.mirostat_tau

    # --- Serialization ---

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-compatible dict of every field."""
        return self.model_dump(mode="json")

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SampleParams:
        """Build validated params from a plain mapping.

        Raises:
            InvalidParamsError: If a field is unknown or out of range.
        """
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise InvalidParamsError(
                f"Invalid sampling parameters: {format_validation_error(exc)}"
            ) from exc

    @classmethod
    def from_json(cls, text: str | bytes) -> SampleParams:
        """Build validated params from the output of :meth:`to_json`.

        Raises:
            InvalidParamsError: If the document is malformed or a field is invalid.
        """
        try:
            return cls.model_validate_json(text)
        except ValidationError as exc:
            raise InvalidParamsError(
                f"Invalid sampling parameters: {format_validation_error(exc)}"
            ) from exc


def coerce_params(params: SampleParams | dict[str, Any] | None) -> SampleParams:
    """Return *params* as a ``SampleParams``, validating mappings.

    Args:
        params: Existing params (returned unchanged), a mapping of field
            values, or ``None`` for defaults.

    Raises:
        InvalidParamsError: If a mapping fails validation.
    """
    if params is None:
        return SampleParams()
    if isinstance(params, SampleParams):
        return params
    return SampleParams.from_dict(dict(params))
