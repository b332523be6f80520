"""Data types for the generation session."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class SessionState(str, Enum):
    """Lifecycle state of a GenerationSession.

    ``IDLE -> PRIMING -> GENERATING -> {COMPLETED, CANCELLED, FAILED}``.
    A session in a terminal state may start another generation, which
    continues the same context.
    """

    IDLE = "idle"
    PRIMING = "priming"
    GENERATING = "generating"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_running(self) -> bool:
        return self in (SessionState.PRIMING, SessionState.GENERATING)


class StopReason(str, Enum):
    """Why a completed generation stopped."""

    CALLBACK = "callback"
    STOP_TOKEN = "stop_token"
    MAX_TOKENS = "max_tokens"


@dataclass(frozen=True, slots=True)
class GenerationResult:
    """Outcome of one generation request.

    Attributes:
        state: ``COMPLETED`` or ``CANCELLED``.
        stop_reason: Why generation stopped; ``None`` when cancelled.
        tokens: Generated token ids, in order.
        text: Concatenated decoded text of ``tokens``.
        elapsed_s: Seconds from request start to the last emitted token.
        forward_passes: Backend forward passes issued, priming included.
        rotations: Context rotations performed during the request.
    """

    state: SessionState
    stop_reason: StopReason | None
    tokens: tuple[int, ...]
    text: str
    elapsed_s: float
    forward_passes: int
    rotations: int

    @property
    def num_tokens(self) -> int:
        return len(self.tokens)
