"""Data types for the generation logging subsystem."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class TokenGenerationRecord:
    """Immutable record of one generation step.

    Attributes:
        step: 1-based index of the generated token within its request.
        token_id: Vocabulary index of the selected token.
        token_prob: Probability of the token in the distribution it was drawn
            from (1.0 for greedy selection).
        num_candidates: Number of tokens in that distribution.
        greedy: True if the token was chosen by argmax.
        surprise: Observed surprise in bits (Mirostat only).
        mu: Mirostat ``mu`` after the update (Mirostat only).
        text: Decoded text fragment handed to the callback.
        forward_ms: Time spent in the backend forward pass (milliseconds).
        sampling_ms: Time spent selecting the token (milliseconds).
        elapsed_s: Seconds since the request started.
        rotated: True if appending the token rotated the context window.
        context_length: Window length after the token was appended.
    """

    # Selection
    step: int
    token_id: int
    token_prob: float
    num_candidates: int
    greedy: bool

    # Mirostat
    surprise: float | None
    mu: float | None

    # Output
    text: str

    # Timing
    forward_ms: float
    sampling_ms: float
    elapsed_s: float

    # Context
    rotated: bool
    context_length: int
