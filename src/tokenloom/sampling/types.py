"""Data types for the sampling subsystem."""

from __future__ import annotations

from collections import Counter, deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterable

    from tokenloom.params import SampleParams


@dataclass
class SamplerState:
    """Mutable per-session sampler state.

    Owned by exactly one GenerationSession and never shared.

    Attributes:
        mu: Mirostat control variable, initialised to ``2 * tau``.
        repeat_last_n: Capacity of the penalty window.
        recent: The last ``repeat_last_n`` accepted tokens, oldest first.
        last_surprise: Observed surprise (bits) of the last Mirostat draw.
    """

    mu: float
    repeat_last_n: int
    recent: deque[int] = field(init=False, repr=False)
    last_surprise: float | None = None

    def __post_init__(self) -> None:
        self.recent = deque(maxlen=self.repeat_last_n)

    @classmethod
    def for_params(cls, params: SampleParams) -> SamplerState:
        return cls(mu=params.initial_mu(), repeat_last_n=params.repeat_last_n)

    def accept(self, token: int) -> None:
        """Push *token* into the penalty window."""
        self.recent.append(int(token))

    def accept_many(self, tokens: Iterable[int]) -> None:
        self.recent.extend(int(t) for t in tokens)

    def token_counts(self) -> Counter[int]:
        """Occurrences of each token currently in the penalty window."""
        return Counter(self.recent)

    def snapshot(self) -> tuple[float, tuple[int, ...], float | None]:
        """Capture ``mu``, the penalty window and the last surprise for :meth:`restore`."""
        return self.mu, tuple(self.recent), self.last_surprise

    def restore(self, snapshot: tuple[float, tuple[int, ...], float | None]) -> None:
        """Undo every :meth:`accept` and ``mu`` update made since *snapshot*."""
        self.mu, recent, self.last_surprise = snapshot
        self.recent.clear()
        self.recent.extend(recent)

    def reset(self, mu: float) -> None:
        self.mu = mu
        self.recent.clear()
        self.last_surprise = None


@dataclass(frozen=True, slots=True)
class SampleResult:
    """Result of sampling one token.

    Attributes:
        token_id: Vocabulary index of the selected token.
        token_prob: Probability of the token in the distribution it was
            drawn from (1.0 for greedy selection).
        num_candidates: Number of tokens in that distribution.
        greedy: True if the token was chosen by argmax.
        surprise: Observed surprise ``-log2 p`` in bits (Mirostat only).
        mu: Mirostat ``mu`` after the update (Mirostat only).
        diagnostics: Pipeline details (candidate counts per stage, draw value).
    """

    token_id: int
    token_prob: float
    num_candidates: int
    greedy: bool = False
    surprise: float | None = None
    mu: float | None = None
    diagnostics: dict[str, Any] = field(default_factory=dict)
