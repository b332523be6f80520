"""Configurable mock backend for testing and demos.

Produces seeded synthetic logits, optionally biased toward a token chosen
by a user function of the evaluated history, and records every call so
tests can assert on forward-pass counts and KV-cache bookkeeping.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

import numpy as np

from tokenloom.backends.base import Detokenizer, ModelHandle
from tokenloom.backends.registry import register_backend

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping, Sequence

    from tokenloom.config import RuntimeConfig

logger = logging.getLogger("tokenloom")


@register_backend("mock")
class MockModelHandle(ModelHandle):
    """Deterministic in-process stand-in for a compute backend.

    Usage:
        - **Seeded noise**: ``MockModelHandle(vocab_size=100, seed=1)``
        - **Scripted output**: ``next_token=lambda history: history[-1] + 1``
          adds ``margin`` to that token's logit so any sane sampler picks it.
        - **Failure injection**: ``fail_at=3`` raises on the third call.

    Args:
        config: Optional runtime config (accepted for registry construction;
            only ``sampling.seed`` is read, as the default *seed*).
        vocab_size: Length of every logits vector.
        seed: RNG seed for the synthetic noise.
        next_token: Maps the evaluated history to the token to favour.
        margin: Logit boost applied to the favoured token.
        fail_at: 1-based call number that raises ``RuntimeError``.
        latency_s: Sleep per call, to simulate slow backends.
    """

    def __init__(
        self,
        config: RuntimeConfig | None = None,
        *,
        vocab_size: int = 64,
        seed: int | None = None,
        next_token: Callable[[Sequence[int]], int] | None = None,
        margin: float = 20.0,
        fail_at: int | None = None,
        latency_s: float = 0.0,
    ) -> None:
        if vocab_size < 1:
            raise ValueError(f"vocab_size must be >= 1, got {vocab_size}")
        if seed is None and config is not None:
            seed = config.sampling.seed
        self._vocab_size = vocab_size
        self._rng = np.random.default_rng(seed)
        self._next_token = next_token
        self._margin = margin
        self._fail_at = fail_at
        self._latency_s = latency_s
        self._evaluated: list[int] = []
        self._calls: list[list[int]] = []
        self._discards: list[tuple[int, int]] = []
        self._freed = False

    @property
    def calls(self) -> list[list[int]]:
        """Token batches received by :meth:`forward_pass`, in order."""
        return [list(batch) for batch in self._calls]

    @property
    def forward_calls(self) -> int:
        return len(self._calls)

    @property
    def evaluated(self) -> list[int]:
        """Backend-side mirror of the consumed context (after discards)."""
        return list(self._evaluated)

    @property
    def discards(self) -> list[tuple[int, int]]:
        """``(keep, count)`` pairs received by :meth:`discard`."""
        return list(self._discards)

    @property
    def freed(self) -> bool:
        return self._freed

    def forward_pass(self, tokens: Sequence[int]) -> np.ndarray:
        """Record *tokens* and return synthetic logits for the next position.

        Raises:
            RuntimeError: If the handle was freed, *tokens* is empty, or the
                call number matches ``fail_at``.
        """
        if self._freed:
            raise RuntimeError("forward_pass on a freed MockModelHandle")
        if not tokens:
            raise RuntimeError("forward_pass called with an empty batch")

        self._calls.append([int(t) for t in tokens])
        if self._fail_at is not None and len(self._calls) == self._fail_at:
            raise RuntimeError(f"injected backend failure on call {self._fail_at}")
        if self._latency_s > 0:
            time.sleep(self._latency_s)

        self._evaluated.extend(int(t) for t in tokens)
        logits = self._rng.standard_normal(self._vocab_size)
        if self._next_token is not None:
            target = int(self._next_token(self._evaluated)) % self._vocab_size
            logits[target] += self._margin
        return logits

    def vocabulary_size(self) -> int:
        return self._vocab_size

    def discard(self, keep: int, count: int) -> None:
        """Drop ``count`` evaluated positions after ``keep`` (mirrors a KV-cache shift)."""
        self._discards.append((keep, count))
        del self._evaluated[keep : keep + count]

    def free(self) -> None:
        """Mark the handle as freed (idempotent)."""
        if not self._freed:
            logger.debug("MockModelHandle freed after %d forward passes", len(self._calls))
        self._freed = True

    def describe(self) -> dict[str, object]:
        return {
            "backend": "mock",
            "vocabulary_size": self._vocab_size,
            "forward_calls": len(self._calls),
            "freed": self._freed,
        }


class MockDetokenizer(Detokenizer):
    """Renders tokens from an optional table, else as ``"<id>"``.

    Args:
        vocab: Optional token-to-text table.
        fail_on: Tokens whose decoding raises ``UnicodeDecodeError``.
    """

    def __init__(
        self,
        vocab: Mapping[int, str] | None = None,
        fail_on: Sequence[int] = (),
    ) -> None:
        self._vocab = dict(vocab or {})
        self._fail_on = frozenset(int(t) for t in fail_on)

    def decode(self, token: int) -> str:
        if token in self._fail_on:
            raise UnicodeDecodeError("utf-8", b"\xff", 0, 1, f"cannot decode token {token}")
        return self._vocab.get(token, f"<{token}>")
