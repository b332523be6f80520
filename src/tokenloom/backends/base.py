"""Abstract capability interfaces for compute backends and detokenizers.

Every backend adapter — a llama.cpp context, a test mock, or any
user-supplied model — implements :class:`ModelHandle`. The generation core
only ever calls ``forward_pass()``, ``vocabulary_size()``, ``discard()``
and ``free()``; it never inspects adapter internals. Subclasses must
implement the three abstract members.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Sequence
    from types import TracebackType

    import numpy as np


class ModelHandle(ABC):
    """Owned handle to a loaded model and its inference context.

    A handle is held by at most one session at a time and is released
    exactly once via :meth:`free` (or by leaving a ``with`` block). The core
    never calls :meth:`forward_pass` concurrently on one handle.
    """

    @abstractmethod
    def forward_pass(self, tokens: Sequence[int]) -> np.ndarray:
        """Evaluate *tokens* after everything submitted so far.

        Args:
            tokens: The not-yet-consumed suffix of the context window.

        Returns:
            1-D logits vector of length :meth:`vocabulary_size` for the
            position after the last token.

        Raises:
            Exception: Any adapter failure. The session reports it as
                :class:`~tokenloom.exceptions.BackendFailureError`.
        """

    @abstractmethod
    def vocabulary_size(self) -> int:
        """Number of entries in every logits vector."""

    @abstractmethod
    def free(self) -> None:
        """Release backend resources. Must be idempotent."""

    def discard(self, keep: int, count: int) -> None:
        """Drop *count* evaluated positions starting at index *keep*.

        Called after the context window rotates so backends with a KV cache
        can remove the discarded block and shift the positions after it.
        The default implementation does nothing.
        """

    def describe(self) -> dict[str, Any]:
        """Return a status dictionary for this handle."""
        return {"backend": type(self).__name__, "vocabulary_size": self.vocabulary_size()}

    def __enter__(self) -> ModelHandle:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.free()


class Detokenizer(ABC):
    """Maps a token id to its text fragment."""

    @abstractmethod
    def decode(self, token: int) -> str:
        """Return the text for *token* (may be empty for partial UTF-8 sequences)."""
