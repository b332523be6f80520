"""Bounded token history with prefix-preserving rotation.

The window is the token sequence the compute backend conditions on. It is
append-only between rotations; when an append pushes it past ``max_size``,
a block of tokens directly after the protected prefix is discarded:

    [ keep_prefix | discarded ... | kept ... | new batch ]
    [ keep_prefix | kept ... | new batch ]

``position`` tracks how many leading tokens the backend has already
consumed so each forward pass only submits the unconsumed suffix.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from tokenloom.context.types import RotationEvent
from tokenloom.exceptions import ContextOverflowError, InvalidParamsError

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = logging.getLogger("tokenloom")


class ContextWindow:
    """Ordered token buffer bounded by ``max_size``.

    Invariants (hold after every public call):
        - ``len(history) <= max_size``
        - tokens at indices ``[0, keep_prefix)`` are never discarded
        - ``0 <= position <= len(history)``

    Args:
        max_size: Maximum number of tokens held.
        keep_prefix: Leading tokens protected from rotation.
        eviction_count: Tokens discarded per rotation. ``0`` (default) means
            half of the rotatable region ``max_size - keep_prefix``.

    Raises:
        InvalidParamsError: If the geometry is inconsistent.
    """

    def __init__(self, max_size: int, keep_prefix: int = 0, eviction_count: int = 0) -> None:
        if max_size < 1:
            raise InvalidParamsError(f"max_size must be >= 1, got {max_size}")
        if keep_prefix < 0 or keep_prefix > max_size:
            raise InvalidParamsError(
                f"keep_prefix must be in [0, max_size={max_size}], got {keep_prefix}"
            )
        if eviction_count < 0:
            raise InvalidParamsError(f"eviction_count must be >= 0, got {eviction_count}")

        self._max_size = max_size
        self._keep_prefix = keep_prefix
        rotatable = max_size - keep_prefix
        self._eviction_count = max(1, eviction_count or rotatable // 2)
        self._history: list[int] = []
        self._position = 0
        self._rotation_count = 0
        self._last_rotation: RotationEvent | None = None

    # --- Read-only views ---

    @property
    def max_size(self) -> int:
        return self._max_size

    @property
    def keep_prefix(self) -> int:
        return self._keep_prefix

    @property
    def eviction_count(self) -> int:
        return self._eviction_count

    @property
    def capacity(self) -> int:
        """Largest batch :meth:`append` accepts once the prefix is filled.

        Equal to ``max_size - keep_prefix``. While the history is shorter
        than ``keep_prefix`` a batch may use the unfilled part of the prefix
        too; see :meth:`available`.
        """
        return self._max_size - self._keep_prefix

    def available(self) -> int:
        """Largest batch :meth:`append` accepts right now.

        The protected region is whatever the history already holds of the
        prefix, so a fresh window takes up to ``max_size`` tokens at once.
        """
        return self._max_size - min(len(self._history), self._keep_prefix)

    @property
    def position(self) -> int:
        """Number of leading tokens already consumed by the backend."""
        return self._position

    @property
    def tokens(self) -> list[int]:
        """A copy of the current history."""
        return list(self._history)

    @property
    def is_full(self) -> bool:
        return len(self._history) >= self._max_size

    @property
    def rotation_count(self) -> int:
        """Total rotations performed since construction or :meth:`clear`."""
        return self._rotation_count

    @property
    def last_rotation(self) -> RotationEvent | None:
        return self._last_rotation

    def __len__(self) -> int:
        return len(self._history)

    def __repr__(self) -> str:
        return (
            f"ContextWindow(len={len(self._history)}, max_size={self._max_size}, "
            f"keep_prefix={self._keep_prefix}, position={self._position})"
        )

    # --- Mutation ---

    def append(self, tokens: Iterable[int]) -> RotationEvent | None:
        """Add *tokens* to the end of the history, rotating if it overflows.

        Rotation discards at least the overflow and at most ``eviction_count``
        tokens already present before this call, so tokens from the batch
        being appended are never discarded.

        Args:
            tokens: Token ids to append.

        Returns:
            The rotation performed, or ``None`` if the batch fit.

        Raises:
            ContextOverflowError: If the batch would not fit even after
                discarding everything outside the prefix (see :meth:`available`).
        """
        batch = [int(t) for t in tokens]
        if not batch:
            return None
        limit = self.available()
        if len(batch) > limit:
            raise ContextOverflowError(
                f"Batch of {len(batch)} tokens exceeds window capacity {limit} "
                f"(max_size={self._max_size}, keep_prefix={self._keep_prefix}); split the input"
            )

        old_len = len(self._history)
        self._history.extend(batch)
        overflow = len(self._history) - self._max_size
        if overflow <= 0:
            return None

        old_rotatable = max(0, old_len - self._keep_prefix)
        count = max(overflow, min(self._eviction_count, old_rotatable))
        return self._discard(count)

    def rotate(self, count: int | None = None) -> RotationEvent | None:
        """Discard tokens directly after the protected prefix.

        Args:
            count: Tokens to discard; defaults to :attr:`eviction_count`.
                Clamped to the number of tokens after the prefix.

        Returns:
            The rotation performed, or ``None`` if nothing could be discarded.
        """
        requested = self._eviction_count if count is None else count
        if requested < 0:
            raise ValueError(f"count must be >= 0, got {requested}")
        return self._discard(min(requested, len(self._history) - self._keep_prefix))

    def effective_input(self) -> list[int]:
        """Return the tokens not yet submitted to the backend."""
        return self._history[self._position :]

    def mark_consumed(self, n: int | None = None) -> None:
        """Advance :attr:`position` by *n* tokens (default: to the end)."""
        if n is None:
            self._position = len(self._history)
            return
        if n < 0 or self._position + n > len(self._history):
            raise ValueError(
                f"cannot consume {n} tokens at position {self._position} "
                f"of {len(self._history)}"
            )
        self._position += n

    def clear(self) -> None:
        """Drop all history, including the protected prefix."""
        self._history.clear()
        self._position = 0
        self._rotation_count = 0
        self._last_rotation = None

    def _discard(self, count: int) -> RotationEvent | None:
        if count <= 0:
            return None

        start = self._keep_prefix
        end = start + count
        length_before = len(self._history)
        position_before = self._position

        del self._history[start:end]
        if self._position > start:
            # Consumed tokens inside the discarded block no longer exist;
            # consumed tokens after it keep their consumed status.
            self._position -= min(self._position, end) - start

        event = RotationEvent(
            keep_prefix=start,
            discarded=count,
            length_before=length_before,
            length_after=len(self._history),
            position_before=position_before,
            position_after=self._position,
        )
        self._rotation_count += 1
        self._last_rotation = event
        logger.debug(
            "context rotated: discarded=%d keep_prefix=%d len %d->%d position %d->%d",
            count,
            start,
            length_before,
            event.length_after,
            position_before,
            event.position_after,
        )
        return event
