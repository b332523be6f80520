"""Data types for the context window subsystem."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class RotationEvent:
    """Immutable record of one context rotation.

    Attributes:
        keep_prefix: Index of the first discarded token (tokens before it
            are protected).
        discarded: Number of tokens removed starting at ``keep_prefix``.
        length_before: History length before the rotation.
        length_after: History length after the rotation.
        position_before: Consumed-token position before the rotation.
        position_after: Consumed-token position after the rotation.
    """

    keep_prefix: int
    discarded: int
    length_before: int
    length_after: int
    position_before: int
    position_after: int

    @property
    def consumed_discarded(self) -> int:
        """How many of the discarded tokens had already been consumed by the backend."""
        return self.position_before - self.position_after
