"""Per-token generation logger.

Uses the standard ``logging`` module with the ``"tokenloom"`` logger.
No ``print()`` statements. Supports three verbosity levels and an
in-memory diagnostic mode for post-hoc analysis.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from tokenloom.config import RuntimeConfig
    from tokenloom.logging.types import TokenGenerationRecord

logger = logging.getLogger("tokenloom")

_LEVELS = frozenset({"none", "summary", "full"})


class GenerationLogger:
    """Per-token generation logger.

    Log levels:
        ``"none"``: No logging output. Records are still stored if
        ``diagnostic_mode=True``.

        ``"summary"``: One line per token with key metrics (step, token_id,
        prob, candidates, mu, timings).

        ``"full"``: Full JSON dump of all record fields.

    Diagnostic mode stores all records in memory for post-hoc statistical
    analysis via ``get_diagnostic_data()`` and ``get_summary_stats()``.
    """

    def __init__(self, log_level: str = "summary", diagnostic_mode: bool = False) -> None:
        """Initialize the logger.

        Args:
            log_level: ``"none"``, ``"summary"`` or ``"full"``.
            diagnostic_mode: Keep every record in memory.

        Raises:
            ValueError: If *log_level* is not a known level.
        """
        if log_level not in _LEVELS:
            raise ValueError(f"log_level must be one of {sorted(_LEVELS)}, got {log_level!r}")
        self._log_level = log_level
        self._diagnostic_mode = diagnostic_mode
        self._records: list[TokenGenerationRecord] = []

    @classmethod
    def from_config(cls, config: RuntimeConfig) -> GenerationLogger:
        """Build a logger from ``config.log_level`` and ``config.diagnostic_mode``."""
        return cls(log_level=config.log_level, diagnostic_mode=config.diagnostic_mode)

    @property
    def log_level(self) -> str:
        return self._log_level

    @property
    def diagnostic_mode(self) -> bool:
        return self._diagnostic_mode

    def log_token(self, record: TokenGenerationRecord) -> None:
        """Log a single generation step.

        Args:
            record: Immutable record of the step.
        """
        if self._diagnostic_mode:
            self._records.append(record)

        if self._log_level == "none":
            return

        if self._log_level == "summary":
            logger.info(
                "step=%d token=%d prob=%.4f candidates=%d%s%s "
                "forward=%.2fms sample=%.2fms elapsed=%.3fs",
                record.step,
                record.token_id,
                record.token_prob,
                record.num_candidates,
                f" mu={record.mu:.3f}" if record.mu is not None else "",
                " [ROTATED]" if record.rotated else "",
                record.forward_ms,
                record.sampling_ms,
                record.elapsed_s,
            )
        elif self._log_level == "full":
            logger.info("generation_record: %s", json.dumps(asdict(record), default=str))

    def get_diagnostic_data(self) -> list[TokenGenerationRecord]:
        """Return all stored records (requires ``diagnostic_mode=True``).

        Returns:
            List of all TokenGenerationRecord instances logged so far.
            Empty if diagnostic_mode is False.
        """
        return list(self._records)

    def clear(self) -> None:
        """Drop all stored records."""
        self._records.clear()

    def get_summary_stats(self) -> dict[str, Any]:
        """Compute summary statistics over all stored records.

        Returns:
            Dictionary with aggregate stats, or empty dict if no records.
        """
        if not self._records:
            return {}

        n = len(self._records)
        probs = [r.token_prob for r in self._records]
        candidates = [r.num_candidates for r in self._records]
        forward_times = [r.forward_ms for r in self._records]
        sampling_times = [r.sampling_ms for r in self._records]
        surprises = [r.surprise for r in self._records if r.surprise is not None]
        rotations = sum(1 for r in self._records if r.rotated)

        stats: dict[str, Any] = {
            "total_tokens": n,
            "mean_prob": sum(probs) / n,
            "mean_candidates": sum(candidates) / n,
            "mean_forward_ms": sum(forward_times) / n,
            "max_forward_ms": max(forward_times),
            "mean_sampling_ms": sum(sampling_times) / n,
            "rotation_count": rotations,
            "total_elapsed_s": self._records[-1].elapsed_s,
        }
        if surprises:
            stats["mean_surprise"] = sum(surprises) / len(surprises)
            stats["final_mu"] = self._records[-1].mu
        return stats
