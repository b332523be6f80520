"""Logit transforms and candidate filters.

Every filter works on a *candidate set*: a pair of parallel arrays
``(ids, probs)`` sorted by descending probability, ties broken by lower
token id. Filters return a new, renormalized candidate set in the same
order and always keep at least ``min_keep`` candidates (bounded by the
number available).
"""

from __future__ import annotations

import math
from typing import TYPE_CHECKING

import numpy as np

from tokenloom.exceptions import SamplingError

if TYPE_CHECKING:
    from collections.abc import Mapping

Candidates = tuple[np.ndarray, np.ndarray]


def stable_softmax(logits: np.ndarray) -> np.ndarray:
    """Numerically stable softmax via shift-by-max.

    Tokens whose logit is +inf (forced through ``logit_bias``) share all of
    the probability mass.

    Args:
        logits: 1-D logit array (may contain -inf for masked tokens).

    Returns:
        Probability array of the same shape, summing to 1.0.

    Raises:
        SamplingError: If no logit is finite or forced.
    """
    forced = np.isposinf(logits)
    if np.any(forced):
        shared: np.ndarray = forced / np.count_nonzero(forced)
        return shared

    finite_mask = np.isfinite(logits)
    if not np.any(finite_mask):
        raise SamplingError("All logits are masked; no token can be sampled", stage="sampling")

    max_logit = np.max(logits[finite_mask])
    # -inf - max_logit is still -inf, exp(-inf) = 0.
    exp_shifted = np.exp(logits - max_logit)
    result: np.ndarray = exp_shifted / np.sum(exp_shifted)
    return result


def apply_penalties(
    logits: np.ndarray,
    counts: Mapping[int, int],
    repeat_penalty: float,
    frequency_penalty: float,
    presence_penalty: float,
) -> np.ndarray:
    """Penalize tokens that occur in the penalty window, in a single pass.

    For each token with ``count > 0``: a positive logit is divided by
    ``repeat_penalty`` and a non-positive one multiplied by it, then
    ``frequency_penalty * count + presence_penalty`` is subtracted.

    Args:
        logits: 1-D logit array. Not modified.
        counts: Occurrences per token id; ids outside the vocabulary are ignored.
        repeat_penalty: Multiplicative penalty (1.0 disables).
        frequency_penalty: Per-occurrence additive penalty.
        presence_penalty: One-off additive penalty.

    Returns:
        A new penalized logit array.
    """
    result = logits.copy()
    vocab_size = len(logits)
    pairs = [(tok, n) for tok, n in counts.items() if 0 <= tok < vocab_size and n > 0]
    if not pairs:
        return result

    ids = np.fromiter((tok for tok, _ in pairs), dtype=np.int64, count=len(pairs))
    occurrences = np.fromiter((n for _, n in pairs), dtype=np.float64, count=len(pairs))

    selected = result[ids]
    selected = np.where(selected > 0, selected / repeat_penalty, selected * repeat_penalty)
    selected -= occurrences * frequency_penalty + presence_penalty
    result[ids] = selected
    return result


def apply_logit_bias(logits: np.ndarray, bias: Mapping[int, float]) -> np.ndarray:
    """Add ``bias[token]`` to each listed token's logit (out-of-vocab ids ignored).

    A bias of +inf forces the token, even over a masked (-inf) logit.
    """
    if not bias:
        return logits
    result = logits.copy()
    vocab_size = len(logits)
    for token, delta in bias.items():
        if 0 <= token < vocab_size:
            if math.isinf(delta) and delta > 0:
                result[token] = math.inf
            else:
                result[token] += delta
    return result


def sort_candidates(probs: np.ndarray) -> Candidates:
    """Build a candidate set from a full probability vector.

    Zero-probability tokens are dropped. Ties keep the lower token id first.
    """
    ids = np.flatnonzero(probs > 0)
    kept = probs[ids]
    order = np.argsort(-kept, kind="stable")
    return ids[order], kept[order]


def renormalize(probs: np.ndarray) -> np.ndarray:
    total = np.sum(probs)
    if total <= 0:
        raise SamplingError("Candidate probabilities sum to zero", stage="sampling")
    result: np.ndarray = probs / total
    return result


def _truncate(candidates: Candidates, n: int) -> Candidates:
    ids, probs = candidates
    if n >= len(ids):
        return ids, probs
    return ids[:n], renormalize(probs[:n])


def top_k(candidates: Candidates, k: int, min_keep: int = 1) -> Candidates:
    """Keep the ``k`` most probable candidates (``k <= 0`` disables)."""
    if k <= 0:
        return candidates
    return _truncate(candidates, max(k, min_keep))


def top_p(candidates: Candidates, p: float, min_keep: int = 1) -> Candidates:
    """Nucleus filter: smallest prefix with cumulative probability >= ``p``.

    ``p >= 1`` disables the filter; the token that crosses the threshold is
    kept so at least one candidate always survives.
    """
    ids, probs = candidates
    if p >= 1.0 or len(ids) == 0:
        return candidates

    cumulative = np.cumsum(probs)
    reached = cumulative >= p
    cutoff = int(np.argmax(reached)) + 1 if np.any(reached) else len(ids)
    return _truncate(candidates, max(cutoff, min_keep))


def tail_free(candidates: Candidates, z: float, min_keep: int = 1) -> Candidates:
    """Tail-free sampling.

    Takes the absolute second difference of the sorted probability curve,
    normalizes it to unit mass, and cuts the tail where its cumulative mass
    first exceeds ``z``. ``z >= 1`` or fewer than three candidates disables
    the filter.
    """
    ids, probs = candidates
    if z >= 1.0 or len(ids) <= 2:
        return candidates

    first = probs[:-1] - probs[1:]
    second = np.abs(first[:-1] - first[1:])
    total = np.sum(second)
    if total > 1e-6:
        second = second / total
    else:
        second = np.full_like(second, 1.0 / len(second))

    cumulative = np.cumsum(second)
    positions = np.arange(len(second))
    exceeded = (cumulative > z) & (positions >= min_keep)
    if not np.any(exceeded):
        return candidates
    return _truncate(candidates, int(np.argmax(exceeded)))


def typical(candidates: Candidates, p: float, min_keep: int = 1) -> Candidates:
    """Locally typical sampling.

    Ranks candidates by ``| -log p - H |`` where ``H`` is the entropy of the
    candidate distribution and keeps the most typical ones until their
    cumulative probability exceeds ``p``. ``p >= 1`` disables the filter.
    """
    ids, probs = candidates
    if p >= 1.0 or len(ids) == 0:
        return candidates

    neg_log = -np.log(probs)
    entropy = float(np.sum(probs * neg_log))
    deviation = np.abs(neg_log - entropy)
    order = np.argsort(deviation, kind="stable")

    cumulative = np.cumsum(probs[order])
    positions = np.arange(len(order))
    exceeded = (cumulative > p) & (positions >= min_keep - 1)
    keep = int(np.argmax(exceeded)) + 1 if np.any(exceeded) else len(order)
    if keep >= len(order):
        return candidates

    # Restore descending-probability order for the survivors.
    survivors = np.sort(order[:keep])
    return ids[survivors], renormalize(probs[survivors])


def cdf_select(probs: np.ndarray, u: float) -> int:
    """Select a candidate index via CDF binary search.

    Args:
        probs: Candidate probabilities in descending order, summing to ~1.0.
        u: Uniform random value in [0, 1).

    Returns:
        Index into *probs* (0 = most probable).
    """
    if len(probs) == 0:
        raise SamplingError("No candidates left to select from", stage="sampling")
    cdf = np.cumsum(probs)
    rank = int(np.searchsorted(cdf, u, side="right"))
    # Clamp rank to valid range (rounding can leave cdf[-1] just below u).
    return min(rank, len(probs) - 1)
