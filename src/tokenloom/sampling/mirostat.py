"""Mirostat adaptive truncation (v1 and v2).

Mirostat steers the *surprise* ``-log2 p`` of sampled tokens toward a
target ``tau`` by maintaining a control variable ``mu`` across calls:

    mu <- mu - eta * (observed_surprise - tau)

v1 estimates the Zipf exponent of the distribution from its top ``m``
probabilities and derives a top-k bound from ``mu``. v2 drops every
candidate whose surprise exceeds ``mu``.

Reference: Basu et al., "Mirostat: A Neural Text Decoding Algorithm that
Directly Controls Perplexity" (ICLR 2021).
"""

from __future__ import annotations

import math

import numpy as np


def estimate_zipf_exponent(probs: np.ndarray, m: int) -> float:
    """Least-squares estimate of the Zipf exponent ``s`` from the top *m* probabilities.

    Args:
        probs: Candidate probabilities in descending order (all > 0).
        m: Number of leading probabilities to use.

    Returns:
        The estimate ``s_hat``; 0.0 when fewer than two probabilities are given.
    """
    n = min(m, len(probs))
    if n < 2:
        return 0.0
    ranks = np.arange(n - 1, dtype=np.float64)
    t = np.log((ranks + 2.0) / (ranks + 1.0))
    b = np.log(probs[: n - 1] / probs[1:n])
    return float(np.sum(t * b) / np.sum(t * t))


def v1_top_k(probs: np.ndarray, mu: float, m: int, vocab_size: int) -> int:
    """Number of candidates Mirostat v1 keeps for the current ``mu``.

    Computes ``k = ((eps * 2**mu) / (1 - N**-eps)) ** (1 / s_hat)`` with
    ``eps = s_hat - 1`` and clamps it to ``[1, len(probs)]``.
    """
    n = len(probs)
    if n <= 1:
        return n
    s_hat = estimate_zipf_exponent(probs, m)
    if s_hat <= 0.0:
        # Flat head: no tail to cut.
        return n
    eps = s_hat - 1.0

    with np.errstate(all="ignore"):
        two_mu = np.float64(2.0) ** np.float64(mu)
        if abs(eps) < 1e-9:
            # Limit of eps / (1 - N**-eps) as eps -> 0.
            base = two_mu / math.log(max(vocab_size, 2))
        else:
            base = (eps * two_mu) / (1.0 - np.float64(vocab_size) ** -eps)
        k = base ** (1.0 / s_hat)

    if not np.isfinite(k):
        return n
    return int(min(max(k, 1.0), n))


def v2_top_k(probs: np.ndarray, mu: float) -> int:
    """Number of leading candidates whose surprise ``-log2 p`` is at most ``mu`` (at least 1)."""
    if len(probs) == 0:
        return 0
    surprise = -np.log2(probs)
    # Surprise is non-decreasing along a descending-probability candidate set.
    return max(1, int(np.searchsorted(surprise, mu, side="right")))


def surprise_bits(prob: float) -> float:
    return -math.log2(prob)


def update_mu(mu: float, tau: float, eta: float, observed_surprise: float) -> float:
    """One feedback step of the Mirostat controller."""
    return mu - eta * (observed_surprise - tau)
