"""Token sampler: logits in, one token out.

Pipeline (filters)::

    greedy? -> penalties + logit bias -> / temperature -> softmax
            -> top-k -> top-p -> tail-free -> typical -> CDF draw

Pipeline (Mirostat)::

    greedy? -> penalties + logit bias -> / temperature -> softmax
            -> Mirostat truncation -> CDF draw -> mu update

``penalty_stage="post_temperature"`` moves the penalty step after the
temperature division. Each non-greedy call consumes exactly one value from
the sampler's own ``numpy.random.Generator``, so a fixed seed and an
identical call sequence reproduce the same tokens.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

from tokenloom.exceptions import SamplingError
from tokenloom.params import MirostatMode
from tokenloom.sampling import filters, mirostat
from tokenloom.sampling.types import SamplerState, SampleResult

if TYPE_CHECKING:
    from tokenloom.params import SampleParams
    from tokenloom.sampling.filters import Candidates


class TokenSampler:
    """Selects tokens from logits according to a fixed SampleParams.

    The sampler owns its random generator; all other mutable state lives in
    the :class:`SamplerState` passed to each call.

    Args:
        params: Validated sampling parameters.
        rng: Random generator to draw from. Defaults to
            ``numpy.random.default_rng(params.seed)``.
    """

    def __init__(self, params: SampleParams, rng: np.random.Generator | None = None) -> None:
        self._params = params
        self._rng = rng if rng is not None else np.random.default_rng(params.seed)

    @property
    def params(self) -> SampleParams:
        return self._params

    def new_state(self) -> SamplerState:
        """Fresh state for these params (``mu = 2 * tau``, empty penalty window)."""
        return SamplerState.for_params(self._params)

    def sample(self, logits: np.ndarray, state: SamplerState) -> SampleResult:
        """Select the next token and update *state*.

        The selected token is pushed into the penalty window; Mirostat also
        updates ``state.mu`` and ``state.last_surprise``.

        Args:
            logits: 1-D logit vector for the next position.
            state: Session-owned sampler state.

        Returns:
            SampleResult describing the selection.

        Raises:
            SamplingError: If the logits are malformed or fully masked.
        """
        row = self._check_logits(logits)
        params = self._params

        if params.greedy:
            # Pure function of the logits; np.argmax breaks ties to the lowest index.
            token = int(np.argmax(row))
            state.accept(token)
            return SampleResult(
                token_id=token,
                token_prob=1.0,
                num_candidates=1,
                greedy=True,
                diagnostics={"pipeline": "greedy"},
            )

        candidates = self._distribution(row, state)
        diagnostics: dict[str, object] = {"softmax_candidates": len(candidates[0])}

        if params.mirostat is MirostatMode.OFF:
            ids, probs = self._filter(candidates, diagnostics)
            diagnostics["pipeline"] = "filters"
        else:
            ids, probs = self._mirostat_truncate(candidates, state.mu, row.size)
            diagnostics["pipeline"] = f"mirostat_{params.mirostat.value}"

        u = float(self._rng.random())
        rank = filters.cdf_select(probs, u)
        token = int(ids[rank])
        prob = float(probs[rank])
        diagnostics["u"] = u
        diagnostics["rank"] = rank

        surprise: float | None = None
        mu: float | None = None
        if params.mirostat is not MirostatMode.OFF:
            surprise = mirostat.surprise_bits(prob)
            state.mu = mirostat.update_mu(
                state.mu, params.mirostat_tau, params.mirostat_eta, surprise
            )
            state.last_surprise = surprise
            mu = state.mu

        state.accept(token)
        return SampleResult(
            token_id=token,
            token_prob=prob,
            num_candidates=len(ids),
            surprise=surprise,
            mu=mu,
            diagnostics=diagnostics,
        )

    def candidates(self, logits: np.ndarray, state: SamplerState) -> Candidates:
        """Return the distribution the next draw would use, without drawing.

        Does not touch the random generator or *state*. For greedy params the
        result is the single argmax token with probability 1.

        Returns:
            ``(ids, probs)``: token ids and their renormalized probabilities in
            descending order.
        """
        row = self._check_logits(logits)
        if self._params.greedy:
            return np.array([int(np.argmax(row))]), np.array([1.0])
        dist = self._distribution(row, state)
        if self._params.mirostat is MirostatMode.OFF:
            return self._filter(dist, {})
        return self._mirostat_truncate(dist, state.mu, row.size)

    # --- Pipeline stages ---

    @staticmethod
    def _check_logits(logits: np.ndarray) -> np.ndarray:
        row = np.asarray(logits, dtype=np.float64)
        if row.ndim != 1 or row.size == 0:
            raise SamplingError(
                f"Expected a non-empty 1-D logits vector, got shape {row.shape}", stage="sampling"
            )
        if np.isnan(row).any() or np.isposinf(row).any():
            raise SamplingError("Logits contain NaN or +inf", stage="sampling")
        return row

    def _distribution(self, row: np.ndarray, state: SamplerState) -> Candidates:
        """Penalties, temperature and softmax: the full sorted candidate set."""
        params = self._params
        scaled = row
        if params.penalty_stage == "pre_temperature":
            scaled = self._penalize(scaled, state)
        scaled = scaled / params.temperature
        if params.penalty_stage == "post_temperature":
            scaled = self._penalize(scaled, state)
        return filters.sort_candidates(filters.stable_softmax(scaled))

    def _penalize(self, row: np.ndarray, state: SamplerState) -> np.ndarray:
        params = self._params
        if params.penalties_enabled and state.recent:
            row = filters.apply_penalties(
                row,
                state.token_counts(),
                params.repeat_penalty,
                params.frequency_penalty,
                params.presence_penalty,
            )
        return filters.apply_logit_bias(row, params.logit_bias)

    def _filter(self, candidates: Candidates, diagnostics: dict[str, object]) -> Candidates:
        params = self._params
        min_keep = params.min_keep

        candidates = filters.top_k(candidates, params.top_k, min_keep)
        diagnostics["after_top_k"] = len(candidates[0])
        candidates = filters.top_p(candidates, params.top_p, min_keep)
        diagnostics["after_top_p"] = len(candidates[0])
        candidates = filters.tail_free(candidates, params.tfs_z, min_keep)
        diagnostics["after_tail_free"] = len(candidates[0])
        candidates = filters.typical(candidates, params.typical_p, min_keep)
        diagnostics["after_typical"] = len(candidates[0])

        ids, probs = candidates
        return ids, filters.renormalize(probs)

    def _mirostat_truncate(
        self, candidates: Candidates, mu: float, vocab_size: int
    ) -> Candidates:
        params = self._params
        ids, probs = candidates
        if params.mirostat is MirostatMode.V1:
            k = mirostat.v1_top_k(probs, mu, params.mirostat_m, vocab_size)
        else:
            k = mirostat.v2_top_k(probs, mu)
        return ids[:k], filters.renormalize(probs[:k])
