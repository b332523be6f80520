"""Shared pytest fixtures for tokenloom tests.

Provides reusable sampling parameters, runtime configs that ignore any
local ``.env`` file, mock backends, and sample logit arrays used across
multiple test modules.
"""

from __future__ import annotations

import numpy as np
import pytest

from tokenloom.backends.mock import MockDetokenizer, MockModelHandle
from tokenloom.config import RuntimeConfig
from tokenloom.params import SampleParams


def next_id(history: list[int]) -> int:
    """Scripted model: always favour the token after the last one."""
    return history[-1] + 1


@pytest.fixture
def default_config() -> RuntimeConfig:
    """Return a RuntimeConfig with all default values (no .env file)."""
    return RuntimeConfig(_env_file=None)  # type: ignore[call-arg]


@pytest.fixture
def silent_config() -> RuntimeConfig:
    """Return a config with no per-token logging for noise-free tests."""
    return RuntimeConfig(_env_file=None, log_level="none")  # type: ignore[call-arg]


@pytest.fixture
def greedy_params() -> SampleParams:
    """Temperature 0: argmax selection, no random draws."""
    return SampleParams(temperature=0.0)


@pytest.fixture
def seeded_params() -> SampleParams:
    """Stochastic filter pipeline with a fixed seed."""
    return SampleParams(temperature=0.9, top_k=20, top_p=0.9, seed=1234)


@pytest.fixture
def scripted_model() -> MockModelHandle:
    """Mock backend that strongly prefers ``last_token + 1``."""
    return MockModelHandle(vocab_size=64, seed=0, next_token=next_id)


@pytest.fixture
def detokenizer() -> MockDetokenizer:
    return MockDetokenizer()


@pytest.fixture
def sample_logits_uniform() -> np.ndarray:
    """Return equal logits: softmax gives every one of 100 tokens equal mass."""
    return np.zeros(100, dtype=np.float64)


@pytest.fixture
def sample_logits_peaked() -> np.ndarray:
    """Return logits with one dominant token (index 0).

    Token 0 has logit 10.0; all others have logit 0.0.
    After softmax, token 0 has ~99.5% probability. Vocab size = 100.
    """
    logits = np.zeros(100, dtype=np.float64)
    logits[0] = 10.0
    return logits


@pytest.fixture
def sample_logits_random() -> np.ndarray:
    """Return random logits for a 1000-token vocabulary (fixed seed)."""
    rng = np.random.default_rng(seed=12345)
    return rng.standard_normal(1000) * 2.0


@pytest.fixture
def sample_logits_zipf() -> np.ndarray:
    """Return Zipf-shaped logits (exponent 1.1) over 1000 shuffled token ids.

    The resulting distribution has enough entropy for a Mirostat target of
    5 bits to be reachable.
    """
    rng = np.random.default_rng(seed=7)
    ranks = np.arange(1, 1001, dtype=np.float64)
    logits = -1.1 * np.log(ranks)
    return logits[rng.permutation(1000)]
