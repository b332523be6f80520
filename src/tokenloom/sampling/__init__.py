"""Token sampling subsystem for tokenloom.

Penalties, temperature, softmax, top-k, top-p, tail-free and locally-typical
filtering, Mirostat v1/v2, and a seeded CDF draw.
"""

from tokenloom.sampling.sampler import TokenSampler
from tokenloom.sampling.types import SampleResult, SamplerState

__all__ = [
    "SampleResult",
    "SamplerState",
    "TokenSampler",
]
