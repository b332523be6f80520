"""Generation logging subsystem for tokenloom.

Provides immutable per-token generation records and a configurable logger
that supports none/summary/full verbosity and in-memory diagnostic mode.
"""

from tokenloom.logging.logger import GenerationLogger
from tokenloom.logging.types import TokenGenerationRecord

__all__ = [
    "GenerationLogger",
    "TokenGenerationRecord",
]
