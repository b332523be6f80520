"""Context window subsystem for tokenloom.

Bounded token history with prefix-preserving rotation and incremental
(consumed-position) tracking for the compute backend.
"""

from tokenloom.context.types import RotationEvent
from tokenloom.context.window import ContextWindow

__all__ = [
    "ContextWindow",
    "RotationEvent",
]
