"""Generation session: state machine and control loop."""

from tokenloom.session.session import GenerationSession
from tokenloom.session.types import GenerationResult, SessionState, StopReason

__all__ = [
    "GenerationResult",
    "GenerationSession",
    "SessionState",
    "StopReason",
]
