"""Compute backend adapters for tokenloom.

Re-exports the capability interfaces, the registry, and the built-in mock
adapter for convenient access::

    from tokenloom.backends import ModelHandle, BackendRegistry
    from tokenloom.backends import MockModelHandle, MockDetokenizer
"""

from tokenloom.backends.base import Detokenizer, ModelHandle
from tokenloom.backends.mock import MockDetokenizer, MockModelHandle
from tokenloom.backends.registry import BackendRegistry, register_backend

# LlamaCppModelHandle is registered by its own module but imported lazily to
# avoid importing llama-cpp-python (and its native library) at package import.

__all__ = [
    "BackendRegistry",
    "Detokenizer",
    "MockDetokenizer",
    "MockModelHandle",
    "ModelHandle",
    "register_backend",
]
