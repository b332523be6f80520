"""Backend adapter registry with entry-point auto-discovery.

Built-in adapters are registered at module import time via the
``@register_backend`` decorator. Third-party adapters from other packages
are discovered lazily on the first :meth:`BackendRegistry.get` call via the
``tokenloom.backends`` entry-point group.

An adapter is any class whose constructor accepts a
:class:`~tokenloom.config.RuntimeConfig` and which implements
:class:`~tokenloom.backends.base.ModelHandle`.
"""

from __future__ import annotations

import importlib.metadata
import logging
from typing import TYPE_CHECKING, ClassVar

if TYPE_CHECKING:
    from collections.abc import Callable

    from tokenloom.backends.base import ModelHandle
    from tokenloom.config import RuntimeConfig

logger = logging.getLogger("tokenloom")

_ENTRY_POINT_GROUP = "tokenloom.backends"


class BackendRegistry:
    """Registry for backend adapter classes.

    Discovery chain:

    1. Built-in adapters registered via ``@register_backend`` decorator
    2. Third-party adapters discovered via ``tokenloom.backends``
       entry points (loaded lazily on first ``get()`` call)
    """

    _registry: ClassVar[dict[str, type[ModelHandle]]] = {}
    _entry_points_loaded: ClassVar[bool] = False

    @classmethod
    def register(cls, name: str) -> Callable[[type[ModelHandle]], type[ModelHandle]]:
        """Decorator to register an adapter class under a string key.

        Args:
            name: Unique identifier for the adapter (e.g., ``'mock'``).

        Returns:
            The original class, unmodified.
        """

        def decorator(handle_cls: type[ModelHandle]) -> type[ModelHandle]:
            cls._registry[name] = handle_cls
            return handle_cls

        return decorator

    @classmethod
    def get(cls, name: str) -> type[ModelHandle]:
        """Look up an adapter class by name.

        Loads entry points on the first call if not already loaded.

        Raises:
            KeyError: If *name* is not found after loading entry points.
        """
        if name in cls._registry:
            return cls._registry[name]

        if not cls._entry_points_loaded:
            cls._load_entry_points()
            if name in cls._registry:
                return cls._registry[name]

        available = ", ".join(sorted(cls._registry.keys())) or "(none)"
        raise KeyError(f"Unknown backend: {name!r}. Available: {available}")

    @classmethod
    def build(cls, config: RuntimeConfig) -> ModelHandle:
        """Instantiate the adapter named by ``config.backend``.

        Raises:
            KeyError: If the backend is not registered.
            ModelLoadError: If the adapter cannot load the model.
        """
        handle_cls = cls.get(config.backend)
        logger.info("loading backend %r (model_path=%r)", config.backend, config.model_path)
        return handle_cls(config)  # type: ignore[call-arg]

    @classmethod
    def list_available(cls) -> list[str]:
        """Return all registered adapter names, loading entry points first."""
        if not cls._entry_points_loaded:
            cls._load_entry_points()
        return sorted(cls._registry.keys())

    @classmethod
    def _load_entry_points(cls) -> None:
        """Discover and register adapters from the entry-point group.

        Errors during individual entry-point loading are logged as warnings
        but do not prevent other adapters from loading.
        """
        cls._entry_points_loaded = True
        try:
            eps = importlib.metadata.entry_points(group=_ENTRY_POINT_GROUP)
        except Exception:  # Intentional: must not crash on broken metadata
            logger.warning("Failed to load entry points for %s", _ENTRY_POINT_GROUP, exc_info=True)
            return

        for ep in eps:
            if ep.name in cls._registry:
                # Built-in decorator registration takes precedence.
                continue
            try:
                cls._registry[ep.name] = ep.load()
                logger.debug("Loaded backend %r from entry point", ep.name)
            except Exception:  # Intentional: one bad plugin must not block others
                logger.warning(
                    "Failed to load backend entry point %r: %s",
                    ep.name,
                    ep.value,
                    exc_info=True,
                )

    @classmethod
    def _reset(cls) -> None:
        """Reset registry state. **Test-only** — not part of public API."""
        cls._registry.clear()
        cls._entry_points_loaded = False


# Convenience alias used as a decorator in adapter modules.
register_backend = BackendRegistry.register
