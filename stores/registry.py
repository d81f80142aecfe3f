"""
Store registry for error store backends.

This module keeps the explicit registration table that maps backend names
to the factories used to construct them. Registration order matters: the
resolver picks the first match.
"""

import logging
from typing import Callable, Dict, List, Optional

from stores.base import StoreContract, StoreSettings

logger = logging.getLogger(__name__)

StoreFactory = Callable[[StoreSettings], StoreContract]


class StoreRegistry:
    """Manages backend registration and lookup."""

    def __init__(self):
        """Initialize an empty registry."""
        self._factories: Dict[str, StoreFactory] = {}

    def register(self, name: str, factory: StoreFactory) -> None:
        """
        Register a backend factory.

        Args:
            name: Backend name, by convention ending in 'Store' (e.g. 'RedisStore')
            factory: Class or callable taking StoreSettings
        """
        if name in self._factories:
            logger.warning(f"Store '{name}' already registered, overwriting")

        self._factories[name] = factory
        logger.debug(f"Registered error store '{name}'")

    def register_store(self, factory: type) -> type:
        """
        Class decorator registering a backend under its class name.

        Example:
            @default_registry.register_store
            class FileStore(StoreContract):
                ...
        """
        self.register(factory.__name__, factory)
        return factory

    def unregister(self, name: str) -> bool:
        """
        Unregister a backend.

        Returns:
            True if the backend was unregistered, False if not found
        """
        if name not in self._factories:
            return False

        del self._factories[name]
        logger.info(f"Unregistered error store '{name}'")
        return True

    def get(self, name: str) -> Optional[StoreFactory]:
        """Get a backend factory by exact name."""
        return self._factories.get(name)

    def names(self) -> List[str]:
        """List registered backend names in registration order."""
        return list(self._factories.keys())

    def __contains__(self, name: str) -> bool:
        return name in self._factories

    def __len__(self) -> int:
        return len(self._factories)


def _build_default_registry() -> StoreRegistry:
    from stores.memory import MemoryStore
    from stores.redis_store import RedisStore

    registry = StoreRegistry()
    registry.register("MemoryStore", MemoryStore)
    registry.register("RedisStore", RedisStore)
    return registry


# Registry of the backends shipped with the package
default_registry = _build_default_registry()
