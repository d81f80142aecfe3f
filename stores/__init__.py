"""
Error store backends.

This package provides the store contract every backend implements, the
registration table of known backends and the resolver that picks one from
configuration.
"""

from stores.base import (
    StoreConfigurationError,
    StoreContract,
    StoreFailure,
    StoreSettings,
)
from stores.memory import MemoryStore
from stores.redis_store import RedisStore
from stores.registry import StoreRegistry, default_registry
from stores.resolver import StoreResolver, resolve_store

__all__ = [
    'StoreContract',
    'StoreSettings',
    'StoreFailure',
    'StoreConfigurationError',
    'MemoryStore',
    'RedisStore',
    'StoreRegistry',
    'default_registry',
    'StoreResolver',
    'resolve_store',
]
