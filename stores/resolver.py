"""
Store resolver.

Selects and constructs the configured backend from the registration table:
- Exact match on ``type + "Store"`` first
- Otherwise the first registered name containing ``type``
- The in-memory store when nothing is configured
"""

import logging
from pathlib import Path
from typing import Dict, Optional

import yaml
from pydantic import ValidationError

from stores.base import StoreConfigurationError, StoreContract, StoreSettings
from stores.registry import StoreFactory, StoreRegistry, default_registry

logger = logging.getLogger(__name__)

STORE_SUFFIX = "Store"


class StoreResolver:
    """Resolves StoreSettings to a constructed backend."""

    def __init__(self, registry: Optional[StoreRegistry] = None):
        """
        Initialize the resolver.

        Args:
            registry: Registration table to search; the default one if omitted
        """
        self.registry = registry or default_registry
        self._settings_cache: Dict[str, StoreSettings] = {}

    def find_factory(self, store_type: str) -> Optional[StoreFactory]:
        """
        Find the factory for a store type by naming convention.

        Multiple substring matches are not an error: the first registered
        name wins.

        Args:
            store_type: Configured type, e.g. 'Redis'

        Returns:
            Matching factory, or None if nothing matches
        """
        names = self.registry.names()

        conventional = store_type + STORE_SUFFIX
        if conventional in names:
            return self.registry.get(conventional)

        for name in names:
            if store_type in name:
                logger.debug(f"Store type '{store_type}' matched '{name}' by substring")
                return self.registry.get(name)

        return None

    def resolve(self, settings: Optional[StoreSettings] = None) -> StoreContract:
        """
        Resolve and construct the configured backend.

        Args:
            settings: Store settings, or None for the in-memory default

        Returns:
            Constructed backend

        Raises:
            StoreConfigurationError: If the settings are invalid, no backend
                matches, or the backend cannot be constructed
        """
        if settings is None:
            from stores.memory import MemoryStore
            logger.info("No error store configured, using in-memory store")
            return MemoryStore(StoreSettings())

        if not settings.type:
            raise StoreConfigurationError("Error store 'type' must be specified")
        if settings.size < 1:
            raise StoreConfigurationError("Error store 'size' must be positive")

        factory = self.find_factory(settings.type)
        if factory is None:
            raise StoreConfigurationError(f"Could not find error store type: {settings.type}")

        try:
            store = factory(settings)
        except Exception as e:
            raise StoreConfigurationError(
                f"Error creating a {settings.type} error store: {e}"
            ) from e

        logger.info(f"Resolved error store type '{settings.type}' to {store.name}")
        return store

    def load_store_settings(self, path: Path) -> StoreSettings:
        """
        Load store settings from the ``store`` section of a YAML file.

        Args:
            path: Path to the YAML file

        Returns:
            Parsed StoreSettings

        Raises:
            FileNotFoundError: If the file does not exist
            StoreConfigurationError: If the file is malformed or incomplete
        """
        path = Path(path)
        cache_key = str(path)
        if cache_key in self._settings_cache:
            return self._settings_cache[cache_key]

        if not path.exists():
            raise FileNotFoundError(f"Store configuration not found: {path}")

        try:
            with open(path, 'r') as f:
                config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            logger.error(f"Failed to parse store configuration {path}: {e}")
            raise StoreConfigurationError(f"Malformed store configuration {path}: {e}") from e

        section = config.get("store") if isinstance(config, dict) else None
        if not isinstance(section, dict) or "type" not in section:
            raise StoreConfigurationError(f"Missing required field 'store.type' in {path}")

        try:
            settings = StoreSettings(**section)
        except ValidationError as e:
            raise StoreConfigurationError(f"Invalid store configuration {path}: {e}") from e

        self._settings_cache[cache_key] = settings
        logger.info(f"Loaded store configuration from {path}")
        return settings


def resolve_store(settings: Optional[StoreSettings] = None) -> StoreContract:
    """Resolve a backend against the default registry."""
    return StoreResolver().resolve(settings)
