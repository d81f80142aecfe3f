"""
Application configuration management.
"""

from pydantic_settings import BaseSettings
from typing import Dict, List, Optional

from stores.base import (
    DEFAULT_BACKUP_QUEUE_SIZE,
    DEFAULT_ROLLUP_SECONDS,
    DEFAULT_STORE_TYPE,
    DEFAULT_STORE_SIZE,
    StoreSettings,
)


class Settings(BaseSettings):
    """Error log settings loaded from environment variables."""

    # Application
    application_name: Optional[str] = None
    enable_logging: bool = True
    log_level: str = "INFO"

    # Error store; no type means the in-memory store
    error_store_type: Optional[str] = None
    error_store_size: int = DEFAULT_STORE_SIZE
    error_store_connection_string: Optional[str] = None

    # Rollup and outage handling
    rollup_seconds: int = DEFAULT_ROLLUP_SECONDS
    backup_queue_size: int = DEFAULT_BACKUP_QUEUE_SIZE
    retry_delay_seconds: float = 2.0

    # Ignore rules (JSON lists in the environment)
    ignore_regexes: List[str] = []
    ignore_types: List[str] = []

    # Values replaced before a record is stored (JSON objects in the environment)
    form_filters: Dict[str, str] = {}
    cookie_filters: Dict[str, str] = {}

    class Config:
        env_file = ".env"
        case_sensitive = False

    def store_settings(self) -> StoreSettings:
        """
        Settings for the store resolver.

        Without a configured store type the in-memory store is selected,
        still sized and rolled up as configured.
        """
        return StoreSettings(
            type=self.error_store_type or DEFAULT_STORE_TYPE,
            size=self.error_store_size,
            rollup_seconds=self.rollup_seconds,
            backup_queue_size=self.backup_queue_size,
            connection_string=self.error_store_connection_string,
        )


# Global settings instance
settings = Settings()
