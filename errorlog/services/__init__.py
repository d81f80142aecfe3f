"""Error log services package."""

from errorlog.services.backup_queue import BackupQueue, EnqueueResult
from errorlog.services.ignore_filter import IgnoreFilter, is_descendant_of

__all__ = [
    'BackupQueue',
    'EnqueueResult',
    'IgnoreFilter',
    'is_descendant_of',
]
