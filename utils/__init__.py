"""
Utilities Package
Local persistence and concurrency helpers
"""

from .data_cache import DataCache
from .keyed_lock import KeyedLock

__all__ = [
    'DataCache',
    'KeyedLock'
]
