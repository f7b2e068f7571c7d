"""
Storage Layer

RESPONSIBILITY: Persist moments and content hashes
OUTPUTS: MomentFileStore (JSON file per moment), HashFileStore (SQLite)

MUST NOT: Run analysis or call model providers.
"""

from .hash_store import HashFileStore, StorageError
from .moment_store import (
    LoadResult,
    MomentFileStore,
    SaveResult,
    StoreStatus,
    moment_filename,
)

__all__ = [
    'HashFileStore',
    'StorageError',
    'LoadResult',
    'MomentFileStore',
    'SaveResult',
    'StoreStatus',
    'moment_filename',
]
