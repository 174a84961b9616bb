"""
Storage module: object store backends and the session store adapter.
"""

from lapcounter.storage.backends import (
    FileSystemBackend,
    InMemoryObjectStore,
    ObjectMetadata,
    ObjectStoreBackend,
    RedisBackend,
    S3Backend,
    create_backend,
)
from lapcounter.storage.session_store import SessionStore

__all__ = [
    "FileSystemBackend",
    "InMemoryObjectStore",
    "ObjectMetadata",
    "ObjectStoreBackend",
    "RedisBackend",
    "S3Backend",
    "SessionStore",
    "create_backend",
]
