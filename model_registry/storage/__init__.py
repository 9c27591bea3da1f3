from .base import RegistryStats, StorageBackend, UpsertResult
from .local import FileBackend, LocalBackend, MemoryBackend
from .remote import RemoteBackend

__all__ = [
    "FileBackend",
    "LocalBackend",
    "MemoryBackend",
    "RegistryStats",
    "RemoteBackend",
    "StorageBackend",
    "UpsertResult",
]
