from gitlab_mcp.server.auth.settings import FileStorageConfig, MemoryStorageConfig, SQLiteStorageConfig
from gitlab_mcp.server.auth.storage.base import SessionStorageBackend, StorageError, StorageStats
from gitlab_mcp.server.auth.storage.file import FileStorageBackend
from gitlab_mcp.server.auth.storage.memory import MemoryStorageBackend
from gitlab_mcp.server.auth.storage.sqlite import SQLiteStorageBackend


def create_storage_backend(
    config: MemoryStorageConfig | FileStorageConfig | SQLiteStorageConfig,
) -> SessionStorageBackend:
    """Build the backend described by a storage configuration."""
    match config.type:
        case "file":
            return FileStorageBackend(config)
        case "sqlite":
            return SQLiteStorageBackend(config)
        case _:
            return MemoryStorageBackend()


__all__ = [
    "FileStorageBackend",
    "MemoryStorageBackend",
    "SQLiteStorageBackend",
    "SessionStorageBackend",
    "StorageError",
    "StorageStats",
    "create_storage_backend",
]
