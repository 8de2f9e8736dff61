# adapters/__init__.py
import os
from typing import Dict

from .storage import LocalBlobStore, R2BlobStore, StorageError
from .worker import WorkerAdapter

# instantiate default adapters (they read env on init but do not make network calls)
worker_adapter = WorkerAdapter()

ADAPTERS: Dict[str, object] = {
    "worker": worker_adapter,
}

_STORAGE_FACTORIES = {
    "local": LocalBlobStore,
    "r2": R2BlobStore,
}


def register_adapter(name: str, adapter_obj) -> None:
    """Register or override an adapter by name (lowercased)."""
    ADAPTERS[name.strip().lower()] = adapter_obj


def get_adapter(name: str):
    """Return adapter instance or None."""
    if not name:
        return None
    return ADAPTERS.get(name.strip().lower())


def get_worker() -> WorkerAdapter:
    return ADAPTERS["worker"]


def get_storage():
    """Blob store selected by STORAGE_BACKEND; a registered 'storage' adapter wins."""
    registered = ADAPTERS.get("storage")
    if registered is not None:
        return registered
    backend = os.getenv("STORAGE_BACKEND", "local").strip().lower()
    factory = _STORAGE_FACTORIES.get(backend)
    if factory is None:
        raise StorageError(f"unknown STORAGE_BACKEND {backend!r}")
    store = factory()
    ADAPTERS["storage"] = store
    return store


__all__ = [
    "ADAPTERS", "LocalBlobStore", "R2BlobStore", "StorageError", "WorkerAdapter",
    "get_adapter", "get_storage", "get_worker", "register_adapter",
]
