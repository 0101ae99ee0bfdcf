"""Storage backends for chunk bytes, frames and job state."""

from chunkflow.store.blob import BlobStore, LocalBlobStore
from chunkflow.store.persistence import (
    JobState,
    JobStateStore,
    JsonPersistenceStore,
    PersistenceError,
    PersistenceStore,
)

__all__ = [
    "BlobStore",
    "LocalBlobStore",
    "PersistenceStore",
    "JsonPersistenceStore",
    "JobState",
    "JobStateStore",
    "PersistenceError",
]
