"""Storage module for image artifacts and request status."""

from storage.artifact_store import ArtifactStore, S3ArtifactStore, TransientResourceManager
from storage.status_store import DynamoDBStatusStore, SqlStatusStore, StatusStore, build_status_store

__all__ = [
    "ArtifactStore",
    "S3ArtifactStore",
    "TransientResourceManager",
    "DynamoDBStatusStore",
    "SqlStatusStore",
    "StatusStore",
    "build_status_store",
]
