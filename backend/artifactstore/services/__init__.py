"""Artifact store services: object store adapters, metadata store, orchestrators."""
from artifactstore.services.file_artifacts import FileArtifactService
from artifactstore.services.locks import KeyedLock
from artifactstore.services.metadata_store import MetadataStore
from artifactstore.services.object_store import LocalObjectStore, ObjectStoreAdapter
from artifactstore.services.versioned_documents import DocumentHistory, VersionedDocumentStore

__all__ = [
    "FileArtifactService",
    "KeyedLock",
    "MetadataStore",
    "LocalObjectStore",
    "ObjectStoreAdapter",
    "DocumentHistory",
    "VersionedDocumentStore",
]
