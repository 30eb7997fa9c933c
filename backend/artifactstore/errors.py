"""Typed failures raised by the artifact store.

Callers can tell from the exception type whether an artifact is fully
absent (NotFound), fully present, or in a divergent state
(PartialUploadFailure, Inconsistent), and whether a retry is safe
(BackendUnavailable).
"""
from typing import Any


class ArtifactStoreError(Exception):
    """Base class for every error raised by this package."""
    pass


class NotFound(ArtifactStoreError):
    """Referenced id or key has no live record."""
    pass


class BackendUnavailable(ArtifactStoreError):
    """Transient connectivity, permission or timeout failure on either backend."""

    def __init__(self, message: str, backend: str = ""):
        super().__init__(message)
        self.backend = backend


class ChecksumMismatch(ArtifactStoreError):
    """Computed digest does not match the recorded one."""

    def __init__(self, expected: str, actual: str, bucket: str = "", key: str = ""):
        super().__init__(
            f"Checksum mismatch for {bucket}/{key}: expected {expected}, got {actual}"
        )
        self.expected = expected
        self.actual = actual
        self.bucket = bucket
        self.key = key


class VersionConflict(ArtifactStoreError):
    """Concurrent modification detected on a subject's version chain."""

    def __init__(self, subject_id: Any, message: str = ""):
        super().__init__(message or f"Concurrent modification of version chain for subject {subject_id}")
        self.subject_id = subject_id


class PartialUploadFailure(ArtifactStoreError):
    """Object bytes were persisted but the metadata write did not complete.

    The stored object is an orphan until the metadata write is retried
    (FileArtifactService.retry_metadata) or the object is discarded
    (FileArtifactService.discard_orphan).
    """

    def __init__(self, bucket: str, key: str, artifact: Any = None, cause: BaseException | None = None):
        detail = f": {cause}" if cause is not None and str(cause) else ""
        super().__init__(f"Object {bucket}/{key} stored but metadata write failed{detail}")
        self.bucket = bucket
        self.key = key
        self.artifact = artifact
        self.cause = cause


class Inconsistent(ArtifactStoreError):
    """Live metadata references an object that is physically absent."""

    def __init__(self, artifact_id: Any, bucket: str, key: str):
        super().__init__(f"Artifact {artifact_id} is live but object {bucket}/{key} is missing")
        self.artifact_id = artifact_id
        self.bucket = bucket
        self.key = key


class InvalidArgument(ArtifactStoreError, ValueError):
    """Malformed input (empty filename, negative size, size mismatch, ...)."""
    pass
