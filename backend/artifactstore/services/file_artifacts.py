"""File artifact service: object bytes + metadata record, kept consistent by ordering.

There is no transaction spanning the object store and the metadata store,
so each operation is a short saga:

upload    key -> checksum -> ensure bucket -> put object -> write metadata
download  read metadata -> read object (missing object => Inconsistent)
delete    read metadata -> delete object -> soft-delete metadata

The metadata record is the source of truth for existence. An object
without a live record is an orphan; upload never deletes one on its own,
it raises PartialUploadFailure so the caller can retry_metadata or
discard_orphan.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import ValidationError

from artifactstore.errors import (
    ChecksumMismatch,
    Inconsistent,
    InvalidArgument,
    NotFound,
    PartialUploadFailure,
)
from artifactstore.schemas.file import FileArtifact
from artifactstore.services.checksum import Source, compute_checksum, ensure_seekable, sha256_hex, stream_size
from artifactstore.services.key_namer import generate_object_key, split_filename
from artifactstore.services.metadata_store import MetadataStore
from artifactstore.services.object_store import DEFAULT_PRESIGN_EXPIRY, ObjectStoreAdapter

logger = logging.getLogger(__name__)

# Headers written alongside every object
HEADER_UPLOADED_BY = "uploaded-by"
HEADER_ORIGINAL_FILENAME = "original-filename"
HEADER_CHECKSUM = "checksum"
HEADER_UPLOAD_DATE = "upload-date"

SUBJECT_TAG = "subject"
SUBJECT_ID_KEY = "subject-id"
SUBJECT_CATEGORY = "subject-attachment"


def _check_labels(metadata: dict, tags: list) -> None:
    for key, value in metadata.items():
        if not isinstance(key, str) or not isinstance(value, str):
            raise InvalidArgument(f"Metadata entries must be strings, got {key!r}: {value!r}")
    for tag in tags:
        if not isinstance(tag, str) or not tag.strip():
            raise InvalidArgument(f"Tags must be non-empty strings, got {tag!r}")


class FileArtifactService:
    """Upload, download, delete and search binary artifacts."""

    def __init__(
        self,
        object_store: ObjectStoreAdapter,
        metadata: MetadataStore,
        default_bucket: str = "driveops-files",
        subject_bucket: str = "sample-files",
        default_presign_expiry: int = DEFAULT_PRESIGN_EXPIRY,
        verify_on_download: bool = True,
    ):
        self.object_store = object_store
        self.metadata = metadata
        self.default_bucket = default_bucket
        self.subject_bucket = subject_bucket
        self.default_presign_expiry = default_presign_expiry
        self.verify_on_download = verify_on_download

    # ── Upload ───────────────────────────────────────────────────

    async def upload(
        self,
        source: Source,
        filename: str,
        content_type: str,
        uploaded_by: str,
        bucket: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None,
        tags: Optional[list[str]] = None,
        deduplicate: bool = False,
    ) -> FileArtifact:
        """Store ``source`` and register it. Returns the persisted artifact.

        With ``deduplicate=True`` a live artifact from the same uploader with
        the same content and original filename is returned instead of
        storing a second copy; use it when retrying an upload whose outcome
        is unknown.
        """
        if not content_type or not content_type.strip():
            raise InvalidArgument("Content type must not be empty")
        if not uploaded_by or not uploaded_by.strip():
            raise InvalidArgument("Uploader identity must not be empty")
        bucket = bucket or self.default_bucket
        metadata = dict(metadata or {})
        _check_labels(metadata, list(tags or []))
        tags = list(dict.fromkeys(tags or []))

        object_key = generate_object_key(filename)
        base_name, _ = split_filename(filename)

        stream = ensure_seekable(source)
        try:
            checksum = await asyncio.to_thread(compute_checksum, stream)
            size = stream_size(stream)
            stream.seek(0)
            if size <= 0:
                raise InvalidArgument(f"Refusing to upload empty file {filename!r}")

            if deduplicate:
                existing = await self.find_duplicate(checksum, uploaded_by, original_name=filename)
                if existing is not None:
                    logger.info(f"Upload of {filename} matches artifact {existing.id}, skipping")
                    return existing

            # Any record validation error must surface before the put
            try:
                artifact = FileArtifact(
                    id=uuid.uuid4(),
                    file_name=base_name,
                    original_name=filename,
                    content_type=content_type,
                    size_bytes=size,
                    bucket=bucket,
                    object_key=object_key,
                    checksum=checksum,
                    uploaded_by=uploaded_by,
                    uploaded_at=datetime.now(timezone.utc),
                    tags=tags,
                    metadata=metadata,
                )
            except ValidationError as e:
                raise InvalidArgument(f"Invalid artifact fields for {filename!r}: {e}") from e
            headers = {
                **metadata,
                HEADER_UPLOADED_BY: uploaded_by,
                HEADER_ORIGINAL_FILENAME: filename,
                HEADER_CHECKSUM: checksum,
                HEADER_UPLOAD_DATE: artifact.uploaded_at.isoformat(),
            }

            await self.object_store.ensure_bucket(bucket)
            await self.object_store.put(bucket, object_key, stream, size, content_type, headers)
            logger.info(f"Stored object {bucket}/{object_key} ({size} bytes) for {uploaded_by}")
        finally:
            if stream is not source:
                stream.close()

        try:
            return await self.metadata.create(artifact)
        except (Exception, asyncio.CancelledError) as e:
            logger.warning(f"Orphaned object {bucket}/{object_key}: metadata write failed ({type(e).__name__})")
            raise PartialUploadFailure(bucket, object_key, artifact=artifact, cause=e) from e

    async def upload_for_subject(
        self,
        subject_id: Any,
        source: Source,
        filename: str,
        content_type: str,
        uploaded_by: str,
    ) -> FileArtifact:
        """Attach a file to a business subject through tag and metadata conventions."""
        subject = str(subject_id)
        return await self.upload(
            source,
            filename,
            content_type,
            uploaded_by,
            bucket=self.subject_bucket,
            metadata={SUBJECT_ID_KEY: subject, "category": SUBJECT_CATEGORY},
            tags=[SUBJECT_TAG, f"{SUBJECT_TAG}-{subject}"],
        )

    # ── Reconciliation ───────────────────────────────────────────

    async def retry_metadata(self, failure: PartialUploadFailure) -> FileArtifact:
        """Complete a partial upload by writing its metadata record again."""
        if failure.artifact is None:
            raise InvalidArgument("PartialUploadFailure carries no artifact to register")
        if not await self.object_store.exists(failure.bucket, failure.key):
            raise NotFound(f"Orphaned object {failure.bucket}/{failure.key} no longer exists")
        artifact = await self.metadata.create(failure.artifact)
        logger.info(f"Reconciled orphan {failure.bucket}/{failure.key} as artifact {artifact.id}")
        return artifact

    async def discard_orphan(self, failure: PartialUploadFailure) -> None:
        """Delete the object left behind by a partial upload."""
        live = await self.metadata.get_by_object_key(failure.bucket, failure.key)
        if live is not None:
            raise InvalidArgument(
                f"Object {failure.bucket}/{failure.key} is registered as artifact {live.id}, not an orphan"
            )
        await self.object_store.delete(failure.bucket, failure.key)
        logger.info(f"Discarded orphan {failure.bucket}/{failure.key}")

    # ── Download / verify ────────────────────────────────────────

    async def get(self, artifact_id: uuid.UUID) -> FileArtifact:
        artifact = await self.metadata.get(artifact_id)
        if artifact is None:
            raise NotFound(f"Artifact {artifact_id} not found")
        return artifact

    async def download(self, artifact_id: uuid.UUID) -> tuple[FileArtifact, bytes]:
        artifact = await self.get(artifact_id)
        data = await self._read_object(artifact)
        if self.verify_on_download:
            self._check_integrity(artifact, data)
        return artifact, data

    async def verify(self, artifact_id: uuid.UUID) -> FileArtifact:
        """Re-hash the stored bytes; raises ChecksumMismatch on corruption."""
        artifact = await self.get(artifact_id)
        self._check_integrity(artifact, await self._read_object(artifact))
        return artifact

    async def _read_object(self, artifact: FileArtifact) -> bytes:
        try:
            stream = await self.object_store.get(artifact.bucket, artifact.object_key)
        except NotFound as e:
            logger.warning(
                f"Artifact {artifact.id} is live but object {artifact.bucket}/{artifact.object_key} is missing"
            )
            raise Inconsistent(artifact.id, artifact.bucket, artifact.object_key) from e
        return stream.read()

    @staticmethod
    def _check_integrity(artifact: FileArtifact, data: bytes) -> None:
        actual = sha256_hex(data)
        if actual != artifact.checksum or len(data) != artifact.size_bytes:
            logger.error(f"Checksum mismatch for artifact {artifact.id}")
            raise ChecksumMismatch(artifact.checksum, actual, artifact.bucket, artifact.object_key)

    # ── Delete ───────────────────────────────────────────────────

    async def delete(self, artifact_id: uuid.UUID) -> bool:
        """Remove the object, then soft-delete the record.

        Returns False if there is no live artifact. If the object delete
        fails the record stays live and the error propagates, so the call
        can simply be retried.
        """
        artifact = await self.metadata.get(artifact_id)
        if artifact is None:
            return False
        try:
            await self.object_store.delete(artifact.bucket, artifact.object_key)
        except Exception as e:
            logger.error(f"Failed to delete object for artifact {artifact_id}: {e}")
            raise
        await self.metadata.soft_delete(artifact_id)
        logger.info(f"Deleted artifact {artifact_id} ({artifact.bucket}/{artifact.object_key})")
        return True

    # ── Presigned links ──────────────────────────────────────────

    async def presigned_url(self, artifact_id: uuid.UUID, ttl_seconds: Optional[int] = None) -> str:
        artifact = await self.get(artifact_id)
        ttl = ttl_seconds if ttl_seconds is not None else self.default_presign_expiry
        try:
            return await self.object_store.presign(artifact.bucket, artifact.object_key, ttl)
        except NotFound as e:
            raise Inconsistent(artifact.id, artifact.bucket, artifact.object_key) from e

    # ── Search ───────────────────────────────────────────────────

    async def search_by_tags(self, tags: list[str]) -> list[FileArtifact]:
        return await self.metadata.search_by_tags(tags)

    async def list_by_uploader(self, uploaded_by: str) -> list[FileArtifact]:
        return await self.metadata.list_by_uploader(uploaded_by)

    async def list_by_content_type(self, content_type: str) -> list[FileArtifact]:
        return await self.metadata.list_by_content_type(content_type)

    async def find_by_metadata(self, key: str, value: str) -> list[FileArtifact]:
        return await self.metadata.find_by_attribute(key, value)

    async def list_for_subject(self, subject_id: Any) -> list[FileArtifact]:
        return await self.metadata.find_by_attribute(SUBJECT_ID_KEY, str(subject_id))

    async def find_duplicate(
        self,
        checksum: str,
        uploaded_by: str,
        original_name: Optional[str] = None,
    ) -> Optional[FileArtifact]:
        for artifact in await self.metadata.find_by_checksum(checksum, uploaded_by):
            if original_name is None or artifact.original_name == original_name:
                return artifact
        return None
