"""Metadata store: artifact records in the relational database.

Soft-deleted records are excluded from every read path unless the caller
explicitly asks for audit visibility (``include_deleted=True`` / ``list_all``).
Writes are keyed by record id so a retried create or soft delete converges
on the same state.
"""
import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Optional, TypeVar

from sqlalchemy import desc, select, update
from sqlalchemy.exc import (
    DataError,
    DisconnectionError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
    TimeoutError as PoolTimeoutError,
)
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from artifactstore.errors import BackendUnavailable, InvalidArgument
from artifactstore.models.file_record import FileAttribute, FileRecord, FileTag
from artifactstore.schemas.file import FileArtifact

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TRANSIENT_ERRORS = (OperationalError, InterfaceError, DisconnectionError, PoolTimeoutError, OSError)


def _to_artifact(record: FileRecord) -> FileArtifact:
    """Convert SQLAlchemy model to the detached artifact schema."""
    return FileArtifact(
        id=record.id,
        file_name=record.file_name,
        original_name=record.original_name,
        content_type=record.content_type,
        size_bytes=record.size_bytes,
        bucket=record.bucket,
        object_key=record.object_key,
        checksum=record.checksum,
        uploaded_by=record.uploaded_by,
        uploaded_at=record.uploaded_at,
        tags=sorted(record.tags),
        metadata=record.attributes,
        is_deleted=record.is_deleted,
    )


class MetadataStore:
    """Async repository over the metadata database.

    ``run`` is the single entry point for a unit of work: it opens a
    session, applies the backend timeout and maps transient database
    failures to BackendUnavailable. IntegrityError is left for the caller
    because its meaning (duplicate retry, version race) is domain specific.
    Values the database refuses (DataError) are InvalidArgument; any other
    SQLAlchemy failure is BackendUnavailable.
    """

    backend_name = "metadata_store"

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], timeout: Optional[float] = None):
        self._session_factory = session_factory
        self.timeout = timeout

    @asynccontextmanager
    async def session(self):
        async with self._session_factory() as session:
            try:
                yield session
            finally:
                await session.close()

    async def run(self, operation: str, work: Callable[[AsyncSession], Awaitable[T]]) -> T:
        async def _unit() -> T:
            async with self.session() as session:
                return await work(session)

        try:
            return await asyncio.wait_for(_unit(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise BackendUnavailable(f"Metadata store {operation} timed out", backend=self.backend_name) from e
        except IntegrityError:
            raise
        except _TRANSIENT_ERRORS as e:
            raise BackendUnavailable(f"Metadata store {operation} failed: {e}", backend=self.backend_name) from e
        except DataError as e:
            raise InvalidArgument(f"Metadata store {operation} rejected the data: {e.orig}") from e
        except SQLAlchemyError as e:
            logger.error(f"Metadata store {operation} failed: {e}")
            raise BackendUnavailable(f"Metadata store {operation} failed: {e}", backend=self.backend_name) from e

    # ── Writes ───────────────────────────────────────────────────

    async def create(self, artifact: FileArtifact) -> FileArtifact:
        """Insert the record for ``artifact``.

        Retrying with the same id returns the record already written
        instead of inserting a second one.
        """
        artifact_id = artifact.id or uuid.uuid4()

        async def _create(db: AsyncSession) -> FileArtifact:
            existing = await db.get(FileRecord, artifact_id)
            if existing is not None:
                return _to_artifact(existing)

            record = FileRecord(
                id=artifact_id,
                file_name=artifact.file_name,
                original_name=artifact.original_name,
                content_type=artifact.content_type,
                size_bytes=artifact.size_bytes,
                bucket=artifact.bucket,
                object_key=artifact.object_key,
                checksum=artifact.checksum,
                uploaded_by=artifact.uploaded_by,
                uploaded_at=artifact.uploaded_at,
                is_deleted=False,
                tag_rows=[FileTag(tag=tag) for tag in dict.fromkeys(artifact.tags)],
                attribute_rows=[FileAttribute(key=k, value=v) for k, v in artifact.metadata.items()],
            )
            db.add(record)
            await db.commit()
            return _to_artifact(record)

        try:
            created = await self.run("create", _create)
        except IntegrityError as e:
            raise InvalidArgument(
                f"Object {artifact.bucket}/{artifact.object_key} is already registered"
            ) from e
        logger.info(f"Stored metadata for artifact {created.id} ({created.bucket}/{created.object_key})")
        return created

    async def soft_delete(self, artifact_id: uuid.UUID) -> bool:
        """Flip is_deleted. Returns False if the record is absent or already deleted."""
        async def _delete(db: AsyncSession) -> bool:
            result = await db.execute(
                update(FileRecord)
                .where(FileRecord.id == artifact_id, FileRecord.is_deleted.is_(False))
                .values(is_deleted=True)
            )
            await db.commit()
            return result.rowcount > 0

        return await self.run("soft_delete", _delete)

    async def soft_delete_by_object_key(self, bucket: str, key: str) -> bool:
        async def _delete(db: AsyncSession) -> bool:
            result = await db.execute(
                update(FileRecord)
                .where(
                    FileRecord.bucket == bucket,
                    FileRecord.object_key == key,
                    FileRecord.is_deleted.is_(False),
                )
                .values(is_deleted=True)
            )
            await db.commit()
            return result.rowcount > 0

        return await self.run("soft_delete_by_object_key", _delete)

    # ── Reads ────────────────────────────────────────────────────

    async def _one(self, operation: str, query) -> Optional[FileArtifact]:
        async def _fetch(db: AsyncSession) -> Optional[FileArtifact]:
            result = await db.execute(query)
            record = result.scalars().first()
            return _to_artifact(record) if record else None

        return await self.run(operation, _fetch)

    async def _many(self, operation: str, query) -> list[FileArtifact]:
        async def _fetch(db: AsyncSession) -> list[FileArtifact]:
            result = await db.execute(query)
            return [_to_artifact(r) for r in result.scalars().all()]

        return await self.run(operation, _fetch)

    async def get(self, artifact_id: uuid.UUID, include_deleted: bool = False) -> Optional[FileArtifact]:
        query = select(FileRecord).where(FileRecord.id == artifact_id)
        if not include_deleted:
            query = query.where(FileRecord.is_deleted.is_(False))
        return await self._one("get", query)

    async def get_by_object_key(self, bucket: str, key: str) -> Optional[FileArtifact]:
        return await self._one(
            "get_by_object_key",
            select(FileRecord).where(
                FileRecord.bucket == bucket,
                FileRecord.object_key == key,
                FileRecord.is_deleted.is_(False),
            ),
        )

    async def list_by_uploader(self, uploaded_by: str) -> list[FileArtifact]:
        return await self._many(
            "list_by_uploader",
            select(FileRecord)
            .where(FileRecord.uploaded_by == uploaded_by, FileRecord.is_deleted.is_(False))
            .order_by(desc(FileRecord.uploaded_at)),
        )

    async def search_by_tags(self, tags: list[str]) -> list[FileArtifact]:
        """Live records carrying any of ``tags``, newest first."""
        if not tags:
            return []
        tagged = select(FileTag.file_id).where(FileTag.tag.in_(list(tags)))
        return await self._many(
            "search_by_tags",
            select(FileRecord)
            .where(FileRecord.id.in_(tagged), FileRecord.is_deleted.is_(False))
            .order_by(desc(FileRecord.uploaded_at)),
        )

    async def list_by_content_type(self, content_type: str) -> list[FileArtifact]:
        return await self._many(
            "list_by_content_type",
            select(FileRecord)
            .where(FileRecord.content_type == content_type, FileRecord.is_deleted.is_(False))
            .order_by(desc(FileRecord.uploaded_at)),
        )

    async def find_by_attribute(self, key: str, value: str) -> list[FileArtifact]:
        """Live records whose metadata maps ``key`` to exactly ``value``."""
        matching = select(FileAttribute.file_id).where(FileAttribute.key == key, FileAttribute.value == value)
        return await self._many(
            "find_by_attribute",
            select(FileRecord)
            .where(FileRecord.id.in_(matching), FileRecord.is_deleted.is_(False))
            .order_by(desc(FileRecord.uploaded_at)),
        )

    async def find_by_checksum(self, checksum: str, uploaded_by: Optional[str] = None) -> list[FileArtifact]:
        query = select(FileRecord).where(FileRecord.checksum == checksum, FileRecord.is_deleted.is_(False))
        if uploaded_by is not None:
            query = query.where(FileRecord.uploaded_by == uploaded_by)
        return await self._many("find_by_checksum", query.order_by(desc(FileRecord.uploaded_at)))

    async def list_all(self, uploaded_by: Optional[str] = None) -> list[FileArtifact]:
        """Audit view: every record including soft-deleted ones, newest first."""
        query = select(FileRecord)
        if uploaded_by is not None:
            query = query.where(FileRecord.uploaded_by == uploaded_by)
        return await self._many("list_all", query.order_by(desc(FileRecord.uploaded_at)))
