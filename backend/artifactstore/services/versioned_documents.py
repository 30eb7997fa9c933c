"""Append-only, subject-scoped versioned documents.

For every subject the version chain is 1..n without gaps and at most one
version is active. A version's payload and number never change once
written: an update deactivates the current version and appends a new one.

Writers for the same subject are serialized in-process with a KeyedLock.
The unique (subject_id, version) constraint and the partial unique index
on active versions back this up across processes; losing that race
surfaces as VersionConflict and nothing is written.
"""
import json
import logging
import uuid
from typing import Any, AsyncIterator, Optional

from sqlalchemy import desc, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from artifactstore.errors import InvalidArgument, VersionConflict
from artifactstore.models.base import utcnow
from artifactstore.models.document_version import DocumentTag, DocumentVersion
from artifactstore.schemas.document import DocumentVersionRecord
from artifactstore.services.locks import KeyedLock
from artifactstore.services.metadata_store import MetadataStore

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_PAGE_SIZE = 100


def _subject_key(subject_id: Any) -> str:
    key = str(subject_id).strip() if subject_id is not None else ""
    if not key:
        raise InvalidArgument("Subject id must not be empty")
    return key


def _check_payload(payload: Any) -> None:
    try:
        json.dumps(payload)
    except (TypeError, ValueError) as e:
        raise InvalidArgument(f"Payload is not JSON-serializable: {e}") from e


class DocumentHistory:
    """Every version of one subject, newest first.

    Nothing is fetched until iteration starts; each ``async for`` starts
    over from the newest version and pages through the chain.
    """

    def __init__(self, store: "VersionedDocumentStore", subject_id: str, page_size: int):
        self._store = store
        self.subject_id = subject_id
        self.page_size = page_size

    def __aiter__(self) -> AsyncIterator[DocumentVersionRecord]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[DocumentVersionRecord]:
        below: Optional[int] = None
        while True:
            page = await self._store._history_page(self.subject_id, below, self.page_size)
            for record in page:
                yield record
            if len(page) < self.page_size:
                return
            below = page[-1].version

    async def to_list(self) -> list[DocumentVersionRecord]:
        return [record async for record in self]


class VersionedDocumentStore:
    def __init__(self, metadata: MetadataStore, locks: Optional[KeyedLock] = None):
        self._metadata = metadata
        self._locks = locks or KeyedLock()

    # ── Writes ───────────────────────────────────────────────────

    async def append(
        self,
        subject_id: Any,
        payload: Any,
        creator: str,
        tags: Optional[list[str]] = None,
    ) -> DocumentVersionRecord:
        """Append the next version without deactivating anything.

        Meant for a subject's first version (or the first after a soft
        delete). Raises VersionConflict if the subject already has an
        active version; use ``update`` for that.
        """
        subject = _subject_key(subject_id)
        self._check_writer(creator)
        _check_payload(payload)

        async with self._locks.hold(subject):
            async def _append(db: AsyncSession) -> DocumentVersionRecord:
                active = await db.scalar(
                    select(DocumentVersion.id).where(
                        DocumentVersion.subject_id == subject, DocumentVersion.is_active.is_(True)
                    )
                )
                if active is not None:
                    raise VersionConflict(subject, f"Subject {subject} already has an active version")
                return await self._insert_next(db, subject, payload, creator, tags)

            record = await self._write("append", subject, _append)
        logger.info(f"Appended version {record.version} for subject {subject}")
        return record

    async def update(
        self,
        subject_id: Any,
        payload: Any,
        editor: str,
        tags: Optional[list[str]] = None,
    ) -> DocumentVersionRecord:
        """Deactivate the current version (if any) and append a new active one, in one transaction."""
        subject = _subject_key(subject_id)
        self._check_writer(editor)
        _check_payload(payload)

        async with self._locks.hold(subject):
            async def _update(db: AsyncSession) -> DocumentVersionRecord:
                await db.execute(
                    update(DocumentVersion)
                    .where(DocumentVersion.subject_id == subject, DocumentVersion.is_active.is_(True))
                    .values(is_active=False, updated_at=utcnow())
                )
                return await self._insert_next(db, subject, payload, editor, tags)

            record = await self._write("update", subject, _update)
        logger.info(f"Subject {subject} updated to version {record.version}")
        return record

    async def soft_delete(self, document_id: uuid.UUID) -> bool:
        """Deactivate one version without creating a new one. False if it was not active."""
        async def _delete(db: AsyncSession) -> bool:
            result = await db.execute(
                update(DocumentVersion)
                .where(DocumentVersion.id == document_id, DocumentVersion.is_active.is_(True))
                .values(is_active=False, updated_at=utcnow())
            )
            await db.commit()
            return result.rowcount > 0

        deleted = await self._metadata.run("soft_delete_document", _delete)
        if deleted:
            logger.info(f"Soft-deleted document version {document_id}")
        return deleted

    @staticmethod
    def _check_writer(writer: str) -> None:
        if not writer or not writer.strip():
            raise InvalidArgument("Creator identity must not be empty")

    async def _insert_next(
        self,
        db: AsyncSession,
        subject: str,
        payload: Any,
        writer: str,
        tags: Optional[list[str]],
    ) -> DocumentVersionRecord:
        last_version = await db.scalar(
            select(func.max(DocumentVersion.version)).where(DocumentVersion.subject_id == subject)
        )
        now = utcnow()
        record = DocumentVersion(
            subject_id=subject,
            version=(last_version or 0) + 1,
            payload=payload,
            created_by=writer,
            is_active=True,
            created_at=now,
            updated_at=now,
            tag_rows=[DocumentTag(tag=tag) for tag in dict.fromkeys(tags or [])],
        )
        db.add(record)
        await db.commit()
        return DocumentVersionRecord.model_validate(record)

    async def _write(self, operation: str, subject: str, work) -> DocumentVersionRecord:
        try:
            return await self._metadata.run(operation, work)
        except IntegrityError as e:
            logger.warning(f"Version race detected on subject {subject} during {operation}")
            raise VersionConflict(subject) from e

    # ── Reads ────────────────────────────────────────────────────

    async def latest(self, subject_id: Any) -> Optional[DocumentVersionRecord]:
        """The active version, or None when the subject was never written or is soft-deleted."""
        subject = _subject_key(subject_id)

        async def _latest(db: AsyncSession) -> Optional[DocumentVersionRecord]:
            result = await db.execute(
                select(DocumentVersion)
                .where(DocumentVersion.subject_id == subject, DocumentVersion.is_active.is_(True))
                .order_by(desc(DocumentVersion.version))
                .limit(1)
            )
            record = result.scalars().first()
            return DocumentVersionRecord.model_validate(record) if record else None

        return await self._metadata.run("latest", _latest)

    async def get(self, document_id: uuid.UUID, include_inactive: bool = False) -> Optional[DocumentVersionRecord]:
        async def _get(db: AsyncSession) -> Optional[DocumentVersionRecord]:
            query = select(DocumentVersion).where(DocumentVersion.id == document_id)
            if not include_inactive:
                query = query.where(DocumentVersion.is_active.is_(True))
            record = (await db.execute(query)).scalars().first()
            return DocumentVersionRecord.model_validate(record) if record else None

        return await self._metadata.run("get_document", _get)

    def history(self, subject_id: Any, page_size: int = DEFAULT_HISTORY_PAGE_SIZE) -> DocumentHistory:
        """All versions, active and inactive, ordered by version descending."""
        if page_size <= 0:
            raise InvalidArgument(f"page_size must be positive, got {page_size}")
        return DocumentHistory(self, _subject_key(subject_id), page_size)

    async def _history_page(self, subject: str, below: Optional[int], limit: int) -> list[DocumentVersionRecord]:
        async def _page(db: AsyncSession) -> list[DocumentVersionRecord]:
            query = select(DocumentVersion).where(DocumentVersion.subject_id == subject)
            if below is not None:
                query = query.where(DocumentVersion.version < below)
            result = await db.execute(query.order_by(desc(DocumentVersion.version)).limit(limit))
            return [DocumentVersionRecord.model_validate(r) for r in result.scalars().all()]

        return await self._metadata.run("history", _page)

    async def search_by_tags(self, tags: list[str]) -> list[DocumentVersionRecord]:
        """Active versions carrying any of ``tags``, most recently updated first."""
        if not tags:
            return []

        async def _search(db: AsyncSession) -> list[DocumentVersionRecord]:
            tagged = select(DocumentTag.document_id).where(DocumentTag.tag.in_(list(tags)))
            result = await db.execute(
                select(DocumentVersion)
                .where(DocumentVersion.id.in_(tagged), DocumentVersion.is_active.is_(True))
                .order_by(desc(DocumentVersion.updated_at), desc(DocumentVersion.version))
            )
            return [DocumentVersionRecord.model_validate(r) for r in result.scalars().all()]

        return await self._metadata.run("search_documents_by_tags", _search)
