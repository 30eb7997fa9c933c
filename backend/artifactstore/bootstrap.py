"""Process-wide initialization of the artifact store.

Call ``init_artifact_store`` once at startup and pass the returned context
to whatever needs the services. Concurrent callers share a single
initialization.
"""
import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from artifactstore.config import Settings
from artifactstore.database import build_engine, build_session_factory
from artifactstore.models import Base
from artifactstore.services.file_artifacts import FileArtifactService
from artifactstore.services.metadata_store import MetadataStore
from artifactstore.services.object_store import LocalObjectStore, ObjectStoreAdapter
from artifactstore.services.versioned_documents import VersionedDocumentStore

logger = logging.getLogger(__name__)

_init_lock = asyncio.Lock()
_context: Optional["ArtifactStoreContext"] = None


@dataclass
class ArtifactStoreContext:
    settings: Settings
    engine: AsyncEngine
    object_store: ObjectStoreAdapter
    metadata: MetadataStore
    documents: VersionedDocumentStore
    files: FileArtifactService

    async def close(self) -> None:
        await self.engine.dispose()


def build_object_store(settings: Settings) -> ObjectStoreAdapter:
    timeout = settings.BACKEND_TIMEOUT_SECONDS or None
    if settings.OBJECT_STORE_TYPE == "local":
        return LocalObjectStore(
            Path(settings.OBJECT_STORE_PATH),
            presign_secret=settings.PRESIGN_SECRET,
            base_url=settings.PRESIGN_BASE_URL,
            timeout=timeout,
        )
    if settings.OBJECT_STORE_TYPE == "s3":
        from artifactstore.services.s3_object_store import S3ObjectStore
        return S3ObjectStore(
            endpoint_url=settings.S3_ENDPOINT_URL,
            access_key=settings.S3_ACCESS_KEY,
            secret_key=settings.S3_SECRET_KEY,
            region=settings.S3_REGION,
            timeout=timeout,
        )
    raise ValueError(f"Unknown object store type: {settings.OBJECT_STORE_TYPE}")


async def init_artifact_store(settings: Settings) -> ArtifactStoreContext:
    """Create tables, provision the default bucket and wire the services. Runs once per process."""
    global _context
    async with _init_lock:
        if _context is not None:
            return _context

        engine = build_engine(settings)
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        timeout = settings.BACKEND_TIMEOUT_SECONDS or None
        object_store = build_object_store(settings)
        await object_store.ensure_bucket(settings.DEFAULT_BUCKET)

        metadata = MetadataStore(build_session_factory(engine), timeout=timeout)
        _context = ArtifactStoreContext(
            settings=settings,
            engine=engine,
            object_store=object_store,
            metadata=metadata,
            documents=VersionedDocumentStore(metadata),
            files=FileArtifactService(
                object_store,
                metadata,
                default_bucket=settings.DEFAULT_BUCKET,
                subject_bucket=settings.SUBJECT_BUCKET,
                default_presign_expiry=settings.PRESIGN_DEFAULT_EXPIRY,
                verify_on_download=settings.VERIFY_CHECKSUM_ON_DOWNLOAD,
            ),
        )
        logger.info(f"Artifact store initialized ({settings.OBJECT_STORE_TYPE} objects, default bucket {settings.DEFAULT_BUCKET})")
        return _context


async def shutdown_artifact_store() -> None:
    """Dispose the engine and forget the context so a later init starts fresh."""
    global _context
    async with _init_lock:
        if _context is not None:
            await _context.close()
            _context = None
