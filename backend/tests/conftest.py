"""Shared test fixtures for the artifact store."""
from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from artifactstore.database import build_session_factory
from artifactstore.models import Base
from artifactstore.services.file_artifacts import FileArtifactService
from artifactstore.services.metadata_store import MetadataStore
from artifactstore.services.object_store import LocalObjectStore
from artifactstore.services.versioned_documents import VersionedDocumentStore

PRESIGN_SECRET = "test-secret"
PRESIGN_BASE_URL = "http://testserver/objects"


@pytest.fixture
def object_store(tmp_path: Path) -> LocalObjectStore:
    """Provide a LocalObjectStore rooted in a temp directory."""
    return LocalObjectStore(tmp_path / "objects", presign_secret=PRESIGN_SECRET, base_url=PRESIGN_BASE_URL)


@pytest.fixture
async def engine(tmp_path: Path):
    """Provide an async SQLite engine with the schema created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'metadata.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def metadata_store(engine) -> MetadataStore:
    return MetadataStore(build_session_factory(engine))


@pytest.fixture
def document_store(metadata_store: MetadataStore) -> VersionedDocumentStore:
    return VersionedDocumentStore(metadata_store)


@pytest.fixture
def file_service(object_store: LocalObjectStore, metadata_store: MetadataStore) -> FileArtifactService:
    return FileArtifactService(object_store, metadata_store, default_bucket="test-files")
