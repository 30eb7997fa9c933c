"""File artifact schemas."""
import uuid
from datetime import datetime
from typing import Optional
from pydantic import Field
from artifactstore.schemas.base import CamelModel


class FileArtifact(CamelModel):
    """A stored binary object plus the metadata record describing it.

    ``id`` is None only while the artifact has not been written to the
    metadata store yet (e.g. the artifact carried by PartialUploadFailure
    before retry_metadata assigns one).
    """
    id: Optional[uuid.UUID] = None
    file_name: str
    original_name: str
    content_type: str
    size_bytes: int
    bucket: str
    object_key: str
    checksum: str
    uploaded_by: str
    uploaded_at: datetime
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, str] = Field(default_factory=dict)
    is_deleted: bool = False
