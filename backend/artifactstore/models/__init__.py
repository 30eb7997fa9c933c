"""Import all models so SQLAlchemy metadata knows about them."""
from artifactstore.models.base import Base
from artifactstore.models.file_record import FileRecord, FileTag, FileAttribute
from artifactstore.models.document_version import DocumentVersion, DocumentTag

__all__ = [
    "Base",
    "FileRecord", "FileTag", "FileAttribute",
    "DocumentVersion", "DocumentTag",
]
