"""FileRecord model - artifact metadata (actual bytes live in the object store).

Tags and key/value attributes are normalized into child tables so that
tag-membership and attribute-equality lookups are plain indexed joins.
"""
import uuid
from datetime import datetime
from sqlalchemy import (
    String, BigInteger, Boolean, DateTime, ForeignKey, Index, Integer, UniqueConstraint, Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from artifactstore.models.base import Base, utcnow


class FileRecord(Base):
    __tablename__ = "file_artifacts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    file_name: Mapped[str] = mapped_column(String(500), nullable=False)
    original_name: Mapped[str] = mapped_column(String(500), nullable=False)
    content_type: Mapped[str] = mapped_column(String(200), nullable=False)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    bucket: Mapped[str] = mapped_column(String(63), nullable=False)
    object_key: Mapped[str] = mapped_column(String(1024), nullable=False)
    checksum: Mapped[str] = mapped_column(String(64), nullable=False)
    uploaded_by: Mapped[str] = mapped_column(String(200), nullable=False)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    tag_rows: Mapped[list["FileTag"]] = relationship(
        back_populates="file", cascade="all, delete-orphan", lazy="selectin"
    )
    attribute_rows: Mapped[list["FileAttribute"]] = relationship(
        back_populates="file", cascade="all, delete-orphan", lazy="selectin"
    )

    __table_args__ = (
        UniqueConstraint("bucket", "object_key", name="uq_file_object"),
        Index("idx_file_uploader", "uploaded_by", "uploaded_at"),
        Index("idx_file_content_type", "content_type", "uploaded_at"),
        Index("idx_file_checksum", "checksum"),
    )

    @property
    def tags(self) -> list[str]:
        return [row.tag for row in self.tag_rows]

    @property
    def attributes(self) -> dict[str, str]:
        return {row.key: row.value for row in self.attribute_rows}


class FileTag(Base):
    __tablename__ = "file_tags"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    file_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("file_artifacts.id", ondelete="CASCADE"), nullable=False
    )
    tag: Mapped[str] = mapped_column(String(100), nullable=False, index=True)

    file: Mapped[FileRecord] = relationship(back_populates="tag_rows")

    __table_args__ = (
        UniqueConstraint("file_id", "tag", name="uq_file_tag"),
    )


class FileAttribute(Base):
    __tablename__ = "file_attributes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    file_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("file_artifacts.id", ondelete="CASCADE"), nullable=False
    )
    key: Mapped[str] = mapped_column(String(200), nullable=False)
    value: Mapped[str] = mapped_column(String(1000), nullable=False)

    file: Mapped[FileRecord] = relationship(back_populates="attribute_rows")

    __table_args__ = (
        UniqueConstraint("file_id", "key", name="uq_file_attribute"),
        Index("idx_file_attribute_kv", "key", "value"),
    )
