"""DocumentVersion model - append-only, subject-scoped versioned payloads."""
import uuid
from typing import Any
from sqlalchemy import String, Integer, Boolean, JSON, ForeignKey, Index, UniqueConstraint, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from artifactstore.models.base import Base, TimestampMixin


class DocumentVersion(Base, TimestampMixin):
    __tablename__ = "document_versions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    subject_id: Mapped[str] = mapped_column(String(200), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    # Opaque to the store: any JSON-serializable value, never interpreted
    payload: Mapped[Any] = mapped_column(JSON, nullable=True)
    created_by: Mapped[str] = mapped_column(String(200), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    tag_rows: Mapped[list["DocumentTag"]] = relationship(
        back_populates="document", cascade="all, delete-orphan", lazy="selectin"
    )

    __table_args__ = (
        UniqueConstraint("subject_id", "version", name="uq_document_subject_version"),
        # At most one active version per subject
        Index(
            "uq_document_subject_active", "subject_id", unique=True,
            postgresql_where=text("is_active"), sqlite_where=text("is_active"),
        ),
        Index("idx_document_active_updated", "is_active", "updated_at"),
    )

    @property
    def tags(self) -> list[str]:
        return [row.tag for row in self.tag_rows]


class DocumentTag(Base):
    __tablename__ = "document_tags"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    document_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("document_versions.id", ondelete="CASCADE"), nullable=False
    )
    tag: Mapped[str] = mapped_column(String(100), nullable=False, index=True)

    document: Mapped[DocumentVersion] = relationship(back_populates="tag_rows")

    __table_args__ = (
        UniqueConstraint("document_id", "tag", name="uq_document_tag"),
    )
