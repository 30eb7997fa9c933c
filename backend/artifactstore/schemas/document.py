"""Versioned document schemas."""
import uuid
from datetime import datetime
from typing import Any
from pydantic import Field
from artifactstore.schemas.base import CamelORMModel


class DocumentVersionRecord(CamelORMModel):
    id: uuid.UUID
    subject_id: str
    version: int
    payload: Any = None
    created_by: str
    tags: list[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    is_active: bool
