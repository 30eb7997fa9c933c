"""Object store value schemas."""
from datetime import datetime
from typing import Optional
from pydantic import Field
from artifactstore.schemas.base import CamelModel


class ObjectStat(CamelModel):
    """Existence and size of an object, fetched without its body."""
    bucket: str
    key: str
    exists: bool
    size_bytes: Optional[int] = None
    content_type: Optional[str] = None
    last_modified: Optional[datetime] = None
    headers: dict[str, str] = Field(default_factory=dict)
