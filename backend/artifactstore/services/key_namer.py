"""Object key derivation.

Keys look like ``<yyyy>/<mm>/<dd>/<base-name>_<8 hex><extension>``: the date
prefix lets retention tooling reason about keys by upload day, the random
suffix keeps identical filenames uploaded on the same day apart.
"""
import uuid
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Optional

from artifactstore.errors import InvalidArgument

SUFFIX_LENGTH = 8


def split_filename(filename: str) -> tuple[str, str]:
    """Return (base name, extension) of the last path component of ``filename``."""
    if filename is None or not filename.strip():
        raise InvalidArgument("Filename must not be empty")
    name = PurePosixPath(filename.strip().replace("\\", "/")).name
    if not name or name in (".", ".."):
        raise InvalidArgument(f"Invalid filename: {filename!r}")
    path = PurePosixPath(name)
    return path.stem, path.suffix


def generate_object_key(
    filename: str,
    now: Optional[datetime] = None,
    suffix: Optional[str] = None,
) -> str:
    """Build a date-prefixed, collision-resistant key for ``filename``."""
    base_name, extension = split_filename(filename)
    timestamp = (now or datetime.now(timezone.utc)).strftime("%Y/%m/%d")
    random_part = suffix or uuid.uuid4().hex[:SUFFIX_LENGTH]
    return f"{timestamp}/{base_name}_{random_part}{extension}"
