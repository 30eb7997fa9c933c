"""Content digests over byte streams.

Hashing never leaves a seekable stream consumed: the caller's read position
is restored so the same stream can be uploaded afterwards.
"""
import hashlib
import io
import tempfile
from typing import BinaryIO, Union

from artifactstore.errors import InvalidArgument

CHUNK_SIZE = 1024 * 1024

Source = Union[bytes, bytearray, memoryview, BinaryIO]


def sha256_hex(data: bytes) -> str:
    """Return the SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def compute_checksum(stream: BinaryIO, chunk_size: int = CHUNK_SIZE) -> str:
    """SHA-256 of the whole stream, from offset 0, restoring the read position."""
    if not _is_seekable(stream):
        raise InvalidArgument("Checksum computation requires a seekable stream")
    original_position = stream.tell()
    stream.seek(0)
    digest = hashlib.sha256()
    try:
        while True:
            chunk = stream.read(chunk_size)
            if not chunk:
                break
            digest.update(chunk)
    finally:
        stream.seek(original_position)
    return digest.hexdigest()


def stream_size(stream: BinaryIO) -> int:
    """Total length of a seekable stream, restoring the read position."""
    position = stream.tell()
    try:
        return stream.seek(0, io.SEEK_END)
    finally:
        stream.seek(position)


def ensure_seekable(source: Source) -> BinaryIO:
    """Wrap raw bytes, or buffer a non-seekable stream, so it can be hashed and rewound."""
    if isinstance(source, (bytes, bytearray, memoryview)):
        return io.BytesIO(bytes(source))
    if not hasattr(source, "read"):
        raise InvalidArgument(f"Unsupported upload source type: {type(source).__name__}")
    if _is_seekable(source):
        return source

    buffered = tempfile.TemporaryFile()
    try:
        while True:
            chunk = source.read(CHUNK_SIZE)
            if not chunk:
                break
            buffered.write(chunk)
        buffered.seek(0)
    except BaseException:
        buffered.close()
        raise
    return buffered


def _is_seekable(stream) -> bool:
    seekable = getattr(stream, "seekable", None)
    if seekable is None:
        return False
    try:
        return bool(seekable())
    except (OSError, ValueError):
        return False
