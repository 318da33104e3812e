"""Content hashing for files and archive entry streams."""

import hashlib
import os
from typing import BinaryIO, Union

CHUNK_SIZE = 1024 * 1024

ByteSource = Union[str, "os.PathLike[str]", BinaryIO]


def get_content_hash(source: ByteSource) -> bytes:
    """
    Compute the SHA-256 content hash of a file or readable stream.

    Args:
        source: Path to a file, or an open binary stream positioned at the
            start of the content

    Returns:
        Raw digest bytes

    Raises:
        OSError: If the content cannot be read
    """
    if isinstance(source, (str, os.PathLike)):
        with open(source, "rb") as f:
            return _hash_stream(f)
    return _hash_stream(source)


def _hash_stream(stream: BinaryIO) -> bytes:
    digest = hashlib.sha256()
    while True:
        chunk = stream.read(CHUNK_SIZE)
        if not chunk:
            break
        digest.update(chunk)
    return digest.digest()


def hash_to_string(content_hash: bytes) -> str:
    """Format a content hash as upper-case hex, e.g. for staging directory names."""
    return content_hash.hex().upper()
