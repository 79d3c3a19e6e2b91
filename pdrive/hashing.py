"""
Content hashing.

Streaming SHA-256 digests for parts and whole files. Nothing here holds more
than one read block (plus the caller's chunk) in memory.
"""

import base64
import hashlib
from pathlib import Path
from typing import BinaryIO, Iterable, Optional, Tuple, Union

from pdrive.exceptions import FileReadError

READ_BLOCK_SIZE = 1024 * 1024


class ContentHasher:
    """
    Incremental hasher producing per-part and whole-stream digests in one pass.

    Feed data with update(); call finish_part() at every part boundary to
    collect that part's digest. The whole-stream digest keeps accumulating
    across parts.
    """

    def __init__(self) -> None:
        self._file = hashlib.sha256()
        self._part = hashlib.sha256()
        self.bytes_hashed = 0

    def update(self, data: bytes) -> None:
        self._file.update(data)
        self._part.update(data)
        self.bytes_hashed += len(data)

    def finish_part(self) -> bytes:
        """Return the digest of everything fed since the last boundary."""
        digest = self._part.digest()
        self._part = hashlib.sha256()
        return digest

    def digest(self) -> bytes:
        return self._file.digest()

    def hexdigest(self) -> str:
        return self._file.hexdigest()


def hash_range(
    file_obj: BinaryIO,
    offset: int,
    length: int,
    hasher: Optional[ContentHasher] = None,
) -> bytes:
    """
    Read a byte range from an open file, feeding it through a hasher.

    Args:
        file_obj: File opened in binary mode
        offset: Start of the range
        length: Number of bytes to read
        hasher: Hasher to feed (a fresh one if not provided)

    Returns:
        The bytes of the range

    Raises:
        FileReadError: If the read fails or the file is shorter than expected
    """
    hasher = hasher or ContentHasher()
    buffer = bytearray()
    try:
        file_obj.seek(offset)
        remaining = length
        while remaining > 0:
            block = file_obj.read(min(READ_BLOCK_SIZE, remaining))
            if not block:
                raise FileReadError(
                    f"Unexpected end of file at byte {offset + length - remaining} "
                    f"(expected {length} bytes from offset {offset})"
                )
            hasher.update(block)
            buffer.extend(block)
            remaining -= len(block)
    except OSError as e:
        raise FileReadError(f"Failed to read file: {e}") from e
    return bytes(buffer)


def read_part(path: Union[str, Path], offset: int, length: int) -> Tuple[bytes, bytes]:
    """Read one part of a file and return (data, sha256 digest)."""
    hasher = ContentHasher()
    try:
        with open(path, "rb") as f:
            data = hash_range(f, offset, length, hasher)
    except OSError as e:
        raise FileReadError(f"Failed to open {path}: {e}") from e
    return data, hasher.finish_part()


def digest_file(path: Union[str, Path]) -> bytes:
    """SHA-256 of a whole file, streamed in blocks."""
    hasher = ContentHasher()
    try:
        with open(path, "rb") as f:
            for block in iter(lambda: f.read(READ_BLOCK_SIZE), b""):
                hasher.update(block)
    except OSError as e:
        raise FileReadError(f"Failed to read {path}: {e}") from e
    return hasher.digest()


def composite_digest(part_digests: Iterable[bytes]) -> str:
    """
    Aggregate digest of a multipart object: sha256 over the concatenated
    part digests, suffixed with the part count (S3 composite checksum form).

    Part digests must be given in index order.
    """
    outer = hashlib.sha256()
    count = 0
    for digest in part_digests:
        outer.update(digest)
        count += 1
    return f"{b64_digest(outer.digest())}-{count}"


def b64_digest(digest: bytes) -> str:
    """Base64 form used in checksum headers."""
    return base64.b64encode(digest).decode("ascii")
