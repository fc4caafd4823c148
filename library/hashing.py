"""Content hashing for ROM files.

A ROM's library id is the SHA-256 of its bytes. CRC32, SHA-1 and MD5 are
computed in the same pass since ROM databases (No-Intro, Redump) and older
library files key on them.
"""

import binascii
import hashlib
import re
from dataclasses import dataclass
from typing import BinaryIO

from .models import RomHashes

CHUNK_SIZE = 65536  # 64KB chunks

# Ids written by older versions (MD5 of the ROM path)
LEGACY_ID_PATTERN = re.compile(r"[0-9a-f]{32}")


class UnreadableSourceError(IOError):
    """Raised when ROM bytes cannot be opened or streamed."""

    pass


@dataclass(frozen=True)
class ContentHash:
    """Result of hashing one byte stream."""

    id: str  # SHA-256, 64 lowercase hex chars
    crc32: str  # 8 lowercase hex chars
    sha1: str
    md5: str

    @property
    def rom_hashes(self) -> RomHashes:
        return RomHashes(crc32=self.crc32, sha1=self.sha1, md5=self.md5)


def hash_stream(stream: BinaryIO, chunk_size: int = CHUNK_SIZE) -> ContentHash:
    """
    Compute the content id and fingerprints of a byte stream.

    The stream is read exactly once, sequentially, in fixed-size chunks.

    Args:
        stream: Binary file-like object positioned at the start of the content
        chunk_size: Bytes per read

    Returns:
        ContentHash with id (SHA-256), crc32, sha1 and md5 as hex strings

    Raises:
        UnreadableSourceError: If reading the stream fails
    """
    sha256 = hashlib.sha256()
    sha1 = hashlib.sha1()
    md5 = hashlib.md5()
    crc = 0
    try:
        while True:
            chunk = stream.read(chunk_size)
            if not chunk:
                break
            sha256.update(chunk)
            sha1.update(chunk)
            md5.update(chunk)
            crc = binascii.crc32(chunk, crc)
    except (IOError, OSError) as e:
        raise UnreadableSourceError(f"Failed to read ROM stream: {e}") from e

    return ContentHash(
        id=sha256.hexdigest(),
        # Ensure positive value and format as 8-char hex
        crc32=format(crc & 0xFFFFFFFF, "08x"),
        sha1=sha1.hexdigest(),
        md5=md5.hexdigest(),
    )


def hash_file(file_path: str) -> ContentHash:
    """
    Hash a file on disk.

    Args:
        file_path: Path to the file

    Returns:
        ContentHash for the file's bytes

    Raises:
        UnreadableSourceError: If the file cannot be opened or read
    """
    try:
        f = open(file_path, "rb")
    except (IOError, OSError) as e:
        raise UnreadableSourceError(f"Failed to open {file_path}: {e}") from e
    with f:
        return hash_stream(f)


def is_legacy_id(record_id: str) -> bool:
    """Check if a record id uses the old 32-hex-character format."""
    return bool(LEGACY_ID_PATTERN.fullmatch(record_id))
