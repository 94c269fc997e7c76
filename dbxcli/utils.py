"""
Utility functions for dbxcli.

This module provides path normalisation, size and date formatting,
stream helpers and the Dropbox content hash.
"""

import re
import hashlib
from datetime import datetime
from typing import BinaryIO, Iterable, Optional

from .exceptions import ValidationError


# Block size of the Dropbox content hash
CONTENT_HASH_BLOCK_SIZE = 4 * 1024 * 1024

SIZE_UNITS = ["B", "K", "M", "G", "T", "P", "E", "Z"]

DATE_FORMAT = "%b %d %H:%M"


def validate_path(path: Optional[str]) -> str:
    """
    Normalise a remote path argument.

    Adds a leading slash and strips a trailing one. The root folder is
    the empty string.

    Args:
        path: Path as typed by the user

    Returns:
        Normalised remote path
    """
    if path is None:
        return ""

    path = path.strip()
    if path in ("", "/"):
        return ""

    if "\x00" in path:
        raise ValidationError(f"Invalid path: {path!r}", field="path")

    if not path.startswith("/"):
        path = f"/{path}"

    return path.rstrip("/")


def join_path(*parts: str) -> str:
    """Join remote path segments with single slashes."""
    joined = "/".join(p.strip("/") for p in parts if p and p.strip("/"))
    return f"/{joined}" if joined else ""


def basename(path: str) -> str:
    return path.rstrip("/").rsplit("/", 1)[-1]


def humanize_size(size_bytes: int) -> str:
    """
    Format a byte count with a one-letter binary unit.

    Args:
        size_bytes: Size in bytes

    Returns:
        Formatted size string (e.g., "1.5M")
    """
    num = float(size_bytes)
    for unit in SIZE_UNITS:
        if abs(num) < 1024.0:
            return f"{num:3.1f}{unit}"
        num /= 1024.0
    return f"{num:.1f}Y"


def humanize_date(value: Optional[datetime]) -> str:
    if value is None:
        return "-"
    return value.strftime(DATE_FORMAT)


def parse_file_size(size_str: str) -> int:
    """
    Parse human-readable file size to bytes.

    Args:
        size_str: Size string (e.g., "16MB", "4M", "16777216")

    Returns:
        Size in bytes
    """
    size_str = size_str.strip().upper()

    match = re.match(r'^(\d+(?:\.\d+)?)\s*([KMGT]?I?B?)$', size_str)
    if not match:
        raise ValueError(f"Invalid size format: {size_str}")

    number, unit = match.groups()
    number = float(number)

    unit = unit.replace("I", "").rstrip("B")
    multipliers = {
        '': 1,
        'K': 1024,
        'M': 1024 ** 2,
        'G': 1024 ** 3,
        'T': 1024 ** 4,
    }

    if unit not in multipliers:
        raise ValueError(f"Unknown unit: {unit}")

    return int(number * multipliers[unit])


def read_chunk(stream: BinaryIO, size: int) -> bytes:
    """
    Read up to ``size`` bytes, looping over short reads until EOF.

    Args:
        stream: Readable binary stream
        size: Maximum number of bytes to return

    Returns:
        The bytes read; shorter than ``size`` only at end of stream
    """
    parts = []
    remaining = size
    while remaining > 0:
        data = stream.read(remaining)
        if not data:
            break
        parts.append(data)
        remaining -= len(data)
    return b"".join(parts)


class ContentHasher:
    """
    Incremental Dropbox content hash.

    The stream is split into 4 MiB blocks, each block is hashed with
    SHA-256, and the hash of the concatenated block digests is the
    content hash.
    """

    def __init__(self):
        self._overall = hashlib.sha256()
        self._block = hashlib.sha256()
        self._block_pos = 0

    def update(self, data: bytes):
        offset = 0
        while offset < len(data):
            if self._block_pos == CONTENT_HASH_BLOCK_SIZE:
                self._overall.update(self._block.digest())
                self._block = hashlib.sha256()
                self._block_pos = 0
            take = min(len(data) - offset, CONTENT_HASH_BLOCK_SIZE - self._block_pos)
            self._block.update(data[offset:offset + take])
            self._block_pos += take
            offset += take

    def hexdigest(self) -> str:
        overall = self._overall.copy()
        if self._block_pos > 0:
            overall.update(self._block.digest())
        return overall.hexdigest()


def content_hash(chunks: Iterable[bytes]) -> str:
    """
    Calculate the Dropbox content hash of a sequence of byte chunks.

    Args:
        chunks: Byte chunks in stream order, of any size

    Returns:
        Hex-encoded content hash
    """
    hasher = ContentHasher()
    for chunk in chunks:
        hasher.update(chunk)
    return hasher.hexdigest()


def calculate_transfer_speed(bytes_transferred: int, elapsed_time: float) -> float:
    """
    Calculate transfer speed in bytes per second.

    Args:
        bytes_transferred: Number of bytes transferred
        elapsed_time: Time elapsed in seconds

    Returns:
        Speed in bytes per second
    """
    if elapsed_time <= 0:
        return 0.0
    return bytes_transferred / elapsed_time


def estimate_remaining_time(bytes_transferred: int, total_bytes: int, elapsed_time: float) -> Optional[float]:
    """
    Estimate remaining transfer time.

    Returns:
        Estimated remaining time in seconds, or None if cannot estimate
    """
    if bytes_transferred <= 0 or elapsed_time <= 0:
        return None

    speed = calculate_transfer_speed(bytes_transferred, elapsed_time)
    if speed <= 0:
        return None

    return max(total_bytes - bytes_transferred, 0) / speed


def percentage(done: int, total: int) -> float:
    if total <= 0:
        return 100.0
    return min(100.0, (done / total) * 100)
