"""
File transfers: chunked uploads and verified downloads.

``upload_file`` sends a stream of known length to a single remote path.
Small streams go up in one request; larger ones open an upload session,
append fixed-size chunks and commit the last chunk with the finish call.
Phases run strictly in order and nothing is retried: if a call fails the
session is left for the server to expire.
"""

import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Callable, Optional, Union

import aiohttp
import requests

from .models import (
    DEFAULT_CHUNK_SIZE, CommitInfo, FileMetadata, TransferProgress,
    TransferSession, WriteMode,
)
from .exceptions import DownloadError, IntegrityError, UploadError
from .utils import (
    ContentHasher, basename, calculate_transfer_speed, estimate_remaining_time,
    percentage, read_chunk,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[TransferProgress], None]

DOWNLOAD_BLOCK_SIZE = 1024 * 1024


class ProgressTracker:
    """Accumulates transferred bytes and reports them to a callback."""

    def __init__(self, filename: str, total_bytes: int, callback: ProgressCallback):
        self.filename = filename
        self.total_bytes = total_bytes
        self.callback = callback
        self.transferred = 0
        self._start_time = time.time()

    def update(self, nbytes: int):
        self.transferred += nbytes
        elapsed = time.time() - self._start_time
        self.callback(TransferProgress(
            filename=self.filename,
            total_bytes=self.total_bytes,
            transferred_bytes=self.transferred,
            percentage=percentage(self.transferred, self.total_bytes),
            speed_bps=calculate_transfer_speed(self.transferred, elapsed),
            eta_seconds=estimate_remaining_time(self.transferred, self.total_bytes, elapsed),
        ))


class ProgressReader:
    """
    Wraps a binary stream and reports progress after every read.

    Reports follow the reads the driver makes, not chunk boundaries, so
    a chunk assembled from several short reads produces several reports.
    """

    def __init__(self, stream: BinaryIO, total_bytes: int, callback: ProgressCallback, filename: str = ""):
        self._stream = stream
        self._tracker = ProgressTracker(filename, total_bytes, callback)

    @property
    def bytes_read(self) -> int:
        return self._tracker.transferred

    def read(self, size: int = -1) -> bytes:
        data = self._stream.read(size)
        if data:
            self._tracker.update(len(data))
        return data


def _commit_info(dest_path: str, mode: WriteMode, client_modified: Optional[datetime]) -> CommitInfo:
    if client_modified is None:
        client_modified = datetime.now(timezone.utc)
    return CommitInfo(path=dest_path, mode=mode, client_modified=client_modified)


def _check_chunk_size(chunk_size: int):
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")


def _read_exact(stream: BinaryIO, size: int, offset: int, total_size: int, dest_path: str) -> bytes:
    """Read exactly ``size`` bytes or raise before anything is sent."""
    data = read_chunk(stream, size)
    if len(data) != size:
        raise UploadError(
            f"Source ended after {offset + len(data)} of {total_size} bytes",
            path=dest_path,
        )
    return data


def upload_file(
    api,
    stream: BinaryIO,
    total_size: int,
    dest_path: str,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    mode: WriteMode = WriteMode.OVERWRITE,
    progress_callback: Optional[ProgressCallback] = None,
    client_modified: Optional[datetime] = None,
) -> FileMetadata:
    """
    Upload a stream of known length to ``dest_path``.

    Args:
        api: A ``DropboxClient`` or any object with the same upload methods
        stream: Readable binary stream positioned at the start of the content
        total_size: Number of bytes the stream will yield
        dest_path: Remote path to commit the file to
        chunk_size: Largest number of bytes sent in one request
        mode: Conflict policy for the commit
        progress_callback: Called with a ``TransferProgress`` after every read
        client_modified: Modification time to record (defaults to now)

    Returns:
        Metadata of the committed file

    Raises:
        UploadError: If the stream yields fewer than ``total_size`` bytes
        DropboxError: Any error from the API, unchanged
    """
    _check_chunk_size(chunk_size)
    if progress_callback:
        stream = ProgressReader(stream, total_size, progress_callback, filename=basename(dest_path))
    commit = _commit_info(dest_path, mode, client_modified)

    if total_size <= chunk_size:
        data = _read_exact(stream, total_size, 0, total_size, dest_path)
        start_time = time.time()
        metadata = api.upload(commit, data)
        logger.debug("[upload_file] single upload; path:%s;bytes:%d;took:%.3fs",
                     dest_path, len(data), time.time() - start_time)
        return metadata

    start_time = time.time()
    data = _read_exact(stream, chunk_size, 0, total_size, dest_path)
    session_id = api.upload_session_start(data)
    session = TransferSession(session_id, total_size, len(data))
    logger.debug("[upload_file] session started; path:%s;session:%s;took:%.3fs",
                 dest_path, session_id, time.time() - start_time)

    # The last chunk always goes out with the finish call
    while session.remaining > chunk_size:
        data = _read_exact(stream, chunk_size, session.bytes_written, total_size, dest_path)
        chunk_start = time.time()
        api.upload_session_append(session, data)
        logger.debug("[upload_file] chunk appended; offset:%d;bytes:%d;took:%.3fs",
                     session.bytes_written, len(data), time.time() - chunk_start)
        session = session.advance(len(data))

    data = _read_exact(stream, session.remaining, session.bytes_written, total_size, dest_path)
    finish_start = time.time()
    metadata = api.upload_session_finish(session, commit, data)
    logger.debug("[upload_file] session finished; offset:%d;bytes:%d;took:%.3fs;total:%.3fs",
                 session.bytes_written, len(data), time.time() - finish_start, time.time() - start_time)
    return metadata


async def upload_file_async(
    api,
    stream: BinaryIO,
    total_size: int,
    dest_path: str,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    mode: WriteMode = WriteMode.OVERWRITE,
    progress_callback: Optional[ProgressCallback] = None,
    client_modified: Optional[datetime] = None,
) -> FileMetadata:
    """
    Awaitable form of ``upload_file`` for ``AsyncDropboxClient``.

    Each request is awaited before the next chunk is read, so chunks are
    never in flight concurrently.
    """
    _check_chunk_size(chunk_size)
    if progress_callback:
        stream = ProgressReader(stream, total_size, progress_callback, filename=basename(dest_path))
    commit = _commit_info(dest_path, mode, client_modified)

    if total_size <= chunk_size:
        return await api.upload(commit, _read_exact(stream, total_size, 0, total_size, dest_path))

    data = _read_exact(stream, chunk_size, 0, total_size, dest_path)
    session_id = await api.upload_session_start(data)
    session = TransferSession(session_id, total_size, len(data))
    logger.debug("[upload_file_async] session started; path:%s;session:%s", dest_path, session_id)

    while session.remaining > chunk_size:
        data = _read_exact(stream, chunk_size, session.bytes_written, total_size, dest_path)
        await api.upload_session_append(session, data)
        session = session.advance(len(data))

    data = _read_exact(stream, session.remaining, session.bytes_written, total_size, dest_path)
    return await api.upload_session_finish(session, commit, data)


def upload_path(
    api,
    local_path: Union[str, Path],
    dest_path: str,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    progress_callback: Optional[ProgressCallback] = None,
) -> FileMetadata:
    """Upload a local file, overwriting whatever is at ``dest_path``."""
    local_path = Path(local_path)
    total_size = local_path.stat().st_size
    with open(local_path, "rb") as f:
        return upload_file(
            api, f, total_size, dest_path,
            chunk_size=chunk_size,
            progress_callback=progress_callback,
        )


def _verify(metadata: FileMetadata, hasher: ContentHasher, verify: bool):
    if not verify or not metadata.content_hash:
        return
    actual = hasher.hexdigest()
    if actual != metadata.content_hash:
        raise IntegrityError(
            f"Content hash mismatch for {metadata.path_display}",
            expected_hash=metadata.content_hash,
            actual_hash=actual,
        )


def download_file(
    api,
    src_path: str,
    local_path: Union[str, Path],
    progress_callback: Optional[ProgressCallback] = None,
    verify: bool = True,
) -> FileMetadata:
    """
    Download ``src_path`` into ``local_path``.

    The content hash of the written bytes is checked against the one the
    server reports unless ``verify`` is false.

    Returns:
        Metadata of the downloaded file

    Raises:
        DownloadError: If the transfer breaks off mid-stream
        IntegrityError: If the content hash does not match
    """
    metadata, response = api.download(src_path)
    hasher = ContentHasher()
    tracker = ProgressTracker(metadata.name, metadata.size, progress_callback) if progress_callback else None

    with response, open(local_path, "wb") as f:
        try:
            for chunk in response.iter_content(chunk_size=DOWNLOAD_BLOCK_SIZE):
                if not chunk:
                    continue
                f.write(chunk)
                hasher.update(chunk)
                if tracker:
                    tracker.update(len(chunk))
        except requests.exceptions.RequestException as e:
            raise DownloadError(f"Download of {src_path} interrupted: {e}", path=src_path)

    logger.debug("[download_file] downloaded; path:%s;bytes:%d", src_path, metadata.size)
    _verify(metadata, hasher, verify)
    return metadata


async def download_file_async(
    api,
    src_path: str,
    local_path: Union[str, Path],
    progress_callback: Optional[ProgressCallback] = None,
    verify: bool = True,
) -> FileMetadata:
    """Awaitable form of ``download_file`` for ``AsyncDropboxClient``."""
    metadata, content = await api.download(src_path)
    hasher = ContentHasher()
    tracker = ProgressTracker(metadata.name, metadata.size, progress_callback) if progress_callback else None

    async with content:
        with open(local_path, "wb") as f:
            try:
                async for chunk in content:
                    f.write(chunk)
                    hasher.update(chunk)
                    if tracker:
                        tracker.update(len(chunk))
            except aiohttp.ClientError as e:
                raise DownloadError(f"Download of {src_path} interrupted: {e}", path=src_path)

    _verify(metadata, hasher, verify)
    return metadata
