"""
dbxcli - a command line client for Dropbox users and team admins.

This package provides:
- Chunked uploads through upload sessions
- Folder listings with pagination and deleted-file recovery
- Verified downloads using the Dropbox content hash
- Blocking and async/await API clients
- A CLI for file, sharing and team management
"""

__version__ = "1.0.0"

from .client import DropboxClient
from .async_client import AsyncDropboxClient
from .listing import list_directory, list_directory_async, filter_entries
from .transfer import (
    upload_file,
    upload_file_async,
    upload_path,
    download_file,
    download_file_async,
)
from .models import (
    FileMetadata,
    FolderMetadata,
    DeletedMetadata,
    ListOptions,
    TransferSession,
    TransferProgress,
    CommitInfo,
    WriteMode,
)
from .exceptions import (
    DropboxError,
    ApiError,
    AuthenticationError,
    UploadError,
    DownloadError,
    RateLimitError,
    IntegrityError,
)

__all__ = [
    # Clients
    "DropboxClient",
    "AsyncDropboxClient",

    # Drivers
    "list_directory",
    "list_directory_async",
    "filter_entries",
    "upload_file",
    "upload_file_async",
    "upload_path",
    "download_file",
    "download_file_async",

    # Data models
    "FileMetadata",
    "FolderMetadata",
    "DeletedMetadata",
    "ListOptions",
    "TransferSession",
    "TransferProgress",
    "CommitInfo",
    "WriteMode",

    # Exceptions
    "DropboxError",
    "ApiError",
    "AuthenticationError",
    "UploadError",
    "DownloadError",
    "RateLimitError",
    "IntegrityError",
]
