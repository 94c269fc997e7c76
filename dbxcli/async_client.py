"""
Asynchronous Dropbox API client.

This module provides an async/await compatible client for the routes the
transfer and listing drivers need, so several independent transfers can
share one event loop.
"""

import asyncio
import json
import logging
import os
import time
from typing import Optional, List, Dict, Any, AsyncIterator, Tuple

import aiohttp

from .models import CommitInfo, FileMetadata, Metadata, ListFolderResult, TransferSession, metadata_from_dict
from .exceptions import AuthenticationError, DownloadError, DropboxError, NetworkError, TimeoutError
from .auth import AuthManager, ACCESS_TOKEN_ENV
from .client import (
    API_ENDPOINT, CONTENT_ENDPOINT, USER_AGENT, API_ARG_HEADER, API_RESULT_HEADER,
    encode_api_arg, raise_for_status,
)

logger = logging.getLogger(__name__)


class AsyncDropboxClient:
    """
    Asynchronous client for the Dropbox API.

    Offers the same upload, listing and metadata routes as
    ``DropboxClient``; each coroutine issues a single request.
    """

    def __init__(
        self,
        access_token: Optional[str] = None,
        api_endpoint: str = API_ENDPOINT,
        content_endpoint: str = CONTENT_ENDPOINT,
        timeout: int = 60,
        as_member_id: Optional[str] = None,
    ):
        """
        Initialize the async Dropbox client.

        Args:
            access_token: OAuth2 bearer token (can also use DROPBOX_ACCESS_TOKEN env var)
            api_endpoint: Base URL of the RPC routes
            content_endpoint: Base URL of the upload/download routes
            timeout: Request timeout in seconds
            as_member_id: Team member to act as, for team tokens
        """
        access_token = access_token or os.getenv(ACCESS_TOKEN_ENV)
        if not access_token:
            raise AuthenticationError(
                f"Access token is required. Provide it as parameter or {ACCESS_TOKEN_ENV} env var."
            )

        self.api_endpoint = api_endpoint.rstrip("/")
        self.content_endpoint = content_endpoint.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.auth = AuthManager(access_token, as_member_id)

        # Session will be created when needed
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            headers = self.auth.get_auth_headers()
            headers["User-Agent"] = USER_AGENT
            self._session = aiohttp.ClientSession(headers=headers, timeout=self.timeout)
        return self._session

    async def _request(self, route: str, url: str, **kwargs) -> Tuple[Dict[str, str], bytes]:
        """Send a POST request; return the response headers and body."""
        session = await self._get_session()
        start_time = time.time()
        try:
            async with session.post(url, **kwargs) as response:
                body = await response.read()
                logger.debug(
                    "[_request] route:%s;status:%s;elapsed:%.3fs",
                    route, response.status, time.time() - start_time,
                )
                raise_for_status(route, response.status, response.headers, body.decode("utf-8", "replace"))
                return dict(response.headers), body
        except aiohttp.ClientConnectionError as e:
            raise NetworkError(f"Connection error on {route}: {e}")
        except asyncio.TimeoutError as e:
            raise TimeoutError(f"Request timeout on {route}: {e}", timeout_seconds=self.timeout.total)

    async def _rpc(self, route: str, arg: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.api_endpoint}/{route}"
        if arg is None:
            _, body = await self._request(route, url)
        else:
            _, body = await self._request(route, url, json=arg)
        return json.loads(body) if body else None

    async def _upload(self, route: str, arg: Dict[str, Any], data: bytes) -> Any:
        headers = {
            API_ARG_HEADER: encode_api_arg(arg),
            "Content-Type": "application/octet-stream",
        }
        _, body = await self._request(route, f"{self.content_endpoint}/{route}", headers=headers, data=data)
        return json.loads(body) if body else None

    async def upload(self, commit: CommitInfo, data: bytes) -> FileMetadata:
        result = await self._upload("files/upload", commit.to_dict(), data)
        return FileMetadata.from_dict(result)

    async def upload_session_start(self, data: bytes) -> str:
        result = await self._upload("files/upload_session/start", {"close": False}, data)
        return result["session_id"]

    async def upload_session_append(self, session: TransferSession, data: bytes):
        arg = {"cursor": session.cursor(), "close": False}
        await self._upload("files/upload_session/append_v2", arg, data)

    async def upload_session_finish(self, session: TransferSession, commit: CommitInfo, data: bytes) -> FileMetadata:
        arg = {"cursor": session.cursor(), "commit": commit.to_dict()}
        result = await self._upload("files/upload_session/finish", arg, data)
        return FileMetadata.from_dict(result)

    async def list_folder(self, path: str, recursive: bool = False, include_deleted: bool = False) -> ListFolderResult:
        arg = {
            "path": path,
            "recursive": recursive,
            "include_deleted": include_deleted,
        }
        return ListFolderResult.from_dict(await self._rpc("files/list_folder", arg))

    async def list_folder_continue(self, cursor: str) -> ListFolderResult:
        return ListFolderResult.from_dict(await self._rpc("files/list_folder/continue", {"cursor": cursor}))

    async def get_metadata(self, path: str, include_deleted: bool = False) -> Metadata:
        arg = {"path": path, "include_deleted": include_deleted}
        return metadata_from_dict(await self._rpc("files/get_metadata", arg))

    async def list_revisions(self, path: str, limit: int = 10) -> List[FileMetadata]:
        result = await self._rpc("files/list_revisions", {"path": path, "mode": "path", "limit": limit})
        return [FileMetadata.from_dict(e) for e in result.get("entries", [])]

    async def download(self, path: str, chunk_size: int = 1024 * 1024) -> Tuple[FileMetadata, "DownloadStream"]:
        """
        Start downloading a file.

        Returns:
            The file's metadata and a ``DownloadStream`` over the content;
            use it as an async context manager so the connection is released
        """
        session = await self._get_session()
        route = "files/download"
        headers = {API_ARG_HEADER: encode_api_arg({"path": path})}
        try:
            response = await session.post(f"{self.content_endpoint}/{route}", headers=headers)
        except aiohttp.ClientConnectionError as e:
            raise NetworkError(f"Connection error on {route}: {e}")
        except asyncio.TimeoutError as e:
            raise TimeoutError(f"Request timeout on {route}: {e}", timeout_seconds=self.timeout.total)

        try:
            if response.status >= 400:
                body = await response.text()
                raise_for_status(route, response.status, response.headers, body)
            metadata = FileMetadata.from_dict(json.loads(response.headers.get(API_RESULT_HEADER, "{}")))
        except (ValueError, KeyError) as e:
            response.release()
            raise DownloadError(f"Malformed {API_RESULT_HEADER} header on {route}: {e}", path=path)
        except DropboxError:
            response.release()
            raise

        return metadata, DownloadStream(response, chunk_size)

    async def close(self):
        """Close the client session."""
        if self._session and not self._session.closed:
            await self._session.close()

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()


class DownloadStream:
    """
    Async iterator over a download body.

    The underlying response is released when iteration ends or when the
    ``async with`` block exits, whichever comes first.
    """

    def __init__(self, response: aiohttp.ClientResponse, chunk_size: int):
        self._response = response
        self._chunk_size = chunk_size

    async def __aiter__(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self._response.content.iter_chunked(self._chunk_size):
                yield chunk
        finally:
            self.release()

    def release(self):
        self._response.release()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.release()
