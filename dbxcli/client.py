"""
Synchronous Dropbox API client.

This module provides the blocking client used by the command-line tool.
It speaks the Dropbox HTTP API v2: RPC routes take a JSON body, content
routes carry their argument in the ``Dropbox-API-Arg`` header.
"""

import os
import json
import logging
import time
from typing import Optional, List, Dict, Any, Tuple

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .models import (
    CommitInfo, FileMetadata, FolderMetadata, Metadata, ListFolderResult,
    SpaceUsage, FullAccount, BasicAccount, TeamInfo, TeamMember, TeamGroup,
    SharedLink, SharedFolder, SharedFile, TransferSession, metadata_from_dict,
)
from .exceptions import (
    DropboxError, ApiError, AuthenticationError, DownloadError, RateLimitError,
    ServerError, ClientError, NetworkError, TimeoutError,
)
from .auth import AuthManager, ACCESS_TOKEN_ENV

logger = logging.getLogger(__name__)

API_ENDPOINT = "https://api.dropboxapi.com/2"
CONTENT_ENDPOINT = "https://content.dropboxapi.com/2"
USER_AGENT = "dbxcli-python/1.0.0"

API_ARG_HEADER = "Dropbox-API-Arg"
API_RESULT_HEADER = "Dropbox-API-Result"


def encode_api_arg(arg: Dict[str, Any]) -> str:
    """Serialise a route argument for the ``Dropbox-API-Arg`` header (ASCII only)."""
    return json.dumps(arg, ensure_ascii=True, separators=(",", ":"))


def raise_for_status(route: str, status_code: int, headers: Dict[str, str], body: str):
    """
    Map an HTTP error response to the matching exception.

    Args:
        route: API route that was called
        status_code: HTTP status of the response
        headers: Response headers
        body: Response body as text

    Raises:
        ApiError, AuthenticationError, RateLimitError, ClientError or ServerError
    """
    if status_code < 400:
        return

    if status_code == 409:
        try:
            payload = json.loads(body)
        except ValueError:
            payload = {}
        user_message = payload.get("user_message")
        if isinstance(user_message, dict):
            user_message = user_message.get("text")
        raise ApiError(
            route,
            error_summary=payload.get("error_summary", ""),
            error=payload.get("error"),
            user_message=user_message,
        )

    if status_code == 401:
        raise AuthenticationError(f"Invalid or expired access token: {body.strip()}")

    if status_code == 429:
        retry_after = headers.get("Retry-After")
        retry_after = int(retry_after) if retry_after and retry_after.isdigit() else None
        raise RateLimitError(
            f"Rate limit exceeded on {route}. Retry after {retry_after or 'unknown'} seconds.",
            retry_after=retry_after,
        )

    if status_code == 400:
        raise ClientError(f"{route}: {body.strip()}", status_code=status_code)

    if status_code >= 500:
        raise ServerError(f"{route}: server returned {status_code}", status_code=status_code)

    raise DropboxError(f"{route}: unexpected status {status_code}: {body.strip()}")


class DropboxClient:
    """
    Blocking client for the Dropbox API.

    Every method issues exactly one request and either returns the parsed
    result or raises; nothing is retried at this level beyond the
    transport's connection retries.
    """

    def __init__(
        self,
        access_token: Optional[str] = None,
        api_endpoint: str = API_ENDPOINT,
        content_endpoint: str = CONTENT_ENDPOINT,
        timeout: int = 60,
        max_retries: int = 3,
        as_member_id: Optional[str] = None,
    ):
        """
        Initialize the Dropbox client.

        Args:
            access_token: OAuth2 bearer token (can also use DROPBOX_ACCESS_TOKEN env var)
            api_endpoint: Base URL of the RPC routes
            content_endpoint: Base URL of the upload/download routes
            timeout: Request timeout in seconds
            max_retries: Maximum number of connection retry attempts
            as_member_id: Team member to act as, for team tokens
        """
        access_token = access_token or os.getenv(ACCESS_TOKEN_ENV)
        if not access_token:
            raise AuthenticationError(
                f"Access token is required. Provide it as parameter or {ACCESS_TOKEN_ENV} env var."
            )

        self.api_endpoint = api_endpoint.rstrip("/")
        self.content_endpoint = content_endpoint.rstrip("/")
        self.timeout = timeout
        self.auth = AuthManager(access_token, as_member_id)

        # Only connection failures are retried; error statuses reach raise_for_status
        self.session = requests.Session()
        retry_strategy = Retry(
            total=max_retries,
            backoff_factor=1,
            status=0,
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

        self.session.headers.update(self.auth.get_auth_headers())
        self.session.headers["User-Agent"] = USER_AGENT

    def _request(self, route: str, url: str, **kwargs) -> requests.Response:
        """Send a POST request and raise on any error response."""
        start_time = time.time()
        try:
            response = self.session.post(url, timeout=self.timeout, **kwargs)
        except requests.exceptions.Timeout as e:
            raise TimeoutError(f"Request timeout on {route}: {e}", timeout_seconds=self.timeout)
        except requests.exceptions.ConnectionError as e:
            raise NetworkError(f"Connection error on {route}: {e}")
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"Request failed on {route}: {e}")

        logger.debug(
            "[_request] route:%s;status:%s;elapsed:%.3fs",
            route, response.status_code, time.time() - start_time,
        )

        if response.status_code >= 400:
            try:
                raise_for_status(route, response.status_code, response.headers, response.text)
            finally:
                response.close()
        return response

    def _rpc(self, route: str, arg: Optional[Dict[str, Any]] = None) -> Any:
        """Call an RPC route with a JSON argument and return the decoded result."""
        url = f"{self.api_endpoint}/{route}"
        if arg is None:
            response = self._request(route, url)
        else:
            response = self._request(route, url, json=arg)
        if not response.content:
            return None
        return response.json()

    def _upload(self, route: str, arg: Dict[str, Any], data: bytes) -> Any:
        """Call a content-upload route with ``data`` as the request body."""
        headers = {
            API_ARG_HEADER: encode_api_arg(arg),
            "Content-Type": "application/octet-stream",
        }
        response = self._request(route, f"{self.content_endpoint}/{route}", headers=headers, data=data)
        if not response.content:
            return None
        return response.json()

    def _download(self, route: str, arg: Dict[str, Any]) -> Tuple[Dict[str, Any], requests.Response]:
        """Call a content-download route; the caller must close the response."""
        headers = {API_ARG_HEADER: encode_api_arg(arg)}
        response = self._request(route, f"{self.content_endpoint}/{route}", headers=headers, stream=True)
        try:
            result = json.loads(response.headers.get(API_RESULT_HEADER, "{}"))
        except ValueError as e:
            response.close()
            raise DownloadError(f"Malformed {API_RESULT_HEADER} header on {route}: {e}", path=arg.get("path"))
        return result, response

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    def upload(self, commit: CommitInfo, data: bytes) -> FileMetadata:
        """Upload a whole file in one request."""
        result = self._upload("files/upload", commit.to_dict(), data)
        return FileMetadata.from_dict(result)

    def upload_session_start(self, data: bytes) -> str:
        """Open an upload session with the first chunk and return its id."""
        result = self._upload("files/upload_session/start", {"close": False}, data)
        return result["session_id"]

    def upload_session_append(self, session: TransferSession, data: bytes):
        """Append a chunk to an open upload session at its current offset."""
        arg = {"cursor": session.cursor(), "close": False}
        self._upload("files/upload_session/append_v2", arg, data)

    def upload_session_finish(self, session: TransferSession, commit: CommitInfo, data: bytes) -> FileMetadata:
        """Send the final chunk and commit the session to ``commit.path``."""
        arg = {"cursor": session.cursor(), "commit": commit.to_dict()}
        result = self._upload("files/upload_session/finish", arg, data)
        return FileMetadata.from_dict(result)

    # ------------------------------------------------------------------
    # Listing and metadata
    # ------------------------------------------------------------------

    def list_folder(self, path: str, recursive: bool = False, include_deleted: bool = False) -> ListFolderResult:
        arg = {
            "path": path,
            "recursive": recursive,
            "include_deleted": include_deleted,
        }
        return ListFolderResult.from_dict(self._rpc("files/list_folder", arg))

    def list_folder_continue(self, cursor: str) -> ListFolderResult:
        return ListFolderResult.from_dict(self._rpc("files/list_folder/continue", {"cursor": cursor}))

    def get_metadata(self, path: str, include_deleted: bool = False) -> Metadata:
        arg = {"path": path, "include_deleted": include_deleted}
        return metadata_from_dict(self._rpc("files/get_metadata", arg))

    def list_revisions(self, path: str, limit: int = 10) -> List[FileMetadata]:
        """
        List the revisions of a file, most recent first.

        Raises:
            ApiError: with ``is_not_file`` set when the path is a folder
        """
        result = self._rpc("files/list_revisions", {"path": path, "mode": "path", "limit": limit})
        return [FileMetadata.from_dict(e) for e in result.get("entries", [])]

    def search(self, query: str, path: str = "", max_results: int = 100) -> List[Metadata]:
        """Search file and folder names under ``path``."""
        arg = {"query": query, "options": {"max_results": max_results}}
        if path:
            arg["options"]["path"] = path
        result = self._rpc("files/search_v2", arg)
        return [
            metadata_from_dict(match["metadata"]["metadata"])
            for match in result.get("matches", [])
        ]

    # ------------------------------------------------------------------
    # File operations
    # ------------------------------------------------------------------

    def download(self, path: str) -> Tuple[FileMetadata, requests.Response]:
        """
        Start downloading a file.

        Returns:
            The file's metadata and a streaming response; close it when done
        """
        result, response = self._download("files/download", {"path": path})
        try:
            return FileMetadata.from_dict(result), response
        except KeyError as e:
            response.close()
            raise DownloadError(f"Incomplete download metadata for {path}: missing {e}", path=path)

    def copy(self, from_path: str, to_path: str) -> Metadata:
        result = self._rpc("files/copy_v2", {"from_path": from_path, "to_path": to_path})
        return metadata_from_dict(result["metadata"])

    def move(self, from_path: str, to_path: str) -> Metadata:
        result = self._rpc("files/move_v2", {"from_path": from_path, "to_path": to_path})
        return metadata_from_dict(result["metadata"])

    def delete(self, path: str) -> Metadata:
        result = self._rpc("files/delete_v2", {"path": path})
        return metadata_from_dict(result["metadata"])

    def create_folder(self, path: str) -> FolderMetadata:
        result = self._rpc("files/create_folder_v2", {"path": path, "autorename": False})
        return FolderMetadata.from_dict(result["metadata"])

    def restore(self, path: str, rev: str) -> FileMetadata:
        return FileMetadata.from_dict(self._rpc("files/restore", {"path": path, "rev": rev}))

    # ------------------------------------------------------------------
    # Account
    # ------------------------------------------------------------------

    def get_space_usage(self) -> SpaceUsage:
        return SpaceUsage.from_dict(self._rpc("users/get_space_usage"))

    def get_current_account(self) -> FullAccount:
        return FullAccount.from_dict(self._rpc("users/get_current_account"))

    def get_account(self, account_id: str) -> BasicAccount:
        return BasicAccount.from_dict(self._rpc("users/get_account", {"account_id": account_id}))

    # ------------------------------------------------------------------
    # Team administration
    # ------------------------------------------------------------------

    def _paginate(self, route: str, arg: Dict[str, Any], items_key: str) -> List[Dict[str, Any]]:
        """Collect ``items_key`` from a route and its ``/continue`` pages."""
        result = self._rpc(route, arg)
        items = list(result.get(items_key, []))
        while result.get("has_more"):
            result = self._rpc(f"{route}/continue", {"cursor": result["cursor"]})
            items.extend(result.get(items_key, []))
        return items

    def team_get_info(self) -> TeamInfo:
        return TeamInfo.from_dict(self._rpc("team/get_info"))

    def team_members_list(self, limit: int = 100) -> List[TeamMember]:
        members = self._paginate("team/members/list", {"limit": limit}, "members")
        return [TeamMember.from_dict(m) for m in members]

    def team_members_add(self, email: str, given_name: str, surname: str) -> str:
        """
        Invite a new member to the team.

        Returns:
            The result tag: ``complete`` or ``async_job_id``
        """
        arg = {
            "new_members": [{
                "member_email": email,
                "member_given_name": given_name,
                "member_surname": surname,
            }],
        }
        return self._rpc("team/members/add", arg).get(".tag", "")

    def team_members_remove(self, email: str) -> str:
        """Remove a member by email. Returns the result tag."""
        arg = {"user": {".tag": "email", "email": email}}
        return self._rpc("team/members/remove", arg).get(".tag", "")

    def team_groups_list(self, limit: int = 100) -> List[TeamGroup]:
        groups = self._paginate("team/groups/list", {"limit": limit}, "groups")
        return [TeamGroup.from_dict(g) for g in groups]

    # ------------------------------------------------------------------
    # Sharing
    # ------------------------------------------------------------------

    def list_shared_links(self, path: Optional[str] = None) -> List[SharedLink]:
        """List shared links, optionally only those for ``path``."""
        arg: Dict[str, Any] = {}
        if path:
            arg["path"] = path
        result = self._rpc("sharing/list_shared_links", arg)
        links = list(result.get("links", []))
        while result.get("has_more"):
            arg["cursor"] = result["cursor"]
            result = self._rpc("sharing/list_shared_links", arg)
            links.extend(result.get("links", []))
        return [SharedLink.from_dict(link) for link in links]

    def create_shared_link(self, path: str) -> SharedLink:
        result = self._rpc("sharing/create_shared_link_with_settings", {"path": path})
        return SharedLink.from_dict(result)

    def list_shared_folders(self, limit: int = 100) -> List[SharedFolder]:
        folders = self._paginate("sharing/list_folders", {"limit": limit}, "entries")
        return [SharedFolder.from_dict(f) for f in folders]

    def list_received_files(self, limit: int = 100) -> List[SharedFile]:
        files = self._paginate("sharing/list_received_files", {"limit": limit}, "entries")
        return [SharedFile.from_dict(f) for f in files]

    def close(self):
        self.session.close()

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
