"""Unit tests for async_client.py — request shape, error mapping and download release."""

import asyncio
import json
from unittest.mock import MagicMock

import aiohttp
import pytest

from dbxcli.async_client import AsyncDropboxClient, DownloadStream
from dbxcli.client import API_ARG_HEADER, API_RESULT_HEADER
from dbxcli.exceptions import (
    ApiError,
    AuthenticationError,
    DownloadError,
    NetworkError,
    RateLimitError,
    ServerError,
    TimeoutError,
)
from dbxcli.models import CommitInfo, FolderMetadata, TransferSession

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _FakeContent:
    def __init__(self, chunks):
        self._chunks = chunks
        self.chunk_sizes = []

    async def iter_chunked(self, n):
        self.chunk_sizes.append(n)
        for chunk in self._chunks:
            yield chunk


class _FakeResponse:
    """Stands in for ``aiohttp.ClientResponse``."""

    def __init__(self, status: int = 200, body=b"", headers=None, chunks=None):
        self.status = status
        if isinstance(body, (dict, list)):
            body = json.dumps(body).encode()
        self._body = body
        self.headers = headers or {}
        self.content = _FakeContent(chunks or [])
        self.release = MagicMock()

    async def read(self) -> bytes:
        return self._body

    async def text(self) -> str:
        return self._body.decode()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.release()


class _PendingPost:
    """What ``ClientSession.post`` returns: awaitable and an async context manager."""

    def __init__(self, outcome):
        self._outcome = outcome

    async def _resolve(self):
        if isinstance(self._outcome, BaseException):
            raise self._outcome
        return self._outcome

    def __await__(self):
        return self._resolve().__await__()

    async def __aenter__(self):
        return await self._resolve()

    async def __aexit__(self, exc_type, exc, tb):
        return None


class _FakeSession:
    def __init__(self, *outcomes):
        self._outcomes = list(outcomes)
        self.calls = []
        self.closed = False

    def post(self, url, **kwargs):
        self.calls.append((url, kwargs))
        return _PendingPost(self._outcomes.pop(0))

    async def close(self):
        self.closed = True


def _make_client(*outcomes):
    client = AsyncDropboxClient(access_token="fake-token")
    session = _FakeSession(*outcomes)
    client._session = session
    return client, session


def _run(coro):
    return asyncio.run(coro)


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class TestRequests:
    def test_missing_token_raises(self, monkeypatch) -> None:
        monkeypatch.delenv("DROPBOX_ACCESS_TOKEN", raising=False)
        with pytest.raises(AuthenticationError):
            AsyncDropboxClient()

    def test_rpc_posts_json_to_api_endpoint(self) -> None:
        client, session = _make_client(_FakeResponse(body={
            "entries": [{".tag": "folder", "name": "d", "path_display": "/docs/d"}],
            "cursor": "c1",
            "has_more": True,
        }))

        page = _run(client.list_folder("/docs", recursive=True))

        url, kwargs = session.calls[0]
        assert url == "https://api.dropboxapi.com/2/files/list_folder"
        assert kwargs["json"] == {"path": "/docs", "recursive": True, "include_deleted": False}
        assert isinstance(page.entries[0], FolderMetadata)
        assert page.cursor.value == "c1"
        assert page.has_more

    def test_upload_carries_argument_header(self) -> None:
        client, session = _make_client(_FakeResponse(body={"name": "a", "path_display": "/a", "size": 3}))

        result = _run(client.upload(CommitInfo(path="/a"), b"abc"))

        url, kwargs = session.calls[0]
        assert url == "https://content.dropboxapi.com/2/files/upload"
        assert json.loads(kwargs["headers"][API_ARG_HEADER])["path"] == "/a"
        assert kwargs["headers"]["Content-Type"] == "application/octet-stream"
        assert kwargs["data"] == b"abc"
        assert result.size == 3

    def test_session_append_sends_cursor(self) -> None:
        client, session = _make_client(_FakeResponse(body=b""))

        _run(client.upload_session_append(TransferSession("sess", 20, 8), b"x"))

        url, kwargs = session.calls[0]
        assert url.endswith("files/upload_session/append_v2")
        arg = json.loads(kwargs["headers"][API_ARG_HEADER])
        assert arg == {"cursor": {"session_id": "sess", "offset": 8}, "close": False}

    def test_argument_header_is_ascii(self) -> None:
        client, session = _make_client(_FakeResponse(body={"name": "ü", "path_display": "/ü"}))

        _run(client.upload(CommitInfo(path="/ü"), b""))

        header = session.calls[0][1]["headers"][API_ARG_HEADER]
        assert header.isascii()
        assert json.loads(header)["path"] == "/ü"

    def test_context_manager_closes_session(self) -> None:
        client, session = _make_client()

        async def use():
            async with client:
                pass

        _run(use())
        assert session.closed


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


class TestErrorMapping:
    def test_409_becomes_classified_api_error(self) -> None:
        client, _ = _make_client(_FakeResponse(409, body={"error_summary": "path/not_folder/.."}))

        with pytest.raises(ApiError) as exc_info:
            _run(client.list_folder("/a.txt"))

        assert exc_info.value.route == "files/list_folder"
        assert exc_info.value.is_not_folder
        assert not exc_info.value.is_not_found

    @pytest.mark.parametrize("status, exc_type", [
        (401, AuthenticationError),
        (429, RateLimitError),
        (503, ServerError),
    ])
    def test_status_codes(self, status, exc_type) -> None:
        client, _ = _make_client(_FakeResponse(status, body=b"nope", headers={"Retry-After": "7"}))
        with pytest.raises(exc_type):
            _run(client.get_metadata("/a"))

    def test_connection_error_becomes_network_error(self) -> None:
        client, _ = _make_client(aiohttp.ClientConnectionError("down"))
        with pytest.raises(NetworkError):
            _run(client.get_metadata("/a"))

    def test_timeout_becomes_timeout_error(self) -> None:
        client, _ = _make_client(asyncio.TimeoutError())
        with pytest.raises(TimeoutError):
            _run(client.get_metadata("/a"))


# ---------------------------------------------------------------------------
# Downloads
# ---------------------------------------------------------------------------


def _result_header(**fields) -> dict:
    return {API_RESULT_HEADER: json.dumps(fields)}


class TestDownload:
    def test_streams_body_and_releases_response(self) -> None:
        response = _FakeResponse(
            headers=_result_header(name="a", path_display="/a", size=5),
            chunks=[b"ab", b"cde"],
        )
        client, session = _make_client(response)

        async def fetch():
            metadata, stream = await client.download("/a", chunk_size=2)
            async with stream:
                chunks = [chunk async for chunk in stream]
            return metadata, stream, chunks

        metadata, stream, chunks = _run(fetch())

        assert isinstance(stream, DownloadStream)
        assert metadata.size == 5
        assert chunks == [b"ab", b"cde"]
        assert response.content.chunk_sizes == [2]
        assert json.loads(session.calls[0][1]["headers"][API_ARG_HEADER]) == {"path": "/a"}
        response.release.assert_called()

    def test_malformed_result_header_releases_response(self) -> None:
        response = _FakeResponse(headers={API_RESULT_HEADER: "{not json"})
        client, _ = _make_client(response)

        with pytest.raises(DownloadError) as exc_info:
            _run(client.download("/a"))

        assert exc_info.value.path == "/a"
        response.release.assert_called_once()

    def test_incomplete_metadata_releases_response(self) -> None:
        response = _FakeResponse(headers=_result_header(size=5))
        client, _ = _make_client(response)

        with pytest.raises(DownloadError):
            _run(client.download("/a"))

        response.release.assert_called_once()

    def test_error_status_releases_response(self) -> None:
        response = _FakeResponse(409, body={"error_summary": "path/not_found/"})
        client, _ = _make_client(response)

        with pytest.raises(ApiError) as exc_info:
            _run(client.download("/missing"))

        assert exc_info.value.is_not_found
        response.release.assert_called_once()

    def test_connection_error_becomes_network_error(self) -> None:
        client, _ = _make_client(aiohttp.ClientConnectionError("reset"))
        with pytest.raises(NetworkError):
            _run(client.download("/a"))
