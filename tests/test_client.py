"""Unit tests for client.py — request shape and HTTP error mapping."""

import json
from unittest.mock import MagicMock, patch

import pytest
import requests

from dbxcli.client import API_ARG_HEADER, DropboxClient, encode_api_arg, raise_for_status
from dbxcli.exceptions import (
    ApiError,
    AuthenticationError,
    ClientError,
    DownloadError,
    NetworkError,
    RateLimitError,
    ServerError,
    TimeoutError,
)
from dbxcli.models import CommitInfo, FileMetadata, FolderMetadata, TransferSession

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_client(**kwargs) -> DropboxClient:
    client = DropboxClient(access_token="fake-token", **kwargs)
    client.session = MagicMock()
    return client


def _response(status: int = 200, body=None, headers=None) -> MagicMock:
    response = MagicMock()
    response.status_code = status
    text = json.dumps(body) if isinstance(body, (dict, list)) else (body or "")
    response.text = text
    response.content = text.encode()
    response.json.side_effect = lambda: json.loads(text)
    response.headers = headers or {}
    return response


def _posted(client: DropboxClient):
    """Return (url, kwargs) of the single POST the client made."""
    client.session.post.assert_called_once()
    args, kwargs = client.session.post.call_args
    return args[0], kwargs


# ---------------------------------------------------------------------------
# Constructor
# ---------------------------------------------------------------------------


class TestClientInit:
    def test_sets_bearer_and_user_agent(self) -> None:
        client = DropboxClient(access_token="tok")
        assert client.session.headers["Authorization"] == "Bearer tok"
        assert client.session.headers["User-Agent"].startswith("dbxcli")

    def test_as_member_header(self) -> None:
        client = DropboxClient(access_token="tok", as_member_id="dbmid:1")
        assert client.session.headers["Dropbox-API-Select-User"] == "dbmid:1"

    def test_retries_connection_failures_only(self) -> None:
        client = DropboxClient(access_token="tok", max_retries=2)
        retry = client.session.get_adapter("https://content.dropboxapi.com").max_retries
        assert retry.total == 2
        assert retry.status == 0
        assert not retry.status_forcelist

    def test_missing_token_raises(self, monkeypatch) -> None:
        monkeypatch.delenv("DROPBOX_ACCESS_TOKEN", raising=False)
        with pytest.raises(AuthenticationError):
            DropboxClient()

    def test_token_from_environment(self, monkeypatch) -> None:
        monkeypatch.setenv("DROPBOX_ACCESS_TOKEN", "env-tok")
        client = DropboxClient()
        assert client.session.headers["Authorization"] == "Bearer env-tok"


# ---------------------------------------------------------------------------
# Request shape
# ---------------------------------------------------------------------------


class TestRequests:
    def test_rpc_posts_json_to_api_endpoint(self) -> None:
        client = _make_client()
        client.session.post.return_value = _response(body={".tag": "folder", "name": "d", "path_display": "/d"})

        entry = client.get_metadata("/d", include_deleted=True)

        url, kwargs = _posted(client)
        assert url == "https://api.dropboxapi.com/2/files/get_metadata"
        assert kwargs["json"] == {"path": "/d", "include_deleted": True}
        assert isinstance(entry, FolderMetadata)

    def test_upload_carries_argument_header(self) -> None:
        client = _make_client()
        client.session.post.return_value = _response(body={"name": "a", "path_display": "/a", "size": 3})

        result = client.upload(CommitInfo(path="/a"), b"abc")

        url, kwargs = _posted(client)
        assert url == "https://content.dropboxapi.com/2/files/upload"
        assert json.loads(kwargs["headers"][API_ARG_HEADER])["path"] == "/a"
        assert kwargs["headers"]["Content-Type"] == "application/octet-stream"
        assert kwargs["data"] == b"abc"
        assert result.size == 3

    def test_session_append_sends_cursor(self) -> None:
        client = _make_client()
        client.session.post.return_value = _response(body="")

        client.upload_session_append(TransferSession("sess", 20, 16), b"x")

        url, kwargs = _posted(client)
        assert url.endswith("files/upload_session/append_v2")
        arg = json.loads(kwargs["headers"][API_ARG_HEADER])
        assert arg == {"cursor": {"session_id": "sess", "offset": 16}, "close": False}

    def test_session_finish_sends_cursor_and_commit(self) -> None:
        client = _make_client()
        client.session.post.return_value = _response(body={"name": "a", "path_display": "/a", "size": 20})

        result = client.upload_session_finish(TransferSession("sess", 20, 16), CommitInfo(path="/a"), b"tail")

        url, kwargs = _posted(client)
        assert url.endswith("files/upload_session/finish")
        arg = json.loads(kwargs["headers"][API_ARG_HEADER])
        assert arg["cursor"] == {"session_id": "sess", "offset": 16}
        assert arg["commit"]["path"] == "/a"
        assert kwargs["data"] == b"tail"
        assert result.size == 20

    def test_download_reads_result_header(self) -> None:
        client = _make_client()
        client.session.post.return_value = _response(
            headers={"Dropbox-API-Result": json.dumps({"name": "a", "path_display": "/a", "size": 5})}
        )

        metadata, response = client.download("/a")

        _, kwargs = _posted(client)
        assert kwargs["stream"] is True
        assert isinstance(metadata, FileMetadata)
        assert metadata.size == 5
        assert response is client.session.post.return_value

    def test_download_with_malformed_result_header_closes_response(self) -> None:
        client = _make_client()
        response = _response(headers={"Dropbox-API-Result": "{not json"})
        client.session.post.return_value = response

        with pytest.raises(DownloadError) as exc_info:
            client.download("/a")

        assert exc_info.value.path == "/a"
        response.close.assert_called_once()

    def test_download_without_file_name_closes_response(self) -> None:
        client = _make_client()
        response = _response(headers={"Dropbox-API-Result": json.dumps({"size": 5})})
        client.session.post.return_value = response

        with pytest.raises(DownloadError):
            client.download("/a")

        response.close.assert_called_once()

    def test_team_members_list_follows_continue(self) -> None:
        client = _make_client()
        client.session.post.side_effect = [
            _response(body={"members": [{"profile": {"email": "a@x"}}], "cursor": "c1", "has_more": True}),
            _response(body={"members": [{"profile": {"email": "b@x"}}], "has_more": False}),
        ]

        members = client.team_members_list()

        assert [m.email for m in members] == ["a@x", "b@x"]
        second_url = client.session.post.call_args_list[1][0][0]
        assert second_url.endswith("team/members/list/continue")

    def test_encode_api_arg_is_ascii(self) -> None:
        encoded = encode_api_arg({"path": "/café"})
        assert encoded.isascii()
        assert json.loads(encoded) == {"path": "/café"}


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


class TestErrorMapping:
    def test_409_becomes_classified_api_error(self) -> None:
        client = _make_client()
        client.session.post.return_value = _response(
            409, body={"error_summary": "path/not_folder/..", "error": {".tag": "path"}}
        )
        with pytest.raises(ApiError) as exc_info:
            client.list_folder("/a.txt")
        assert exc_info.value.is_not_folder
        assert not exc_info.value.is_not_file
        assert exc_info.value.route == "files/list_folder"

    @pytest.mark.parametrize("status, exc_type", [
        (400, ClientError),
        (401, AuthenticationError),
        (500, ServerError),
        (503, ServerError),
    ])
    def test_status_codes(self, status, exc_type) -> None:
        with pytest.raises(exc_type):
            raise_for_status("files/list_folder", status, {}, "boom")

    def test_rate_limit_reads_retry_after(self) -> None:
        with pytest.raises(RateLimitError) as exc_info:
            raise_for_status("files/list_folder", 429, {"Retry-After": "7"}, "")
        assert exc_info.value.retry_after == 7

    def test_success_does_not_raise(self) -> None:
        raise_for_status("files/list_folder", 200, {}, "{}")

    def test_error_response_is_closed(self) -> None:
        client = _make_client()
        response = _response(500, body="oops")
        client.session.post.return_value = response
        with pytest.raises(ServerError):
            client.get_space_usage()
        response.close.assert_called_once()

    def test_connection_error_becomes_network_error(self) -> None:
        client = _make_client()
        client.session.post.side_effect = requests.exceptions.ConnectionError("down")
        with pytest.raises(NetworkError):
            client.get_current_account()

    def test_timeout_becomes_timeout_error(self) -> None:
        client = _make_client(timeout=5)
        client.session.post.side_effect = requests.exceptions.Timeout("slow")
        with pytest.raises(TimeoutError) as exc_info:
            client.get_current_account()
        assert exc_info.value.timeout_seconds == 5

    def test_context_manager_closes_session(self) -> None:
        with patch("dbxcli.client.requests.Session") as mock_session:
            with DropboxClient(access_token="tok"):
                pass
        mock_session.return_value.close.assert_called_once()
