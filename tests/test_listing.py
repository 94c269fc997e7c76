"""Unit tests for listing.py — pagination, file fallback and deleted-entry recovery."""

import asyncio
from unittest.mock import MagicMock

import pytest

from dbxcli.exceptions import ApiError
from dbxcli.listing import filter_entries, list_directory, list_directory_async
from dbxcli.models import (
    DeletedMetadata,
    FileMetadata,
    FolderMetadata,
    ListFolderResult,
    ListingCursor,
    ListOptions,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _file(name: str, rev: str = "r1") -> FileMetadata:
    return FileMetadata(name=name, path_display=f"/{name}", path_lower=f"/{name}", rev=rev, size=1)


def _folder(name: str) -> FolderMetadata:
    return FolderMetadata(name=name, path_display=f"/{name}", path_lower=f"/{name}")


def _deleted(name: str) -> DeletedMetadata:
    return DeletedMetadata(name=name, path_display=f"/{name}", path_lower=f"/{name}")


def _page(entries, cursor: str = "", has_more: bool = False) -> ListFolderResult:
    return ListFolderResult(entries=list(entries), cursor=ListingCursor(value=cursor, has_more=has_more))


def _api_error(route: str, summary: str) -> ApiError:
    return ApiError(route, error_summary=summary)


def _make_api(pages=None, revisions=None, metadata=None) -> MagicMock:
    """
    Return a mocked client.

    ``pages`` is the first page followed by continuation pages; ``revisions``
    maps a path to a revision list or an exception; ``metadata`` maps a
    path to the entry ``get_metadata`` returns.
    """
    api = MagicMock()
    pages = pages or [_page([])]
    api.list_folder.return_value = pages[0]
    api.list_folder_continue.side_effect = list(pages[1:])

    revisions = revisions or {}

    def list_revisions(path):
        value = revisions.get(path, [])
        if isinstance(value, Exception):
            raise value
        return value

    api.list_revisions.side_effect = list_revisions
    api.get_metadata.side_effect = lambda path, include_deleted=False: (metadata or {})[path]
    return api


# ---------------------------------------------------------------------------
# Pagination
# ---------------------------------------------------------------------------


class TestPagination:
    def test_collects_all_pages_in_order(self) -> None:
        api = _make_api(pages=[
            _page([_file("a"), _file("b")], cursor="c1", has_more=True),
            _page([_file("c")], cursor="c2", has_more=True),
            _page([_file("d")], cursor="c3", has_more=False),
        ])

        entries = list_directory(api, "/docs")

        assert [e.name for e in entries] == ["a", "b", "c", "d"]
        assert [c.args[0] for c in api.list_folder_continue.call_args_list] == ["c1", "c2"]

    def test_single_page_does_not_continue(self) -> None:
        api = _make_api(pages=[_page([_file("a")], cursor="c1")])
        list_directory(api, "")
        api.list_folder_continue.assert_not_called()

    def test_passes_listing_options(self) -> None:
        api = _make_api()
        list_directory(api, "/docs", ListOptions(recursive=True, only_deleted=True))
        api.list_folder.assert_called_once_with("/docs", recursive=True, include_deleted=True)

    def test_continue_error_discards_partial_listing(self) -> None:
        api = _make_api(pages=[_page([_file("a")], cursor="c1", has_more=True)])
        api.list_folder_continue.side_effect = _api_error("files/list_folder/continue", "reset/..")
        with pytest.raises(ApiError):
            list_directory(api, "/docs")

    def test_empty_folder(self) -> None:
        assert list_directory(_make_api(), "/empty") == []


# ---------------------------------------------------------------------------
# Not-a-folder fallback
# ---------------------------------------------------------------------------


class TestFileFallback:
    def test_listing_a_file_returns_its_metadata(self) -> None:
        api = _make_api(metadata={"/a.txt": _file("a.txt")})
        api.list_folder.side_effect = _api_error("files/list_folder", "path/not_folder/..")

        entries = list_directory(api, "/a.txt")

        assert entries == [_file("a.txt")]
        api.get_metadata.assert_called_once_with("/a.txt", include_deleted=False)

    def test_other_api_errors_propagate(self) -> None:
        api = _make_api()
        api.list_folder.side_effect = _api_error("files/list_folder", "path/not_found/..")
        with pytest.raises(ApiError) as exc_info:
            list_directory(api, "/missing")
        assert exc_info.value.is_not_found
        api.get_metadata.assert_not_called()


# ---------------------------------------------------------------------------
# Deleted-entry recovery
# ---------------------------------------------------------------------------


class TestDeletedRecovery:
    def test_deleted_entry_replaced_by_latest_revision(self) -> None:
        api = _make_api(
            pages=[_page([_file("a"), _deleted("b")])],
            revisions={"/b": [_file("b", rev="r9"), _file("b", rev="r8")]},
        )

        entries = list_directory(api, "", ListOptions(include_deleted=True))

        assert entries[0] == _file("a")
        recovered = entries[1]
        assert isinstance(recovered, FileMetadata)
        assert recovered.rev == "r9"
        assert recovered.name == "[b]"
        assert recovered.path_display == "[/b]"
        assert recovered.deleted is True

    def test_deleted_folder_falls_back_to_metadata(self) -> None:
        api = _make_api(
            pages=[_page([_deleted("d")])],
            revisions={"/d": _api_error("files/list_revisions", "path/not_file/..")},
            metadata={"/d": _folder("d")},
        )

        entries = list_directory(api, "", ListOptions(include_deleted=True))

        assert isinstance(entries[0], FolderMetadata)
        assert entries[0].name == "[d]"
        assert entries[0].is_deleted
        api.get_metadata.assert_called_once_with("/d", include_deleted=True)

    def test_fallback_returning_deleted_keeps_it(self) -> None:
        api = _make_api(
            pages=[_page([_deleted("d")])],
            revisions={"/d": _api_error("files/list_revisions", "path/not_file/..")},
            metadata={"/d": _deleted("d")},
        )
        entries = list_directory(api, "", ListOptions(include_deleted=True))
        assert entries == [_deleted("d")]

    def test_no_revisions_keeps_entry(self) -> None:
        api = _make_api(pages=[_page([_deleted("x")])], revisions={"/x": []})
        entries = list_directory(api, "", ListOptions(include_deleted=True))
        assert entries == [_deleted("x")]

    def test_revision_error_propagates(self) -> None:
        api = _make_api(
            pages=[_page([_deleted("x")])],
            revisions={"/x": _api_error("files/list_revisions", "path/not_found/..")},
        )
        with pytest.raises(ApiError):
            list_directory(api, "", ListOptions(include_deleted=True))

    def test_no_lookups_without_deleted_options(self) -> None:
        api = _make_api(pages=[_page([_file("a"), _deleted("b")])])
        entries = list_directory(api, "")
        assert entries == [_file("a")]
        api.list_revisions.assert_not_called()

    def test_only_deleted_keeps_recovered_entries(self) -> None:
        api = _make_api(
            pages=[_page([_file("a"), _folder("f"), _deleted("b"), _deleted("c")])],
            revisions={"/b": [_file("b", rev="r2")], "/c": []},
        )

        entries = list_directory(api, "", ListOptions(only_deleted=True))

        assert [e.name for e in entries] == ["[b]", "c"]


# ---------------------------------------------------------------------------
# filter_entries()
# ---------------------------------------------------------------------------


class TestFilterEntries:
    def test_default_hides_deleted(self) -> None:
        entries = [_file("a"), _deleted("b")]
        assert filter_entries(entries, ListOptions()) == [_file("a")]

    def test_include_deleted_keeps_everything(self) -> None:
        entries = [_deleted("b"), _file("a")]
        assert filter_entries(entries, ListOptions(include_deleted=True)) == entries

    def test_only_deleted_wins_over_include(self) -> None:
        entries = [_file("a"), _folder("f"), _deleted("b")]
        options = ListOptions(include_deleted=True, only_deleted=True)
        assert filter_entries(entries, options) == [_deleted("b")]


# ---------------------------------------------------------------------------
# Async listing
# ---------------------------------------------------------------------------


class _AsyncApi:
    def __init__(self, sync_api):
        self._api = sync_api

    async def list_folder(self, path, recursive=False, include_deleted=False):
        return self._api.list_folder(path, recursive=recursive, include_deleted=include_deleted)

    async def list_folder_continue(self, cursor):
        return self._api.list_folder_continue(cursor)

    async def get_metadata(self, path, include_deleted=False):
        return self._api.get_metadata(path, include_deleted=include_deleted)

    async def list_revisions(self, path):
        return self._api.list_revisions(path)


class TestAsyncListing:
    def test_paginates_and_recovers(self) -> None:
        api = _make_api(
            pages=[
                _page([_file("a")], cursor="c1", has_more=True),
                _page([_deleted("b")], cursor="c2"),
            ],
            revisions={"/b": [_file("b", rev="r3")]},
        )

        entries = asyncio.run(list_directory_async(_AsyncApi(api), "", ListOptions(include_deleted=True)))

        assert [e.name for e in entries] == ["a", "[b]"]

    def test_not_folder_fallback(self) -> None:
        api = _make_api(metadata={"/a": _file("a")})
        api.list_folder.side_effect = _api_error("files/list_folder", "path/not_folder/")
        entries = asyncio.run(list_directory_async(_AsyncApi(api), "/a"))
        assert entries == [_file("a")]
