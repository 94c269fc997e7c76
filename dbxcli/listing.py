"""
Directory listing with pagination and deleted-entry recovery.

``list_directory`` walks a folder listing through its continuation
cursors, falls back to a single metadata lookup when the path turns out
to be a file, and replaces deleted entries with the last revision they
had before deletion.
"""

import logging
from typing import List

from .models import DeletedMetadata, ListOptions, Metadata, as_deleted
from .exceptions import ApiError

logger = logging.getLogger(__name__)


def filter_entries(entries: List[Metadata], options: ListOptions) -> List[Metadata]:
    """
    Keep the entries a listing with ``options`` should show.

    With ``only_deleted`` only deleted entries (enriched or not) remain;
    otherwise live entries remain, plus deleted ones if they were asked for.
    Relative order is preserved.
    """
    if options.only_deleted:
        return [e for e in entries if e.is_deleted]
    return [e for e in entries if not e.is_deleted or options.include_deleted]


def list_directory(api, path: str, options: ListOptions = None) -> List[Metadata]:
    """
    List a remote folder, or a single entry when ``path`` is a file.

    Args:
        api: A ``DropboxClient`` or any object with the same listing methods
        path: Normalised remote path; empty for the root
        options: Recursion and deleted-entry options

    Returns:
        The entries in server order

    Raises:
        ApiError: For any API error other than the recovered ones
    """
    options = options or ListOptions()
    include_deleted = options.wants_deleted

    try:
        result = api.list_folder(path, recursive=options.recursive, include_deleted=include_deleted)
    except ApiError as e:
        if not e.is_not_folder:
            raise
        logger.info("[list_directory] not a folder, looking up metadata; path:%s", path)
        entries = [api.get_metadata(path, include_deleted=include_deleted)]
    else:
        entries = list(result.entries)
        cursor = result.cursor
        pages = 1
        while cursor.has_more:
            result = api.list_folder_continue(cursor.value)
            entries.extend(result.entries)
            cursor = result.cursor
            pages += 1
        logger.debug("[list_directory] listed; path:%s;pages:%d;entries:%d", path, pages, len(entries))

    if include_deleted:
        entries = [
            _recover_deleted(api, entry) if isinstance(entry, DeletedMetadata) else entry
            for entry in entries
        ]

    return filter_entries(entries, options)


def _recover_deleted(api, entry: DeletedMetadata) -> Metadata:
    """Replace a deleted entry with its most recent revision, when there is one."""
    try:
        revisions = api.list_revisions(entry.path_display)
    except ApiError as e:
        if not e.is_not_file:
            raise
        logger.info("[_recover_deleted] not a file, looking up metadata; path:%s", entry.path_display)
        return as_deleted(api.get_metadata(entry.path_display, include_deleted=True))

    if not revisions:
        logger.debug("[_recover_deleted] no revisions; path:%s", entry.path_display)
        return entry
    return as_deleted(revisions[0])


async def list_directory_async(api, path: str, options: ListOptions = None) -> List[Metadata]:
    """
    Awaitable form of ``list_directory`` for ``AsyncDropboxClient``.

    Continuation calls are awaited one at a time; a cursor is never
    used twice.
    """
    options = options or ListOptions()
    include_deleted = options.wants_deleted

    try:
        result = await api.list_folder(path, recursive=options.recursive, include_deleted=include_deleted)
    except ApiError as e:
        if not e.is_not_folder:
            raise
        logger.info("[list_directory_async] not a folder, looking up metadata; path:%s", path)
        entries = [await api.get_metadata(path, include_deleted=include_deleted)]
    else:
        entries = list(result.entries)
        cursor = result.cursor
        while cursor.has_more:
            result = await api.list_folder_continue(cursor.value)
            entries.extend(result.entries)
            cursor = result.cursor

    if include_deleted:
        recovered = []
        for entry in entries:
            if isinstance(entry, DeletedMetadata):
                entry = await _recover_deleted_async(api, entry)
            recovered.append(entry)
        entries = recovered

    return filter_entries(entries, options)


async def _recover_deleted_async(api, entry: DeletedMetadata) -> Metadata:
    try:
        revisions = await api.list_revisions(entry.path_display)
    except ApiError as e:
        if not e.is_not_file:
            raise
        return as_deleted(await api.get_metadata(entry.path_display, include_deleted=True))

    if not revisions:
        return entry
    return as_deleted(revisions[0])
